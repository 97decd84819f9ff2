"""
Configuration management for the voice chat client.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from urllib.parse import urlparse

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Backend (chat / transcription / side-call endpoints)
    api_base_url: str = "http://127.0.0.1:3000"
    chat_path: str = "/chat"
    transcribe_path: str = "/api/stt/transcribe"
    emotion_path: str = "/api/emotion"
    health_path: str = "/health"
    request_timeout_seconds: float = 10.0
    transcribe_timeout_seconds: float = 30.0

    # UI bridge server
    host: str = "127.0.0.1"
    port: int = 7860
    log_level: str = "INFO"

    # Playback
    # - playback_settle_ms is the pause between consecutive fragments
    # - playback_stall_timeout_seconds bounds the wait for a single fragment's completion
    playback_settle_ms: int = 100
    playback_stall_timeout_seconds: float = 30.0

    # Conversation behavior
    live_mode: bool = False
    emotion_analysis_enabled: bool = False
    conversations_path: str = "conversations.json"
    conversation_title_chars: int = 40

    @property
    def chat_url(self) -> str:
        return self._url(self.chat_path)

    @property
    def transcribe_url(self) -> str:
        return self._url(self.transcribe_path)

    @property
    def emotion_url(self) -> str:
        return self._url(self.emotion_path)

    @property
    def health_url(self) -> str:
        return self._url(self.health_path)

    def _url(self, path: str) -> str:
        return self.api_base_url.rstrip("/") + "/" + path.lstrip("/")

    def validate(self) -> None:
        """Validate that the configuration is usable."""
        problems = []

        parsed = urlparse(self.api_base_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            problems.append(f"API_BASE_URL must be an http(s) URL, got '{self.api_base_url}'")
        if self.request_timeout_seconds <= 0:
            problems.append("REQUEST_TIMEOUT_SECONDS must be positive")
        if self.transcribe_timeout_seconds <= 0:
            problems.append("TRANSCRIBE_TIMEOUT_SECONDS must be positive")
        if self.playback_settle_ms < 0:
            problems.append("PLAYBACK_SETTLE_MS must not be negative")
        if self.playback_stall_timeout_seconds <= 0:
            problems.append("PLAYBACK_STALL_TIMEOUT_SECONDS must be positive")
        if not (0 < self.port < 65536):
            problems.append(f"PORT out of range: {self.port}")

        if problems:
            raise ConfigError(
                "Invalid configuration:\n- " + "\n- ".join(problems) + "\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Configuration loaded",
            api_base_url=self.api_base_url,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
            request_timeout_seconds=self.request_timeout_seconds,
            transcribe_timeout_seconds=self.transcribe_timeout_seconds,
            playback_settle_ms=self.playback_settle_ms,
            playback_stall_timeout_seconds=self.playback_stall_timeout_seconds,
            live_mode=self.live_mode,
            emotion_analysis_enabled=self.emotion_analysis_enabled,
            conversations_path=self.conversations_path,
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Backend
        api_base_url=os.getenv("API_BASE_URL", "http://127.0.0.1:3000").strip(),
        request_timeout_seconds=_get_float("REQUEST_TIMEOUT_SECONDS", 10.0),
        transcribe_timeout_seconds=_get_float("TRANSCRIBE_TIMEOUT_SECONDS", 30.0),

        # UI bridge server
        host=os.getenv("HOST", "127.0.0.1"),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Playback
        playback_settle_ms=_get_int("PLAYBACK_SETTLE_MS", 100),
        playback_stall_timeout_seconds=_get_float("PLAYBACK_STALL_TIMEOUT_SECONDS", 30.0),

        # Conversation behavior
        live_mode=_get_bool("LIVE_MODE", False),
        emotion_analysis_enabled=_get_bool("EMOTION_ANALYSIS_ENABLED", False),
        conversations_path=os.getenv("CONVERSATIONS_PATH", "conversations.json"),
        conversation_title_chars=_get_int("CONVERSATION_TITLE_CHARS", 40),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
