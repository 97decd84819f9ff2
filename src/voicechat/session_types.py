from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TurnStatus(str, Enum):
    """Lifecycle of a single user utterance and its response stream."""
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StreamEventKind(str, Enum):
    TOKEN = "token"
    METRIC = "metric"
    AUDIO_FRAGMENT = "audio_fragment"
    ERROR = "error"
    TTS_ERROR = "tts_error"
    DONE = "done"


class PlaybackState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"


@dataclass
class Message:
    """
    One entry of the conversation log.

    `text` only grows while the response streams. Once `complete` is set the
    text is frozen; trailing audio fragments may still be attached.
    """

    sender: Sender
    text: str = ""
    metrics_per_second: Optional[float] = None
    audio_fragments: list[str] = field(default_factory=list)
    complete: bool = False

    def append_text(self, chunk: str) -> None:
        if self.complete:
            raise ValueError("Message is complete; text can no longer change")
        self.text += chunk

    def add_audio_fragment(self, payload: str) -> None:
        self.audio_fragments.append(payload)

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_fragments)

    def to_dict(self, *, include_audio: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sender": self.sender.value,
            "text": self.text,
        }
        if self.metrics_per_second is not None:
            data["metrics_per_second"] = self.metrics_per_second
        if include_audio and self.audio_fragments:
            data["audio_fragments"] = list(self.audio_fragments)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        # Stored conversations are history; they are always complete.
        return cls(
            sender=Sender(data.get("sender", Sender.USER.value)),
            text=data.get("text", ""),
            metrics_per_second=data.get("metrics_per_second"),
            audio_fragments=list(data.get("audio_fragments") or []),
            complete=True,
        )


@dataclass
class Turn:
    """A user utterance and the assistant message its response streams into."""

    turn_id: int
    source_text: str
    assistant_message_index: int
    status: TurnStatus = TurnStatus.SUBMITTED
    started_at: float = field(default_factory=time.time)
    first_token_at: Optional[float] = None
    completed_at: Optional[float] = None
    tokens_received: int = 0
    fragments_received: int = 0

    @property
    def is_finished(self) -> bool:
        return self.status in (TurnStatus.COMPLETED, TurnStatus.FAILED, TurnStatus.CANCELLED)

    @property
    def first_token_ms(self) -> float:
        if self.first_token_at is None:
            return 0.0
        return (self.first_token_at - self.started_at) * 1000

    @property
    def stream_ms(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at) * 1000


@dataclass(frozen=True)
class StreamEvent:
    """One decoded event from the streaming chat endpoint."""

    kind: StreamEventKind
    payload: str = ""


@dataclass(frozen=True)
class PlaybackItem:
    """
    An audio fragment waiting in (or taken from) the playback queue.

    `payload` is the base64 WAV exactly as received on the wire. `turn_id` is
    None for replays of stored message audio.
    """

    payload: str
    message_index: int
    turn_id: Optional[int] = None
    sequence: int = 0


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    confidence: float = 0.0
