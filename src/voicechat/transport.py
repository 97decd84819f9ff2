"""
HTTP transport for the chat backend.

Provides:
- Streaming chat request decoded into StreamEvents (SSE over httpx)
- Speech-to-text transcription (multipart upload)
- Opaque side calls: emotion analysis, health check
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, Optional

import httpx
import msgspec
import structlog

from src.voicechat.chat_protocol import (
    SSEDecoder,
    create_chat_request,
    stream_event_from_sse,
)
from src.voicechat.config import get_config
from src.voicechat.errors import TranscriptionError, TransportError
from src.voicechat.session_types import StreamEvent, StreamEventKind, TranscriptionResult

logger = structlog.get_logger(__name__)


class TranscribeResponse(msgspec.Struct):
    text: str = ""
    confidence: float = 0.0


class EmotionResponse(msgspec.Struct):
    dominant_emotion: str = ""


_transcribe_decoder = msgspec.json.Decoder(TranscribeResponse)
_emotion_decoder = msgspec.json.Decoder(EmotionResponse)


class ChatTransport(ABC):
    """Backend collaborator used by the session and the coordinator."""

    @abstractmethod
    def stream_events(self, text: str) -> AsyncGenerator[StreamEvent, None]:
        """
        Open one streaming chat request.

        Yields events in wire order and finishes with a DONE event when the
        server closes the stream. Raises TransportError if the request cannot
        be opened or breaks mid-stream.
        """
        raise NotImplementedError

    @abstractmethod
    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str = "recording.webm",
        content_type: str = "audio/webm",
    ) -> TranscriptionResult:
        raise NotImplementedError

    async def analyze_emotion(self, audio: bytes) -> Optional[str]:
        return None

    async def check_health(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class HttpChatTransport(ChatTransport):
    """
    httpx-based transport.

    A single AsyncClient is shared by every request. Pass `client` to inject a
    preconfigured one (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout_seconds, read=None),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def stream_events(self, text: str) -> AsyncGenerator[StreamEvent, None]:
        url = self.config.chat_url
        decoder = SSEDecoder()

        try:
            async with self._client.stream(
                "POST",
                url,
                content=create_chat_request(text),
                headers={"Content-Type": "application/json", "Accept": "text/event-stream"},
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"Chat request failed with status {response.status_code}: {body[:200]}",
                        status_code=response.status_code,
                    )

                logger.debug("Chat stream opened", url=url, status_code=response.status_code)

                async for line in response.aiter_lines():
                    message = decoder.feed_line(line)
                    if message is None:
                        continue
                    event = stream_event_from_sse(message)
                    if event is not None:
                        yield event

                message = decoder.flush()
                if message is not None:
                    event = stream_event_from_sse(message)
                    if event is not None:
                        yield event

        except httpx.HTTPError as e:
            logger.warning("Chat stream transport failure", error_type=type(e).__name__, error=str(e))
            raise TransportError(f"Could not reach the assistant: {e}") from e

        yield StreamEvent(kind=StreamEventKind.DONE)

    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str = "recording.webm",
        content_type: str = "audio/webm",
    ) -> TranscriptionResult:
        if not audio:
            raise TranscriptionError("No audio data to transcribe")

        url = self.config.transcribe_url
        try:
            response = await self._client.post(
                url,
                files={"audio": (filename, audio, content_type)},
                timeout=self.config.transcribe_timeout_seconds,
            )
            response.raise_for_status()
            data = _transcribe_decoder.decode(response.content)
        except httpx.HTTPStatusError as e:
            raise TranscriptionError(
                f"Failed to transcribe audio: {e.response.status_code} {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise TranscriptionError(f"Failed to transcribe audio: {e}") from e
        except msgspec.DecodeError as e:
            raise TranscriptionError(f"Invalid transcription response: {e}") from e

        logger.debug("Transcription received", chars=len(data.text), confidence=data.confidence)
        return TranscriptionResult(text=data.text, confidence=data.confidence)

    async def analyze_emotion(self, audio: bytes) -> Optional[str]:
        response = await self._client.post(
            self.config.emotion_url,
            files={"audio": ("recording.webm", audio, "audio/webm")},
            timeout=self.config.transcribe_timeout_seconds,
        )
        response.raise_for_status()
        return _emotion_decoder.decode(response.content).dominant_emotion or None

    async def check_health(self) -> bool:
        try:
            response = await self._client.get(self.config.health_url, timeout=5.0)
        except httpx.HTTPError as e:
            logger.warning("Backend health check failed", error=str(e))
            return False
        return response.status_code == 200
