"""
Streaming chat endpoint protocol (Server-Sent Events).

The chat endpoint answers `POST /chat {"message": ...}` with an SSE stream.
One logical event per SSE message:
- (unnamed): a text token
- tps: tokens/sec throughput as a decimal string, sent near the end
- audio_complete: base64 WAV for one synthesized fragment
- error: human readable server error (non-terminal)
- tts_error / audio_error: synthesis failure (logged, non-terminal)

The end of the stream is signalled by the transport closing; there is no
explicit terminator event on the wire.
"""

from dataclasses import dataclass
from typing import Optional, List

import msgspec
import structlog

from src.voicechat.session_types import StreamEvent, StreamEventKind

logger = structlog.get_logger(__name__)

# Global msgspec encoder for request bodies
encoder = msgspec.json.Encoder()

_EVENT_KINDS = {
    "tps": StreamEventKind.METRIC,
    "audio_complete": StreamEventKind.AUDIO_FRAGMENT,
    "error": StreamEventKind.ERROR,
    "tts_error": StreamEventKind.TTS_ERROR,
    "audio_error": StreamEventKind.TTS_ERROR,
}


@dataclass
class SSEMessage:
    """A dispatched SSE message (one blank-line-terminated block)."""
    event: str
    data: str
    id: Optional[str] = None


class SSEDecoder:
    """
    Incremental SSE decoder.

    Feed it decoded lines (without the trailing newline); it returns a message
    whenever a blank line terminates a block.
    """

    def __init__(self) -> None:
        self._event = ""
        self._data: List[str] = []
        self._id: Optional[str] = None
        self._has_fields = False

    def feed_line(self, line: str) -> Optional[SSEMessage]:
        line = line.rstrip("\r")

        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return None  # comment / keep-alive

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        elif name == "retry":
            pass
        else:
            logger.debug("Ignoring unknown SSE field", field=name)
            return None

        self._has_fields = True
        return None

    def flush(self) -> Optional[SSEMessage]:
        """Dispatch a trailing block that was not terminated by a blank line."""
        return self._dispatch()

    def _dispatch(self) -> Optional[SSEMessage]:
        if not self._has_fields:
            return None

        message = SSEMessage(event=self._event, data="\n".join(self._data), id=self._id)
        self._event = ""
        self._data = []
        self._has_fields = False
        return message


def stream_event_from_sse(message: SSEMessage) -> Optional[StreamEvent]:
    """
    Map an SSE message to a StreamEvent.

    Unnamed (and unrecognized) events carry token text. Empty tokens are dropped.
    """
    kind = _EVENT_KINDS.get(message.event)
    if kind is not None:
        return StreamEvent(kind=kind, payload=message.data)

    if message.event not in ("", "message"):
        logger.debug("Treating unrecognized SSE event as token", sse_event=message.event)

    if not message.data:
        return None
    return StreamEvent(kind=StreamEventKind.TOKEN, payload=message.data)


def parse_metric(payload: str) -> Optional[float]:
    """Parse a `tps` payload. Returns None for anything that is not a finite number."""
    try:
        value = float((payload or "").strip())
    except ValueError:
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return value


def create_chat_request(text: str) -> bytes:
    """Encode the body for the streaming chat request."""
    return encoder.encode({"message": text})
