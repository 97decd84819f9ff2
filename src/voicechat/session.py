"""
Streaming chat session: one request per turn.

Translates the transport's StreamEvents into the caller's callbacks. The
session is single use and keeps no state across turns.

Guarantees:
- callbacks are delivered in wire order on the event loop
- at most one metric callback
- `on_complete` fires exactly once, last, even on transport error or cancel
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from src.voicechat.chat_protocol import parse_metric
from src.voicechat.errors import TransportError
from src.voicechat.session_types import StreamEvent, StreamEventKind
from src.voicechat.transport import ChatTransport

logger = structlog.get_logger(__name__)


@dataclass
class SessionResult:
    """Terminal outcome of a session, passed to `on_complete`."""
    cancelled: bool = False
    error: Optional[TransportError] = None
    tokens: int = 0
    fragments: int = 0
    metric: Optional[float] = None

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.error is None


@dataclass
class ChatCallbacks:
    """Callbacks for session events."""

    on_token: Optional[Callable[[str], None]] = None
    on_metric: Optional[Callable[[float], None]] = None
    on_audio_fragment: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[str], None]] = None
    on_synthesis_error: Optional[Callable[[str], None]] = None
    on_complete: Optional[Callable[[SessionResult], None]] = None


class StreamingChatSession:
    """
    Opens exactly one streaming chat request and demultiplexes its events.
    """

    def __init__(self, transport: ChatTransport, *, session_id: int = 0):
        self._transport = transport
        self.session_id = session_id
        self._cancel_event = asyncio.Event()
        self._external_cancel: Optional[asyncio.Event] = None
        self._started = False
        self._closed = False
        self._result = SessionResult()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def completed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._is_cancelled()

    @property
    def result(self) -> SessionResult:
        return self._result

    def cancel(self) -> None:
        """Stop delivering callbacks. `on_complete` still fires once."""
        self._cancel_event.set()

    async def start(
        self,
        text: str,
        callbacks: ChatCallbacks,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SessionResult:
        """
        Run the request to completion.

        Args:
            text: The user's message
            callbacks: Event callbacks
            cancel_event: Optional external cancel signal

        Returns:
            The SessionResult also handed to `on_complete`
        """
        if self._started:
            raise RuntimeError("StreamingChatSession can only be started once")
        self._started = True
        self._external_cancel = cancel_event

        logger.debug("Chat session starting", session_id=self.session_id, chars=len(text))

        consume_task = asyncio.create_task(self._consume(text, callbacks))
        waiters = {consume_task, asyncio.create_task(self._cancel_event.wait())}
        external_waiter: Optional[asyncio.Task] = None
        if cancel_event is not None:
            external_waiter = asyncio.create_task(cancel_event.wait())
            waiters.add(external_waiter)

        try:
            done, _pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

            if consume_task not in done:
                # Cancel signal won the race; stop delivering and tear the request down.
                self._cancel_event.set()
                consume_task.cancel()

            try:
                await consume_task
            except asyncio.CancelledError:
                if not self._cancel_event.is_set():
                    raise
            except TransportError as e:
                self._result.error = e
            except Exception as e:
                # Anything unexpected from the transport ends the turn like a transport failure.
                logger.error("Chat session failed", session_id=self.session_id, error=str(e))
                self._result.error = TransportError(str(e))

        except asyncio.CancelledError:
            # The owning task was cancelled; the terminal callback still fires.
            self._cancel_event.set()
            consume_task.cancel()
            raise

        finally:
            for waiter in waiters:
                if waiter is not consume_task and not waiter.done():
                    waiter.cancel()
            self._complete(callbacks)

        return self._result

    async def _consume(self, text: str, callbacks: ChatCallbacks) -> None:
        stream = self._transport.stream_events(text)
        try:
            async for event in stream:
                if self._is_cancelled():
                    break
                if event.kind == StreamEventKind.DONE:
                    break
                self._dispatch(event, callbacks)
        finally:
            await stream.aclose()

    def _dispatch(self, event: StreamEvent, callbacks: ChatCallbacks) -> None:
        kind = event.kind

        if kind == StreamEventKind.TOKEN:
            self._result.tokens += 1
            self._deliver(callbacks.on_token, event.payload)

        elif kind == StreamEventKind.METRIC:
            if self._result.metric is not None:
                logger.debug("Ignoring repeated metric event", session_id=self.session_id)
                return
            value = parse_metric(event.payload)
            if value is None:
                logger.warning("Unparsable metric event", session_id=self.session_id, payload=event.payload[:40])
                return
            self._result.metric = value
            self._deliver(callbacks.on_metric, value)

        elif kind == StreamEventKind.AUDIO_FRAGMENT:
            self._result.fragments += 1
            self._deliver(callbacks.on_audio_fragment, event.payload)

        elif kind == StreamEventKind.ERROR:
            logger.warning("Server reported stream error", session_id=self.session_id, error=event.payload)
            self._deliver(callbacks.on_error, event.payload)

        elif kind == StreamEventKind.TTS_ERROR:
            logger.warning("Server reported synthesis error", session_id=self.session_id, error=event.payload)
            self._deliver(callbacks.on_synthesis_error, event.payload)

    def _deliver(self, callback: Optional[Callable], value: object) -> None:
        if callback is None or self._closed or self._is_cancelled():
            return
        try:
            callback(value)
        except Exception as e:
            logger.error(
                "Session callback failed",
                session_id=self.session_id,
                callback=getattr(callback, "__name__", repr(callback)),
                error=str(e),
            )

    def _is_cancelled(self) -> bool:
        if self._cancel_event.is_set():
            return True
        return self._external_cancel is not None and self._external_cancel.is_set()

    def _complete(self, callbacks: ChatCallbacks) -> None:
        if self._closed:
            return
        self._closed = True
        self._result.cancelled = self._is_cancelled()

        logger.debug(
            "Chat session complete",
            session_id=self.session_id,
            cancelled=self._result.cancelled,
            error=str(self._result.error) if self._result.error else None,
            tokens=self._result.tokens,
            fragments=self._result.fragments,
        )

        if callbacks.on_complete:
            try:
                callbacks.on_complete(self._result)
            except Exception as e:
                logger.error("Session completion callback failed", session_id=self.session_id, error=str(e))
