"""
Voice turn coordination.

Binds capture -> transcription -> streaming chat turn -> playback, and in live
mode starts listening again once the assistant has finished speaking.

States:
    idle -> listening -> transcribing -> awaiting_response -> speaking -> idle | listening

The coordinator owns the single piece of shared state every asynchronous
source must check before acting: the active turn id. Session callbacks carry
the id of the turn they were issued for and compare it against the current
value when they fire; anything from a superseded turn is dropped.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

import structlog

from src.voicechat.config import get_config
from src.voicechat.conversation import ConversationStore
from src.voicechat.errors import StreamError, SynthesisError, TranscriptionError, VoiceChatError
from src.voicechat.playback import AudioPlaybackQueue, AudioSink, ClockedAudioSink
from src.voicechat.session import ChatCallbacks, SessionResult, StreamingChatSession
from src.voicechat.session_types import (
    Message,
    PlaybackState,
    Sender,
    TranscriptionResult,
    Turn,
    TurnStatus,
)
from src.voicechat.transport import ChatTransport

logger = structlog.get_logger(__name__)


class CoordinatorState(str, Enum):
    """Current state of the voice conversation."""
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    AWAITING_RESPONSE = "awaiting_response"
    SPEAKING = "speaking"


class AudioCapture(ABC):
    """
    Microphone capture collaborator.

    `enabled` gates capture at the device level (e.g. the UI's mic/camera
    toggle). Live mode never restarts listening while it is False.
    """

    filename: str = "recording.webm"
    content_type: str = "audio/webm"

    def __init__(self) -> None:
        self.enabled = True

    @abstractmethod
    async def start(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> bytes:
        """Stop capturing and return the recorded utterance."""
        raise NotImplementedError

    def abort(self) -> None:
        """Stop capturing and discard whatever was recorded."""
        return None


class MessageLog:
    """Ordered in-memory message log for the current conversation."""

    def __init__(self, messages: Optional[List[Message]] = None):
        self._messages: List[Message] = list(messages or [])

    def append(self, message: Message) -> int:
        self._messages.append(message)
        return len(self._messages) - 1

    def replace(self, messages: List[Message]) -> None:
        self._messages = list(messages)

    def snapshot(self) -> List[Message]:
        return list(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)


@dataclass
class CoordinatorCallbacks:
    """Observational callbacks for the UI layer."""

    on_message_updated: Optional[Callable[[int, Message], None]] = None
    on_playback_state_changed: Optional[Callable[[PlaybackState], None]] = None
    on_turn_error: Optional[Callable[[Optional[int], VoiceChatError], None]] = None
    on_state_changed: Optional[Callable[[CoordinatorState], None]] = None
    on_transcript: Optional[Callable[[TranscriptionResult], None]] = None
    on_emotion: Optional[Callable[[str], None]] = None


@dataclass
class CoordinatorMetrics:
    """Counters for one coordinator lifetime."""
    start_time: float = field(default_factory=time.time)
    total_turns: int = 0
    completed_turns: int = 0
    failed_turns: int = 0
    interruptions: int = 0
    dropped_stale_events: int = 0
    dropped_stale_fragments: int = 0
    stream_errors: int = 0
    synthesis_errors: int = 0
    transcription_errors: int = 0
    empty_transcripts: int = 0
    turns: List[Turn] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        finished = [t for t in self.turns if t.first_token_at is not None]
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_turns": self.total_turns,
            "completed_turns": self.completed_turns,
            "failed_turns": self.failed_turns,
            "interruptions": self.interruptions,
            "dropped_stale_events": self.dropped_stale_events,
            "dropped_stale_fragments": self.dropped_stale_fragments,
            "stream_errors": self.stream_errors,
            "synthesis_errors": self.synthesis_errors,
            "transcription_errors": self.transcription_errors,
            "empty_transcripts": self.empty_transcripts,
            "avg_first_token_ms": round(
                sum(t.first_token_ms for t in finished) / len(finished), 2
            ) if finished else 0,
        }


class VoiceTurnCoordinator:
    """
    Conversation-level state machine.

    Typed input goes straight to `start_turn`; voice input goes through
    `start_listening` / `stop_listening`. All methods must be called from the
    event loop that runs the coordinator.
    """

    def __init__(
        self,
        transport: ChatTransport,
        sink: Optional[AudioSink] = None,
        capture: Optional[AudioCapture] = None,
        *,
        store: Optional[ConversationStore] = None,
        callbacks: Optional[CoordinatorCallbacks] = None,
        config: Optional[Any] = None,
        queue: Optional[AudioPlaybackQueue] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._transport = transport
        self._capture = capture
        self._store = store
        self._callbacks = callbacks or CoordinatorCallbacks()

        self._queue = queue or AudioPlaybackQueue(sink or ClockedAudioSink(), config=config)
        self._queue.set_drained_callback(self._on_playback_drained)
        self._queue.set_state_change_callback(self._on_playback_state_change)

        # Conversation
        self._conversation_id: str = uuid.uuid4().hex
        self._log = MessageLog()

        # State
        self._state = CoordinatorState.IDLE
        self._state_event = asyncio.Event()
        self._live_mode: bool = bool(config.live_mode)
        self._emotion_enabled: bool = bool(config.emotion_analysis_enabled)
        self._metrics = CoordinatorMetrics()

        # Turn tracking
        self._turn_counter = 0
        self._active_turn: Optional[Turn] = None
        self._active_turn_id: Optional[int] = None
        self._session: Optional[StreamingChatSession] = None
        self._session_cancel: Optional[asyncio.Event] = None
        self._turn_done: Dict[int, asyncio.Event] = {}

        # Bumped whenever a capture/transcription cycle is abandoned.
        self._listen_generation = 0

        # Message index being replayed on demand (not a live turn).
        self._replay_index: Optional[int] = None

        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ properties

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def active_turn_id(self) -> Optional[int]:
        return self._active_turn_id

    @property
    def active_turn(self) -> Optional[Turn]:
        return self._active_turn

    @property
    def live_mode(self) -> bool:
        return self._live_mode

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def messages(self) -> List[Message]:
        return self._log.snapshot()

    @property
    def playback(self) -> AudioPlaybackQueue:
        return self._queue

    @property
    def playing_message_index(self) -> Optional[int]:
        item = self._queue.current_item
        return item.message_index if item else None

    @property
    def metrics(self) -> CoordinatorMetrics:
        return self._metrics

    def metrics_dict(self) -> Dict[str, Any]:
        data = self._metrics.to_dict()
        data.update(
            {
                "state": self._state.value,
                "live_mode": self._live_mode,
                "fragments_played": self._queue.played,
                "playback_errors": self._queue.failed,
            }
        )
        return data

    # ------------------------------------------------------------------ turns

    def start_turn(self, text: str) -> Optional[Turn]:
        """
        Submit a user utterance (typed or transcribed).

        Supersedes any active turn and abandons a listen or transcription in
        progress. Returns None for blank input.
        """
        text = (text or "").strip()
        if not text:
            logger.debug("Ignoring blank turn")
            return None

        if self._state in (CoordinatorState.LISTENING, CoordinatorState.TRANSCRIBING):
            self._abandon_capture(reason="typed_turn")

        return self._begin_turn(text)

    def _begin_turn(self, text: str) -> Turn:
        if self._active_turn is not None or self._replay_index is not None or self._queue.is_playing:
            self._interrupt(reason="superseded")

        self._turn_counter += 1
        turn_id = self._turn_counter

        user_index = self._log.append(Message(sender=Sender.USER, text=text, complete=True))
        assistant_index = self._log.append(Message(sender=Sender.ASSISTANT))

        turn = Turn(turn_id=turn_id, source_text=text, assistant_message_index=assistant_index)
        self._active_turn = turn
        self._active_turn_id = turn_id
        self._turn_done[turn_id] = asyncio.Event()
        self._metrics.total_turns += 1

        self._notify_message(user_index)
        self._notify_message(assistant_index)
        self._set_state(CoordinatorState.AWAITING_RESPONSE)

        session = StreamingChatSession(self._transport, session_id=turn_id)
        cancel_event = asyncio.Event()
        callbacks = ChatCallbacks(
            on_token=lambda token: self._on_token(turn_id, token),
            on_metric=lambda value: self._on_metric(turn_id, value),
            on_audio_fragment=lambda payload: self._on_audio_fragment(turn_id, payload),
            on_error=lambda message: self._on_stream_error(turn_id, message),
            on_synthesis_error=lambda message: self._on_synthesis_error(turn_id, message),
            on_complete=lambda result: self._on_session_complete(turn_id, result),
        )
        self._session = session
        self._session_cancel = cancel_event
        self._spawn(session.start(text, callbacks, cancel_event), name=f"turn-{turn_id}")

        logger.info(
            "Turn started",
            turn_id=turn_id,
            assistant_message_index=assistant_index,
            chars=len(text),
        )
        return turn

    async def wait_for_turn(self, turn: Turn) -> Turn:
        """Wait until `turn` has finished (streamed and spoken) or was superseded."""
        done = self._turn_done.get(turn.turn_id)
        if done is not None:
            await done.wait()
        return turn

    async def wait_for_state(self, state: CoordinatorState) -> None:
        while self._state != state:
            self._state_event.clear()
            await self._state_event.wait()

    def _current_turn_for(self, turn_id: int, event: str) -> Optional[Turn]:
        # Read the active id at invocation time; it may have changed since the
        # callback was created.
        if self._active_turn is None or turn_id != self._active_turn_id:
            self._metrics.dropped_stale_events += 1
            logger.debug(
                "Dropping event from stale turn",
                stale_event=event,
                turn_id=turn_id,
                active_turn_id=self._active_turn_id,
            )
            return None
        return self._active_turn

    def _on_token(self, turn_id: int, token: str) -> None:
        turn = self._current_turn_for(turn_id, "token")
        if turn is None:
            return

        message = self._log[turn.assistant_message_index]
        if message.complete:
            logger.debug("Dropping token for completed message", turn_id=turn_id)
            return

        message.append_text(token)
        turn.tokens_received += 1
        if turn.first_token_at is None:
            turn.first_token_at = time.time()
        if turn.status == TurnStatus.SUBMITTED:
            turn.status = TurnStatus.STREAMING

        self._notify_message(turn.assistant_message_index)

    def _on_metric(self, turn_id: int, value: float) -> None:
        turn = self._current_turn_for(turn_id, "metric")
        if turn is None:
            return

        self._log[turn.assistant_message_index].metrics_per_second = value
        self._notify_message(turn.assistant_message_index)

    def _on_audio_fragment(self, turn_id: int, payload: str) -> None:
        turn = self._current_turn_for(turn_id, "audio_fragment")
        if turn is None:
            self._metrics.dropped_stale_fragments += 1
            return

        message = self._log[turn.assistant_message_index]
        message.add_audio_fragment(payload)
        turn.fragments_received += 1
        self._queue.enqueue(payload, message_index=turn.assistant_message_index, turn_id=turn_id)
        self._notify_message(turn.assistant_message_index)

    def _on_stream_error(self, turn_id: int, error_message: str) -> None:
        turn = self._current_turn_for(turn_id, "error")
        if turn is None:
            return

        self._metrics.stream_errors += 1
        message = self._log[turn.assistant_message_index]
        if not message.complete:
            message.append_text(f"\n\nError: {error_message}")
            self._notify_message(turn.assistant_message_index)
        self._report_error(turn_id, StreamError(error_message))

    def _on_synthesis_error(self, turn_id: int, error_message: str) -> None:
        if turn_id != self._active_turn_id:
            return
        self._metrics.synthesis_errors += 1
        # Text keeps streaming; the missing audio is only logged.
        error = SynthesisError(error_message)
        logger.warning("Synthesis failed for part of the response", turn_id=turn_id, error=str(error))

    def _on_session_complete(self, turn_id: int, result: SessionResult) -> None:
        if turn_id != self._active_turn_id or self._active_turn is None:
            logger.debug("Stale session completed", turn_id=turn_id, cancelled=result.cancelled)
            return

        turn = self._active_turn
        self._session = None
        self._session_cancel = None

        turn.completed_at = time.time()
        message = self._log[turn.assistant_message_index]

        if result.error is not None:
            turn.status = TurnStatus.FAILED
            self._metrics.failed_turns += 1
            if message.text:
                message.append_text(f"\n\nError: {result.error}")
            else:
                message.append_text(f"Error: {result.error}")
            logger.warning("Turn failed", turn_id=turn_id, error=str(result.error))
        else:
            turn.status = TurnStatus.COMPLETED
            self._metrics.completed_turns += 1

        message.complete = True
        self._notify_message(turn.assistant_message_index)

        if result.error is not None:
            self._report_error(turn_id, result.error)

        if self._queue.is_playing:
            # Text is done; speaking lasts until the queue drains.
            self._set_state(CoordinatorState.SPEAKING)
        else:
            self._finish_turn(turn)

    def _on_playback_drained(self) -> None:
        if self._replay_index is not None:
            logger.debug("Message replay finished", message_index=self._replay_index)
            self._replay_index = None
            if self._state == CoordinatorState.SPEAKING:
                self._set_state(CoordinatorState.IDLE)
            return

        turn = self._active_turn
        if turn is None:
            return

        if turn.is_finished:
            self._finish_turn(turn)
        # Otherwise the stream is still open and more fragments may follow.

    def _on_playback_state_change(self, state: PlaybackState) -> None:
        self._emit(self._callbacks.on_playback_state_changed, state)

    def _finish_turn(self, turn: Turn) -> None:
        if self._active_turn is not turn:
            return

        self._active_turn = None
        self._active_turn_id = None
        self._metrics.turns.append(turn)
        self._signal_turn_done(turn.turn_id)

        logger.info(
            "Turn completed",
            turn_id=turn.turn_id,
            status=turn.status.value,
            first_token_ms=round(turn.first_token_ms, 2),
            stream_ms=round(turn.stream_ms, 2),
            total_turn_ms=round((time.time() - turn.started_at) * 1000, 2),
            tokens=turn.tokens_received,
            fragments=turn.fragments_received,
        )

        self._persist()
        self._set_state(CoordinatorState.IDLE)
        self._maybe_auto_listen(reason="turn_finished")

    def _interrupt(self, *, reason: str) -> None:
        """Invalidate the active turn, cancel its session and silence playback."""
        turn = self._active_turn
        self._active_turn = None
        self._active_turn_id = None
        self._replay_index = None

        if self._session_cancel is not None:
            self._session_cancel.set()
        self._session = None
        self._session_cancel = None

        self._queue.stop()

        if turn is None:
            return

        self._metrics.interruptions += 1
        if not turn.is_finished:
            turn.status = TurnStatus.CANCELLED
            turn.completed_at = time.time()
            message = self._log[turn.assistant_message_index]
            if not message.complete:
                message.complete = True
                self._notify_message(turn.assistant_message_index)

        self._metrics.turns.append(turn)
        self._signal_turn_done(turn.turn_id)

        logger.info(
            "Turn interrupted",
            turn_id=turn.turn_id,
            reason=reason,
            status=turn.status.value,
            fragments=turn.fragments_received,
        )

    def _signal_turn_done(self, turn_id: int) -> None:
        done = self._turn_done.pop(turn_id, None)
        if done is not None:
            done.set()

    # ------------------------------------------------------------------ listening

    async def start_listening(self, *, auto: bool = False) -> bool:
        """
        Begin capturing an utterance.

        Returns True when listening (including if it already was). While the
        assistant is responding this interrupts it first.
        """
        if self._capture is None:
            logger.warning("No audio capture configured")
            return False

        if self._state == CoordinatorState.LISTENING:
            return True

        if auto and self._state != CoordinatorState.IDLE:
            logger.debug("Skipping automatic listen", state=self._state.value)
            return False

        if self._state == CoordinatorState.TRANSCRIBING:
            logger.debug("Already transcribing; not listening")
            return False

        if not self._capture.enabled:
            logger.info("Capture disabled; not listening")
            return False

        if self._state in (CoordinatorState.AWAITING_RESPONSE, CoordinatorState.SPEAKING):
            self._interrupt(reason="barge_in")

        self._listen_generation += 1
        generation = self._listen_generation
        self._set_state(CoordinatorState.LISTENING)

        try:
            await self._capture.start()
        except Exception as e:
            logger.error("Failed to start capture", error=str(e))
            if generation == self._listen_generation:
                self._set_state(CoordinatorState.IDLE)
                self._report_error(None, TranscriptionError(f"Could not start capture: {e}"))
            return False

        if generation != self._listen_generation:
            # Stopped while the device was starting.
            self._capture.abort()
            return False

        logger.info("Listening", auto=auto, live_mode=self._live_mode)
        return True

    async def stop_listening(self) -> Optional[TranscriptionResult]:
        """
        Stop capturing and run the utterance through transcription.

        A no-op unless currently listening. Starts a turn for a non-empty
        transcript and returns the transcription result.
        """
        if self._state != CoordinatorState.LISTENING or self._capture is None:
            logger.debug("stop_listening ignored", state=self._state.value)
            return None

        generation = self._listen_generation
        self._set_state(CoordinatorState.TRANSCRIBING)

        try:
            audio = await self._capture.stop()
        except Exception as e:
            logger.error("Failed to stop capture", error=str(e))
            if generation == self._listen_generation:
                self._report_error(None, TranscriptionError(f"Capture failed: {e}"))
                self._return_to_rest(generation)
            return None

        if generation != self._listen_generation:
            return None

        if audio and self._emotion_enabled:
            self._spawn(self._analyze_emotion(audio), name="emotion")

        if not audio:
            logger.info("Empty capture; no turn")
            self._metrics.empty_transcripts += 1
            self._return_to_rest(generation)
            return None

        try:
            result = await self._transport.transcribe(
                audio,
                filename=self._capture.filename,
                content_type=self._capture.content_type,
            )
        except Exception as e:
            error = e if isinstance(e, TranscriptionError) else TranscriptionError(str(e))
            self._metrics.transcription_errors += 1
            logger.warning("Transcription failed", error=str(error))
            if generation == self._listen_generation:
                self._report_error(None, error)
                self._return_to_rest(generation)
            return None

        if generation != self._listen_generation:
            logger.debug("Discarding transcript after stop")
            return None

        self._emit(self._callbacks.on_transcript, result)

        text = result.text.strip()
        if not text:
            logger.info("Empty transcript; no turn", confidence=result.confidence)
            self._metrics.empty_transcripts += 1
            self._return_to_rest(generation)
            return result

        logger.info("Transcript received", chars=len(text), confidence=result.confidence)
        self._begin_turn(text)
        return result

    def _abandon_capture(self, *, reason: str) -> None:
        # Anything still in flight for the old listen sees a newer generation.
        self._listen_generation += 1
        if self._capture is not None:
            self._capture.abort()
        logger.debug("Capture abandoned", reason=reason, state=self._state.value)

    def _return_to_rest(self, generation: int) -> None:
        if generation != self._listen_generation:
            return
        self._set_state(CoordinatorState.IDLE)
        self._maybe_auto_listen(reason="no_turn")

    def _maybe_auto_listen(self, *, reason: str) -> None:
        if not self._live_mode or self._capture is None:
            return
        if not self._capture.enabled:
            logger.debug("Live mode restart skipped; capture disabled", reason=reason)
            return
        if self._queue.is_playing or self._queue.queue_size:
            return
        if self._state != CoordinatorState.IDLE:
            return

        logger.debug("Live mode restarting capture", reason=reason)
        self._spawn(self.start_listening(auto=True), name="auto-listen")

    async def _analyze_emotion(self, audio: bytes) -> None:
        try:
            label = await self._transport.analyze_emotion(audio)
        except Exception as e:
            logger.warning("Emotion analysis failed", error=str(e))
            return
        if label:
            logger.debug("Emotion detected", emotion=label)
            self._emit(self._callbacks.on_emotion, label)

    # ------------------------------------------------------------------ controls

    def stop(self) -> None:
        """Interrupt everything and return to idle."""
        was_capturing = self._state in (CoordinatorState.LISTENING, CoordinatorState.TRANSCRIBING)
        self._listen_generation += 1
        self._interrupt(reason="stop")
        if was_capturing and self._capture is not None:
            self._capture.abort()
        self._set_state(CoordinatorState.IDLE)

    def stop_speaking(self) -> None:
        """Silence the assistant and drop the rest of its response. Capture is left alone."""
        if self._state in (CoordinatorState.LISTENING, CoordinatorState.TRANSCRIBING):
            self._queue.stop()
            return
        self._interrupt(reason="stop_speaking")
        self._set_state(CoordinatorState.IDLE)

    def enable_live_mode(self, enabled: bool) -> None:
        if enabled == self._live_mode:
            return
        self._live_mode = enabled
        logger.info("Live mode changed", live_mode=enabled)
        if enabled:
            self._maybe_auto_listen(reason="live_mode_enabled")

    def set_capture_enabled(self, enabled: bool) -> None:
        """Device-level gate for capture (mic/camera toggle)."""
        if self._capture is None:
            return
        self._capture.enabled = enabled
        logger.info("Capture enabled changed", enabled=enabled)

        if not enabled and self._state == CoordinatorState.LISTENING:
            self._abandon_capture(reason="capture_disabled")
            self._set_state(CoordinatorState.IDLE)
        elif enabled:
            self._maybe_auto_listen(reason="capture_enabled")

    def play_message_audio(self, index: int) -> bool:
        """Replay the stored audio of one message through the playback queue."""
        if index < 0 or index >= len(self._log):
            return False
        message = self._log[index]
        if not message.audio_fragments:
            return False
        if self._state in (CoordinatorState.LISTENING, CoordinatorState.TRANSCRIBING):
            logger.debug("Replay refused while capturing", state=self._state.value)
            return False

        self._interrupt(reason="replay")
        self._replay_index = index
        self._set_state(CoordinatorState.SPEAKING)
        for payload in message.audio_fragments:
            self._queue.enqueue(payload, message_index=index)

        logger.info("Replaying message audio", message_index=index, fragments=len(message.audio_fragments))
        return True

    # ------------------------------------------------------------------ conversations

    def switch_conversation(self, conversation_id: str) -> List[Message]:
        """Persist the current conversation and load another one."""
        self.stop()
        self._persist()

        messages = self._store.load(conversation_id) if self._store else []
        self._conversation_id = conversation_id
        self._log.replace(messages)

        logger.info("Switched conversation", conversation_id=conversation_id, messages=len(messages))
        return self._log.snapshot()

    def new_conversation(self) -> str:
        self.stop()
        self._persist()
        self._conversation_id = uuid.uuid4().hex
        self._log.replace([])
        logger.info("Started conversation", conversation_id=self._conversation_id)
        return self._conversation_id

    def _persist(self) -> None:
        if self._store is None or len(self._log) == 0:
            return
        try:
            self._store.save(self._conversation_id, self._log.snapshot())
        except Exception as e:
            logger.error("Failed to save conversation", conversation_id=self._conversation_id, error=str(e))

    async def close(self) -> None:
        """Stop everything, persist, and wait for background tasks."""
        self.stop()
        self._persist()

        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._queue.close()
        logger.info("Coordinator closed", metrics=self.metrics_dict())

    # ------------------------------------------------------------------ helpers

    def _set_state(self, state: CoordinatorState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        self._state_event.set()
        logger.debug("Coordinator state changed", from_state=previous.value, to_state=state.value)
        self._emit(self._callbacks.on_state_changed, state)

    def _notify_message(self, index: int) -> None:
        callback = self._callbacks.on_message_updated
        if callback is None:
            return
        try:
            callback(index, self._log[index])
        except Exception as e:
            logger.error("Message callback failed", message_index=index, error=str(e))

    def _report_error(self, turn_id: Optional[int], error: VoiceChatError) -> None:
        callback = self._callbacks.on_turn_error
        if callback is None:
            return
        try:
            callback(turn_id, error)
        except Exception as e:
            logger.error("Turn error callback failed", error=str(e))

    def _emit(self, callback: Optional[Callable[[Any], None]], value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception as e:
            logger.error("Coordinator callback failed", error=str(e))

    def _spawn(self, coro: Any, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed", task=task.get_name(), error=str(exc))
