"""
WebSocket bridge between a browser UI and the voice turn coordinator.

Inbound messages are JSON commands with a `type` field:
- start_turn {text}: submit typed text
- start_listening / stop_listening: push-to-talk
- stop_speaking / stop: interruption
- live_mode {enabled}, capture_enabled {enabled}: toggles (persisted as preferences)
- play_message {index}: replay a message's audio
- switch_conversation {conversation_id}, new_conversation
- utterance {audio}: captured audio (base64) for the current listen
- played {sequence} / play_error {sequence, error}: playback acknowledgements

Outbound events:
- message_updated, state_changed, playback_state, turn_error, transcript, emotion
- conversation: full snapshot after switching or starting a conversation
- play {sequence, message_index, audio}: play a fragment and ack it
- halt: stop whatever is playing
- capture_start / capture_stop: drive the microphone

The UI owns the speaker and the microphone; the bridge turns them into an
AudioSink and an AudioCapture. `play` works like a playback mark: the fragment
counts as played when the UI acknowledges its sequence number.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

import msgspec
import structlog
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from src.voicechat.config import get_config
from src.voicechat.conversation import ConversationStore
from src.voicechat.coordinator import (
    AudioCapture,
    CoordinatorCallbacks,
    CoordinatorState,
    VoiceTurnCoordinator,
)
from src.voicechat.errors import PlaybackError, VoiceChatError
from src.voicechat.playback import AudioSink
from src.voicechat.session_types import Message, PlaybackItem, PlaybackState, TranscriptionResult
from src.voicechat.transport import ChatTransport

logger = structlog.get_logger(__name__)

encoder = msgspec.json.Encoder()

LIVE_MODE_PREFERENCE = "live_mode"
CAPTURE_ENABLED_PREFERENCE = "capture_enabled"


# =============================================================================
# Inbound commands
# =============================================================================


class StartTurnCommand(BaseModel):
    type: Literal["start_turn"]
    text: str = Field(min_length=1)


class StartListeningCommand(BaseModel):
    type: Literal["start_listening"]


class StopListeningCommand(BaseModel):
    type: Literal["stop_listening"]


class StopSpeakingCommand(BaseModel):
    type: Literal["stop_speaking"]


class StopCommand(BaseModel):
    type: Literal["stop"]


class LiveModeCommand(BaseModel):
    type: Literal["live_mode"]
    enabled: bool


class CaptureEnabledCommand(BaseModel):
    type: Literal["capture_enabled"]
    enabled: bool


class PlayMessageCommand(BaseModel):
    type: Literal["play_message"]
    index: int = Field(ge=0)


class SwitchConversationCommand(BaseModel):
    type: Literal["switch_conversation"]
    conversation_id: str = Field(min_length=1)


class NewConversationCommand(BaseModel):
    type: Literal["new_conversation"]


class UtteranceCommand(BaseModel):
    type: Literal["utterance"]
    audio: str = ""
    content_type: str = "audio/webm"


class PlayedCommand(BaseModel):
    type: Literal["played"]
    sequence: int


class PlayErrorCommand(BaseModel):
    type: Literal["play_error"]
    sequence: int
    error: str = ""


Command = Annotated[
    Union[
        StartTurnCommand,
        StartListeningCommand,
        StopListeningCommand,
        StopSpeakingCommand,
        StopCommand,
        LiveModeCommand,
        CaptureEnabledCommand,
        PlayMessageCommand,
        SwitchConversationCommand,
        NewConversationCommand,
        UtteranceCommand,
        PlayedCommand,
        PlayErrorCommand,
    ],
    Field(discriminator="type"),
]

command_adapter: TypeAdapter[Any] = TypeAdapter(Command)


def parse_command(raw: Union[str, bytes]) -> Any:
    """Validate one inbound message. Raises pydantic.ValidationError."""
    return command_adapter.validate_json(raw)


def serialize_message(message: Message) -> Dict[str, Any]:
    data = message.to_dict()
    data["complete"] = message.complete
    data["has_audio"] = message.has_audio
    return data


# =============================================================================
# UI-backed sink and capture
# =============================================================================


Emit = Callable[..., None]


class WebSocketAudioSink(AudioSink):
    """Plays fragments in the browser and waits for the `played` ack."""

    def __init__(self, emit: Emit):
        self._emit = emit
        self._pending: Dict[int, asyncio.Future] = {}

    @property
    def pending_acks(self) -> int:
        return len(self._pending)

    async def play(self, item: PlaybackItem) -> None:
        future = asyncio.get_running_loop().create_future()
        self._pending[item.sequence] = future

        self._emit(
            "play",
            sequence=item.sequence,
            message_index=item.message_index,
            audio=item.payload,
        )

        try:
            await future
        except asyncio.CancelledError:
            # Playback was stopped; make sure the browser goes quiet too.
            self._emit("halt", sequence=item.sequence)
            raise
        finally:
            self._pending.pop(item.sequence, None)

    def acknowledge(self, sequence: int) -> bool:
        future = self._pending.get(sequence)
        if future is None or future.done():
            logger.debug("Ack for unknown fragment", sequence=sequence)
            return False
        future.set_result(None)
        return True

    def fail(self, sequence: int, error: str) -> bool:
        future = self._pending.get(sequence)
        if future is None or future.done():
            return False
        future.set_exception(PlaybackError(error or "Playback failed in browser"))
        return True

    async def close(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()


class WebSocketCapture(AudioCapture):
    """
    Microphone capture done by the browser.

    `stop()` asks the UI to stop recording and waits for the `utterance`
    message carrying the audio. An utterance that never arrives counts as
    silence.
    """

    def __init__(self, emit: Emit, *, utterance_timeout_seconds: float = 30.0):
        super().__init__()
        self._emit = emit
        self._timeout = utterance_timeout_seconds
        self._utterance: Optional[asyncio.Future] = None
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    async def start(self) -> None:
        self._utterance = asyncio.get_running_loop().create_future()
        self._active = True
        self._emit("capture_start")

    async def stop(self) -> bytes:
        utterance = self._utterance
        if self._active:
            self._active = False
            self._emit("capture_stop", discard=False)

        if utterance is None:
            return b""

        try:
            return await asyncio.wait_for(utterance, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("No utterance received from UI", timeout_s=self._timeout)
            return b""
        finally:
            if self._utterance is utterance:
                self._utterance = None

    def abort(self) -> None:
        if self._active:
            self._emit("capture_stop", discard=True)
        self._active = False
        if self._utterance is not None and not self._utterance.done():
            self._utterance.set_result(b"")
        self._utterance = None

    def deliver(self, audio: bytes, content_type: Optional[str] = None) -> bool:
        """Hand over audio from the UI. Returns False if nobody is waiting for it."""
        if content_type:
            self.content_type = content_type
        if self._utterance is None or self._utterance.done():
            logger.debug("Utterance received while not capturing", size=len(audio))
            return False
        self._utterance.set_result(audio)
        return True


# =============================================================================
# Bridge
# =============================================================================


class UiBridge:
    """
    One connected UI.

    `send` writes a text frame to the WebSocket. Outbound events are queued
    and written by a single writer task so coordinator callbacks stay
    synchronous and ordered.
    """

    def __init__(
        self,
        send: Callable[[str], Awaitable[None]],
        transport: ChatTransport,
        *,
        store: Optional[ConversationStore] = None,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self._send = send
        self._store = store
        self._outbox: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

        self.sink = WebSocketAudioSink(self.emit)
        self.capture = WebSocketCapture(
            self.emit,
            utterance_timeout_seconds=self.config.transcribe_timeout_seconds,
        )
        self.coordinator = VoiceTurnCoordinator(
            transport,
            self.sink,
            self.capture,
            store=store,
            config=self.config,
            callbacks=CoordinatorCallbacks(
                on_message_updated=self._on_message_updated,
                on_playback_state_changed=self._on_playback_state_changed,
                on_turn_error=self._on_turn_error,
                on_state_changed=self._on_state_changed,
                on_transcript=self._on_transcript,
                on_emotion=self._on_emotion,
            ),
        )
        self.coordinator.playback.set_item_started_callback(self._on_item_started)

        # Counters
        self.commands_handled = 0
        self.commands_rejected = 0

    async def start(self) -> None:
        self._writer_task = asyncio.create_task(self._writer(), name="ui-writer")

        if self._store is not None:
            self.coordinator.set_capture_enabled(
                bool(self._store.get_preference(CAPTURE_ENABLED_PREFERENCE, True))
            )
            self.coordinator.enable_live_mode(
                bool(self._store.get_preference(LIVE_MODE_PREFERENCE, self.config.live_mode))
            )

        self._emit_conversation()
        self.emit("state_changed", state=self.coordinator.state.value)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        await self.coordinator.close()

        if self._writer_task is not None:
            self._outbox.put_nowait(None)
            try:
                await asyncio.wait_for(self._writer_task, timeout=1.0)
            except asyncio.TimeoutError:
                self._writer_task.cancel()
            self._writer_task = None

    def emit(self, event_type: str, **fields: Any) -> None:
        fields["type"] = event_type
        self._outbox.put_nowait(encoder.encode(fields).decode("utf-8"))

    async def _writer(self) -> None:
        while True:
            text = await self._outbox.get()
            if text is None:
                return
            try:
                await self._send(text)
            except Exception as e:
                logger.error("Failed to send WebSocket message", error=str(e))
                return

    # ------------------------------------------------------------------ inbound

    async def handle_message(self, raw: Union[str, bytes]) -> None:
        try:
            command = parse_command(raw)
        except ValidationError as e:
            self.commands_rejected += 1
            logger.warning("Rejected UI message", errors=e.error_count(), detail=str(e)[:200])
            return

        self.commands_handled += 1
        coordinator = self.coordinator

        if isinstance(command, StartTurnCommand):
            coordinator.start_turn(command.text)

        elif isinstance(command, StartListeningCommand):
            self._spawn(coordinator.start_listening(), name="start-listening")

        elif isinstance(command, StopListeningCommand):
            self._spawn(coordinator.stop_listening(), name="stop-listening")

        elif isinstance(command, StopSpeakingCommand):
            coordinator.stop_speaking()

        elif isinstance(command, StopCommand):
            coordinator.stop()

        elif isinstance(command, LiveModeCommand):
            coordinator.enable_live_mode(command.enabled)
            self._save_preference(LIVE_MODE_PREFERENCE, command.enabled)

        elif isinstance(command, CaptureEnabledCommand):
            coordinator.set_capture_enabled(command.enabled)
            self._save_preference(CAPTURE_ENABLED_PREFERENCE, command.enabled)

        elif isinstance(command, PlayMessageCommand):
            if not coordinator.play_message_audio(command.index):
                logger.debug("Nothing to replay", message_index=command.index)

        elif isinstance(command, SwitchConversationCommand):
            coordinator.switch_conversation(command.conversation_id)
            self._emit_conversation()

        elif isinstance(command, NewConversationCommand):
            coordinator.new_conversation()
            self._emit_conversation()

        elif isinstance(command, UtteranceCommand):
            self._handle_utterance(command)

        elif isinstance(command, PlayedCommand):
            self.sink.acknowledge(command.sequence)

        elif isinstance(command, PlayErrorCommand):
            self.sink.fail(command.sequence, command.error)

    def _handle_utterance(self, command: UtteranceCommand) -> None:
        try:
            audio = base64.b64decode(command.audio, validate=True) if command.audio else b""
        except (binascii.Error, ValueError) as e:
            self.commands_rejected += 1
            logger.warning("Rejected utterance with invalid audio", error=str(e))
            return

        delivered = self.capture.deliver(audio, command.content_type)
        if delivered and self.coordinator.state == CoordinatorState.LISTENING:
            # The UI ended the utterance itself (e.g. voice activity detection).
            self._spawn(self.coordinator.stop_listening(), name="stop-listening")

    def _save_preference(self, key: str, value: Any) -> None:
        if self._store is None:
            return
        try:
            self._store.set_preference(key, value)
        except Exception as e:
            logger.error("Failed to save preference", key=key, error=str(e))

    # ------------------------------------------------------------------ outbound

    def _emit_conversation(self) -> None:
        conversations: List[Dict[str, Any]] = []
        if self._store is not None:
            conversations = [c.to_dict() for c in self._store.list_conversations()]
        self.emit(
            "conversation",
            conversation_id=self.coordinator.conversation_id,
            messages=[serialize_message(m) for m in self.coordinator.messages],
            conversations=conversations,
            live_mode=self.coordinator.live_mode,
        )

    def _on_message_updated(self, index: int, message: Message) -> None:
        self.emit("message_updated", index=index, message=serialize_message(message))

    def _on_state_changed(self, state: CoordinatorState) -> None:
        self.emit("state_changed", state=state.value)

    def _on_playback_state_changed(self, state: PlaybackState) -> None:
        self.emit(
            "playback_state",
            state=state.value,
            message_index=self.coordinator.playing_message_index,
        )

    def _on_item_started(self, item: PlaybackItem) -> None:
        self.emit("playback_state", state=PlaybackState.PLAYING.value, message_index=item.message_index)

    def _on_turn_error(self, turn_id: Optional[int], error: VoiceChatError) -> None:
        self.emit("turn_error", turn_id=turn_id, kind=type(error).__name__, error=str(error))

    def _on_transcript(self, result: TranscriptionResult) -> None:
        self.emit("transcript", text=result.text, confidence=result.confidence)

    def _on_emotion(self, emotion: str) -> None:
        self.emit("emotion", emotion=emotion)

    def _spawn(self, coro: Any, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("UI command failed", task=task.get_name(), error=str(task.exception()))
