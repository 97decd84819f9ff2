"""
Ordered audio playback for a single speaker.

The queue plays fragments back-to-back in enqueue order, one at a time, with a
short settle delay between fragments for natural cadence. A failing fragment is
skipped; it never aborts the rest of the queue.

Each drain episode (idle -> playing -> idle) is one asyncio task running an
explicit loop. `stop()` cancels that task; a stopped episode never fires
`on_drained`.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Optional

import structlog

from src.voicechat.audio import decode_fragment, rms_level
from src.voicechat.config import get_config
from src.voicechat.session_types import PlaybackItem, PlaybackState

logger = structlog.get_logger(__name__)


class AudioSink(ABC):
    """Where fragments are actually played."""

    @abstractmethod
    async def play(self, item: PlaybackItem) -> None:
        """
        Play one fragment and return when it has finished naturally.

        Raise on playback failure. Cancellation of the awaiting task must stop
        any in-flight output.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ClockedAudioSink(AudioSink):
    """
    Headless sink: decodes the WAV fragment and holds for its duration.

    Used when no audio device or UI is attached, so the conversation still has
    realistic speaking time.
    """

    def __init__(
        self,
        *,
        speed: float = 1.0,
        on_level: Optional[Callable[[float], None]] = None,
    ):
        self._speed = speed if speed > 0 else 1.0
        self._on_level = on_level

    async def play(self, item: PlaybackItem) -> None:
        fragment = decode_fragment(item.payload)
        if self._on_level:
            self._on_level(rms_level(fragment.pcm))
        await asyncio.sleep(fragment.duration_seconds / self._speed)


class AudioPlaybackQueue:
    """
    FIFO playback queue with no overlap.

    Callbacks run on the event loop:
    - on_drained(): the queue ran empty after playing (once per drain episode)
    - on_state_change(state): idle <-> playing transitions
    - on_item_started(item): a fragment is about to be played
    """

    def __init__(
        self,
        sink: AudioSink,
        *,
        settle_ms: Optional[int] = None,
        stall_timeout_seconds: Optional[float] = None,
        config: Optional[Any] = None,
        on_drained: Optional[Callable[[], None]] = None,
        on_state_change: Optional[Callable[[PlaybackState], None]] = None,
        on_item_started: Optional[Callable[[PlaybackItem], None]] = None,
    ):
        if config is None:
            config = get_config()

        self._sink = sink
        self._settle_s = (config.playback_settle_ms if settle_ms is None else settle_ms) / 1000.0
        self._stall_timeout_s = (
            config.playback_stall_timeout_seconds
            if stall_timeout_seconds is None
            else stall_timeout_seconds
        )

        self._on_drained = on_drained
        self._on_state_change = on_state_change
        self._on_item_started = on_item_started

        self._queue: deque[PlaybackItem] = deque()
        self._sequence = 0
        self._state = PlaybackState.IDLE
        self._current: Optional[PlaybackItem] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

        # Counters
        self.played = 0
        self.failed = 0
        self.drain_episodes = 0

    def set_drained_callback(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_drained = callback

    def set_state_change_callback(self, callback: Optional[Callable[[PlaybackState], None]]) -> None:
        self._on_state_change = callback

    def set_item_started_callback(self, callback: Optional[Callable[[PlaybackItem], None]]) -> None:
        self._on_item_started = callback

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def is_playing(self) -> bool:
        return self._state == PlaybackState.PLAYING

    @property
    def queue_size(self) -> int:
        """Fragments waiting behind the one currently playing."""
        return len(self._queue)

    @property
    def current_item(self) -> Optional[PlaybackItem]:
        return self._current

    @property
    def pending(self) -> tuple[PlaybackItem, ...]:
        return tuple(self._queue)

    def enqueue(
        self,
        payload: str,
        *,
        message_index: int,
        turn_id: Optional[int] = None,
    ) -> PlaybackItem:
        """Append a fragment; starts draining immediately if idle."""
        self._sequence += 1
        item = PlaybackItem(
            payload=payload,
            message_index=message_index,
            turn_id=turn_id,
            sequence=self._sequence,
        )
        self._queue.append(item)

        logger.debug(
            "Queued audio fragment",
            sequence=item.sequence,
            message_index=message_index,
            turn_id=turn_id,
            queue_size=len(self._queue),
        )

        if self._drain_task is None:
            self._idle.clear()
            self._set_state(PlaybackState.PLAYING)
            self._drain_task = asyncio.create_task(self._drain_loop())

        return item

    def stop(self) -> None:
        """Halt in-flight playback and discard everything queued. Safe from any state."""
        dropped = len(self._queue)
        self._queue.clear()

        task = self._drain_task
        self._drain_task = None
        interrupted = self._current
        self._current = None

        if task is not None and not task.done():
            task.cancel()

        if interrupted is not None or dropped:
            logger.info(
                "Audio playback stopped",
                interrupted_sequence=interrupted.sequence if interrupted else None,
                dropped=dropped,
            )

        self._set_state(PlaybackState.IDLE)
        self._idle.set()

    def clear_queue(self) -> None:
        """Drop queued fragments but let the current one finish."""
        dropped = len(self._queue)
        self._queue.clear()
        if dropped:
            logger.debug("Audio queue cleared", dropped=dropped)

    async def wait_drained(self) -> None:
        """Wait until the queue is idle (drained or stopped)."""
        await self._idle.wait()

    async def close(self) -> None:
        self.stop()
        await self._sink.close()

    async def _drain_loop(self) -> None:
        task = asyncio.current_task()

        while self._queue:
            item = self._queue.popleft()
            self._current = item
            self._notify_item_started(item)

            try:
                if self._stall_timeout_s and self._stall_timeout_s > 0:
                    await asyncio.wait_for(self._sink.play(item), timeout=self._stall_timeout_s)
                else:
                    await self._sink.play(item)
                self.played += 1
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                self.failed += 1
                logger.warning(
                    "Audio fragment never finished; skipping",
                    sequence=item.sequence,
                    message_index=item.message_index,
                    timeout_s=self._stall_timeout_s,
                )
            except Exception as e:
                self.failed += 1
                logger.warning(
                    "Audio fragment playback failed; skipping",
                    sequence=item.sequence,
                    message_index=item.message_index,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            finally:
                if self._current is item:
                    self._current = None

            if self._settle_s > 0:
                await asyncio.sleep(self._settle_s)

        # No await between the empty check above and here: an enqueue cannot
        # slip in and be stranded.
        if self._drain_task is not task:
            return
        self._drain_task = None
        self.drain_episodes += 1
        self._set_state(PlaybackState.IDLE)
        self._idle.set()

        logger.debug("Audio queue drained", played=self.played, failed=self.failed)

        if self._on_drained:
            try:
                self._on_drained()
            except Exception as e:
                logger.error("Drained callback failed", error=str(e))

    def _set_state(self, state: PlaybackState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_state_change:
            try:
                self._on_state_change(state)
            except Exception as e:
                logger.error("Playback state callback failed", error=str(e))

    def _notify_item_started(self, item: PlaybackItem) -> None:
        if self._on_item_started:
            try:
                self._on_item_started(item)
            except Exception as e:
                logger.error("Item started callback failed", error=str(e))
