"""
Tests for the ordered audio playback queue.
"""

import asyncio

import pytest

from conftest import RecordingSink, wait_until
from src.voicechat.playback import AudioPlaybackQueue, ClockedAudioSink
from src.voicechat.session_types import PlaybackItem, PlaybackState


def make_queue(sink, **kwargs) -> AudioPlaybackQueue:
    kwargs.setdefault("settle_ms", 0)
    kwargs.setdefault("stall_timeout_seconds", 1.0)
    return AudioPlaybackQueue(sink, **kwargs)


class TestOrdering:
    """Fragments play in enqueue order, one at a time."""

    @pytest.mark.asyncio
    async def test_fifo_and_no_overlap(self):
        sink = RecordingSink(delay=0.01)
        queue = make_queue(sink)

        for payload in ["a", "b", "c", "d"]:
            queue.enqueue(payload, message_index=1, turn_id=1)

        await asyncio.wait_for(queue.wait_drained(), timeout=1.0)

        assert [item.payload for item in sink.played] == ["a", "b", "c", "d"]
        assert sink.max_active == 1
        assert queue.played == 4

    @pytest.mark.asyncio
    async def test_sequence_numbers_increase(self):
        sink = RecordingSink()
        queue = make_queue(sink)

        first = queue.enqueue("a", message_index=0)
        second = queue.enqueue("b", message_index=0)

        assert second.sequence == first.sequence + 1
        await queue.wait_drained()

    @pytest.mark.asyncio
    async def test_enqueue_while_playing_joins_same_episode(self, gated_sink):
        drained = []
        queue = make_queue(gated_sink, on_drained=lambda: drained.append(True))

        queue.enqueue("a", message_index=0)
        await gated_sink.wait_started(1)
        queue.enqueue("b", message_index=0)
        assert queue.queue_size == 1

        gated_sink.release(2)
        await asyncio.wait_for(queue.wait_drained(), timeout=1.0)

        assert [i.payload for i in gated_sink.played] == ["a", "b"]
        assert drained == [True]
        assert queue.drain_episodes == 1


class TestDrained:
    """on_drained fires once per drain episode."""

    @pytest.mark.asyncio
    async def test_fires_once_after_last_fragment(self):
        events = []
        sink = RecordingSink()
        queue = make_queue(sink, on_drained=lambda: events.append(len(sink.played)))

        queue.enqueue("a", message_index=0)
        queue.enqueue("b", message_index=0)
        await queue.wait_drained()
        await wait_until(lambda: events)

        assert events == [2]

    @pytest.mark.asyncio
    async def test_two_episodes(self):
        events = []
        queue = make_queue(RecordingSink(), on_drained=lambda: events.append(True))

        queue.enqueue("a", message_index=0)
        await wait_until(lambda: len(events) == 1)
        queue.enqueue("b", message_index=0)
        await wait_until(lambda: len(events) == 2)

        assert queue.drain_episodes == 2

    @pytest.mark.asyncio
    async def test_state_transitions(self):
        states = []
        queue = make_queue(RecordingSink(), on_state_change=states.append)

        queue.enqueue("a", message_index=0)
        assert queue.state == PlaybackState.PLAYING
        await queue.wait_drained()

        assert states == [PlaybackState.PLAYING, PlaybackState.IDLE]
        assert queue.state == PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_callback_error_does_not_break_queue(self):
        def broken():
            raise RuntimeError("observer bug")

        sink = RecordingSink()
        queue = make_queue(sink, on_drained=broken)

        queue.enqueue("a", message_index=0)
        await queue.wait_drained()
        queue.enqueue("b", message_index=0)
        await queue.wait_drained()

        assert [i.payload for i in sink.played] == ["a", "b"]


class TestStop:
    """stop() silences playback and discards the queue."""

    @pytest.mark.asyncio
    async def test_stop_cancels_current_and_clears_queue(self, gated_sink):
        drained = []
        queue = make_queue(gated_sink, on_drained=lambda: drained.append(True))

        queue.enqueue("a", message_index=0)
        queue.enqueue("b", message_index=0)
        await gated_sink.wait_started(1)

        queue.stop()
        await asyncio.sleep(0.01)

        assert queue.state == PlaybackState.IDLE
        assert queue.queue_size == 0
        assert queue.current_item is None
        assert [i.payload for i in gated_sink.cancelled] == ["a"]
        assert drained == []

    @pytest.mark.asyncio
    async def test_enqueue_after_stop_never_resumes_old_fragments(self, gated_sink):
        queue = make_queue(gated_sink)

        queue.enqueue("old-1", message_index=0)
        queue.enqueue("old-2", message_index=0)
        await gated_sink.wait_started(1)
        queue.stop()

        queue.enqueue("new", message_index=2)
        await gated_sink.wait_started(2)
        gated_sink.release(5)
        await asyncio.wait_for(queue.wait_drained(), timeout=1.0)

        assert [i.payload for i in gated_sink.started] == ["old-1", "new"]
        assert [i.payload for i in gated_sink.played] == ["new"]

    @pytest.mark.asyncio
    async def test_clear_queue_lets_current_fragment_finish(self, gated_sink):
        drained = []
        queue = make_queue(gated_sink, on_drained=lambda: drained.append(True))

        queue.enqueue("a", message_index=0)
        queue.enqueue("b", message_index=0)
        queue.enqueue("c", message_index=0)
        await gated_sink.wait_started(1)

        queue.clear_queue()
        assert queue.queue_size == 0
        assert queue.state == PlaybackState.PLAYING

        gated_sink.release()
        await asyncio.wait_for(queue.wait_drained(), timeout=1.0)
        await wait_until(lambda: drained)

        assert [i.payload for i in gated_sink.played] == ["a"]
        assert gated_sink.cancelled == []
        assert queue.played == 1
        assert drained == [True]

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_safe(self):
        queue = make_queue(RecordingSink())

        queue.stop()
        queue.stop()

        assert queue.state == PlaybackState.IDLE


class TestFailures:
    """Failing fragments are skipped."""

    @pytest.mark.asyncio
    async def test_failed_fragment_skipped(self):
        sink = RecordingSink(fail_payloads={"bad"})
        drained = []
        queue = make_queue(sink, on_drained=lambda: drained.append(True))

        for payload in ["a", "bad", "c"]:
            queue.enqueue(payload, message_index=0)
        await queue.wait_drained()

        assert [i.payload for i in sink.played] == ["a", "c"]
        assert queue.failed == 1
        assert drained == [True]

    @pytest.mark.asyncio
    async def test_stalled_fragment_times_out(self, gated_sink):
        queue = make_queue(gated_sink, stall_timeout_seconds=0.05)

        queue.enqueue("stuck", message_index=0)
        queue.enqueue("next", message_index=0)
        await gated_sink.wait_started(2)
        gated_sink.release()
        await asyncio.wait_for(queue.wait_drained(), timeout=1.0)

        assert queue.failed == 1
        assert [i.payload for i in gated_sink.played] == ["next"]


class TestClockedSink:
    """The headless sink holds for the fragment's duration."""

    @pytest.mark.asyncio
    async def test_plays_for_fragment_duration(self, wav_payload):
        levels = []
        sink = ClockedAudioSink(speed=4.0, on_level=levels.append)
        loop = asyncio.get_running_loop()

        start = loop.time()
        await sink.play(PlaybackItem(payload=wav_payload, message_index=0))

        assert loop.time() - start >= 0.004
        assert levels == [0.0]
