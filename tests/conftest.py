"""
Pytest configuration and fixtures.
"""

import asyncio
import os
from typing import List, Optional
from unittest.mock import patch

import pytest

from src.voicechat.audio import create_silence_wav, encode_base64_audio
from src.voicechat.coordinator import AudioCapture
from src.voicechat.errors import PlaybackError
from src.voicechat.playback import AudioSink
from src.voicechat.session_types import (
    PlaybackItem,
    StreamEvent,
    StreamEventKind,
    TranscriptionResult,
)
from src.voicechat.transport import ChatTransport


@pytest.fixture(autouse=True)
def mock_env_vars(tmp_path):
    """Mock environment variables for tests."""
    env_vars = {
        "API_BASE_URL": "http://backend.test",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "PLAYBACK_SETTLE_MS": "0",
        "PLAYBACK_STALL_TIMEOUT_SECONDS": "2",
        "LIVE_MODE": "false",
        "EMOTION_ANALYSIS_ENABLED": "false",
        "CONVERSATIONS_PATH": str(tmp_path / "conversations.json"),
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voicechat.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


def token(text: str) -> StreamEvent:
    return StreamEvent(kind=StreamEventKind.TOKEN, payload=text)


def fragment(payload: str) -> StreamEvent:
    return StreamEvent(kind=StreamEventKind.AUDIO_FRAGMENT, payload=payload)


def event(kind: StreamEventKind, payload: str = "") -> StreamEvent:
    return StreamEvent(kind=kind, payload=payload)


class ControlledStream:
    """One chat stream whose events the test pushes by hand."""

    def __init__(self, text: str):
        self.text = text
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, *events: StreamEvent) -> None:
        for e in events:
            self.queue.put_nowait(e)

    def finish(self) -> None:
        self.queue.put_nowait(None)

    def fail(self, error: Exception) -> None:
        self.queue.put_nowait(error)


class FakeChatTransport(ChatTransport):
    """
    Scripted transport.

    Each stream request consumes the next entry of `scripts` (a list of
    events, possibly ending in an exception). Without a script the stream is
    a ControlledStream driven by the test.
    """

    def __init__(self, scripts=None, transcripts=None, emotion: Optional[str] = None):
        self.scripts: List[list] = list(scripts or [])
        self.transcripts: list = list(transcripts or [])
        self.emotion = emotion
        self.requests: List[str] = []
        self.streams: List[ControlledStream] = []
        self.transcribe_calls: List[bytes] = []
        self.emotion_calls: List[bytes] = []

    async def stream_events(self, text):
        self.requests.append(text)

        if self.scripts:
            for item in self.scripts.pop(0):
                await asyncio.sleep(0)
                if isinstance(item, Exception):
                    raise item
                yield item
            yield StreamEvent(kind=StreamEventKind.DONE)
            return

        stream = ControlledStream(text)
        self.streams.append(stream)
        try:
            while True:
                item = await stream.queue.get()
                if item is None:
                    break
                if isinstance(item, Exception):
                    raise item
                yield item
            yield StreamEvent(kind=StreamEventKind.DONE)
        finally:
            stream.closed = True

    async def transcribe(self, audio, *, filename="recording.webm", content_type="audio/webm"):
        self.transcribe_calls.append(audio)
        result = self.transcripts.pop(0) if self.transcripts else TranscriptionResult(text="")
        if isinstance(result, Exception):
            raise result
        return result

    async def analyze_emotion(self, audio):
        self.emotion_calls.append(audio)
        return self.emotion

    async def wait_for_stream(self, count: int, timeout: float = 1.0) -> ControlledStream:
        async def _wait():
            while len(self.streams) < count:
                await asyncio.sleep(0)
        await asyncio.wait_for(_wait(), timeout=timeout)
        return self.streams[count - 1]


class RecordingSink(AudioSink):
    """
    Sink that records what it plays.

    With `gated=True` each fragment plays until the test calls `release()`.
    """

    def __init__(self, *, gated: bool = False, delay: float = 0.0, fail_payloads=()):
        self.gated = gated
        self.delay = delay
        self.fail_payloads = set(fail_payloads)
        self.started: List[PlaybackItem] = []
        self.played: List[PlaybackItem] = []
        self.cancelled: List[PlaybackItem] = []
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._releases: asyncio.Queue = asyncio.Queue()

    def release(self, count: int = 1) -> None:
        for _ in range(count):
            self._releases.put_nowait(None)

    async def wait_started(self, count: int, timeout: float = 1.0) -> None:
        async def _wait():
            while len(self.started) < count:
                await asyncio.sleep(0)
        await asyncio.wait_for(_wait(), timeout=timeout)

    async def play(self, item: PlaybackItem) -> None:
        self.started.append(item)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if item.payload in self.fail_payloads:
                raise PlaybackError(f"cannot play {item.payload}")
            if self.gated:
                await self._releases.get()
            elif self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            self.played.append(item)
        except asyncio.CancelledError:
            self.cancelled.append(item)
            raise
        finally:
            self.active -= 1

    async def close(self) -> None:
        self.closed = True


class FakeCapture(AudioCapture):
    """Capture that returns canned audio."""

    def __init__(self, audio: bytes = b"utterance", *, fail_start: bool = False):
        super().__init__()
        self.audio = audio
        self.fail_start = fail_start
        self.starts = 0
        self.stops = 0
        self.aborts = 0
        self.is_active = False

    async def start(self) -> None:
        self.starts += 1
        if self.fail_start:
            raise RuntimeError("no microphone")
        self.is_active = True

    async def stop(self) -> bytes:
        self.stops += 1
        self.is_active = False
        return self.audio

    def abort(self) -> None:
        self.aborts += 1
        self.is_active = False


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until `predicate()` holds."""
    async def _wait():
        while not predicate():
            await asyncio.sleep(0)
    await asyncio.wait_for(_wait(), timeout=timeout)


@pytest.fixture
def wav_payload():
    """Base64 WAV fragment, 20ms of silence."""
    return encode_base64_audio(create_silence_wav(20))


@pytest.fixture
def wav_payloads():
    """Distinct base64 WAV fragments (different lengths so payloads differ)."""
    return [encode_base64_audio(create_silence_wav(10 + i)) for i in range(4)]


@pytest.fixture
def transport():
    return FakeChatTransport()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def gated_sink():
    return RecordingSink(gated=True)


@pytest.fixture
def capture():
    return FakeCapture()
