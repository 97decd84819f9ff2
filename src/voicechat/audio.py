"""
Audio helpers for synthesized speech fragments.

Fragments arrive as base64-encoded WAV (16-bit PCM). The playback layer only
needs to decode them, know how long they last and how loud they are.
"""

import base64
import binascii
import io
import wave
from dataclasses import dataclass

import numpy as np

from src.voicechat.errors import PlaybackError


@dataclass(frozen=True)
class DecodedFragment:
    """A decoded WAV fragment, downmixed to mono PCM16."""
    sample_rate: int
    pcm: bytes

    @property
    def duration_seconds(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return (len(self.pcm) // 2) / self.sample_rate

    @property
    def duration_ms(self) -> float:
        return self.duration_seconds * 1000


def decode_base64_audio(payload: str) -> bytes:
    """
    Decode a base64 audio payload.

    Accepts a bare base64 string or a `data:audio/wav;base64,...` URL.
    """
    if not payload:
        raise PlaybackError("Empty audio payload")

    if payload.startswith("data:"):
        _, _, payload = payload.partition(",")

    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PlaybackError(f"Invalid base64 audio payload: {e}") from e


def encode_base64_audio(audio: bytes) -> str:
    return base64.b64encode(audio).decode("ascii")


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises PlaybackError.
    """
    if not wav_bytes:
        raise PlaybackError("Empty WAV")

    try:
        with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise PlaybackError(f"Invalid WAV: {e}") from e

    if sample_width != 2:
        raise PlaybackError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        samples = np.frombuffer(frames, dtype=np.int16).reshape(-1, 2).astype(np.int32)
        mono = samples.mean(axis=1).astype(np.int16)
        return int(sample_rate), mono.tobytes()

    raise PlaybackError(f"Unsupported WAV channel count: {channels}")


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def decode_fragment(payload: str) -> DecodedFragment:
    """Decode a base64 WAV fragment as delivered by the chat stream."""
    sample_rate, pcm = read_wav_mono_pcm16(decode_base64_audio(payload))
    return DecodedFragment(sample_rate=sample_rate, pcm=pcm)


def rms_level(pcm_bytes: bytes) -> float:
    """
    Root-mean-square level of PCM16 audio, normalized to 0.0 - 1.0.
    """
    if len(pcm_bytes) < 2:
        return 0.0

    samples = np.frombuffer(pcm_bytes[: len(pcm_bytes) // 2 * 2], dtype=np.int16).astype(np.float32)
    rms = float(np.sqrt(np.mean(np.square(samples))))
    return min(1.0, rms / 32768.0)


def create_silence_wav(duration_ms: int, sample_rate: int = 22050) -> bytes:
    """Create a silent mono PCM16 WAV of the given duration."""
    num_samples = int(sample_rate * duration_ms / 1000)
    return write_wav_mono_pcm16(b"\x00\x00" * num_samples, sample_rate)
