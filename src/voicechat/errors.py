"""
Error taxonomy for the voice chat client.

Only TransportError ends a turn; the others are recovered locally.
"""

from typing import Optional


class VoiceChatError(Exception):
    """Base class for client errors."""
    pass


class TransportError(VoiceChatError):
    """The chat request failed to open or broke while streaming."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StreamError(VoiceChatError):
    """Server-reported error in the middle of a stream (non-terminal)."""
    pass


class SynthesisError(VoiceChatError):
    """Speech synthesis failed for part of a response (logged only)."""
    pass


class PlaybackError(VoiceChatError):
    """A single audio fragment failed to decode or play."""
    pass


class TranscriptionError(VoiceChatError):
    """Captured audio could not be transcribed."""
    pass
