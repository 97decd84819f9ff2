"""
Voice chat client package.

Keep imports lightweight so modules like `src.voicechat.chat_protocol` can be
used without loading the server stack at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.voicechat.config import Config
    from src.voicechat.coordinator import VoiceTurnCoordinator

__all__ = ["Config", "get_config", "VoiceTurnCoordinator"]


def __getattr__(name: str) -> Any:
    if name in ("Config", "get_config"):
        from src.voicechat.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    if name == "VoiceTurnCoordinator":
        from src.voicechat.coordinator import VoiceTurnCoordinator

        return VoiceTurnCoordinator
    raise AttributeError(name)
