#!/usr/bin/env python3
"""
Smoke Test Script

Validates configuration and backend connectivity, then runs one typed turn
end to end against the real backend (headless playback).

Checks:
1. Dependencies are importable
2. Configuration loads and validates
3. Backend /health answers
4. A short chat turn streams text (and audio, if the backend synthesizes)
"""

import asyncio
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def print_header(text: str) -> None:
    """Print a section header."""
    print(f"\n{'=' * 50}")
    print(f" {text}")
    print('=' * 50)


def print_ok(text: str) -> None:
    print(f"  [OK] {text}")


def print_error(text: str) -> None:
    print(f"  [ERR] {text}")


def print_warn(text: str) -> None:
    print(f"  [WARN] {text}")


def check_dependencies() -> bool:
    """Check that required dependencies are importable."""
    print_header("Checking Dependencies")

    dependencies = [
        ("fastapi", "FastAPI"),
        ("uvicorn", "Uvicorn"),
        ("websockets", "WebSockets"),
        ("structlog", "Structlog"),
        ("pydantic", "Pydantic"),
        ("httpx", "HTTPX"),
        ("msgspec", "msgspec"),
        ("numpy", "NumPy"),
    ]

    all_ok = True
    for module, name in dependencies:
        try:
            __import__(module)
            print_ok(name)
        except ImportError as e:
            print_error(f"{name}: {e}")
            all_ok = False

    return all_ok


def check_config() -> bool:
    """Load and validate configuration."""
    print_header("Checking Configuration")

    from src.voicechat.config import ConfigError, get_config

    config = get_config()
    try:
        config.validate()
    except ConfigError as e:
        print_error(str(e))
        return False

    print_ok(f"API_BASE_URL: {config.api_base_url}")
    print_ok(f"Bridge: {config.host}:{config.port}")
    print_ok(f"Live mode: {config.live_mode}")
    print_ok(f"Conversations: {config.conversations_path}")
    return True


async def check_backend() -> bool:
    """Check the backend health endpoint."""
    print_header("Checking Backend")

    from src.voicechat.transport import HttpChatTransport

    transport = HttpChatTransport()
    try:
        if await transport.check_health():
            print_ok(f"{transport.config.health_url} is healthy")
            return True
        print_error(f"{transport.config.health_url} did not answer 200")
        return False
    finally:
        await transport.aclose()


async def check_turn(text: str = "Say hello in five words.") -> bool:
    """Run one typed turn through the coordinator."""
    print_header("Running One Turn")

    from src.voicechat.coordinator import VoiceTurnCoordinator
    from src.voicechat.playback import ClockedAudioSink
    from src.voicechat.transport import HttpChatTransport

    transport = HttpChatTransport()
    # Play faster than real time; only ordering and completion matter here.
    coordinator = VoiceTurnCoordinator(transport, ClockedAudioSink(speed=8.0))

    try:
        turn = coordinator.start_turn(text)
        await asyncio.wait_for(coordinator.wait_for_turn(turn), timeout=120)

        message = coordinator.messages[turn.assistant_message_index]
        if turn.status.value == "failed":
            print_error(message.text)
            return False

        print_ok(f"Reply: {message.text[:80]!r}")
        print_ok(f"Tokens: {turn.tokens_received}, fragments: {turn.fragments_received}")
        print_ok(f"First token: {turn.first_token_ms:.0f}ms")
        if message.metrics_per_second is not None:
            print_ok(f"Tokens/sec: {message.metrics_per_second}")
        if not turn.fragments_received:
            print_warn("No audio received (synthesis disabled or failed)")
        return True

    except asyncio.TimeoutError:
        print_error("Turn did not finish within 120s")
        return False
    finally:
        await coordinator.close()
        await transport.aclose()


async def main() -> int:
    """Run all smoke tests."""
    print("\n" + "=" * 50)
    print(" VOICE CHAT - SMOKE TEST")
    print("=" * 50)

    results = []
    results.append(("Dependencies", check_dependencies()))
    results.append(("Configuration", check_config()))

    backend_ok = await check_backend()
    results.append(("Backend", backend_ok))
    if backend_ok:
        results.append(("Turn", await check_turn()))

    print_header("Summary")

    all_passed = True
    for name, passed in results:
        if passed:
            print_ok(name)
        else:
            print_error(name)
            all_passed = False

    print()

    if all_passed:
        print("[OK] All checks passed!")
        print("\nNext steps:")
        print("  1. Run 'python -m server.app' to start the bridge")
        print("  2. Point the UI at ws://<host>:<port>/ws")
        return 0
    else:
        print("[ERR] Some checks failed. Please fix the issues above.")
        return 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
