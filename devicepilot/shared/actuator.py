"""
Device actuator contract and primitive command builders.

The actuator is whatever performs gestures on the device: in production a
`RemoteDevice` that relays commands over the device WebSocket, in tests a fake.
Command payloads are plain JSON dicts with a `type` key.
"""

from __future__ import annotations

import shlex
from typing import Any, Dict, Optional

from devicepilot.shared.data_types import ActionResult

Command = Dict[str, Any]

DEFAULT_SWIPE_DURATION_MS = 300
DEFAULT_LONG_PRESS_MS = 800
SENDTO_INTENT = "android.intent.action.SENDTO"


class DeviceActuator:
    """
    Interface every device backend implements.

    `get_screen` returns a raw snapshot (anything the sanitizer accepts, or
    None while the screen is transitioning). `execute` performs one primitive
    command and reports its outcome. `get_screenshot` returns a base64 PNG or
    None when the screen cannot be captured.
    """

    async def get_screen(self) -> Any:
        raise NotImplementedError

    async def execute(self, command: Command) -> ActionResult:
        raise NotImplementedError

    async def get_screenshot(self) -> Optional[str]:
        raise NotImplementedError


def tap_command(x: int, y: int) -> Command:
    return {"type": "tap", "x": int(x), "y": int(y)}


def long_press_command(x: int, y: int, duration_ms: int = DEFAULT_LONG_PRESS_MS) -> Command:
    return {"type": "long_press", "x": int(x), "y": int(y), "duration": duration_ms}


def type_command(text: str) -> Command:
    return {"type": "type", "text": text}


def swipe_command(
    x1: int, y1: int, x2: int, y2: int, duration_ms: int = DEFAULT_SWIPE_DURATION_MS
) -> Command:
    return {"type": "swipe", "x1": x1, "y1": y1, "x2": x2, "y2": y2, "duration": duration_ms}


def launch_command(package: str) -> Command:
    return {"type": "launch", "package": package}


def global_action_command(name: str) -> Command:
    """Accessibility global action: back, home, recents, enter, paste."""
    return {"type": "global_action", "action": name}


def shell_command(command: str) -> Command:
    return {"type": "shell", "command": command}


def clipboard_command(text: str) -> Command:
    """Set the clipboard through a shell-safe quoted command."""
    return shell_command(f"cmd clipboard set-text {shlex.quote(text)}")


def send_to_command(address: str) -> Command:
    """Open the platform's generic send-to intent for an email address."""
    uri = shlex.quote(f"mailto:{address}")
    return shell_command(f"am start -a {SENDTO_INTENT} -d {uri}")


__all__ = [
    "Command",
    "DeviceActuator",
    "clipboard_command",
    "global_action_command",
    "launch_command",
    "long_press_command",
    "send_to_command",
    "shell_command",
    "swipe_command",
    "tap_command",
    "type_command",
]
