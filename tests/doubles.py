"""Test doubles shared by the test modules."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from devicepilot.shared.actuator import Command, DeviceActuator
from devicepilot.shared.data_types import ActionDecision, ActionResult, ElementAction, UIElement
from devicepilot.utils.polling import Clock


class FakeClock(Clock):
    """Never blocks: records each requested sleep and advances time instantly."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.mono = 0.0
        self.sleeps: List[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        self.mono += seconds
        await asyncio.sleep(0)

    def monotonic(self) -> float:
        return self.mono

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
        self.mono += seconds


class ManualClock(Clock):
    """Sleeps block until the test calls `advance()` past their deadline."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._start = start
        self._elapsed = 0.0
        self._sleepers: List[Tuple[float, "asyncio.Future[None]"]] = []
        self.sleeps: List[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        future: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._elapsed + seconds, future))
        await future

    def monotonic(self) -> float:
        return self._elapsed

    def time(self) -> float:
        return self._start + self._elapsed

    async def advance(self, seconds: float) -> None:
        self._elapsed += seconds
        due = [future for deadline, future in self._sleepers if deadline <= self._elapsed]
        self._sleepers = [(d, f) for d, f in self._sleepers if d > self._elapsed]
        for future in due:
            if not future.done():
                future.set_result(None)
        await settle()


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def element(
    text: str = "",
    x: int = 540,
    y: int = 1200,
    *,
    id: str = "",
    hint: str = "",
    width: int = 200,
    height: int = 80,
    enabled: bool = True,
    clickable: bool = False,
    editable: bool = False,
    selected: bool = False,
    checked: bool = False,
    scrollable: bool = False,
    class_name: str = "android.widget.TextView",
) -> UIElement:
    if editable:
        action = ElementAction.TYPE
    elif clickable:
        action = ElementAction.TAP
    else:
        action = ElementAction.READ
    return UIElement(
        id=id,
        text=text,
        hint=hint,
        class_name=class_name,
        center=(x, y),
        size=(width, height),
        enabled=enabled,
        clickable=clickable,
        editable=editable,
        checked=checked,
        selected=selected,
        scrollable=scrollable,
        action=action,
    )


def node(text: str = "", bounds: str = "[0,0][100,100]", **attrs: Any) -> Dict[str, Any]:
    raw: Dict[str, Any] = {"text": text, "bounds": bounds}
    raw.update(attrs)
    return raw


def screen_of(*elements: UIElement) -> List[Dict[str, Any]]:
    """Raw flat snapshot that sanitizes back into the given elements."""
    nodes = []
    for el in elements:
        left = el.center[0] - el.size[0] // 2
        top = el.center[1] - el.size[1] // 2
        nodes.append(
            {
                "text": el.text,
                "resourceId": el.id,
                "hint": el.hint,
                "className": el.class_name,
                "bounds": f"[{left},{top}][{left + el.size[0]},{top + el.size[1]}]",
                "enabled": el.enabled,
                "clickable": el.clickable,
                "editable": el.editable,
                "selected": el.selected,
                "checked": el.checked,
                "scrollable": el.scrollable,
            }
        )
    return nodes


class FakeDevice(DeviceActuator):
    """
    Scripted device: `get_screen` walks `screens` (the last one repeats) and
    every command is recorded and answered with success.
    """

    def __init__(
        self,
        screens: Optional[Sequence[Any]] = None,
        *,
        screenshot: Optional[str] = None,
        results: Optional[Dict[str, ActionResult]] = None,
    ) -> None:
        self.screens = list(screens or [[]])
        self.screen_calls = 0
        self.commands: List[Command] = []
        self.screenshot = screenshot
        self.results = results or {}

    async def get_screen(self) -> Any:
        index = min(self.screen_calls, len(self.screens) - 1)
        self.screen_calls += 1
        return self.screens[index]

    async def execute(self, command: Command) -> ActionResult:
        self.commands.append(command)
        return self.results.get(command["type"], ActionResult(success=True, message="ok"))

    async def get_screenshot(self) -> Optional[str]:
        return self.screenshot

    def commands_of(self, kind: str) -> List[Command]:
        return [command for command in self.commands if command["type"] == kind]


class ScriptedDecider:
    """Returns queued decisions (or raises queued exceptions) in order; the last repeats."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.requests: List[List[Dict[str, Any]]] = []

    async def decide(self, messages: List[Dict[str, Any]]) -> Tuple[ActionDecision, Optional[str]]:
        self.requests.append(messages)
        index = min(len(self.requests) - 1, len(self.outcomes) - 1)
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome, outcome.reason

    def user_prompt(self, index: int) -> str:
        content = self.requests[index][-1]["content"]
        if isinstance(content, list):
            return content[0]["text"]
        return content


class FakeSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, *replies: Dict[str, Any]) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._inbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        for reply in replies:
            self.feed(reply)

    def feed(self, message: Dict[str, Any]) -> None:
        self._inbox.put_nowait(json.dumps(message))

    def drop(self) -> None:
        self._inbox.put_nowait(None)

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise ConnectionResetError("connection lost")
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def sent_types(self) -> List[str]:
        return [message.get("type") for message in self.sent]


class FakeTranscriber:
    def __init__(self, text: str = "hello world") -> None:
        self.text = text
        self.calls: List[bytes] = []

    async def transcribe(self, wav_bytes: bytes) -> str:
        self.calls.append(wav_bytes)
        return self.text


class FakeAnalyst:
    """Returns a fixed analysis reply and records the prompts it was given."""

    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.calls: List[Tuple[str, str]] = []

    async def analyze(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        return self.reply
