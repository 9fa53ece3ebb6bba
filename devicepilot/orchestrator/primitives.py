"""
Primitive action dispatch: maps each `ActionKind` onto device commands.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from devicepilot.shared.actuator import (
    DeviceActuator,
    global_action_command,
    launch_command,
    long_press_command,
    shell_command,
    swipe_command,
    tap_command,
    type_command,
)
from devicepilot.shared.data_types import ActionDecision, ActionKind, ActionResult, UIElement, UnknownActionError
from devicepilot.skills import heuristics
from devicepilot.utils.logger import StructuredLogger
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock

PrimitiveHandler = Callable[[ActionDecision, List[UIElement]], Awaitable[ActionResult]]

DEFAULT_WAIT_SECONDS = 2.0


class PrimitiveDispatcher:
    """
    Executes primitive decisions through one exhaustive table keyed by ActionKind.
    """

    def __init__(
        self,
        device: DeviceActuator,
        *,
        clock: Clock = SYSTEM_CLOCK,
        wait_seconds: float = DEFAULT_WAIT_SECONDS,
    ) -> None:
        self._device = device
        self._clock = clock
        self._wait_seconds = wait_seconds
        self._logger = StructuredLogger(__name__)
        self._handlers: Dict[ActionKind, PrimitiveHandler] = {
            ActionKind.TAP: self._tap,
            ActionKind.LONG_PRESS: self._long_press,
            ActionKind.TYPE: self._type,
            ActionKind.ENTER: self._global("enter"),
            ActionKind.SWIPE: self._swipe,
            ActionKind.SCROLL: self._scroll,
            ActionKind.LAUNCH: self._launch,
            ActionKind.BACK: self._global("back"),
            ActionKind.HOME: self._global("home"),
            ActionKind.RECENTS: self._global("recents"),
            ActionKind.WAIT: self._wait,
            ActionKind.DONE: self._done,
            ActionKind.GLOBAL_ACTION: self._global_named,
            ActionKind.SHELL: self._shell,
        }
        missing = set(ActionKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"Primitive handlers missing for: {sorted(k.value for k in missing)}")

    async def execute(self, decision: ActionDecision, elements: Sequence[UIElement]) -> ActionResult:
        if not isinstance(decision.kind, ActionKind):
            raise UnknownActionError(decision.kind)
        return await self._handlers[decision.kind](decision, list(elements))

    def _resolve_target(
        self, decision: ActionDecision, elements: Sequence[UIElement]
    ) -> Tuple[Optional[Tuple[int, int]], Optional[str]]:
        if decision.coordinates is not None:
            return decision.coordinates, None
        query = decision.query or decision.text
        if not query:
            return None, f"{decision.name} requires coordinates or a query"
        match = heuristics.best_text_match(elements, query)
        if match is None:
            return None, f"No element matching {query!r} on screen"
        return match.center, None

    async def _tap(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        target, error = self._resolve_target(decision, elements)
        if target is None:
            return ActionResult(success=False, message=error or "tap target missing")
        return await self._device.execute(tap_command(*target))

    async def _long_press(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        target, error = self._resolve_target(decision, elements)
        if target is None:
            return ActionResult(success=False, message=error or "long_press target missing")
        return await self._device.execute(long_press_command(*target))

    async def _type(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        if decision.text is None:
            return ActionResult(success=False, message="type requires text")
        return await self._device.execute(type_command(decision.text))

    async def _swipe(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        direction = decision.direction or "up"
        try:
            vector = heuristics.swipe_vector(direction, heuristics.approximate_screen_size(elements))
        except ValueError as exc:
            return ActionResult(success=False, message=str(exc))
        return await self._device.execute(swipe_command(*vector))

    async def _scroll(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        direction = decision.direction or "down"
        try:
            finger = heuristics.scroll_to_swipe_direction(direction)
        except ValueError as exc:
            return ActionResult(success=False, message=str(exc))
        vector = heuristics.swipe_vector(finger, heuristics.approximate_screen_size(elements))
        return await self._device.execute(swipe_command(*vector))

    async def _launch(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        package = decision.package or decision.query
        if not package:
            return ActionResult(success=False, message="launch requires a package")
        return await self._device.execute(launch_command(package))

    def _global(self, name: str) -> PrimitiveHandler:
        async def handler(decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
            return await self._device.execute(global_action_command(name))

        return handler

    async def _global_named(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        name = decision.query or decision.text
        if not name:
            return ActionResult(success=False, message="global_action requires a name")
        return await self._device.execute(global_action_command(name))

    async def _shell(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        if not decision.text:
            return ActionResult(success=False, message="shell requires a command")
        return await self._device.execute(shell_command(decision.text))

    async def _wait(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        await self._clock.sleep(self._wait_seconds)
        return ActionResult(success=True, message=f"Waited {self._wait_seconds:g}s")

    async def _done(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        return ActionResult(success=True, message=decision.reason or "Goal complete")


__all__ = ["DEFAULT_WAIT_SECONDS", "PrimitiveDispatcher"]
