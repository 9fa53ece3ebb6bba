"""
Agent loop: perceive -> decide -> act for one goal on one device.

The `AgentLoop` owns one `AgentSession`. Each iteration observes the screen
through the sanitizer, fingerprints it, asks the reasoning service for the next
decision with a bounded context window, executes that decision through the
primitive dispatcher or the skill engine, and records an `AgentStep`. The goal
service (`orchestrator/goals.py`) is responsible for admission and for wiring
the loop to a device connection.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from devicepilot.api.oai_client import ReasoningError
from devicepilot.orchestrator.build_orchestrator_input import AgentInputBuilder
from devicepilot.orchestrator.data_types import AgentSession, AgentStep, LoopConfig, SessionStatus
from devicepilot.orchestrator.primitives import PrimitiveDispatcher
from devicepilot.perception.sanitizer import ScreenSanitizer, screen_hash
from devicepilot.shared.actuator import DeviceActuator
from devicepilot.shared.data_types import ActionDecision, ActionResult, UIElement, UnknownActionError
from devicepilot.skills.engine import SkillEngine
from devicepilot.transport.sessions import CommandTimeout, TransportError
from devicepilot.utils.image_processor import ImageProcessor
from devicepilot.utils.logger import StructuredLogger
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock

EventSink = Callable[[Dict[str, Any]], None]


class Decider(Protocol):
    async def decide(self, messages: List[Dict[str, Any]]) -> Tuple[ActionDecision, Optional[str]]:
        ...


class LoopState(str, Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    DECIDING = "deciding"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StuckDetector:
    """
    Fires once the last `threshold` screen hashes are identical; the first
    differing hash resets it.
    """

    def __init__(self, threshold: int) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be a positive integer.")
        self._threshold = threshold
        self._last: Optional[str] = None
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    @property
    def stuck(self) -> bool:
        return self._count >= self._threshold

    def observe(self, screen_hash_value: str) -> bool:
        if screen_hash_value == self._last:
            self._count += 1
        else:
            self._last = screen_hash_value
            self._count = 1
        return self.stuck

    def reset(self) -> None:
        self._last = None
        self._count = 0


class AgentLoop:
    """
    Drives one AgentSession to a terminal status.
    """

    def __init__(
        self,
        session: AgentSession,
        device: DeviceActuator,
        decider: Decider,
        *,
        sanitizer: Optional[ScreenSanitizer] = None,
        skills: Optional[SkillEngine] = None,
        primitives: Optional[PrimitiveDispatcher] = None,
        config: Optional[LoopConfig] = None,
        clock: Clock = SYSTEM_CLOCK,
        emit: Optional[EventSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
        image_processor: Optional[ImageProcessor] = None,
    ) -> None:
        self._session = session
        self._device = device
        self._decider = decider
        self._config = config or LoopConfig(max_steps=session.max_steps)
        self._sanitizer = sanitizer or ScreenSanitizer(clock=clock)
        self._skills = skills or SkillEngine(device, self._sanitizer, clock=clock)
        self._primitives = primitives or PrimitiveDispatcher(device, clock=clock)
        self._emit = emit
        self._cancel_event = cancel_event or asyncio.Event()
        self._images = image_processor or ImageProcessor()
        self._input_builder = AgentInputBuilder(context_steps=self._config.context_steps)
        self._stuck = StuckDetector(self._config.stuck_threshold)
        self._state = LoopState.IDLE
        self._logger = StructuredLogger(__name__)

    @property
    def session(self) -> AgentSession:
        return self._session

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def cancel(self) -> None:
        self._cancel_event.set()

    def _set_state(self, state: LoopState) -> None:
        if state is not self._state:
            self._logger.debug(f"[{self._session.session_id}] {self._state.value} -> {state.value}")
            self._state = state

    def _send(self, message: Dict[str, Any]) -> None:
        if self._emit is None:
            return
        try:
            self._emit(message)
        except TransportError as exc:
            self._logger.warning(f"Could not deliver {message.get('type')!r} event: {exc}")

    async def run(self) -> AgentSession:
        """
        Run until the session reaches a terminal status and return it.
        """
        session = self._session
        max_steps = session.max_steps
        session.transition(SessionStatus.RUNNING)
        self._logger.info_lines(
            "Agent loop started:",
            [
                f"session={session.session_id}",
                f"device={session.device_id}",
                f"goal={session.goal}",
                f"max_steps={max_steps}",
            ],
        )
        self._send({"type": "goal_started", "sessionId": session.session_id, "goal": session.goal, "maxSteps": max_steps})

        consecutive_errors = 0
        try:
            for step_number in range(1, max_steps + 1):
                if self._cancel_event.is_set():
                    return self._finish(SessionStatus.CANCELLED, "Cancelled by user")

                self._set_state(LoopState.OBSERVING)
                elements, hash_value, screenshot_uri = await self._observe()
                stuck = self._stuck.observe(hash_value)
                if stuck:
                    self._logger.warning(
                        f"[{session.session_id}] screen unchanged for {self._stuck.count} steps; "
                        "asking for a different approach"
                    )

                self._set_state(LoopState.DECIDING)
                request = self._input_builder.build(
                    goal=session.goal,
                    step_number=step_number,
                    max_steps=max_steps,
                    elements=elements,
                    steps=session.steps,
                    stuck_count=self._stuck.count if stuck else 0,
                    screenshot_uri=screenshot_uri,
                )
                try:
                    decision, reasoning = await self._decider.decide(request.messages)
                except (ReasoningError, UnknownActionError) as exc:
                    consecutive_errors += 1
                    self._logger.warning(
                        f"[{session.session_id}] reasoning failed ({consecutive_errors}/"
                        f"{self._config.max_consecutive_errors}): {exc}"
                    )
                    self._record(step_number, hash_value, None, None, ActionResult(False, f"Reasoning failed: {exc}"), stuck)
                    if consecutive_errors >= self._config.max_consecutive_errors:
                        return self._finish(
                            SessionStatus.FAILED,
                            f"Reasoning service failed {consecutive_errors} times in a row: {exc}",
                        )
                    continue
                consecutive_errors = 0

                if self._cancel_event.is_set():
                    return self._finish(SessionStatus.CANCELLED, "Cancelled by user")

                self._set_state(LoopState.EXECUTING)
                if decision.is_terminal:
                    result = ActionResult(success=True, message=decision.reason or reasoning or "Goal complete")
                    self._record(step_number, hash_value, decision, reasoning, result, stuck)
                    return self._finish(SessionStatus.COMPLETED, result.message)

                result = await self._execute(decision, elements)

                self._set_state(LoopState.EVALUATING)
                self._record(step_number, hash_value, decision, reasoning, result, stuck)

            return self._finish(
                SessionStatus.FAILED,
                f"Step budget exhausted: {session.steps_used}/{max_steps} steps used without completion",
            )
        except TransportError as exc:
            return self._finish(SessionStatus.FAILED, f"Device transport failed: {exc}")
        except asyncio.CancelledError:
            self._finish(SessionStatus.CANCELLED, "Loop task cancelled")
            raise

    async def _observe(self) -> Tuple[List[UIElement], str, Optional[str]]:
        try:
            elements = await self._sanitizer.observe(self._device.get_screen)
        except CommandTimeout as exc:
            self._logger.warning(f"Screen observation timed out; continuing with no elements: {exc}")
            elements = []
        if elements:
            return elements, screen_hash(elements), None

        screenshot = await self._screenshot()
        if screenshot is None:
            return [], screen_hash([]), None
        hash_value = self._images.screenshot_hash(screenshot)
        uri = self._images.to_data_uri(self._images.downscale_image_bytes(screenshot))
        return [], hash_value, uri

    async def _screenshot(self) -> Optional[bytes]:
        try:
            encoded = await self._device.get_screenshot()
        except CommandTimeout as exc:
            self._logger.warning(f"Screenshot fallback timed out: {exc}")
            return None
        if not encoded:
            return None
        try:
            return self._images.decode_base64_image(encoded)
        except ValueError as exc:
            self._logger.warning(f"Discarding undecodable screenshot: {exc}")
            return None

    async def _execute(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        self._logger.info(f"[{self._session.session_id}] executing {decision.name}")
        try:
            if decision.is_skill:
                return await self._skills.execute(decision, elements)
            return await self._primitives.execute(decision, elements)
        except CommandTimeout as exc:
            return ActionResult(success=False, message=f"Command timed out: {exc}")

    def _record(
        self,
        step_number: int,
        hash_value: str,
        decision: Optional[ActionDecision],
        reasoning: Optional[str],
        result: ActionResult,
        stuck: bool,
    ) -> None:
        step = AgentStep(
            step_number=step_number,
            screen_hash=hash_value,
            decision=decision,
            reasoning=reasoning,
            result=result,
            stuck=stuck,
        )
        self._session.record_step(step)
        self._logger.info(
            f"[{self._session.session_id}] step {step_number}: {step.action_name} -> "
            f"{'ok' if result.success else 'failed'}: {result.message}"
        )
        self._send(
            {
                "type": "step",
                "sessionId": self._session.session_id,
                "stepNumber": step_number,
                "action": decision.to_payload() if decision is not None else None,
                "reasoning": reasoning,
                "result": result.message,
                "success": result.success,
            }
        )

    def _finish(self, status: SessionStatus, reason: str) -> AgentSession:
        session = self._session
        if session.is_terminal:
            return session
        session.transition(status, reason)
        self._set_state(LoopState(status.value))
        self._logger.info(f"[{session.session_id}] {status.value} after {session.steps_used} steps: {reason}")
        if status is SessionStatus.COMPLETED:
            self._send(
                {
                    "type": "goal_completed",
                    "sessionId": session.session_id,
                    "success": True,
                    "stepsUsed": session.steps_used,
                    "reason": reason,
                }
            )
        else:
            self._send(
                {
                    "type": "goal_failed",
                    "sessionId": session.session_id,
                    "status": status.value,
                    "stepsUsed": session.steps_used,
                    "reason": reason,
                }
            )
        return session


__all__ = ["AgentLoop", "Decider", "EventSink", "LoopState", "StuckDetector"]
