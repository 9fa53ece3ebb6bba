from __future__ import annotations

import asyncio
import base64
from io import BytesIO

import pytest
from PIL import Image, ImageDraw

from devicepilot.api.oai_client import ReasoningError
from devicepilot.orchestrator.data_types import AgentSession, LoopConfig, SessionStateError, SessionStatus
from devicepilot.orchestrator.loop import AgentLoop, LoopState, StuckDetector
from devicepilot.shared.actuator import Command
from devicepilot.shared.data_types import ActionDecision, ActionKind, ActionResult, SkillName, UnknownActionError
from devicepilot.transport.sessions import CommandTimeout, DeviceDisconnected
from doubles import FakeDevice, ScriptedDecider, element, screen_of

HOME = screen_of(element("Settings", 540, 800, clickable=True), element("Clock", 540, 1000, clickable=True))
SETTINGS = screen_of(element("Wi-Fi", 540, 400, clickable=True), element("Display", 540, 600, clickable=True))

TAP_SETTINGS = ActionDecision(kind=ActionKind.TAP, query="Settings", reason="open settings")
WAIT = ActionDecision(kind=ActionKind.WAIT, reason="let it load")
DONE = ActionDecision(kind=ActionKind.DONE, reason="Settings is open")


def new_session(max_steps: int = 5) -> AgentSession:
    return AgentSession(session_id="s-1", device_id="dev-1", user_id="user-1", goal="Open settings", max_steps=max_steps)


def build_loop(session, device, decider, clock, *, events=None, **config) -> AgentLoop:
    config.setdefault("max_steps", session.max_steps)
    return AgentLoop(
        session,
        device,
        decider,
        config=LoopConfig(**config),
        clock=clock,
        emit=events.append if events is not None else None,
    )


def test_stuck_detector_fires_exactly_at_threshold():
    detector = StuckDetector(3)
    assert [detector.observe(h) for h in ["a", "a", "a", "a", "b", "b", "b"]] == [
        False,
        False,
        True,
        True,
        False,
        False,
        True,
    ]
    detector.reset()
    assert detector.count == 0
    with pytest.raises(ValueError):
        StuckDetector(0)


def test_session_transitions_are_monotonic():
    session = new_session()
    session.transition(SessionStatus.RUNNING)
    session.transition(SessionStatus.COMPLETED, "done")
    assert session.reason == "done"
    assert session.completed_at is not None
    with pytest.raises(SessionStateError):
        session.transition(SessionStatus.RUNNING)
    with pytest.raises(SessionStateError):
        session.transition(SessionStatus.FAILED)


async def test_loop_completes_on_done_decision(clock):
    device = FakeDevice([HOME, SETTINGS])
    decider = ScriptedDecider(TAP_SETTINGS, DONE)
    events = []

    session = await build_loop(new_session(), device, decider, clock, events=events).run()

    assert session.status is SessionStatus.COMPLETED
    assert session.reason == "Settings is open"
    assert session.steps_used == 2
    assert device.commands == [{"type": "tap", "x": 540, "y": 800}]
    assert [event["type"] for event in events] == ["goal_started", "step", "step", "goal_completed"]
    assert events[-1]["stepsUsed"] == 2
    assert session.steps[0].screen_hash != session.steps[1].screen_hash


async def test_loop_fails_when_step_budget_exhausted(clock):
    device = FakeDevice([HOME])
    events = []

    loop = build_loop(new_session(max_steps=3), device, ScriptedDecider(WAIT), clock, events=events)
    session = await loop.run()

    assert session.status is SessionStatus.FAILED
    assert session.steps_used == 3
    assert session.reason.startswith("Step budget exhausted: 3/3")
    assert loop.state is LoopState.FAILED
    assert events[-1] == {
        "type": "goal_failed",
        "sessionId": "s-1",
        "status": "failed",
        "stepsUsed": 3,
        "reason": session.reason,
    }


async def test_loop_injects_stuck_directive_only_while_screen_is_unchanged(clock):
    device = FakeDevice([HOME, HOME, SETTINGS, SETTINGS])
    decider = ScriptedDecider(WAIT)

    session = await build_loop(new_session(max_steps=4), device, decider, clock, stuck_threshold=2).run()

    assert [step.stuck for step in session.steps] == [False, True, False, True]
    prompts = [decider.user_prompt(i) for i in range(4)]
    assert ["Try a different approach" in prompt for prompt in prompts] == [False, True, False, True]


async def test_context_window_is_bounded(clock):
    device = FakeDevice([HOME])
    decider = ScriptedDecider(WAIT)

    await build_loop(new_session(max_steps=5), device, decider, clock, context_steps=2).run()

    last_prompt = decider.user_prompt(4)
    assert '"step": 3' in last_prompt
    assert '"step": 4' in last_prompt
    assert '"step": 2' not in last_prompt


async def test_reasoning_errors_fail_after_consecutive_limit(clock):
    device = FakeDevice([HOME])
    decider = ScriptedDecider(ReasoningError("HTTP 500"))

    session = await build_loop(new_session(), device, decider, clock).run()

    assert session.status is SessionStatus.FAILED
    assert session.steps_used == 3
    assert all(step.decision is None and not step.result.success for step in session.steps)
    assert "failed 3 times in a row" in session.reason


async def test_single_reasoning_error_is_a_failed_step_not_a_failed_session(clock):
    device = FakeDevice([HOME])
    decider = ScriptedDecider(UnknownActionError("fly"), DONE)

    session = await build_loop(new_session(), device, decider, clock).run()

    assert session.status is SessionStatus.COMPLETED
    assert session.steps_used == 2
    assert session.steps[0].result.success is False
    assert "Unknown action or skill" in session.steps[0].result.message


async def test_cancel_before_first_step(clock):
    events = []
    loop = build_loop(new_session(), FakeDevice([HOME]), ScriptedDecider(WAIT), clock, events=events)
    loop.cancel()

    session = await loop.run()

    assert session.status is SessionStatus.CANCELLED
    assert session.steps_used == 0
    assert events[-1]["type"] == "goal_failed"
    assert events[-1]["status"] == "cancelled"


async def test_cancel_during_decision_issues_no_command(clock):
    device = FakeDevice([HOME])
    cancel_event = asyncio.Event()

    class CancellingDecider(ScriptedDecider):
        async def decide(self, messages):
            cancel_event.set()
            return await super().decide(messages)

    loop = AgentLoop(new_session(), device, CancellingDecider(TAP_SETTINGS), clock=clock, cancel_event=cancel_event)
    session = await loop.run()

    assert session.status is SessionStatus.CANCELLED
    assert device.commands == []


async def test_command_timeout_becomes_failed_step(clock):
    class SlowDevice(FakeDevice):
        async def execute(self, command: Command) -> ActionResult:
            raise CommandTimeout("execute", "req-1", 30.0)

    device = SlowDevice([HOME])
    session = await build_loop(new_session(), device, ScriptedDecider(TAP_SETTINGS, DONE), clock).run()

    assert session.status is SessionStatus.COMPLETED
    assert session.steps[0].result.success is False
    assert "timed out" in session.steps[0].result.message


async def test_disconnect_fails_the_session(clock):
    class GoneDevice(FakeDevice):
        async def get_screen(self):
            raise DeviceDisconnected("socket closed")

    session = await build_loop(new_session(), GoneDevice(), ScriptedDecider(WAIT), clock).run()

    assert session.status is SessionStatus.FAILED
    assert session.reason.startswith("Device transport failed")


async def test_skill_decisions_route_to_skill_engine(clock):
    device = FakeDevice([HOME])
    decider = ScriptedDecider(ActionDecision(kind=SkillName.FIND_AND_TAP, query="Clock"), DONE)

    session = await build_loop(new_session(), device, decider, clock).run()

    assert session.steps[0].result.success is True
    assert device.commands == [{"type": "tap", "x": 540, "y": 1000}]


def _png(width: int = 60, height: int = 120) -> str:
    image = Image.new("RGB", (width, height), "white")
    ImageDraw.Draw(image).rectangle([10, 10, 40, 60], fill="black")
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


async def test_malformed_hierarchy_falls_back_instead_of_crashing(clock):
    device = FakeDevice(["<hierarchy><node text='Settings' bounds='[0,0][100,100]'>"], screenshot=_png())
    decider = ScriptedDecider(DONE)
    events = []

    session = await build_loop(new_session(), device, decider, clock, events=events).run()

    assert session.status is SessionStatus.COMPLETED
    assert isinstance(decider.requests[0][-1]["content"], list)
    assert [event["type"] for event in events] == ["goal_started", "step", "goal_completed"]


async def test_empty_tree_falls_back_to_screenshot(clock):
    device = FakeDevice([None], screenshot=_png())
    decider = ScriptedDecider(DONE)

    session = await build_loop(new_session(), device, decider, clock).run()

    assert session.status is SessionStatus.COMPLETED
    user_content = decider.requests[0][-1]["content"]
    assert isinstance(user_content, list)
    assert user_content[1]["type"] == "image_url"
    assert user_content[1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert len(session.steps[0].screen_hash) == 16
