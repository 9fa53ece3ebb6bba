"""
Skill engine: composite routines built from primitive commands.

Each skill filters/scores the current elements (pure functions from
`skills.heuristics`), issues zero or more primitive commands, re-observes the
screen between steps, and returns exactly one `ActionResult`. Ambiguous
outcomes ("tapped, nothing new yet") are reported with an explanatory message
so the reasoning service can decide whether to follow up.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from devicepilot.perception.sanitizer import ScreenSanitizer
from devicepilot.shared.actuator import (
    DeviceActuator,
    clipboard_command,
    global_action_command,
    send_to_command,
    swipe_command,
    tap_command,
)
from devicepilot.shared.data_types import ActionDecision, ActionResult, SkillName, UIElement, UnknownActionError
from devicepilot.skills import heuristics
from devicepilot.utils.logger import StructuredLogger
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock, PollPolicy

SkillHandler = Callable[[ActionDecision, List[UIElement]], Awaitable[ActionResult]]


@dataclass(frozen=True)
class SkillTimings:
    """Settle delays and polling budgets used by the skills (seconds)."""

    submit_settle: float = 6.0
    content_poll: PollPolicy = field(default_factory=lambda: PollPolicy.fixed(5, 3.0, sleep_first=True))
    content_min_chars: int = 20
    scroll_poll: PollPolicy = field(default_factory=lambda: PollPolicy.fixed(10, 1.5, sleep_first=True))
    read_scroll_poll: PollPolicy = field(default_factory=lambda: PollPolicy.fixed(5, 1.5, sleep_first=True))
    compose_settle: float = 2.5
    field_tap_settle: float = 0.3
    clipboard_settle: float = 0.2


@dataclass(frozen=True)
class LikeAttempt:
    index: int
    x: int
    y: int
    count_before: Optional[int]


class LikeAttemptMemory:
    """
    Last like tap per comment ordinal, scoped to one device connection.
    """

    def __init__(self) -> None:
        self._attempts: Dict[int, LikeAttempt] = {}

    def record(self, attempt: LikeAttempt) -> None:
        self._attempts[attempt.index] = attempt

    def get(self, index: int) -> Optional[LikeAttempt]:
        return self._attempts.get(index)

    def clear(self) -> None:
        self._attempts.clear()

    def __len__(self) -> int:
        return len(self._attempts)


class SkillEngine:
    """
    Routes skill decisions to their routines through one exhaustive table.
    """

    def __init__(
        self,
        device: DeviceActuator,
        sanitizer: ScreenSanitizer,
        *,
        clock: Clock = SYSTEM_CLOCK,
        like_memory: Optional[LikeAttemptMemory] = None,
        timings: Optional[SkillTimings] = None,
    ) -> None:
        self._device = device
        self._sanitizer = sanitizer
        self._clock = clock
        self._likes = like_memory if like_memory is not None else LikeAttemptMemory()
        self._timings = timings or SkillTimings()
        self._logger = StructuredLogger(__name__)
        self._handlers: Dict[SkillName, SkillHandler] = {
            SkillName.READ_SCREEN: self.read_screen,
            SkillName.SUBMIT_MESSAGE: self.submit_message,
            SkillName.COPY_VISIBLE_TEXT: self.copy_visible_text,
            SkillName.WAIT_FOR_CONTENT: self.wait_for_content,
            SkillName.FIND_AND_TAP: self.find_and_tap,
            SkillName.COMPOSE_EMAIL: self.compose_email,
            SkillName.LIKE_NTH_COMMENT: self.like_nth_comment,
            SkillName.VERIFY_NTH_COMMENT_LIKE: self.verify_nth_comment_like,
        }
        missing = set(SkillName) - set(self._handlers)
        if missing:
            raise RuntimeError(f"Skill handlers missing for: {sorted(s.value for s in missing)}")

    @property
    def like_memory(self) -> LikeAttemptMemory:
        return self._likes

    async def execute(self, decision: ActionDecision, elements: Sequence[UIElement]) -> ActionResult:
        if not isinstance(decision.kind, SkillName):
            raise UnknownActionError(decision.kind)
        self._logger.info(f"Executing skill: {decision.kind.value}")
        return await self._handlers[decision.kind](decision, list(elements))

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _observe(self) -> List[UIElement]:
        return await self._sanitizer.observe(self._device.get_screen)

    async def _tap(self, element: UIElement) -> ActionResult:
        x, y = element.center
        return await self._device.execute(tap_command(x, y))

    async def _scroll_down(self, elements: Sequence[UIElement]) -> ActionResult:
        screen = heuristics.approximate_screen_size(elements)
        x1, y1, x2, y2 = heuristics.swipe_vector("up", screen)
        return await self._device.execute(swipe_command(x1, y1, x2, y2))

    async def _set_clipboard(self, text: str) -> ActionResult:
        return await self._device.execute(clipboard_command(text))

    # ------------------------------------------------------------------ #
    # Skills
    # ------------------------------------------------------------------ #

    async def read_screen(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        collected: List[str] = []
        seen = set()

        def collect(batch: Sequence[UIElement]) -> int:
            added = 0
            for text in heuristics.element_texts(batch):
                if text not in seen:
                    seen.add(text)
                    collected.append(text)
                    added += 1
            return added

        collect(elements)
        current = elements
        scrolls = 0
        for attempt, delay in self._timings.read_scroll_poll.schedule():
            await self._scroll_down(current)
            await self._clock.sleep(delay)
            scrolls = attempt
            current = await self._observe()
            added = collect(current)
            self._logger.debug(f"read_screen: scroll {attempt} found {added} new text elements")
            if added == 0:
                break

        combined = "\n".join(collected)
        if combined:
            await self._set_clipboard(combined)
        return ActionResult(
            success=True,
            message=(
                f"Read {len(collected)} text elements across {scrolls} scrolls "
                f"({len(combined)} chars), copied to clipboard"
            ),
            data={"text": combined},
        )

    async def submit_message(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        candidates = heuristics.rank_submit_candidates(elements)
        if not candidates:
            return ActionResult(
                success=False,
                message="Could not find a Send/Submit button: no enabled, clickable element on screen",
            )

        target = candidates[0]
        x, y = target.center
        label = target.text or target.id or "button"
        self._logger.info(f"submit_message: tapping {label!r} at ({x}, {y})")
        tapped = await self._tap(target)
        if not tapped.success:
            return ActionResult(success=False, message=f"Tap on {label!r} failed: {tapped.message}")

        await self._clock.sleep(self._timings.submit_settle)
        fresh = await self._observe()
        appeared = heuristics.new_texts(elements, fresh)
        if appeared:
            summary = "; ".join(appeared[:3])
            return ActionResult(
                success=True,
                message=f"Tapped {label!r} and new content appeared: {summary}",
                data={"x": x, "y": y, "new_text": summary},
            )
        return ActionResult(
            success=True,
            message=f"Tapped {label!r} at ({x}, {y}). No new content yet, may still be loading.",
            data={"x": x, "y": y},
        )

    async def copy_visible_text(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        selected = heuristics.select_text_elements(elements, decision.query)
        if not selected:
            message = (
                f"No text matching {decision.query!r} found on screen"
                if decision.query
                else "No readable text found on screen"
            )
            return ActionResult(success=False, message=message)

        combined = "\n".join(el.text for el in selected)
        self._logger.info(f"copy_visible_text: copying {len(selected)} elements ({len(combined)} chars)")
        copied = await self._set_clipboard(combined)
        if not copied.success:
            return ActionResult(success=False, message=f"Clipboard update failed: {copied.message}")
        return ActionResult(
            success=True,
            message=f"Copied {len(selected)} text elements to clipboard ({len(combined)} chars)",
            data={"text": combined},
        )

    async def wait_for_content(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        policy = self._timings.content_poll
        threshold = self._timings.content_min_chars
        appeared: List[str] = []

        async def collect() -> List[str]:
            return heuristics.new_texts(elements, await self._observe())

        def enough(texts: List[str]) -> bool:
            return sum(len(text) for text in texts) > threshold

        outcome = await policy.run(collect, enough, self._clock)
        appeared = outcome.value or []
        if outcome.satisfied:
            waited = sum(policy.delays[: outcome.attempts])
            summary = "; ".join(appeared[:5])
            return ActionResult(
                success=True,
                message=f"New content appeared after {waited:g}s: {summary}",
                data={"new_text": summary, "attempts": outcome.attempts},
            )
        return ActionResult(
            success=False,
            message=f"No new content appeared after {policy.total_delay:g}s",
            data={"attempts": outcome.attempts},
        )

    async def find_and_tap(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        query = decision.query or decision.text
        if not query:
            return ActionResult(success=False, message="find_and_tap requires a query")

        best = heuristics.best_text_match(elements, query)
        current = elements
        scrolls = 0
        if best is None:
            for attempt, delay in self._timings.scroll_poll.schedule():
                self._logger.info(
                    f"find_and_tap: {query!r} not visible, scrolling down ({attempt}/{self._timings.scroll_poll.attempts})"
                )
                await self._scroll_down(current)
                await self._clock.sleep(delay)
                scrolls = attempt
                current = await self._observe()
                best = heuristics.best_text_match(current, query)
                if best is not None:
                    break

        if best is None:
            available = ", ".join(heuristics.sample_texts(elements))
            return ActionResult(
                success=False,
                message=f"No element matching {query!r} found after {scrolls} scrolls. Available: {available}",
            )

        x, y = best.center
        tapped = await self._tap(best)
        if not tapped.success:
            return ActionResult(success=False, message=f"Found {best.text!r} but tap failed: {tapped.message}")
        return ActionResult(
            success=True,
            message=f"Found and tapped {best.text!r} at ({x}, {y})",
            data={"text": best.text, "x": x, "y": y, "scrolls": scrolls},
        )

    async def compose_email(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        address = decision.query or heuristics.extract_email(decision.text)
        body = decision.text
        if not address:
            return ActionResult(
                success=False,
                message='compose_email requires query (email address), e.g. {"action": "compose_email", "query": "user@example.com"}',
            )

        self._logger.info(f"compose_email: opening send-to intent for {address}")
        launched = await self._device.execute(send_to_command(address))
        if not launched.success:
            return ActionResult(success=False, message=f"Could not open email compose: {launched.message}")
        await self._clock.sleep(self._timings.compose_settle)

        editables = heuristics.editable_fields(await self._observe())
        if not editables:
            return ActionResult(success=False, message="Launched email compose but no editable fields appeared")

        body_field = heuristics.find_body_field(editables)
        if body_field is None:
            return ActionResult(success=False, message="Launched email compose but found no body field")
        bx, by = body_field.center
        await self._tap(body_field)
        await self._clock.sleep(self._timings.field_tap_settle)

        if body:
            await self._set_clipboard(body)
            await self._clock.sleep(self._timings.clipboard_settle)
        pasted = await self._device.execute(global_action_command("paste"))
        if not pasted.success:
            return ActionResult(
                success=True,
                message=f"Email compose opened to {address}; body paste not confirmed: {pasted.message}",
                data={"to": address, "x": bx, "y": by},
            )
        return ActionResult(
            success=True,
            message=f"Email compose opened to {address}, body pasted",
            data={"to": address, "x": bx, "y": by},
        )

    async def like_nth_comment(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        index = heuristics.parse_ordinal(decision.query, decision.text)
        rows = heuristics.collect_comment_like_rows(elements)
        if len(rows) < index:
            return ActionResult(
                success=False,
                message=f"Only found {len(rows)} visible comment like buttons; need {index}",
            )

        target = rows[index - 1]
        x, y = target.center
        count_before = heuristics.find_nearby_count(elements, target)
        self._logger.info(f"like_nth_comment: tapping comment #{index} like at ({x}, {y})")
        tapped = await self._tap(target)
        if not tapped.success:
            return ActionResult(success=False, message=f"Tap on comment #{index} like failed: {tapped.message}")
        self._likes.record(LikeAttempt(index=index, x=x, y=y, count_before=count_before))
        return ActionResult(
            success=True,
            message=f"Tapped like for visible comment #{index} at ({x}, {y})",
            data={"x": x, "y": y, "count_before": count_before},
        )

    async def verify_nth_comment_like(self, decision: ActionDecision, elements: List[UIElement]) -> ActionResult:
        index = heuristics.parse_ordinal(decision.query, decision.text)
        rows = heuristics.collect_comment_like_rows(elements)
        if len(rows) < index:
            return ActionResult(
                success=False,
                message=f"Could not verify: only found {len(rows)} visible comment like buttons; need {index}",
            )

        attempt = self._likes.get(index)
        target = rows[index - 1]
        if attempt is not None:
            nearest = heuristics.nearest_row(rows, attempt.y)
            if nearest is not None and nearest[1] <= heuristics.LIKE_RELOCATE_TOLERANCE_PX:
                target = nearest[0]

        selected = heuristics.like_selection_signal(target)
        count_now = heuristics.find_nearby_count(elements, target)
        count_changed = (
            attempt is not None
            and attempt.count_before is not None
            and count_now is not None
            and count_now != attempt.count_before
        )
        data = {
            "selected": selected,
            "count_before": attempt.count_before if attempt else None,
            "count_now": count_now,
        }

        # The selection flag is the primary signal; the counter only decides
        # when the row exposes no selection state.
        if selected:
            self._logger.debug(f"verify_nth_comment_like: #{index} selected (counter changed={count_changed})")
            return ActionResult(success=True, message=f"Comment #{index} like verified (selected)", data={**data, "signal": "selected"})
        if count_changed:
            return ActionResult(success=True, message=f"Comment #{index} like verified (count changed)", data={**data, "signal": "count"})
        return ActionResult(
            success=False,
            message=f"Comment #{index} like not confirmed yet; retry verification after the screen settles",
            data={**data, "signal": None},
        )


__all__ = [
    "LikeAttempt",
    "LikeAttemptMemory",
    "SkillEngine",
    "SkillTimings",
]
