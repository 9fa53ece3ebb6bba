"""
Utilities for constructing reasoning requests from the rolling agent state.

The builder owns the user prompt template and the bounded context window: the
goal plus only the most recent steps, never the full history.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from devicepilot.orchestrator.data_types import DEFAULT_CONTEXT_STEPS, AgentStep
from devicepilot.orchestrator.system_prompts import AGENT_SYSTEM_PROMPT, STUCK_DIRECTIVE
from devicepilot.orchestrator.validation import validate_image_input, validate_positive_int
from devicepilot.shared.data_types import UIElement
from devicepilot.utils.logger import StructuredLogger

STEP_USER_PROMPT = """
# Goal

{goal}

## Step {step_number} of {max_steps}

## Current screen elements ({element_count})

```json
{elements}
```

## Recent steps (oldest first)

```json
{recent_steps}
```
{stuck_directive}
Choose the next action with the `next_action` tool.
"""


@dataclass(frozen=True)
class ReasoningRequest:
    """Messages ready to send to the reasoning service for one step."""

    messages: List[Dict[str, Any]]
    user_prompt: str
    stuck: bool
    history_steps: int


@dataclass
class AgentInputBuilder:
    """
    Builds per-step reasoning requests.

    Responsibilities:
        * render the goal, elements and recent steps into the prompt template
        * bound the history to the last `context_steps` steps
        * inject the stuck directive and attach a screenshot when present
    """

    context_steps: int = DEFAULT_CONTEXT_STEPS
    logger: StructuredLogger = field(default_factory=lambda: StructuredLogger(__name__))

    def __post_init__(self) -> None:
        validate_positive_int("context_steps", self.context_steps)

    def recent_steps(self, steps: Sequence[AgentStep]) -> List[AgentStep]:
        return list(steps[-self.context_steps :])

    def build(
        self,
        *,
        goal: str,
        step_number: int,
        max_steps: int,
        elements: Sequence[UIElement],
        steps: Sequence[AgentStep],
        stuck_count: int = 0,
        screenshot_uri: Optional[str] = None,
    ) -> ReasoningRequest:
        validate_image_input(screenshot_uri)
        window = self.recent_steps(steps)
        stuck = stuck_count > 0
        prompt = STEP_USER_PROMPT.format(
            goal=goal,
            step_number=step_number,
            max_steps=max_steps,
            element_count=len(elements),
            elements=json.dumps([el.to_payload() for el in elements], ensure_ascii=False, indent=1),
            recent_steps=json.dumps([summarize_step(step) for step in window], ensure_ascii=False, indent=1),
            stuck_directive=("\n" + STUCK_DIRECTIVE.format(count=stuck_count) + "\n") if stuck else "",
        )
        self.logger.info_lines(
            "Building reasoning request:",
            [
                f"step={step_number}/{max_steps}",
                f"elements={len(elements)}",
                f"history_steps={len(window)}",
                f"stuck={stuck}",
                f"has_screenshot={bool(screenshot_uri)}",
            ],
        )

        user_content: Any = prompt
        if screenshot_uri:
            user_content = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": screenshot_uri}},
            ]
        messages = [
            {"role": "system", "content": AGENT_SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ]
        return ReasoningRequest(messages=messages, user_prompt=prompt, stuck=stuck, history_steps=len(window))


def summarize_step(step: AgentStep) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "step": step.step_number,
        "action": step.decision.to_payload() if step.decision is not None else None,
        "success": step.result.success,
        "result": step.result.message,
    }
    if step.stuck:
        summary["stuck"] = True
    return summary


__all__ = ["AgentInputBuilder", "ReasoningRequest", "STEP_USER_PROMPT", "summarize_step"]
