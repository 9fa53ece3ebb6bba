"""Tool definitions exposed to the reasoning model."""

from typing import Any, Dict, List

from devicepilot.shared.data_types import REASONING_ACTIONS, SkillName

NEXT_ACTION_TOOL_NAME = "next_action"


def decision_names() -> List[str]:
    """Every action/skill name the model may choose, primitives first."""
    return [kind.value for kind in REASONING_ACTIONS] + [skill.value for skill in SkillName]


def next_action_tool() -> Dict[str, Any]:
    """Tool the model calls once per step to choose the next device action.

    Exactly one of the primitive actions or skills is selected through the
    `action` enum. Field usage by action:
    - tap / long_press: `coordinates` from an element's center, or `query`
      naming the visible text to tap.
    - type: `text` to type into the focused field.
    - swipe / scroll: `direction` (up, down, left, right).
    - launch: `package` name of the app.
    - find_and_tap / copy_visible_text: `query` text.
    - compose_email: `query` recipient address, `text` body.
    - like_nth_comment / verify_nth_comment_like: `query` ordinal (e.g. "3").
    - done: `reason` summarizing why the goal is complete.
    """

    return {
        "type": "function",
        "function": {
            "name": NEXT_ACTION_TOOL_NAME,
            "description": (
                "Choose the single next action to perform on the device. Ground the choice in the "
                "current screen elements and recent steps. Use 'done' only when the goal is visibly "
                "complete, with the evidence in 'reason'."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "action": {
                        "type": "string",
                        "enum": decision_names(),
                        "description": "Primitive action or skill name, verbatim.",
                    },
                    "reason": {
                        "type": "string",
                        "description": "One or two sentences explaining the choice.",
                    },
                    "coordinates": {
                        "type": "array",
                        "items": {"type": "integer"},
                        "minItems": 2,
                        "maxItems": 2,
                        "description": "[x, y] taken from an element center.",
                    },
                    "query": {
                        "type": "string",
                        "description": "Visible text to target, recipient address, or comment ordinal.",
                    },
                    "text": {
                        "type": "string",
                        "description": "Text to type, or the body of an email.",
                    },
                    "package": {
                        "type": "string",
                        "description": "App package name for 'launch'.",
                    },
                    "direction": {
                        "type": "string",
                        "enum": ["up", "down", "left", "right"],
                        "description": "Direction for 'swipe' or 'scroll'.",
                    },
                },
                "required": ["action", "reason"],
                "additionalProperties": False,
            },
        },
    }


__all__ = ["NEXT_ACTION_TOOL_NAME", "decision_names", "next_action_tool"]
