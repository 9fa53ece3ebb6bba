"""Validation helpers for orchestrator data models.

Centralizes input validation so the dataclass module stays focused on
structure. Functions raise ValueError/TypeError on invalid inputs and
otherwise return None.
"""

from typing import Any, Optional


def validate_goal(goal: Any) -> None:
    if not isinstance(goal, str) or not goal.strip():
        raise ValueError("goal must be a non-empty string.")


def validate_identifier(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string.")


def validate_max_steps(max_steps: Any) -> None:
    if isinstance(max_steps, bool) or not isinstance(max_steps, int) or max_steps <= 0:
        raise ValueError("max_steps must be a positive integer.")


def validate_positive_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer.")


def validate_timeout(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{name} must be a positive number of seconds.")


def validate_step_number(step_number: Any) -> None:
    if isinstance(step_number, bool) or not isinstance(step_number, int) or step_number < 1:
        raise ValueError("step_number must be an integer >= 1.")


def validate_screen_hash(screen_hash: Any) -> None:
    if not isinstance(screen_hash, str):
        raise TypeError("screen_hash must be a string.")


def validate_image_input(image_input: Optional[str]) -> None:
    if image_input is None:
        return
    if not isinstance(image_input, str):
        raise TypeError("image_input must be a base64 data URI string.")
    if not image_input.startswith("data:"):
        raise ValueError(
            "image_input must be a base64 data URI encoded string (e.g., starting with 'data:')."
        )

