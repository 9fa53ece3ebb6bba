"""
Clock abstraction and bounded poll policies.

Every skill settle delay, perception retry and polling loop goes through a
`Clock` so tests can swap in a fake one and inspect the requested sleeps.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Iterator, Optional, Tuple, TypeVar

T = TypeVar("T")


class Clock:
    """Wall clock backed by asyncio."""

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()

    def time(self) -> float:
        return time.time()


SYSTEM_CLOCK = Clock()


@dataclass(frozen=True)
class PollOutcome(Generic[T]):
    """Result of running a `PollPolicy`."""

    value: Optional[T]
    attempts: int
    satisfied: bool


@dataclass(frozen=True)
class PollPolicy:
    """
    Explicit retry schedule: one attempt per entry in `delays`.

    With `sleep_first=False` the check runs immediately and the delay is paid
    after a rejected attempt (perception retries). With `sleep_first=True` the
    delay is paid before each check (content polling).
    """

    delays: Tuple[float, ...]
    sleep_first: bool = False

    def __post_init__(self) -> None:
        if not self.delays:
            raise ValueError("delays must contain at least one entry.")
        if any(delay < 0 for delay in self.delays):
            raise ValueError("delays must be non-negative.")

    @classmethod
    def fixed(cls, attempts: int, interval: float, *, sleep_first: bool = False) -> "PollPolicy":
        if attempts <= 0:
            raise ValueError("attempts must be a positive integer.")
        return cls(delays=tuple([float(interval)] * attempts), sleep_first=sleep_first)

    @property
    def attempts(self) -> int:
        return len(self.delays)

    @property
    def total_delay(self) -> float:
        return float(sum(self.delays))

    def schedule(self) -> Iterator[Tuple[int, float]]:
        """Yield `(attempt_number, delay)` pairs, attempt numbers starting at 1."""
        for index, delay in enumerate(self.delays, start=1):
            yield index, delay

    async def run(
        self,
        check: Callable[[], Awaitable[T]],
        accept: Callable[[T], bool],
        clock: Clock = SYSTEM_CLOCK,
    ) -> PollOutcome[T]:
        value: Optional[T] = None
        for attempt, delay in self.schedule():
            if self.sleep_first:
                await clock.sleep(delay)
            value = await check()
            if accept(value):
                return PollOutcome(value=value, attempts=attempt, satisfied=True)
            if not self.sleep_first and attempt < self.attempts:
                await clock.sleep(delay)
        return PollOutcome(value=value, attempts=self.attempts, satisfied=False)


__all__ = ["Clock", "SYSTEM_CLOCK", "PollOutcome", "PollPolicy"]
