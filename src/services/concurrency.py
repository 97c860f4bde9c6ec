"""
Bounded-concurrency helpers.

Work is fanned out through a ThreadPoolExecutor of fixed size; a soft
deadline is checked cooperatively before each unit starts, and a unit in
flight is always allowed to finish. Every unit yields an Outcome instead
of raising, so one failure never aborts its siblings.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class Deadline:
    """Soft wall-clock budget. `seconds=None` means no deadline."""

    def __init__(self, seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    @property
    def bounded(self) -> bool:
        return self._expires_at is not None

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())


@dataclass
class Outcome(Generic[T]):
    """Result of one unit of work: a value, an error, or skipped by the deadline."""

    value: Optional[T] = None
    error: Optional[BaseException] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped

    @classmethod
    def run(cls, fn: Callable[..., T], *args: Any, deadline: Optional[Deadline] = None) -> "Outcome[T]":
        if deadline is not None and deadline.expired():
            return cls(skipped=True)
        try:
            return cls(value=fn(*args))
        except Exception as e:
            return cls(error=e)


def map_limit(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T], R],
    deadline: Optional[Deadline] = None,
) -> List[Outcome[R]]:
    """
    Apply fn to every item with at most `limit` calls in flight.

    Results are returned in input order.
    """
    if not items:
        return []
    workers = max(1, min(limit, len(items)))
    if workers == 1:
        return [Outcome.run(fn, item, deadline=deadline) for item in items]
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(Outcome.run, fn, item, deadline=deadline) for item in items]
        return [future.result() for future in futures]
