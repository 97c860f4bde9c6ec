"""
Retry policy for network operations.

Exponential backoff (base_delay * 2**attempt) with a fixed attempt budget.
Only TransientNetworkError is retried; exhausting the budget re-raises the
last error to the caller of that one operation.
"""

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.api.exceptions import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.25
    max_delay: float = 5.0

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.attempts)),
            wait=wait_exponential(multiplier=self.base_delay, min=0, max=self.max_delay),
            retry=retry_if_exception_type(TransientNetworkError),
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    name = getattr(retry_state.fn, "__name__", "call")
    logger.debug(f"Retrying {name} after attempt {retry_state.attempt_number}: {error}")

