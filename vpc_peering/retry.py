"""Invocation deadlines and bounded exponential backoff."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Tuple, Type, TypeVar

from vpc_peering.errors import DeadlineExceededError, PeeringError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:
    """
    A point in time an invocation must finish by.

    The clock and sleep functions are injectable so tests can run the retry
    loops without waiting.
    """

    def __init__(
        self,
        seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], None] = time.sleep,
    ):
        self.clock = clock
        self.sleeper = sleeper
        self.expires_at = clock() + max(seconds, 0.0)

    def remaining(self) -> float:
        return max(self.expires_at - self.clock(), 0.0)

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, step: str) -> None:
        """Raise DeadlineExceededError if no time is left to start ``step``."""
        if self.expired:
            raise DeadlineExceededError(f"Deadline exceeded before {step}")

    def check_after(self, step: str) -> None:
        """Raise DeadlineExceededError if ``step`` finished past the deadline."""
        if self.expired:
            raise DeadlineExceededError(f"Deadline exceeded during {step}")

    def sleep(self, seconds: float) -> None:
        self.sleeper(min(seconds, self.remaining()))

    def child(self, budget_seconds: float) -> "Deadline":
        """A nested deadline that never outlives this one."""
        return Deadline(min(budget_seconds, self.remaining()), clock=self.clock, sleeper=self.sleeper)


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 2.0
    cap_seconds: float = 30.0

    def delays(self) -> Iterator[float]:
        """Yield base, 2*base, 4*base, ... capped at cap_seconds, forever."""
        delay = self.base_seconds
        while True:
            yield min(delay, self.cap_seconds)
            delay *= 2


def retry_with_backoff(
    operation: Callable[[], T],
    deadline: Deadline,
    policy: BackoffPolicy,
    retry_on: Tuple[Type[Exception], ...],
    description: str,
    on_exhausted: Optional[Callable[[Exception], PeeringError]] = None,
) -> T:
    """
    Run ``operation`` until it succeeds, retrying ``retry_on`` errors.

    Stops when the next sleep would not fit in the deadline; the last error is
    then converted with ``on_exhausted`` (or re-raised as is).
    """
    attempt = 0
    delays = policy.delays()
    while True:
        attempt += 1
        deadline.check(description)
        try:
            return operation()
        except retry_on as e:
            delay = next(delays)
            if deadline.remaining() <= delay:
                logger.warning(f"{description}: giving up after {attempt} attempt(s): {e}")
                if on_exhausted is not None:
                    raise on_exhausted(e) from e
                raise
            logger.info(f"{description}: attempt {attempt} failed ({e}), retrying in {delay:.1f}s")
            deadline.sleep(delay)
