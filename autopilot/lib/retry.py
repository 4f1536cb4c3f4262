"""Bounded attempt runner shared by the phase engine and the integration pipeline.

A ``RetryPolicy`` says how many attempts a step gets, how long to wait
before retrying after a back-off signal, and what happens when the
attempts run out: halt the run, or force the step forward.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class Exhaustion(Enum):
    FATAL = "fatal"
    FORCE_ADVANCE = "force_advance"


class AttemptStatus(Enum):
    SUCCEEDED = "succeeded"
    RETRY = "retry"  # Try again immediately
    BACKOFF = "backoff"  # Wait per policy.backoff, then try again


def linear_backoff(base_seconds: float) -> Callable[[int], float]:
    """Wait base * attempt seconds after the given attempt."""
    return lambda attempt: base_seconds * attempt


def exponential_backoff(base_seconds: float) -> Callable[[int], float]:
    """Wait base * 2**(attempt - 1) seconds after the given attempt."""
    return lambda attempt: base_seconds * (2 ** (attempt - 1))


def no_backoff(attempt: int) -> float:
    return 0.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff: Callable[[int], float] = no_backoff
    on_exhaustion: Exhaustion = Exhaustion.FATAL

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")


@dataclass
class RetriesExhausted(Exception):
    """A FATAL policy ran out of attempts."""
    label: str
    attempts: int

    def __str__(self):
        return f"{self.label}: failed after {self.attempts} attempts"


@dataclass
class RetryOutcome:
    succeeded: bool
    attempts: int
    force_advanced: bool = False
    statuses: list[AttemptStatus] = field(default_factory=list)


def run_attempts(
    policy: RetryPolicy,
    attempt_fn: Callable[[int], AttemptStatus],
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome:
    """Call ``attempt_fn(attempt)`` for attempt = 1..max_attempts until it succeeds.

    Returns a succeeded outcome on the first SUCCEEDED status. On exhaustion
    a FORCE_ADVANCE policy returns ``force_advanced=True``; a FATAL policy
    raises RetriesExhausted. No wait follows the final attempt.
    """
    statuses: list[AttemptStatus] = []
    for attempt in range(1, policy.max_attempts + 1):
        status = attempt_fn(attempt)
        statuses.append(status)
        if status == AttemptStatus.SUCCEEDED:
            return RetryOutcome(succeeded=True, attempts=attempt, statuses=statuses)

        if attempt == policy.max_attempts:
            break

        if status == AttemptStatus.BACKOFF:
            delay = policy.backoff(attempt)
            if delay > 0:
                logger.info(f"{label}: backing off {delay:.0f}s before attempt {attempt + 1}")
                sleep(delay)
        else:
            logger.info(f"{label}: retrying (attempt {attempt + 1}/{policy.max_attempts})")

    if policy.on_exhaustion == Exhaustion.FORCE_ADVANCE:
        logger.warning(f"{label}: exhausted {policy.max_attempts} attempts, forcing advance")
        return RetryOutcome(
            succeeded=False,
            attempts=policy.max_attempts,
            force_advanced=True,
            statuses=statuses,
        )

    raise RetriesExhausted(label=label, attempts=policy.max_attempts)
