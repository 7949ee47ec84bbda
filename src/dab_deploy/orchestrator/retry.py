"""Generic retry loop and eventual-consistency polling.

Deadline semantics: a sleep never crosses the deadline. When the elapsed time
plus the next delay reaches the deadline the loop gives up without sleeping,
so no attempt ever begins after the deadline has elapsed.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from dab_deploy.orchestrator.errors import ConfigurationError
from dab_deploy.orchestrator.models import TerminationMode

logger = logging.getLogger(__name__)

JITTER_MAX_SECONDS = 4.0

T = TypeVar("T")

RetryCallback = Callable[[int, float], None]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry budget for one operation; exactly one termination mode is set."""

    max_attempts: int | None = None
    deadline_seconds: float | None = None
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    exponential: bool = False
    jitter: bool = False

    @classmethod
    def count(
        cls,
        max_attempts: int,
        *,
        base_delay_seconds: float = 5.0,
        max_delay_seconds: float = 60.0,
        exponential: bool = False,
        jitter: bool = False,
    ) -> RetryPolicy:
        return cls(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            exponential=exponential,
            jitter=jitter,
        )

    @classmethod
    def deadline(
        cls,
        deadline_seconds: float,
        *,
        base_delay_seconds: float = 5.0,
        max_delay_seconds: float = 60.0,
        exponential: bool = False,
        jitter: bool = False,
    ) -> RetryPolicy:
        return cls(
            deadline_seconds=deadline_seconds,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            exponential=exponential,
            jitter=jitter,
        )

    @property
    def termination_mode(self) -> TerminationMode:
        """Validate the policy and return its active termination mode."""

        has_count = self.max_attempts is not None
        has_deadline = self.deadline_seconds is not None
        if has_count == has_deadline:
            raise ConfigurationError(
                "RetryPolicy needs exactly one of max_attempts or deadline_seconds.",
            )
        if has_count and self.max_attempts < 1:  # type: ignore[operator]
            raise ConfigurationError("RetryPolicy.max_attempts must be >= 1.")
        if has_deadline and self.deadline_seconds <= 0:  # type: ignore[operator]
            raise ConfigurationError("RetryPolicy.deadline_seconds must be > 0.")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ConfigurationError("RetryPolicy delays must be >= 0.")
        return TerminationMode.COUNT if has_count else TerminationMode.DEADLINE

    def base_delay(self, attempt: int) -> float:
        """Pre-jitter delay after failed attempt number ``attempt`` (1-based)."""

        if not self.exponential:
            return self.base_delay_seconds
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(attempt - 1, 0)))

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        delay_seconds = self.base_delay(attempt)
        if self.jitter:
            delay_seconds += (rng or random).random() * JITTER_MAX_SECONDS  # noqa: S311
        return delay_seconds


def retry(  # noqa: PLR0913
    action: Callable[[], bool],
    policy: RetryPolicy,
    on_retry: RetryCallback | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    rng: random.Random | None = None,
) -> bool:
    """Invoke ``action`` until it returns True or the policy gives up.

    ``NonRetryableError`` and any other exception raised by ``action``
    propagate immediately. ``on_retry`` is called with the failed attempt
    number and the upcoming delay, once per retry, and has no effect on
    control flow.
    """

    mode = policy.termination_mode
    started = clock()
    attempt = 0
    while True:
        attempt += 1
        if action():
            return True

        max_attempts = policy.max_attempts or 0
        if mode is TerminationMode.COUNT and attempt >= max_attempts:
            logger.debug("Retry budget exhausted after %d attempts", attempt)
            return False

        delay_seconds = policy.delay(attempt, rng)
        if mode is TerminationMode.DEADLINE:
            elapsed = clock() - started
            if elapsed + delay_seconds >= policy.deadline_seconds:  # type: ignore[operator]
                logger.debug(
                    "Retry deadline reached after %d attempts (%.1fs elapsed)",
                    attempt,
                    elapsed,
                )
                return False

        if on_retry is not None:
            on_retry(attempt, delay_seconds)
        sleep(delay_seconds)


@dataclass(frozen=True, slots=True)
class PollResult(Generic[T]):
    """Outcome of ``poll_until``; ``value`` is meaningful only when ``accepted``."""

    accepted: bool
    value: T | None = None
    attempts: int = 0


def poll_until(  # noqa: PLR0913
    fetch: Callable[[], T],
    predicate: Callable[[T], bool],
    policy: RetryPolicy,
    on_retry: RetryCallback | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    rng: random.Random | None = None,
) -> PollResult[T]:
    """Fetch a value until ``predicate`` accepts it or the policy gives up.

    An accepted ``None`` is still an accepted value, so callers check
    ``accepted`` rather than the value itself.
    """

    fetched: list[T] = []

    def _attempt() -> bool:
        value = fetch()
        fetched.append(value)
        return predicate(value)

    if retry(_attempt, policy, on_retry, sleep=sleep, clock=clock, rng=rng):
        return PollResult(accepted=True, value=fetched[-1], attempts=len(fetched))
    return PollResult(accepted=False, attempts=len(fetched))
