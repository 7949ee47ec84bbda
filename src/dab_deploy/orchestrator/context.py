"""Per-run orchestration context threaded through every step."""

from __future__ import annotations

import json
import logging
import random
import shlex
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, NoReturn, TypeVar, cast

from dab_deploy.orchestrator.backend import CommandExecutor
from dab_deploy.orchestrator.errors import (
    CommandFailedError,
    NonRetryableError,
    RetryExhaustedError,
)
from dab_deploy.orchestrator.failure_classifier import (
    NAME_CONFLICT_RULE,
    FailureClassification,
    classify,
)
from dab_deploy.orchestrator.models import (
    CommandInvocation,
    DeploymentState,
    FailureClass,
    RunReport,
    StepStatus,
)
from dab_deploy.orchestrator.retry import RetryPolicy, poll_until
from dab_deploy.orchestrator.tracker import StepCallback, StepTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ERROR_EXCERPT_CHARS = 400


@dataclass(frozen=True, slots=True)
class RetryEvent:
    """Retry notification forwarded to presentation callbacks."""

    step: str | None
    attempt: int
    delay_seconds: float


@dataclass(slots=True)
class OrchestrationCallbacks:
    """Presentation hooks; none of them influence control flow."""

    on_step: StepCallback | None = None
    on_retry: Callable[[RetryEvent], None] | None = None
    on_complete: Callable[[RunReport], None] | None = None


@dataclass(slots=True)
class OrchestrationContext:
    """Everything one run needs: executor, tracker, state and time sources."""

    executor: CommandExecutor
    callbacks: OrchestrationCallbacks = field(default_factory=OrchestrationCallbacks)
    state: DeploymentState = field(default_factory=DeploymentState)
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    rng: random.Random = field(default_factory=random.Random)
    tracker: StepTracker = field(init=False)

    def __post_init__(self) -> None:
        self.tracker = StepTracker(on_step=self.callbacks.on_step, clock=self.clock)

    @property
    def log_path(self) -> str | None:
        return getattr(self.executor, "log_path", None)

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        redact_output: bool = False,
    ) -> CommandInvocation:
        """Execute ``argv``; with ``check`` a non-zero exit raises by classification."""

        invocation = self.executor.execute(argv, redact_output=redact_output)
        if check and not invocation.ok:
            raise_for_invocation(invocation)
        return invocation

    def run_json(self, argv: Sequence[str], *, redact_output: bool = False) -> Any:
        """Execute ``argv`` and parse its output as JSON (``--output json``)."""

        invocation = self.run(argv, redact_output=redact_output)
        return parse_json_output(invocation)

    def retry_command(
        self,
        argv: Sequence[str],
        policy: RetryPolicy,
        *,
        what: str,
        confirm: Sequence[str] | None = None,
    ) -> CommandInvocation:
        """Re-run ``argv`` while its failures classify as retryable.

        A create can land on the control plane even though its attempt
        reported a transient error. With ``confirm`` set, a name conflict on
        a later attempt is taken as that earlier attempt's success, and the
        ``confirm`` command (a ``show`` of the same resource) is run and
        returned instead.
        """

        failures: list[CommandInvocation] = []

        def _attempt() -> CommandInvocation | None:
            invocation = self.executor.execute(argv)
            if invocation.ok:
                return invocation
            classification = classify(invocation.output, invocation.exit_code)
            if classification.failure_class is FailureClass.RETRYABLE:
                logger.debug("Retryable failure: %s", classification.describe())
                failures.append(invocation)
                return None
            conflict = classification.matched_rule == NAME_CONFLICT_RULE
            if confirm is not None and failures and conflict:
                self.tracker.info(f"{what} already exists after a retried create; confirming.")
                return self.run(confirm)
            raise_for_invocation(invocation)

        invocation = self.poll(
            _attempt,
            lambda result: result is not None,
            policy,
            what=what,
            last_failure=lambda: failures[-1] if failures else None,
        )
        return cast(CommandInvocation, invocation)

    def retry_json(
        self,
        argv: Sequence[str],
        policy: RetryPolicy,
        *,
        what: str,
        confirm: Sequence[str] | None = None,
    ) -> Any:
        return parse_json_output(self.retry_command(argv, policy, what=what, confirm=confirm))

    def poll(  # noqa: PLR0913
        self,
        fetch: Callable[[], T],
        predicate: Callable[[T], bool],
        policy: RetryPolicy,
        *,
        what: str,
        last_failure: Callable[[], CommandInvocation | None] | None = None,
    ) -> T:
        """Wait for eventual consistency; raise ``RetryExhaustedError`` on give-up."""

        def _fetch() -> T:
            current = self.tracker.current
            if current is not None and current.status is StepStatus.RETRYING:
                self.tracker.resume()
            return fetch()

        result = poll_until(
            _fetch,
            predicate,
            policy,
            self._on_retry,
            sleep=self.sleep,
            clock=self.clock,
            rng=self.rng,
        )
        if not result.accepted:
            failure = last_failure() if last_failure is not None else None
            raise retry_exhausted(what, result.attempts, failure)
        return cast(T, result.value)

    def _on_retry(self, attempt: int, delay_seconds: float) -> None:
        current = self.tracker.current
        if current is not None:
            self.tracker.retrying(f"attempt {attempt} failed, retrying in {delay_seconds:.0f}s")
        if self.callbacks.on_retry is not None:
            self.callbacks.on_retry(
                RetryEvent(
                    step=current.name if current is not None else None,
                    attempt=attempt,
                    delay_seconds=delay_seconds,
                ),
            )


def raise_for_invocation(invocation: CommandInvocation) -> NoReturn:
    """Raise the error matching the classified failure of ``invocation``."""

    classification = classify(invocation.output, invocation.exit_code)
    message = _describe_failure(invocation, classification)
    if classification.failure_class is FailureClass.NON_RETRYABLE:
        raise NonRetryableError(
            message,
            invocation=invocation,
            classification=classification,
        )
    raise CommandFailedError(message, invocation=invocation, classification=classification)


def retry_exhausted(
    what: str,
    attempts: int,
    failure: CommandInvocation | None = None,
) -> RetryExhaustedError:
    """Build the give-up error, carrying the last retryable failure when there is one."""

    message = f"Gave up waiting for {what} after {attempts} attempt(s)."
    if failure is None:
        return RetryExhaustedError(message)
    classification = classify(failure.output, failure.exit_code)
    return RetryExhaustedError(
        f"{message} Last failure: {_describe_failure(failure, classification)}",
        invocation=failure,
        classification=classification,
    )


def _describe_failure(
    invocation: CommandInvocation,
    classification: FailureClassification,
) -> str:
    command = shlex.join(invocation.argv[:3])
    return (
        f"`{command} ...` exited with {invocation.exit_code} "
        f"[{classification.describe()}]: {_excerpt(invocation.output)}"
    )


def parse_json_output(invocation: CommandInvocation) -> Any:
    text = invocation.output.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as error:
        raise CommandFailedError(
            f"Expected JSON output from `{shlex.join(invocation.argv[:3])} ...`: {error}",
            invocation=invocation,
        ) from error


def _excerpt(output: str) -> str:
    compact = " ".join(output.split())
    if len(compact) <= _ERROR_EXCERPT_CHARS:
        return compact
    return compact[:_ERROR_EXCERPT_CHARS] + "..."
