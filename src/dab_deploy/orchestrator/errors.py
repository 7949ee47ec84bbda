"""Error taxonomy for orchestration runs."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dab_deploy.orchestrator.failure_classifier import FailureClassification
    from dab_deploy.orchestrator.models import CommandInvocation


class ConfigurationError(ValueError):
    """Invalid configuration detected before any external call."""


class InvalidNameError(ConfigurationError):
    """Resource name still violates its rule after sanitization."""

    def __init__(self, name: str, sanitized: str, reason: str) -> None:
        super().__init__(f"Invalid resource name {name!r} (sanitized {sanitized!r}): {reason}")
        self.name = name
        self.sanitized = sanitized
        self.reason = reason


class NonRetryableError(RuntimeError):
    """Failure that waiting cannot fix; aborts a retry loop on first sight."""

    def __init__(
        self,
        message: str,
        *,
        invocation: CommandInvocation | None = None,
        classification: FailureClassification | None = None,
    ) -> None:
        super().__init__(message)
        self.invocation = invocation
        self.classification = classification


class OrchestrationError(RuntimeError):
    """Fatal error that stops the sequencer."""


class CommandFailedError(OrchestrationError):
    """External command exited non-zero with a fatal classification."""

    def __init__(
        self,
        message: str,
        *,
        invocation: CommandInvocation,
        classification: FailureClassification | None = None,
    ) -> None:
        super().__init__(message)
        self.invocation = invocation
        self.classification = classification


class RetryExhaustedError(OrchestrationError):
    """Retry budget ran out before the action succeeded.

    ``invocation`` and ``classification`` describe the last retryable
    failure, when the retried action was an external command.
    """

    def __init__(
        self,
        message: str,
        *,
        invocation: CommandInvocation | None = None,
        classification: FailureClassification | None = None,
    ) -> None:
        super().__init__(message)
        self.invocation = invocation
        self.classification = classification


class StepStateError(OrchestrationError):
    """Step tracker received a transition its state machine forbids."""
