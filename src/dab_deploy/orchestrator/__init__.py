"""Retry-driven orchestration engine for eventually-consistent provisioning.

A run is a fixed, ordered plan of named steps. Steps reach the outside world
only through a :class:`CommandExecutor` (process spawn, exit code, combined
output) and report progress only through callbacks; the presentation layer
lives elsewhere. Waiting for one control plane's change to become visible to
another goes through the single ``poll_until``/``retry`` implementation with
an explicit :class:`RetryPolicy`, and failures are routed by one ordered
classification table into retryable, non-retryable and fatal.
"""

from dab_deploy.orchestrator.context import (
    OrchestrationCallbacks,
    OrchestrationContext,
    RetryEvent,
)
from dab_deploy.orchestrator.errors import (
    CommandFailedError,
    ConfigurationError,
    InvalidNameError,
    NonRetryableError,
    OrchestrationError,
    RetryExhaustedError,
    StepStateError,
)
from dab_deploy.orchestrator.retry import PollResult, RetryPolicy, poll_until, retry
from dab_deploy.orchestrator.rollback import RollbackCoordinator
from dab_deploy.orchestrator.sequencer import DeploymentPlan, DeploymentSequencer, PlanStep
from dab_deploy.orchestrator.tracker import StepTracker

__all__ = [
    "CommandFailedError",
    "ConfigurationError",
    "DeploymentPlan",
    "DeploymentSequencer",
    "InvalidNameError",
    "NonRetryableError",
    "OrchestrationCallbacks",
    "OrchestrationContext",
    "OrchestrationError",
    "PlanStep",
    "PollResult",
    "RetryEvent",
    "RetryExhaustedError",
    "RetryPolicy",
    "RollbackCoordinator",
    "StepStateError",
    "StepTracker",
    "poll_until",
    "retry",
]
