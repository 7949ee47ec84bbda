"""Domain models for orchestration runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class StepStatus(str, Enum):
    """Lifecycle states of one orchestrated step."""

    NOT_STARTED = "not_started"
    STARTED = "started"
    RETRYING = "retrying"
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class TerminationMode(str, Enum):
    """How a retry loop decides to give up."""

    COUNT = "count"
    DEADLINE = "deadline"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    FATAL = "fatal"


class DeploymentMode(str, Enum):
    """Which plan a run executes."""

    CREATE = "create"
    UPDATE = "update"


class RollbackAction(str, Enum):
    """What the rollback coordinator did for a failed run."""

    DELETE_REQUESTED = "delete_requested"
    PRESERVED = "preserved"
    NOTHING_TO_ROLL_BACK = "nothing_to_roll_back"


@dataclass(frozen=True, slots=True)
class CommandInvocation:
    """One finished external command."""

    argv: tuple[str, ...]
    exit_code: int
    output: str
    timestamp: datetime
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class Step:
    """Mutable progress record for one named step."""

    name: str
    estimate_seconds: float | None = None
    status: StepStatus = StepStatus.NOT_STARTED
    started_at: datetime | None = None
    elapsed_seconds: float = 0.0
    detail: str | None = None
    attempts: int = 0
    notes: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class StepEvent:
    """Step transition forwarded to presentation callbacks."""

    step: str | None
    status: StepStatus
    detail: str | None
    elapsed_seconds: float
    attempt: int


@dataclass(slots=True)
class DeploymentState:
    """Root aggregate of one run.

    Rollback only ever acts on ``created_aggregate_id``; children created
    inside the aggregate are removed with it.
    """

    mode: DeploymentMode = DeploymentMode.CREATE
    created_aggregate_id: str | None = None
    current_step_index: int = -1
    failure_reason: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)

    def require(self, key: str) -> str:
        """Return an output produced by an earlier step."""

        try:
            return self.outputs[key]
        except KeyError as error:
            raise KeyError(f"Output {key!r} was not produced by an earlier step.") from error


@dataclass(slots=True)
class DeploymentSummary:
    """Terminal artifact of a successful run."""

    mode: DeploymentMode
    resource_group: str
    location: str
    resources: dict[str, str]
    endpoints: dict[str, str]
    image: str | None
    elapsed_seconds: float
    completed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "resource_group": self.resource_group,
            "location": self.location,
            "resources": dict(self.resources),
            "endpoints": dict(self.endpoints),
            "image": self.image,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass(slots=True)
class RollbackOutcome:
    """Result of the compensating action for a failed run."""

    action: RollbackAction
    aggregate_id: str | None = None
    invocation: CommandInvocation | None = None
    detail: str | None = None


@dataclass(slots=True)
class RunReport:
    """Final report of one sequencer run."""

    ok: bool
    mode: DeploymentMode
    steps: list[Step]
    elapsed_seconds: float
    log_path: str | None = None
    failed_step: str | None = None
    failure_reason: str | None = None
    rollback: RollbackOutcome | None = None
    summary: DeploymentSummary | None = None
