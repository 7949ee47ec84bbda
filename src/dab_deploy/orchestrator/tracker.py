"""Sequential step tracker with current-step attribution."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from dab_deploy.orchestrator.errors import StepStateError
from dab_deploy.orchestrator.models import Step, StepEvent, StepStatus, utc_now

logger = logging.getLogger(__name__)

StepCallback = Callable[[StepEvent], None]

_OPEN_STATUSES = frozenset({StepStatus.STARTED, StepStatus.RETRYING})


class StepTracker:
    """Record named steps in order; at most one step is open at a time.

    ``current`` stays set from ``begin`` until ``succeed`` or ``fail``, so an
    exception raised several calls deep can still be attributed to the step
    that was running.
    """

    def __init__(
        self,
        *,
        on_step: StepCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_step = on_step
        self._clock = clock
        self._steps: list[Step] = []
        self._current: Step | None = None
        self._current_started: float = 0.0

    @property
    def steps(self) -> list[Step]:
        return list(self._steps)

    @property
    def current(self) -> Step | None:
        return self._current

    def get(self, name: str) -> Step:
        for step in self._steps:
            if step.name == name:
                return step
        raise KeyError(name)

    def reset(self) -> None:
        self._steps = []
        self._current = None

    def begin(self, name: str, estimate_seconds: float | None = None) -> Step:
        if self._current is not None:
            raise StepStateError(
                f"Cannot begin {name!r}: step {self._current.name!r} is still open.",
            )
        step = Step(
            name=name,
            estimate_seconds=estimate_seconds,
            status=StepStatus.STARTED,
            started_at=utc_now(),
            attempts=1,
        )
        self._steps.append(step)
        self._current = step
        self._current_started = self._clock()
        self._emit(step, step.status, None)
        return step

    def retrying(self, detail: str | None = None) -> None:
        step = self._require_open("retrying")
        step.status = StepStatus.RETRYING
        step.attempts += 1
        step.detail = detail
        self._touch(step)
        self._emit(step, StepStatus.RETRYING, detail)

    def resume(self) -> None:
        """Move a retrying step back to started as its next attempt begins."""

        step = self._current
        if step is None or step.status is not StepStatus.RETRYING:
            raise StepStateError("Cannot resume: no step is retrying.")
        step.status = StepStatus.STARTED
        self._touch(step)
        self._emit(step, StepStatus.STARTED, f"attempt {step.attempts}")

    def succeed(self, detail: str | None = None) -> Step:
        return self._close(StepStatus.SUCCESS, detail)

    def fail(self, detail: str | None = None) -> Step:
        return self._close(StepStatus.ERROR, detail)

    def info(self, detail: str) -> None:
        """Annotate the open step (or the run, when none is open)."""

        step = self._current
        if step is not None:
            step.notes.append(detail)
            self._touch(step)
        logger.info("%s", detail)
        self._emit(step, StepStatus.INFO, detail)

    def _close(self, status: StepStatus, detail: str | None) -> Step:
        step = self._require_open(status.value)
        step.status = status
        step.detail = detail
        self._touch(step)
        self._current = None
        self._emit(step, status, detail)
        return step

    def _require_open(self, transition: str) -> Step:
        step = self._current
        if step is None or step.status not in _OPEN_STATUSES:
            raise StepStateError(f"Cannot mark {transition}: no step is open.")
        return step

    def _touch(self, step: Step) -> None:
        step.elapsed_seconds = self._clock() - self._current_started

    def _emit(self, step: Step | None, status: StepStatus, detail: str | None) -> None:
        if self._on_step is None:
            return
        self._on_step(
            StepEvent(
                step=step.name if step is not None else None,
                status=status,
                detail=detail,
                elapsed_seconds=step.elapsed_seconds if step is not None else 0.0,
                attempt=step.attempts if step is not None else 0,
            ),
        )
