"""Ordered plan execution with a single failure handler."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from dab_deploy.orchestrator.context import OrchestrationContext
from dab_deploy.orchestrator.errors import ConfigurationError, NonRetryableError, OrchestrationError
from dab_deploy.orchestrator.models import DeploymentMode, DeploymentSummary, RunReport
from dab_deploy.orchestrator.rollback import RollbackCoordinator

logger = logging.getLogger(__name__)

SUMMARY_STEP_NAME = "Write deployment summary"

StepAction = Callable[[OrchestrationContext], "str | None"]
SummaryBuilder = Callable[[OrchestrationContext, float], DeploymentSummary]
SummaryWriter = Callable[[DeploymentSummary], "str | None"]


@dataclass(frozen=True, slots=True)
class PlanStep:
    """One named action of a plan; returns an optional detail line."""

    name: str
    action: StepAction
    estimate_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class DeploymentPlan:
    """Fixed ordered list of steps plus how to summarize a successful run."""

    mode: DeploymentMode
    steps: tuple[PlanStep, ...]
    summarize: SummaryBuilder | None = None


class DeploymentSequencer:
    """Run plan steps strictly in order; the first escaping error ends the run.

    Steps never catch their own failures. This class is the one place where
    an error is turned into a failed report and handed to the rollback
    coordinator. ``KeyboardInterrupt`` is not intercepted: an interrupted run
    leaves external state as the last finished command left it.
    """

    def __init__(
        self,
        *,
        rollback: RollbackCoordinator,
        preserve_on_failure: bool = False,
        summary_writer: SummaryWriter | None = None,
    ) -> None:
        self.rollback = rollback
        self.preserve_on_failure = preserve_on_failure
        self.summary_writer = summary_writer

    def run(self, plan: DeploymentPlan, context: OrchestrationContext) -> RunReport:
        context.state.mode = plan.mode
        context.tracker.reset()
        started = context.clock()
        logger.info("Starting %s plan with %d steps", plan.mode.value, len(plan.steps))

        try:
            for index, step in enumerate(plan.steps):
                context.state.current_step_index = index
                context.tracker.begin(step.name, step.estimate_seconds)
                detail = step.action(context)
                context.tracker.succeed(detail)
            summary = self._write_summary(plan, context, started)
        except Exception as error:  # noqa: BLE001
            report = self._handle_failure(plan, context, error, started)
        else:
            report = RunReport(
                ok=True,
                mode=plan.mode,
                steps=context.tracker.steps,
                elapsed_seconds=context.clock() - started,
                log_path=context.log_path,
                summary=summary,
            )
            logger.info("%s plan finished in %.1fs", plan.mode.value, report.elapsed_seconds)

        if context.callbacks.on_complete is not None:
            context.callbacks.on_complete(report)
        return report

    def _write_summary(
        self,
        plan: DeploymentPlan,
        context: OrchestrationContext,
        started: float,
    ) -> DeploymentSummary | None:
        if plan.summarize is None:
            return None
        context.state.current_step_index = len(plan.steps)
        context.tracker.begin(SUMMARY_STEP_NAME)
        summary = plan.summarize(context, context.clock() - started)
        detail = self.summary_writer(summary) if self.summary_writer is not None else None
        context.tracker.succeed(detail)
        return summary

    def _handle_failure(
        self,
        plan: DeploymentPlan,
        context: OrchestrationContext,
        error: Exception,
        started: float,
    ) -> RunReport:
        current = context.tracker.current
        failed_step = current.name if current is not None else None
        reason = describe_error(error)
        if current is not None:
            context.tracker.fail(reason)
        context.state.failure_reason = reason
        logger.error("Step %r failed: %s", failed_step, reason)
        logger.debug("Failure traceback", exc_info=error)

        rollback = self.rollback.on_failure(context.state, self.preserve_on_failure)
        return RunReport(
            ok=False,
            mode=plan.mode,
            steps=context.tracker.steps,
            elapsed_seconds=context.clock() - started,
            log_path=context.log_path,
            failed_step=failed_step,
            failure_reason=reason,
            rollback=rollback,
        )


def describe_error(error: BaseException) -> str:
    """Human-readable cause; unexpected exception types keep their class name."""

    if isinstance(error, (ConfigurationError, NonRetryableError, OrchestrationError)):
        return str(error)
    return f"{type(error).__name__}: {error}"
