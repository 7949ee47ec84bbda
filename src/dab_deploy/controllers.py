"""Controllers for dab-deploy CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from dab_deploy.config import Settings
from dab_deploy.http import HealthProbe
from dab_deploy.orchestrator import (
    DeploymentPlan,
    DeploymentSequencer,
    OrchestrationCallbacks,
    OrchestrationContext,
    RetryEvent,
    RollbackCoordinator,
)
from dab_deploy.orchestrator.backend import CommandExecutor, SubprocessCommandExecutor
from dab_deploy.orchestrator.errors import InvalidNameError
from dab_deploy.orchestrator.failure_classifier import classify
from dab_deploy.orchestrator.models import RollbackAction, RunReport, StepEvent, StepStatus
from dab_deploy.orchestrator.naming import build_resource_names
from dab_deploy.provisioning import (
    AzCli,
    CreatePlanBuilder,
    SummaryFileWriter,
    UpdatePlanBuilder,
    render_summary,
)

ExecutorFactory = Callable[[Path], CommandExecutor]
ProbeFactory = Callable[[], HealthProbe]


@dataclass(slots=True)
class DeployCommand:
    """CLI input for a first-time deployment."""

    prefix: str | None = None
    location: str | None = None
    resource_group: str | None = None
    subscription: str | None = None
    schema_path: Path | None = None
    build_context: Path | None = None
    dockerfile: Path | None = None
    log_path: Path | None = None
    summary_path: Path | None = None
    preserve_on_failure: bool | None = None
    validate_config: bool | None = None


@dataclass(slots=True)
class UpdateCommand:
    """CLI input for redeploying an image into an existing deployment."""

    resource_group: str | None = None
    subscription: str | None = None
    build_context: Path | None = None
    dockerfile: Path | None = None
    log_path: Path | None = None
    summary_path: Path | None = None


@dataclass(slots=True)
class NamesCommand:
    """CLI input for previewing sanitized resource names."""

    prefix: str
    suffix: str | None
    database_name: str
    resource_group: str | None


@dataclass(slots=True)
class ClassifyCommand:
    """CLI input for diagnosing saved command output."""

    output: str
    exit_code: int | None


@dataclass(slots=True)
class DeploymentCliResult:
    """Deployment report to render in CLI."""

    lines: list[str]
    success: bool


class DeploymentCliController:
    """Wires settings, executor, plans and progress output for CLI commands.

    ``emit`` receives live progress lines while a plan runs; the returned
    result carries the final report.
    """

    def __init__(
        self,
        *,
        emit: Callable[[str], None] | None = None,
        executor_factory: ExecutorFactory = SubprocessCommandExecutor,
        probe_factory: ProbeFactory = HealthProbe,
    ) -> None:
        self.emit = emit or (lambda _line: None)
        self.executor_factory = executor_factory
        self.probe_factory = probe_factory

    def deploy(self, command: DeployCommand) -> DeploymentCliResult:
        try:
            settings = Settings.from_env()
            _apply_common_overrides(settings, command)
            if command.prefix is not None:
                settings.azure.name_prefix = command.prefix
            if command.location is not None:
                settings.azure.location = command.location
            if command.schema_path is not None:
                settings.sql.schema_path = command.schema_path
            if command.preserve_on_failure is not None:
                settings.preserve_on_failure = command.preserve_on_failure
            if command.validate_config is not None:
                settings.container.validate_config = command.validate_config
            settings.validate_for_create()
        except ValueError as error:
            return _configuration_failure(error)

        with self.probe_factory() as probe:
            builder = CreatePlanBuilder(settings, probe=probe)
            self.emit(f"Deploying {builder.names.resource_group} to {settings.azure.location}")
            return self._run(settings, builder.plan())

    def update(self, command: UpdateCommand) -> DeploymentCliResult:
        try:
            settings = Settings.from_env()
            _apply_common_overrides(settings, command)
            settings.validate_for_update()
        except ValueError as error:
            return _configuration_failure(error)

        with self.probe_factory() as probe:
            builder = UpdatePlanBuilder(settings, probe=probe)
            return self._run(settings, builder.plan())

    def names(self, command: NamesCommand) -> DeploymentCliResult:
        try:
            names = build_resource_names(
                command.prefix,
                suffix=command.suffix,
                database_name=command.database_name,
                resource_group=command.resource_group,
            )
        except InvalidNameError as error:
            return DeploymentCliResult(lines=[f"Invalid name: {error}"], success=False)

        width = max(len(kind) for kind in names.as_dict())
        lines = [f"Suffix: {names.suffix}"]
        lines.extend(f"{kind:<{width}}  {name}" for kind, name in names.as_dict().items())
        return DeploymentCliResult(lines=lines, success=True)

    def classify(self, command: ClassifyCommand) -> list[str]:
        classification = classify(command.output, command.exit_code)
        lines = [
            f"Failure class: {classification.failure_class.value}",
            f"Rule: {classification.matched_rule}",
        ]
        if classification.matched_pattern is not None:
            lines.append(f"Pattern: {classification.matched_pattern}")
        lines.append(f"Retry: {'yes' if classification.retryable else 'no'}")
        return lines

    def _run(self, settings: Settings, plan: DeploymentPlan) -> DeploymentCliResult:
        executor = self.executor_factory(settings.log_path)
        try:
            context = OrchestrationContext(
                executor=executor,
                callbacks=OrchestrationCallbacks(
                    on_step=self._on_step,
                    on_retry=self._on_retry,
                ),
            )
            sequencer = DeploymentSequencer(
                rollback=RollbackCoordinator(
                    executor=executor,
                    delete_command=AzCli(settings.azure.az_executable).group_delete,
                ),
                preserve_on_failure=settings.preserve_on_failure,
                summary_writer=SummaryFileWriter(settings.summary_path),
            )
            report = sequencer.run(plan, context)
        finally:
            executor.close()
        return DeploymentCliResult(lines=render_report(report), success=report.ok)

    def _on_step(self, event: StepEvent) -> None:
        line = _format_step_event(event)
        if line is not None:
            self.emit(line)

    def _on_retry(self, event: RetryEvent) -> None:
        self.emit(
            f"  {event.step}: attempt {event.attempt} failed, "
            f"retrying in {event.delay_seconds:.0f}s",
        )


def render_report(report: RunReport) -> list[str]:
    """Final lines for a finished run: summary on success, attribution on failure."""

    if report.ok:
        lines = render_summary(report.summary) if report.summary is not None else []
        if not lines:
            lines = [f"Deployment {report.mode.value} completed in {report.elapsed_seconds:.0f}s"]
    else:
        lines = [
            f"Deployment {report.mode.value} failed at step {report.failed_step!r}.",
            f"Cause: {report.failure_reason}",
        ]
        rollback = report.rollback
        if rollback is not None and rollback.detail:
            lines.append(f"Rollback: {rollback.detail}")
        if rollback is not None and rollback.action is RollbackAction.PRESERVED:
            lines.append(f"Preserved resource group: {rollback.aggregate_id}")
    lines.append(f"Command log: {report.log_path}")
    return lines


def _format_step_event(event: StepEvent) -> str | None:
    if event.status is StepStatus.STARTED:
        # Later attempts were already announced by the retry line.
        return f"{event.step} ..." if event.attempt <= 1 else None
    if event.status is StepStatus.SUCCESS:
        suffix = f": {event.detail}" if event.detail else ""
        return f"  done in {event.elapsed_seconds:.0f}s{suffix}"
    if event.status is StepStatus.ERROR:
        return f"  failed after {event.elapsed_seconds:.0f}s (attempt {event.attempt})"
    if event.status is StepStatus.INFO:
        return f"  note: {event.detail}"
    # Retries are reported through on_retry with their delay.
    return None


def _apply_common_overrides(settings: Settings, command: DeployCommand | UpdateCommand) -> None:
    if command.resource_group is not None:
        settings.azure.resource_group = command.resource_group
    if command.subscription is not None:
        settings.azure.subscription = command.subscription
    if command.build_context is not None:
        settings.container.build_context = command.build_context
    if command.dockerfile is not None:
        settings.container.dockerfile = command.dockerfile
    if command.log_path is not None:
        settings.log_path = command.log_path
    if command.summary_path is not None:
        settings.summary_path = command.summary_path


def _configuration_failure(error: ValueError) -> DeploymentCliResult:
    return DeploymentCliResult(lines=[f"Configuration error: {error}"], success=False)
