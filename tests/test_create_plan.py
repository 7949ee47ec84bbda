from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from conftest import FakeClock, FakeProbe, ScriptedExecutor

from dab_deploy.config import (
    AzureSettings,
    ContainerSettings,
    RetrySettings,
    Settings,
    SqlSettings,
)
from dab_deploy.http import HealthResult
from dab_deploy.orchestrator import (
    DeploymentSequencer,
    OrchestrationContext,
    RollbackCoordinator,
)
from dab_deploy.orchestrator.models import RollbackAction, RunReport, StepStatus
from dab_deploy.orchestrator.sequencer import SUMMARY_STEP_NAME
from dab_deploy.provisioning import AzCli, CreatePlanBuilder, SummaryFileWriter

pytestmark = [
    allure.epic("Provisioning"),
    allure.feature("Create Plan"),
]

SUFFIX = "20260101000000"
APP_FQDN = "ca-dab-20260101000000.example.westus2.azurecontainerapps.io"
WORKSPACE_KEY = "c2hhcmVkLWtleQ=="

CREATE_STEPS = [
    "Verify CLI login",
    "Create resource group",
    "Create SQL server",
    "Configure SQL firewall",
    "Create SQL database",
    "Deploy database schema",
    "Create container registry",
    "Build and push image",
    "Create Log Analytics workspace",
    "Create Container Apps environment",
    "Create managed identity",
    "Wait for identity propagation",
    "Grant registry pull",
    "Create database user for identity",
    "Create container app",
    "Validate DAB configuration",
    "Wait for container readiness",
    "Check API health",
]


def _settings(tmp_path: Path, *, schema: bool = True, validate_config: bool = True) -> Settings:
    (tmp_path / "Dockerfile").write_text("FROM data-api-builder\n")
    schema_path = None
    if schema:
        schema_path = tmp_path / "schema.sql"
        schema_path.write_text("CREATE TABLE dbo.Books (id INT PRIMARY KEY);\n")
    return Settings(
        log_path=tmp_path / "run.log",
        summary_path=tmp_path / "summary.json",
        azure=AzureSettings(location="westus2", name_prefix="dab"),
        sql=SqlSettings(schema_path=schema_path),
        container=ContainerSettings(build_context=tmp_path, validate_config=validate_config),
        retry=RetrySettings(jitter=False),
    )


def _script_happy_path(
    executor: ScriptedExecutor,
    *,
    user: dict[str, str] | None = None,
    group_exists: str = "false",
) -> None:
    executor.respond(
        "account",
        "show",
        output={
            "name": "Demo subscription",
            "user": user or {"name": "ada@example.com", "type": "user"},
        },
    )
    executor.respond(
        "signed-in-user",
        "show",
        output={"id": "user-oid", "userPrincipalName": "ada@example.com"},
    )
    executor.respond("group", "exists", output=group_exists)
    executor.respond(
        "acr",
        "create",
        output={
            "id": "/subscriptions/s/resourceGroups/rg/providers/registries/acrdab",
            "loginServer": "acrdab20260101000000.azurecr.io",
        },
    )
    executor.respond("workspace", "create", output={"customerId": "workspace-guid"})
    executor.respond("get-shared-keys", output={"primarySharedKey": WORKSPACE_KEY})
    executor.respond(
        "identity",
        "create",
        output={"id": "/identities/id-dab", "principalId": "principal-1", "clientId": "client-1"},
    )
    executor.respond(
        "ad",
        "sp",
        "show",
        output="Resource 'principal-1' does not exist or one of its queried reference-property "
        "objects are not present.",
        exit_code=1,
    )
    executor.respond("ad", "sp", "show", output={"id": "principal-1"})
    executor.respond(
        "containerapp",
        "create",
        output={"properties": {"configuration": {"ingress": {"fqdn": APP_FQDN}}}},
    )
    executor.respond("job", "start", output={"name": "job-dab-exec-1"})
    executor.respond("execution", "show", output={"properties": {"status": "Running"}})
    executor.respond("execution", "show", output={"properties": {"status": "Succeeded"}})
    executor.respond(
        "containerapp",
        "show",
        output={
            "properties": {
                "provisioningState": "Succeeded",
                "runningStatus": "Running",
                "latestRevisionName": "ca-dab--rev1",
                "configuration": {"ingress": {"fqdn": APP_FQDN}},
            },
        },
    )


def _run(
    settings: Settings,
    executor: ScriptedExecutor,
    clock: FakeClock,
    probe: FakeProbe | None = None,
) -> tuple[CreatePlanBuilder, RunReport]:
    builder = CreatePlanBuilder(settings, probe=probe or FakeProbe(), suffix=SUFFIX)
    context = OrchestrationContext(executor=executor, sleep=clock.sleep, clock=clock)
    sequencer = DeploymentSequencer(
        rollback=RollbackCoordinator(executor=executor, delete_command=AzCli().group_delete),
        preserve_on_failure=settings.preserve_on_failure,
        summary_writer=SummaryFileWriter(settings.summary_path),
    )
    return builder, sequencer.run(builder.plan(), context)


def test_create_plan_provisions_every_resource_in_order(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    settings = _settings(tmp_path)
    _script_happy_path(executor)

    builder, report = _run(settings, executor, clock)

    assert report.ok is True, report.failure_reason
    assert [step.name for step in report.steps] == [*CREATE_STEPS, SUMMARY_STEP_NAME]
    assert all(step.status is StepStatus.SUCCESS for step in report.steps)
    assert executor.calls_with("group", "delete") == []

    summary = json.loads(settings.summary_path.read_text(encoding="utf-8"))
    assert summary["mode"] == "create"
    assert summary["resource_group"] == builder.names.resource_group
    assert summary["endpoints"] == {
        "app": f"https://{APP_FQDN}",
        "rest": f"https://{APP_FQDN}/api",
        "graphql": f"https://{APP_FQDN}/graphql",
        "health": f"https://{APP_FQDN}/health",
    }
    assert summary["image"] == f"acrdab20260101000000.azurecr.io/dab:{SUFFIX}"
    assert summary["resources"]["container_app"] == builder.names.container_app


def test_create_plan_tags_the_resource_group_and_claims_it(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)

    builder, _ = _run(_settings(tmp_path), executor, clock)

    [group_create] = executor.calls_with("group", "create")
    assert builder.names.resource_group in group_create
    assert "app=dab-deploy" in group_create
    assert f"deployment={SUFFIX}" in group_create
    assert "managed-by=dab-deploy" in group_create


def test_sql_server_uses_the_signed_in_user_as_entra_admin(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)

    _run(_settings(tmp_path), executor, clock)

    [server_create] = executor.calls_with("sql", "server", "create")
    assert "--enable-ad-only-auth" in server_create
    assert server_create[server_create.index("--external-admin-sid") + 1] == "user-oid"
    assert server_create[server_create.index("--external-admin-principal-type") + 1] == "User"


def test_service_principal_login_becomes_an_application_admin(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor, user={"name": "app-id-1", "type": "servicePrincipal"})
    executor.respond(
        "ad",
        "sp",
        "show",
        "--id",
        "app-id-1",
        output={"id": "sp-oid", "displayName": "ci-bot"},
    )

    _run(_settings(tmp_path), executor, clock)

    assert executor.calls_with("signed-in-user") == []
    [server_create] = executor.calls_with("sql", "server", "create")
    assert server_create[server_create.index("--external-admin-name") + 1] == "ci-bot"
    assert server_create[server_create.index("--external-admin-sid") + 1] == "sp-oid"
    assert server_create[server_create.index("--external-admin-principal-type") + 1] == (
        "Application"
    )


def test_firewall_admits_azure_services_and_the_client_ip(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)

    _run(_settings(tmp_path), executor, clock, probe=FakeProbe(ip="198.51.100.4"))

    rules = executor.calls_with("firewall-rule", "create")
    assert [rule[rule.index("--name") + 1] for rule in rules] == [
        "AllowAzureServices",
        "AllowClientIp",
    ]
    assert "198.51.100.4" in rules[1]


def test_identity_propagation_is_retried_until_visible(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)

    _, report = _run(_settings(tmp_path), executor, clock)

    step = next(step for step in report.steps if step.name == "Wait for identity propagation")
    assert step.attempts == 2
    assert len(executor.calls_with("ad", "sp", "show", "--id", "principal-1")) == 2
    assert 10.0 in clock.sleeps


def test_workspace_key_is_redacted_and_masked(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)

    _run(_settings(tmp_path), executor, clock)

    assert executor.redacted == executor.calls_with("get-shared-keys")
    assert executor.secrets == [WORKSPACE_KEY]


def test_container_app_reads_the_connection_string_from_a_secret(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)

    builder, _ = _run(_settings(tmp_path), executor, clock)

    [app_create] = executor.calls_with("containerapp", "create")
    secret = app_create[app_create.index("--secrets") + 1]
    assert secret.startswith("mssql-connection-string=Server=tcp:")
    assert "User Id=client-1;" in secret
    assert "MSSQL_CONNECTION_STRING=secretref:mssql-connection-string" in app_create
    assert app_create[app_create.index("--user-assigned") + 1] == "/identities/id-dab"
    assert builder.names.container_app in app_create


def test_schema_and_identity_user_are_applied_with_sqlcmd(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)

    builder, _ = _run(_settings(tmp_path), executor, clock)

    [schema_call] = executor.calls_with("-i", str(tmp_path / "schema.sql"))
    assert schema_call[0] == "sqlcmd"
    [user_call] = [call for call in executor.calls if call[0] == "sqlcmd" and "-Q" in call]
    assert f"CREATE USER [{builder.names.managed_identity}] FROM EXTERNAL PROVIDER" in user_call[-1]


def test_missing_schema_is_skipped_with_a_note(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)

    _, report = _run(_settings(tmp_path, schema=False), executor, clock)

    step = next(step for step in report.steps if step.name == "Deploy database schema")
    assert step.detail == "skipped"
    assert step.notes
    assert executor.calls_with("-i") == []


def test_skip_validate_config_drops_the_validation_job(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)

    _, report = _run(_settings(tmp_path, validate_config=False), executor, clock)

    assert report.ok is True
    assert "Validate DAB configuration" not in [step.name for step in report.steps]
    assert executor.calls_with("containerapp", "job") == []


def test_health_is_polled_until_healthy(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)
    url = f"https://{APP_FQDN}/health"
    probe = FakeProbe(
        HealthResult(url=url, status_code=503),
        HealthResult(url=url, status_code=200, body={"status": "Healthy"}),
    )

    _, report = _run(_settings(tmp_path), executor, clock, probe=probe)

    assert report.ok is True
    assert probe.checked == [url, url]
    assert report.steps[-2].attempts == 2


def test_existing_resource_group_fails_without_rollback(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor, group_exists="true")

    _, report = _run(_settings(tmp_path), executor, clock)

    assert report.ok is False
    assert report.failed_step == "Create resource group"
    assert "already exists" in (report.failure_reason or "")
    assert report.rollback is not None
    assert report.rollback.action is RollbackAction.NOTHING_TO_ROLL_BACK
    assert executor.calls_with("group", "create") == []
    assert executor.calls_with("group", "delete") == []


def test_name_conflict_after_group_creation_deletes_the_group_once(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)
    executor.respond(
        "sql",
        "server",
        "create",
        output="(ServerNameAlreadyExists) The name 'sql-dab' already exists.",
        exit_code=1,
    )

    builder, report = _run(_settings(tmp_path), executor, clock)

    assert report.failed_step == "Create SQL server"
    assert len(executor.calls_with("sql", "server", "create")) == 1
    assert executor.calls_with("group", "delete") == [
        ("az", "group", "delete", "--name", builder.names.resource_group, "--yes", "--no-wait"),
    ]
    assert executor.calls_with("sql", "db", "create") == []


def test_failed_validation_job_fails_the_run(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)
    executor.respond("job", "execution", "show", output={"properties": {"status": "Failed"}})

    _, report = _run(_settings(tmp_path), executor, clock)

    assert report.failed_step == "Validate DAB configuration"
    assert "status Failed" in (report.failure_reason or "")
    assert len(executor.calls_with("group", "delete")) == 1
    assert executor.calls_with("containerapp", "show") == []


def test_preserve_on_failure_keeps_the_group(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)
    executor.respond("acr", "build", output="unauthorized: authentication required", exit_code=1)
    settings = _settings(tmp_path)
    settings.preserve_on_failure = True

    builder, report = _run(settings, executor, clock)

    assert report.failed_step == "Build and push image"
    assert report.rollback is not None
    assert report.rollback.action is RollbackAction.PRESERVED
    assert report.rollback.aggregate_id == builder.names.resource_group
    assert executor.calls_with("group", "delete") == []


def test_invalid_database_name_fails_before_any_command() -> None:
    settings = Settings(sql=SqlSettings(database_name="books db"))

    with pytest.raises(ValueError, match="Invalid"):
        CreatePlanBuilder(settings, probe=FakeProbe(), suffix=SUFFIX)


def test_retried_role_assignment_that_already_landed_is_confirmed(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)
    executor.respond("role", "assignment", "create", output="504 Gateway Timeout", exit_code=1)
    executor.respond(
        "role",
        "assignment",
        "create",
        output="(RoleAssignmentExists) The role assignment already exists.",
        exit_code=1,
    )

    _, report = _run(_settings(tmp_path), executor, clock)

    assert report.ok is True, report.failure_reason
    step = next(step for step in report.steps if step.name == "Grant registry pull")
    assert step.attempts == 2
    assert any("already exists after a retried create" in note for note in step.notes)
    [confirm] = executor.calls_with("role", "assignment", "list")
    assert confirm[confirm.index("--assignee") + 1] == "principal-1"
    assert confirm[confirm.index("--role") + 1] == "AcrPull"
    assert executor.calls_with("group", "delete") == []


def test_retried_container_app_create_reads_the_existing_app(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)
    # More specific than the happy-path rule, so these answer first.
    executor.respond(
        "containerapp",
        "create",
        "--name",
        output="Service Unavailable",
        exit_code=1,
    )
    executor.respond(
        "containerapp",
        "create",
        "--name",
        output="(ContainerAppAlreadyExists) The container app already exists.",
        exit_code=1,
    )

    builder, report = _run(_settings(tmp_path), executor, clock)

    assert report.ok is True, report.failure_reason
    assert len(executor.calls_with("containerapp", "create")) == 2
    assert report.summary is not None
    assert builder.names.container_app in executor.calls_with("containerapp", "show")[0]


def test_validation_job_runs_the_cli_stage_image(
    tmp_path: Path,
    executor: ScriptedExecutor,
    clock: FakeClock,
) -> None:
    _script_happy_path(executor)

    _, report = _run(_settings(tmp_path), executor, clock)

    assert report.ok is True, report.failure_reason
    runtime_build, validation_build = executor.calls_with("acr", "build")
    assert "--target" not in runtime_build
    assert validation_build[validation_build.index("--target") + 1] == "build"
    assert validation_build[validation_build.index("--image") + 1] == f"dab:{SUFFIX}-build"

    [job_create] = executor.calls_with("containerapp", "job", "create")
    assert job_create[job_create.index("--image") + 1] == (
        f"acrdab20260101000000.azurecr.io/dab:{SUFFIX}-build"
    )
    command_at = job_create.index("--command")
    assert job_create[command_at : command_at + 7] == (
        "--command",
        "dotnet",
        "--args",
        "tool",
        "run",
        "dab",
        "validate",
    )
    assert job_create[command_at + 7] == "--output"
    assert "--config" not in job_create
