"""First-time provisioning of a complete DAB deployment."""

from __future__ import annotations

import logging

from dab_deploy.config import Settings
from dab_deploy.http import HealthProbe
from dab_deploy.orchestrator.context import OrchestrationContext
from dab_deploy.orchestrator.errors import NonRetryableError
from dab_deploy.orchestrator.models import DeploymentMode
from dab_deploy.orchestrator.naming import ResourceNames, build_resource_names
from dab_deploy.orchestrator.sequencer import DeploymentPlan, PlanStep
from dab_deploy.provisioning.commands import (
    ACR_PULL_ROLE,
    connection_string,
    identity_user_query,
)
from dab_deploy.provisioning.steps import (
    ADMIN_NAME,
    ADMIN_SID,
    ADMIN_TYPE,
    APP_FQDN,
    CONTAINER_APP,
    CONTAINER_APP_ENVIRONMENT,
    CONTAINER_REGISTRY,
    IDENTITY_CLIENT_ID,
    IDENTITY_ID,
    IDENTITY_PRINCIPAL_ID,
    IMAGE,
    LOCATION,
    LOG_ANALYTICS_WORKSPACE,
    MANAGED_IDENTITY,
    REGISTRY_ID,
    REGISTRY_LOGIN_SERVER,
    RESOURCE_GROUP,
    SQL_DATABASE,
    SQL_SERVER,
    SQL_SERVER_FQDN,
    VALIDATION_IMAGE,
    VALIDATION_JOB,
    WORKSPACE_CUSTOMER_ID,
    WORKSPACE_KEY,
    ProvisioningSteps,
    require_mapping,
)

logger = logging.getLogger(__name__)

SQL_FQDN_SUFFIX = "database.windows.net"
ALLOW_AZURE_SERVICES_RULE = "AllowAzureServices"
ALLOW_CLIENT_IP_RULE = "AllowClientIp"
AZURE_SERVICES_IP = "0.0.0.0"  # noqa: S104
MANAGED_BY_TAG = "dab-deploy"

JOB_SUCCEEDED = "Succeeded"
JOB_TERMINAL_STATES = frozenset({"Succeeded", "Failed", "Stopped", "Degraded"})


class CreatePlanBuilder(ProvisioningSteps):
    """Build the ordered create plan for one new resource group.

    The resource group is the aggregate: it is recorded as soon as it
    exists so a later failure deletes it, and everything else lives inside
    it. Names are derived once, up front, so an invalid prefix fails before
    the first external call.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        probe: HealthProbe,
        suffix: str | None = None,
    ) -> None:
        super().__init__(settings, probe=probe, image_tag=suffix)
        self.names: ResourceNames = build_resource_names(
            settings.azure.name_prefix,
            suffix=self.image_tag,
            database_name=settings.sql.database_name,
            resource_group=settings.azure.resource_group,
        )

    @property
    def tags(self) -> dict[str, str]:
        return {
            "app": self.settings.azure.app_tag,
            "deployment": self.names.suffix,
            "managed-by": MANAGED_BY_TAG,
        }

    def plan(self) -> DeploymentPlan:
        steps = [
            PlanStep("Verify CLI login", self.verify_login, 5),
            PlanStep("Create resource group", self.create_resource_group, 10),
            PlanStep("Create SQL server", self.create_sql_server, 120),
            PlanStep("Configure SQL firewall", self.configure_sql_firewall, 30),
            PlanStep("Create SQL database", self.create_sql_database, 90),
            PlanStep("Deploy database schema", self.deploy_schema, 30),
            PlanStep("Create container registry", self.create_container_registry, 60),
            PlanStep("Build and push image", self.build_image, 180),
            PlanStep("Create Log Analytics workspace", self.create_log_workspace, 60),
            PlanStep("Create Container Apps environment", self.create_environment, 180),
            PlanStep("Create managed identity", self.create_identity, 20),
            PlanStep("Wait for identity propagation", self.wait_for_identity, 60),
            PlanStep("Grant registry pull", self.grant_registry_pull, 30),
            PlanStep("Create database user for identity", self.create_database_user, 30),
            PlanStep("Create container app", self.create_container_app, 120),
        ]
        if self.settings.container.validate_config:
            steps.append(
                PlanStep("Validate DAB configuration", self.validate_dab_config, 120),
            )
        steps.extend(
            [
                PlanStep("Wait for container readiness", self.wait_for_readiness, 60),
                PlanStep("Check API health", self.check_health, 60),
            ],
        )
        return DeploymentPlan(
            mode=DeploymentMode.CREATE,
            steps=tuple(steps),
            summarize=self.summarize,
        )

    def create_resource_group(self, ctx: OrchestrationContext) -> str:
        name = self.names.resource_group
        exists = ctx.run(self.az.group_exists(name)).output.strip().lower() == "true"
        if exists:
            raise NonRetryableError(
                f"Resource group {name} already exists; "
                "use `dab-deploy update` to redeploy into it.",
            )
        ctx.run(self.az.group_create(name, self.settings.azure.location, self.tags))
        ctx.state.created_aggregate_id = name
        ctx.state.outputs[RESOURCE_GROUP] = name
        ctx.state.outputs[LOCATION] = self.settings.azure.location
        return name

    def create_sql_server(self, ctx: OrchestrationContext) -> str:
        outputs = ctx.state.outputs
        resource_group = ctx.state.require(RESOURCE_GROUP)
        ctx.retry_command(
            self.az.sql_server_create(
                name=self.names.sql_server,
                resource_group=resource_group,
                location=self.settings.azure.location,
                admin_name=ctx.state.require(ADMIN_NAME),
                admin_sid=ctx.state.require(ADMIN_SID),
                admin_type=ctx.state.require(ADMIN_TYPE),
            ),
            self.settings.retry.command_policy(),
            what=f"SQL server {self.names.sql_server}",
            confirm=self.az.sql_server_show(
                name=self.names.sql_server,
                resource_group=resource_group,
            ),
        )
        outputs[SQL_SERVER] = self.names.sql_server
        outputs[SQL_SERVER_FQDN] = f"{self.names.sql_server}.{SQL_FQDN_SUFFIX}"
        return f"{outputs[SQL_SERVER_FQDN]} (Entra admin {outputs[ADMIN_NAME]})"

    def configure_sql_firewall(self, ctx: OrchestrationContext) -> str:
        resource_group = ctx.state.require(RESOURCE_GROUP)
        server = ctx.state.require(SQL_SERVER)
        ctx.run(
            self.az.sql_firewall_rule_create(
                resource_group=resource_group,
                server=server,
                rule_name=ALLOW_AZURE_SERVICES_RULE,
                start_ip=AZURE_SERVICES_IP,
                end_ip=AZURE_SERVICES_IP,
            ),
        )
        if not self.settings.sql.allow_client_ip:
            return "Allowed Azure services"

        client_ip = self.probe.public_ip()
        ctx.run(
            self.az.sql_firewall_rule_create(
                resource_group=resource_group,
                server=server,
                rule_name=ALLOW_CLIENT_IP_RULE,
                start_ip=client_ip,
                end_ip=client_ip,
            ),
        )
        return f"Allowed Azure services and {client_ip}"

    def create_sql_database(self, ctx: OrchestrationContext) -> str:
        ctx.run(
            self.az.sql_db_create(
                resource_group=ctx.state.require(RESOURCE_GROUP),
                server=ctx.state.require(SQL_SERVER),
                name=self.names.sql_database,
                service_objective=self.settings.sql.service_objective,
            ),
        )
        ctx.state.outputs[SQL_DATABASE] = self.names.sql_database
        return f"{self.names.sql_database} ({self.settings.sql.service_objective})"

    def deploy_schema(self, ctx: OrchestrationContext) -> str:
        script = self.settings.sql.schema_path
        if script is None:
            ctx.tracker.info("No schema script configured; database left empty.")
            return "skipped"
        # New firewall rules take a while to reach the SQL gateway.
        ctx.retry_command(
            self.sqlcmd.run_script(
                server_fqdn=ctx.state.require(SQL_SERVER_FQDN),
                database=ctx.state.require(SQL_DATABASE),
                script=script,
            ),
            self.settings.retry.propagation_policy(),
            what="the SQL firewall to admit this client",
        )
        return f"Applied {script.name}"

    def create_container_registry(self, ctx: OrchestrationContext) -> str:
        registry = require_mapping(
            ctx.run_json(
                self.az.acr_create(
                    name=self.names.container_registry,
                    resource_group=ctx.state.require(RESOURCE_GROUP),
                    location=self.settings.azure.location,
                ),
            ),
            "az acr create",
        )
        outputs = ctx.state.outputs
        outputs[CONTAINER_REGISTRY] = self.names.container_registry
        outputs[REGISTRY_ID] = str(registry["id"])
        outputs[REGISTRY_LOGIN_SERVER] = str(registry["loginServer"])
        return outputs[REGISTRY_LOGIN_SERVER]

    def create_log_workspace(self, ctx: OrchestrationContext) -> str:
        resource_group = ctx.state.require(RESOURCE_GROUP)
        name = self.names.log_analytics_workspace
        workspace = require_mapping(
            ctx.run_json(
                self.az.log_workspace_create(
                    name=name,
                    resource_group=resource_group,
                    location=self.settings.azure.location,
                ),
            ),
            "az monitor log-analytics workspace create",
        )
        keys = require_mapping(
            ctx.run_json(
                self.az.log_workspace_keys(name=name, resource_group=resource_group),
                redact_output=True,
            ),
            "az monitor log-analytics workspace get-shared-keys",
        )
        shared_key = str(keys["primarySharedKey"])
        ctx.executor.register_secret(shared_key)

        outputs = ctx.state.outputs
        outputs[LOG_ANALYTICS_WORKSPACE] = name
        outputs[WORKSPACE_CUSTOMER_ID] = str(workspace["customerId"])
        outputs[WORKSPACE_KEY] = shared_key
        return name

    def create_environment(self, ctx: OrchestrationContext) -> str:
        name = self.names.container_app_environment
        resource_group = ctx.state.require(RESOURCE_GROUP)
        ctx.retry_command(
            self.az.containerapp_env_create(
                name=name,
                resource_group=resource_group,
                location=self.settings.azure.location,
                workspace_id=ctx.state.require(WORKSPACE_CUSTOMER_ID),
                workspace_key=ctx.state.require(WORKSPACE_KEY),
            ),
            self.settings.retry.command_policy(),
            what=f"Container Apps environment {name}",
            confirm=self.az.containerapp_env_show(name=name, resource_group=resource_group),
        )
        ctx.state.outputs[CONTAINER_APP_ENVIRONMENT] = name
        return name

    def create_identity(self, ctx: OrchestrationContext) -> str:
        identity = require_mapping(
            ctx.run_json(
                self.az.identity_create(
                    name=self.names.managed_identity,
                    resource_group=ctx.state.require(RESOURCE_GROUP),
                    location=self.settings.azure.location,
                ),
            ),
            "az identity create",
        )
        outputs = ctx.state.outputs
        outputs[MANAGED_IDENTITY] = self.names.managed_identity
        outputs[IDENTITY_ID] = str(identity["id"])
        outputs[IDENTITY_PRINCIPAL_ID] = str(identity["principalId"])
        outputs[IDENTITY_CLIENT_ID] = str(identity["clientId"])
        return f"{self.names.managed_identity} (client id {outputs[IDENTITY_CLIENT_ID]})"

    def wait_for_identity(self, ctx: OrchestrationContext) -> str:
        """Wait until Entra ID can resolve the identity's service principal."""

        principal_id = ctx.state.require(IDENTITY_PRINCIPAL_ID)
        ctx.retry_command(
            self.az.service_principal_show(principal_id),
            self.settings.retry.propagation_policy(),
            what=f"service principal {principal_id} to appear in Entra ID",
        )
        return f"Principal {principal_id} visible"

    def grant_registry_pull(self, ctx: OrchestrationContext) -> str:
        principal_id = ctx.state.require(IDENTITY_PRINCIPAL_ID)
        scope = ctx.state.require(REGISTRY_ID)
        ctx.retry_command(
            self.az.role_assignment_create(
                principal_id=principal_id,
                role=ACR_PULL_ROLE,
                scope=scope,
            ),
            self.settings.retry.propagation_policy(),
            what=f"{ACR_PULL_ROLE} assignment",
            confirm=self.az.role_assignment_list(
                principal_id=principal_id,
                role=ACR_PULL_ROLE,
                scope=scope,
            ),
        )
        return f"{ACR_PULL_ROLE} on {ctx.state.require(CONTAINER_REGISTRY)}"

    def create_database_user(self, ctx: OrchestrationContext) -> str:
        identity = ctx.state.require(MANAGED_IDENTITY)
        ctx.retry_command(
            self.sqlcmd.run_query(
                server_fqdn=ctx.state.require(SQL_SERVER_FQDN),
                database=ctx.state.require(SQL_DATABASE),
                query=identity_user_query(identity),
            ),
            self.settings.retry.propagation_policy(),
            what=f"SQL to resolve the identity {identity}",
        )
        return f"{identity} can read and write {ctx.state.require(SQL_DATABASE)}"

    def create_container_app(self, ctx: OrchestrationContext) -> str:
        container = self.settings.container
        resource_group = ctx.state.require(RESOURCE_GROUP)
        app = require_mapping(
            ctx.retry_json(
                self.az.containerapp_create(
                    name=self.names.container_app,
                    resource_group=resource_group,
                    environment=ctx.state.require(CONTAINER_APP_ENVIRONMENT),
                    image=ctx.state.require(IMAGE),
                    registry_server=ctx.state.require(REGISTRY_LOGIN_SERVER),
                    identity_id=ctx.state.require(IDENTITY_ID),
                    connection_string=self._connection_string(ctx),
                    target_port=container.target_port,
                    cpu=container.cpu,
                    memory=container.memory,
                    min_replicas=container.min_replicas,
                    max_replicas=container.max_replicas,
                    tags=self.tags,
                ),
                self.settings.retry.command_policy(),
                what=f"container app {self.names.container_app}",
                confirm=self.az.containerapp_show(
                    name=self.names.container_app,
                    resource_group=resource_group,
                ),
            ),
            "az containerapp create",
        )
        ctx.state.outputs[CONTAINER_APP] = self.names.container_app
        properties = app.get("properties") or {}
        fqdn = ((properties.get("configuration") or {}).get("ingress") or {}).get("fqdn")
        if fqdn:
            ctx.state.outputs[APP_FQDN] = str(fqdn)
        return self.names.container_app

    def validate_dab_config(self, ctx: OrchestrationContext) -> str:
        """Run ``dab validate`` once in a manual Container Apps job and wait for the result.

        The runtime image ships without the DAB CLI, so the job runs an image
        built from the Dockerfile stage that installs it.
        """

        resource_group = ctx.state.require(RESOURCE_GROUP)
        target = self.settings.container.validation_target
        image = f"{self.settings.container.image_repository}:{self.image_tag}-{target}"
        ctx.retry_command(
            self.az.acr_build(
                registry=ctx.state.require(CONTAINER_REGISTRY),
                image=image,
                dockerfile=self.settings.dockerfile_path,
                context=self.settings.container.build_context,
                target=target,
            ),
            self.settings.retry.command_policy(),
            what="the validation image build",
        )
        ctx.state.outputs[VALIDATION_IMAGE] = f"{ctx.state.require(REGISTRY_LOGIN_SERVER)}/{image}"

        job = self.names.validation_job
        ctx.run(
            self.az.containerapp_job_create(
                name=job,
                resource_group=resource_group,
                environment=ctx.state.require(CONTAINER_APP_ENVIRONMENT),
                image=ctx.state.require(VALIDATION_IMAGE),
                registry_server=ctx.state.require(REGISTRY_LOGIN_SERVER),
                identity_id=ctx.state.require(IDENTITY_ID),
                connection_string=self._connection_string(ctx),
            ),
        )
        ctx.state.outputs[VALIDATION_JOB] = job
        started = require_mapping(
            ctx.run_json(self.az.containerapp_job_start(name=job, resource_group=resource_group)),
            "az containerapp job start",
        )
        execution_name = str(started["name"])
        execution = ctx.poll(
            lambda: require_mapping(
                ctx.run_json(
                    self.az.containerapp_job_execution_show(
                        name=job,
                        resource_group=resource_group,
                        execution=execution_name,
                    ),
                ),
                "az containerapp job execution show",
            ),
            lambda payload: _execution_status(payload) in JOB_TERMINAL_STATES,
            self.settings.retry.readiness_policy(),
            what=f"validation job execution {execution_name}",
        )
        status = _execution_status(execution)
        if status != JOB_SUCCEEDED:
            raise NonRetryableError(
                f"DAB configuration validation ended with status {status}; "
                f"inspect the logs of job {job} execution {execution_name}.",
            )
        return f"{execution_name} succeeded"

    def _connection_string(self, ctx: OrchestrationContext) -> str:
        return connection_string(
            server_fqdn=ctx.state.require(SQL_SERVER_FQDN),
            database=ctx.state.require(SQL_DATABASE),
            client_id=ctx.state.require(IDENTITY_CLIENT_ID),
        )


def _execution_status(execution: dict) -> str:
    properties = execution.get("properties") or {}
    return str(properties.get("status", ""))
