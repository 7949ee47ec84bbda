"""Steps shared by the create and update plans."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from dab_deploy.config import Settings
from dab_deploy.http import HealthProbe, HealthResult
from dab_deploy.orchestrator.context import OrchestrationContext
from dab_deploy.orchestrator.errors import NonRetryableError
from dab_deploy.orchestrator.models import DeploymentSummary
from dab_deploy.orchestrator.naming import deployment_suffix
from dab_deploy.provisioning.commands import AzCli, SqlCmd
from dab_deploy.provisioning.summary import build_summary

logger = logging.getLogger(__name__)

# Keys of DeploymentState.outputs written by one step and read by later ones.
RESOURCE_GROUP = "resource_group"
LOCATION = "location"
ACCOUNT_NAME = "account_name"
ADMIN_NAME = "admin_name"
ADMIN_SID = "admin_sid"
ADMIN_TYPE = "admin_type"
SQL_SERVER = "sql_server"
SQL_SERVER_FQDN = "sql_server_fqdn"
SQL_DATABASE = "sql_database"
CONTAINER_REGISTRY = "container_registry"
REGISTRY_ID = "registry_id"
REGISTRY_LOGIN_SERVER = "registry_login_server"
IMAGE = "image"
LOG_ANALYTICS_WORKSPACE = "log_analytics_workspace"
WORKSPACE_CUSTOMER_ID = "workspace_customer_id"
WORKSPACE_KEY = "workspace_key"  # noqa: S105
CONTAINER_APP_ENVIRONMENT = "container_app_environment"
MANAGED_IDENTITY = "managed_identity"
IDENTITY_ID = "identity_id"
IDENTITY_PRINCIPAL_ID = "identity_principal_id"
IDENTITY_CLIENT_ID = "identity_client_id"
CONTAINER_APP = "container_app"
APP_FQDN = "app_fqdn"
VALIDATION_JOB = "validation_job"
VALIDATION_IMAGE = "validation_image"

# Outputs that name a resource; they make up the summary's resource list.
RESOURCE_OUTPUT_KEYS = (
    SQL_SERVER,
    SQL_DATABASE,
    CONTAINER_REGISTRY,
    LOG_ANALYTICS_WORKSPACE,
    CONTAINER_APP_ENVIRONMENT,
    MANAGED_IDENTITY,
    CONTAINER_APP,
    VALIDATION_JOB,
)

USER_PRINCIPAL_TYPE = "User"
APPLICATION_PRINCIPAL_TYPE = "Application"

PROVISIONING_SUCCEEDED = "Succeeded"
PROVISIONING_FAILED = "Failed"


class ProvisioningSteps:
    """Step implementations reused by both plans.

    Every public method with a ``ctx`` argument is a plan step: it reads the
    outputs of earlier steps from ``ctx.state``, records its own, and
    returns a one-line detail for the progress display.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        probe: HealthProbe,
        image_tag: str | None = None,
    ) -> None:
        self.settings = settings
        self.probe = probe
        self.image_tag = image_tag or deployment_suffix()
        self.az = AzCli(settings.azure.az_executable)
        self.sqlcmd = SqlCmd(settings.sql.sqlcmd_executable)

    def verify_login(self, ctx: OrchestrationContext) -> str:
        """Fail fast when the CLI is missing or not signed in."""

        if self.settings.azure.subscription:
            ctx.run(self.az.account_set(self.settings.azure.subscription))
        account = require_mapping(ctx.run_json(self.az.account_show()), "az account show")
        user = account.get("user") or {}
        outputs = ctx.state.outputs
        outputs[ACCOUNT_NAME] = str(account.get("name", ""))

        if user.get("type") == "servicePrincipal":
            app_id = str(user.get("name", ""))
            principal = require_mapping(
                ctx.run_json(self.az.service_principal_show(app_id)),
                "az ad sp show",
            )
            outputs[ADMIN_NAME] = str(principal.get("displayName") or app_id)
            outputs[ADMIN_SID] = str(principal["id"])
            outputs[ADMIN_TYPE] = APPLICATION_PRINCIPAL_TYPE
        else:
            signed_in = require_mapping(
                ctx.run_json(self.az.signed_in_user_show()),
                "az ad signed-in-user show",
            )
            outputs[ADMIN_NAME] = str(signed_in.get("userPrincipalName") or user.get("name"))
            outputs[ADMIN_SID] = str(signed_in["id"])
            outputs[ADMIN_TYPE] = USER_PRINCIPAL_TYPE

        return f"Signed in as {outputs[ADMIN_NAME]} ({outputs[ACCOUNT_NAME]})"

    def build_image(self, ctx: OrchestrationContext) -> str:
        """Build in the registry with ``az acr build`` and record the full image reference."""

        container = self.settings.container
        image = f"{container.image_repository}:{self.image_tag}"
        ctx.retry_command(
            self.az.acr_build(
                registry=ctx.state.require(CONTAINER_REGISTRY),
                image=image,
                dockerfile=self.settings.dockerfile_path,
                context=container.build_context,
            ),
            self.settings.retry.command_policy(),
            what="the image build",
        )
        ctx.state.outputs[IMAGE] = f"{ctx.state.require(REGISTRY_LOGIN_SERVER)}/{image}"
        return ctx.state.outputs[IMAGE]

    def wait_for_readiness(self, ctx: OrchestrationContext) -> str:
        """Poll the container app until its latest revision is provisioned."""

        resource_group = ctx.state.require(RESOURCE_GROUP)
        name = ctx.state.require(CONTAINER_APP)
        app = ctx.poll(
            lambda: require_mapping(
                ctx.run_json(self.az.containerapp_show(name=name, resource_group=resource_group)),
                "az containerapp show",
            ),
            _is_provisioned,
            self.settings.retry.readiness_policy(),
            what=f"container app {name} to become ready",
        )
        properties = app.get("properties") or {}
        fqdn = ((properties.get("configuration") or {}).get("ingress") or {}).get("fqdn")
        if not fqdn:
            raise NonRetryableError(f"Container app {name} has no external ingress FQDN.")
        ctx.state.outputs[APP_FQDN] = str(fqdn)
        revision = properties.get("latestRevisionName") or "unknown revision"
        return f"{revision} ready at {fqdn}"

    def check_health(self, ctx: OrchestrationContext) -> str:
        """Poll the DAB health endpoint until it reports healthy."""

        url = f"https://{ctx.state.require(APP_FQDN)}{self.settings.container.health_path}"
        result: HealthResult = ctx.poll(
            lambda: self.probe.check(url),
            lambda probe_result: probe_result.is_healthy,
            self.settings.retry.health_policy(),
            what=f"{url} to report healthy",
        )
        return result.describe()

    def summarize(self, ctx: OrchestrationContext, elapsed_seconds: float) -> DeploymentSummary:
        outputs = ctx.state.outputs
        return build_summary(
            mode=ctx.state.mode,
            resource_group=ctx.state.require(RESOURCE_GROUP),
            location=outputs.get(LOCATION, self.settings.azure.location),
            resources={key: outputs[key] for key in RESOURCE_OUTPUT_KEYS if key in outputs},
            app_fqdn=ctx.state.require(APP_FQDN),
            health_path=self.settings.container.health_path,
            image=outputs.get(IMAGE),
            elapsed_seconds=elapsed_seconds,
        )


def _is_provisioned(app: Mapping[str, Any]) -> bool:
    properties = app.get("properties") or {}
    state = properties.get("provisioningState")
    if state == PROVISIONING_FAILED:
        raise NonRetryableError(
            f"Container app provisioning failed (revision {properties.get('latestRevisionName')}).",
        )
    running = properties.get("runningStatus")
    return state == PROVISIONING_SUCCEEDED and running in (None, "Running")


def require_mapping(payload: Any, command: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise NonRetryableError(f"Unexpected output from `{command}`: expected a JSON object.")
    return payload
