"""Redeploy a new image into an existing deployment."""

from __future__ import annotations

import logging
from typing import Any

from dab_deploy.orchestrator.context import OrchestrationContext
from dab_deploy.orchestrator.errors import NonRetryableError
from dab_deploy.orchestrator.models import DeploymentMode
from dab_deploy.orchestrator.sequencer import DeploymentPlan, PlanStep
from dab_deploy.provisioning.steps import (
    CONTAINER_APP,
    CONTAINER_REGISTRY,
    IMAGE,
    LOCATION,
    REGISTRY_ID,
    REGISTRY_LOGIN_SERVER,
    RESOURCE_GROUP,
    ProvisioningSteps,
    require_mapping,
)

logger = logging.getLogger(__name__)

REGISTRY_RESOURCE_TYPE = "Microsoft.ContainerRegistry/registries"
CONTAINER_APP_RESOURCE_TYPE = "Microsoft.App/containerApps"


class UpdatePlanBuilder(ProvisioningSteps):
    """Build the update plan: discover, rebuild, swap the image, verify.

    Nothing is created. The only mutation is ``az containerapp update
    --image``, and the run never claims the resource group as its own, so a
    failed update leaves the existing deployment in place.
    """

    def plan(self) -> DeploymentPlan:
        return DeploymentPlan(
            mode=DeploymentMode.UPDATE,
            steps=(
                PlanStep("Verify CLI login", self.verify_login, 5),
                PlanStep("Locate existing deployment", self.locate_deployment, 5),
                PlanStep("Discover deployed resources", self.discover_resources, 10),
                PlanStep("Build and push image", self.build_image, 180),
                PlanStep("Update container app image", self.update_container_app, 60),
                PlanStep("Wait for container readiness", self.wait_for_readiness, 60),
                PlanStep("Check API health", self.check_health, 60),
            ),
            summarize=self.summarize,
        )

    def locate_deployment(self, ctx: OrchestrationContext) -> str:
        """Use the configured resource group, or the newest one carrying the app tag."""

        explicit = self.settings.azure.resource_group
        if explicit:
            exists = ctx.run(self.az.group_exists(explicit)).output.strip().lower() == "true"
            if not exists:
                raise NonRetryableError(f"Resource group {explicit} does not exist.")
            group = require_mapping(ctx.run_json(self.az.group_show(explicit)), "az group show")
            ctx.state.outputs[RESOURCE_GROUP] = explicit
            ctx.state.outputs[LOCATION] = str(group.get("location") or self.settings.azure.location)
            return explicit

        tag = f"app={self.settings.azure.app_tag}"
        groups = ctx.run_json(self.az.group_list(tag)) or []
        if not isinstance(groups, list) or not groups:
            raise NonRetryableError(
                f"No resource group tagged {tag} found; run `dab-deploy deploy` first "
                "or pass --resource-group.",
            )
        group = newest_deployment(groups)
        if len(groups) > 1:
            ctx.tracker.info(f"{len(groups)} deployments tagged {tag}; using the newest.")
        ctx.state.outputs[RESOURCE_GROUP] = str(group["name"])
        ctx.state.outputs[LOCATION] = str(group.get("location") or self.settings.azure.location)
        return ctx.state.outputs[RESOURCE_GROUP]

    def discover_resources(self, ctx: OrchestrationContext) -> str:
        resource_group = ctx.state.require(RESOURCE_GROUP)
        resources = ctx.run_json(self.az.resource_list(resource_group)) or []
        registry = _single_resource(resources, REGISTRY_RESOURCE_TYPE, resource_group)
        app = _single_resource(resources, CONTAINER_APP_RESOURCE_TYPE, resource_group)

        registry_details = require_mapping(
            ctx.run_json(
                self.az.acr_show(name=str(registry["name"]), resource_group=resource_group),
            ),
            "az acr show",
        )
        outputs = ctx.state.outputs
        outputs[CONTAINER_REGISTRY] = str(registry["name"])
        outputs[REGISTRY_ID] = str(registry_details.get("id") or registry.get("id", ""))
        outputs[REGISTRY_LOGIN_SERVER] = str(registry_details["loginServer"])
        outputs[CONTAINER_APP] = str(app["name"])
        return f"registry {outputs[CONTAINER_REGISTRY]}, app {outputs[CONTAINER_APP]}"

    def update_container_app(self, ctx: OrchestrationContext) -> str:
        ctx.run(
            self.az.containerapp_update_image(
                name=ctx.state.require(CONTAINER_APP),
                resource_group=ctx.state.require(RESOURCE_GROUP),
                image=ctx.state.require(IMAGE),
            ),
        )
        return ctx.state.require(IMAGE)


def newest_deployment(groups: list[dict[str, Any]]) -> dict[str, Any]:
    """Pick the group whose ``deployment`` tag (a sortable timestamp) is greatest."""

    def _key(group: dict[str, Any]) -> tuple[str, str]:
        tags = group.get("tags") or {}
        return str(tags.get("deployment", "")), str(group.get("name", ""))

    return max(groups, key=_key)


def _single_resource(
    resources: list[dict[str, Any]],
    resource_type: str,
    resource_group: str,
) -> dict[str, Any]:
    matches = [
        resource
        for resource in resources
        if str(resource.get("type", "")).lower() == resource_type.lower()
    ]
    if not matches:
        raise NonRetryableError(f"No {resource_type} found in {resource_group}.")
    if len(matches) > 1:
        names = ", ".join(sorted(str(match.get("name")) for match in matches))
        raise NonRetryableError(
            f"Ambiguous deployment: several {resource_type} in {resource_group} ({names}).",
        )
    return matches[0]
