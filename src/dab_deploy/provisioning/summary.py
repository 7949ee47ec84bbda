"""Deployment summary: the JSON artifact of a successful run and its console twin."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from dab_deploy.orchestrator.models import DeploymentMode, DeploymentSummary

logger = logging.getLogger(__name__)

REST_PATH = "/api"
GRAPHQL_PATH = "/graphql"


def build_summary(  # noqa: PLR0913
    *,
    mode: DeploymentMode,
    resource_group: str,
    location: str,
    resources: dict[str, str],
    app_fqdn: str,
    health_path: str,
    image: str | None,
    elapsed_seconds: float,
) -> DeploymentSummary:
    base_url = f"https://{app_fqdn}"
    return DeploymentSummary(
        mode=mode,
        resource_group=resource_group,
        location=location,
        resources=resources,
        endpoints={
            "app": base_url,
            "rest": f"{base_url}{REST_PATH}",
            "graphql": f"{base_url}{GRAPHQL_PATH}",
            "health": f"{base_url}{health_path}",
        },
        image=image,
        elapsed_seconds=elapsed_seconds,
    )


class SummaryFileWriter:
    """Persist summaries as pretty-printed JSON at a fixed path."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def __call__(self, summary: DeploymentSummary) -> str:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(summary.to_dict(), indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        logger.info("Wrote deployment summary to %s", self.path)
        return f"Saved to {self.path}"


def render_summary(summary: DeploymentSummary) -> list[str]:
    """Console lines mirroring the JSON summary."""

    lines = [
        f"Deployment {summary.mode.value} completed in {summary.elapsed_seconds:.0f}s",
        f"Resource group: {summary.resource_group} ({summary.location})",
    ]
    if summary.image:
        lines.append(f"Image: {summary.image}")
    if summary.resources:
        lines.append("Resources:")
        lines.extend(f"  {kind}: {name}" for kind, name in summary.resources.items())
    lines.append("Endpoints:")
    lines.extend(f"  {kind}: {url}" for kind, url in summary.endpoints.items())
    return lines
