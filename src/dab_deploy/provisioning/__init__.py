"""Concrete Azure plans: first-time create and image-only update."""

from dab_deploy.provisioning.commands import AzCli, SqlCmd
from dab_deploy.provisioning.create_plan import CreatePlanBuilder
from dab_deploy.provisioning.summary import SummaryFileWriter, render_summary
from dab_deploy.provisioning.update_plan import UpdatePlanBuilder

__all__ = [
    "AzCli",
    "CreatePlanBuilder",
    "SqlCmd",
    "SummaryFileWriter",
    "UpdatePlanBuilder",
    "render_summary",
]
