"""Compensating teardown of the top-level aggregate after a failed run."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from dab_deploy.orchestrator.backend import CommandExecutor
from dab_deploy.orchestrator.models import DeploymentState, RollbackAction, RollbackOutcome

logger = logging.getLogger(__name__)

DeleteCommandBuilder = Callable[[str], Sequence[str]]


class RollbackCoordinator:
    """Delete the aggregate a failed run created, or preserve it for debugging.

    Only the aggregate is ever deleted; children go with it. At most one
    delete command is issued per failed run, and it does not wait for the
    deletion to finish.
    """

    def __init__(self, *, executor: CommandExecutor, delete_command: DeleteCommandBuilder) -> None:
        self.executor = executor
        self.delete_command = delete_command

    def on_failure(self, state: DeploymentState, preserve_for_debug: bool) -> RollbackOutcome:
        aggregate_id = state.created_aggregate_id
        if aggregate_id is None:
            logger.info("Nothing to roll back: run created no aggregate.")
            return RollbackOutcome(
                action=RollbackAction.NOTHING_TO_ROLL_BACK,
                detail="No resources were created by this run.",
            )

        if preserve_for_debug:
            logger.warning("Preserving %s for debugging; delete it manually.", aggregate_id)
            return RollbackOutcome(
                action=RollbackAction.PRESERVED,
                aggregate_id=aggregate_id,
                detail=f"Preserved {aggregate_id} for debugging.",
            )

        invocation = self.executor.execute(self.delete_command(aggregate_id))
        if invocation.ok:
            logger.info("Requested deletion of %s.", aggregate_id)
            detail = f"Deletion of {aggregate_id} requested (runs in the background)."
        else:
            logger.error(
                "Delete request for %s failed with exit code %s.",
                aggregate_id,
                invocation.exit_code,
            )
            detail = (
                f"Delete request for {aggregate_id} failed (exit {invocation.exit_code}); "
                "delete it manually."
            )
        return RollbackOutcome(
            action=RollbackAction.DELETE_REQUESTED,
            aggregate_id=aggregate_id,
            invocation=invocation,
            detail=detail,
        )
