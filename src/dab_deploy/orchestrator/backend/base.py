"""Command execution interface used by orchestration steps."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from dab_deploy.orchestrator.models import CommandInvocation


class CommandExecutor(Protocol):
    """Protocol implemented by command runners."""

    log_path: str | None

    def execute(
        self,
        argv: Sequence[str],
        *,
        redact_output: bool = False,
    ) -> CommandInvocation:
        """Run one command to completion and return its invocation record."""

    def register_secret(self, value: str) -> None:
        """Mask ``value`` wherever the runner persists command text."""

    def close(self) -> None:
        """Release the log handle; safe to call more than once."""
