"""Command executor implementations."""

from dab_deploy.orchestrator.backend.base import CommandExecutor
from dab_deploy.orchestrator.backend.subprocess_executor import (
    COMMAND_NOT_FOUND_EXIT_CODE,
    SubprocessCommandExecutor,
    format_log_record,
)

__all__ = [
    "COMMAND_NOT_FOUND_EXIT_CODE",
    "CommandExecutor",
    "SubprocessCommandExecutor",
    "format_log_record",
]
