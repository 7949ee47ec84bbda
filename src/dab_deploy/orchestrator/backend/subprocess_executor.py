"""Subprocess-based command executor with an append-only log."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from pathlib import Path
from typing import TextIO

from dab_deploy.orchestrator.failure_classifier import COMMAND_NOT_FOUND_EXIT_CODE
from dab_deploy.orchestrator.models import CommandInvocation, utc_now

logger = logging.getLogger(__name__)

SECRET_MASK = "***"
REDACTED_OUTPUT = "<output redacted>"

_DEFAULT_ENV_OVERRIDES: dict[str, str] = {
    "AZURE_CORE_NO_COLOR": "true",
    "AZURE_CORE_ONLY_SHOW_ERRORS": "true",
}


class SubprocessCommandExecutor:
    """Run external commands and append one record per invocation to a log file.

    The log is opened once, on the first write, and flushed after every
    record so an interrupted run still leaves a readable partial log.
    """

    def __init__(
        self,
        log_path: Path,
        *,
        env_overrides: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.log_path: str | None = str(log_path)
        self._log_file_path = log_path
        self._cwd = cwd
        self._env = os.environ.copy()
        self._env.update(_DEFAULT_ENV_OVERRIDES)
        if env_overrides:
            self._env.update(env_overrides)
        self._secrets: set[str] = set()
        self._handle: TextIO | None = None

    def register_secret(self, value: str) -> None:
        if value:
            self._secrets.add(value)

    def execute(
        self,
        argv: Sequence[str],
        *,
        redact_output: bool = False,
    ) -> CommandInvocation:
        """Run ``argv``; with ``redact_output`` the log gets a placeholder instead of output."""

        run_args = [str(part) for part in argv]
        timestamp = utc_now()
        start_monotonic = time.monotonic()
        logger.debug("Running %s", self._mask(shlex.join(run_args)))
        try:
            completed = subprocess.run(  # noqa: S603
                run_args,
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                env=self._env,
                cwd=self._cwd,
            )
            exit_code = completed.returncode
            output = completed.stdout or ""
        except FileNotFoundError as error:
            exit_code = COMMAND_NOT_FOUND_EXIT_CODE
            output = f"command not found: {run_args[0] if run_args else ''} ({error})"
        except OSError as error:
            exit_code = COMMAND_NOT_FOUND_EXIT_CODE
            output = f"failed to start {run_args[0] if run_args else ''}: {error}"

        invocation = CommandInvocation(
            argv=tuple(run_args),
            exit_code=exit_code,
            output=output,
            timestamp=timestamp,
            duration_seconds=time.monotonic() - start_monotonic,
        )
        self._append_record(invocation, redact_output=redact_output)
        if not invocation.ok:
            logger.debug("Command exited with %s: %s", exit_code, run_args[:3])
        return invocation

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> SubprocessCommandExecutor:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _append_record(self, invocation: CommandInvocation, *, redact_output: bool) -> None:
        handle = self._open_log()
        record = invocation
        if redact_output and invocation.output:
            record = replace(invocation, output=REDACTED_OUTPUT)
        handle.write(format_log_record(record, mask=self._mask))
        handle.flush()

    def _open_log(self) -> TextIO:
        if self._handle is None:
            self._log_file_path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self._log_file_path.open("a", encoding="utf-8")
        return self._handle

    def _mask(self, text: str) -> str:
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, SECRET_MASK)
        return text


def format_log_record(
    invocation: CommandInvocation,
    *,
    mask: Callable[[str], str] | None = None,
) -> str:
    """Render ``<ISO8601> <OK|ERR> <argv>`` followed by the raw output."""

    marker = "OK" if invocation.ok else "ERR"
    header = f"{invocation.timestamp.isoformat()} {marker} {shlex.join(invocation.argv)}"
    body = invocation.output
    if mask is not None:
        header = mask(header)
        body = mask(body)
    if body and not body.endswith("\n"):
        body += "\n"
    return f"{header}\n{body}"
