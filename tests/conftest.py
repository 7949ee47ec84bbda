"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import pytest

from dab_deploy.http import HealthResult
from dab_deploy.orchestrator.context import OrchestrationContext
from dab_deploy.orchestrator.models import CommandInvocation, utc_now


@dataclass(slots=True)
class ScriptedResponse:
    output: str = ""
    exit_code: int = 0


@dataclass(slots=True)
class _Rule:
    words: tuple[str, ...]
    responses: list[ScriptedResponse] = field(default_factory=list)


def _contains(argv: Sequence[str], words: tuple[str, ...]) -> bool:
    size = len(words)
    return any(tuple(argv[i : i + size]) == words for i in range(len(argv) - size + 1))


class ScriptedExecutor:
    """In-memory command executor answering from scripted responses.

    ``respond("group", "exists", output="false")`` answers every argv that
    contains those words contiguously. Repeated calls for the same words
    queue responses; the last one keeps answering. The most specific
    matching rule wins; unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.log_path: str | None = "scripted.log"
        self.calls: list[tuple[str, ...]] = []
        self.redacted: list[tuple[str, ...]] = []
        self.secrets: list[str] = []
        self.closed = False
        self._rules: dict[tuple[str, ...], _Rule] = {}

    def respond(self, *words: str, output: Any = "", exit_code: int = 0) -> ScriptedExecutor:
        text = output if isinstance(output, str) else json.dumps(output)
        rule = self._rules.setdefault(words, _Rule(words=words))
        rule.responses.append(ScriptedResponse(output=text, exit_code=exit_code))
        return self

    def execute(self, argv: Sequence[str], *, redact_output: bool = False) -> CommandInvocation:
        call = tuple(str(part) for part in argv)
        self.calls.append(call)
        if redact_output:
            self.redacted.append(call)
        response = self._next_response(call)
        return CommandInvocation(
            argv=call,
            exit_code=response.exit_code,
            output=response.output,
            timestamp=utc_now(),
        )

    def register_secret(self, value: str) -> None:
        self.secrets.append(value)

    def close(self) -> None:
        self.closed = True

    def calls_with(self, *words: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if _contains(call, words)]

    def _next_response(self, call: tuple[str, ...]) -> ScriptedResponse:
        matching = [rule for rule in self._rules.values() if _contains(call, rule.words)]
        if not matching:
            return ScriptedResponse()
        rule = max(matching, key=lambda candidate: len(candidate.words))
        if len(rule.responses) > 1:
            return rule.responses.pop(0)
        return rule.responses[0]


class FakeClock:
    """Monotonic clock that only moves when someone sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProbe:
    """Health probe double: scripted health answers and a fixed public IP."""

    def __init__(self, *results: HealthResult, ip: str = "203.0.113.7") -> None:
        self.results = list(results)
        self.ip = ip
        self.checked: list[str] = []
        self.closed = False

    def check(self, url: str) -> HealthResult:
        self.checked.append(url)
        if len(self.results) > 1:
            return self.results.pop(0)
        if self.results:
            return self.results[0]
        return HealthResult(url=url, status_code=200, body={"status": "Healthy"})

    def public_ip(self) -> str:
        return self.ip

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> FakeProbe:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


@pytest.fixture()
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def context(executor: ScriptedExecutor, clock: FakeClock) -> OrchestrationContext:
    return OrchestrationContext(executor=executor, sleep=clock.sleep, clock=clock)
