"""Deterministic command failure classification for retry policy.

The wrapped CLIs expose no structured error channel, so classification
matches their combined output against one ordered rule table. The first rule
with a matching pattern wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from dab_deploy.orchestrator.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

COMMAND_NOT_FOUND_EXIT_CODE = 127
NAME_CONFLICT_RULE = "name_conflict"


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    """One named row of the classification table."""

    name: str
    failure_class: FailureClass
    patterns: tuple[str, ...]

    def first_match(self, haystack: str) -> str | None:
        for pattern in self.patterns:
            if re.search(pattern, haystack, flags=re.IGNORECASE):
                return pattern
        return None


# Order matters: propagation lag wording overlaps with "not found"/"denied"
# wording of the permanent rules below it.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        name="propagation_lag",
        failure_class=FailureClass.RETRYABLE,
        patterns=(
            r"principalnotfound",
            r"does not exist in the directory",
            r"does not exist or one of its queried reference-property objects",
            r"could not be found or this principal type is not supported",
            r"principal '.*' could not be found",
            r"is not allowed to access the server",
            r"replication",
            r"not yet (?:available|provisioned)",
        ),
    ),
    ClassificationRule(
        name=NAME_CONFLICT_RULE,
        failure_class=FailureClass.NON_RETRYABLE,
        patterns=(
            r"already exists",
            r"alreadyexists",
            r"already in use",
            r"nameunavailable",
            r"name is not available",
            r"registrynamenotavailable",
        ),
    ),
    ClassificationRule(
        name="permission_denied",
        failure_class=FailureClass.NON_RETRYABLE,
        patterns=(
            r"authorizationfailed",
            r"does not have authorization",
            r"insufficient privileges",
            r"permission denied",
            r"\bforbidden\b",
            r"please run 'az login'",
        ),
    ),
    ClassificationRule(
        name="quota_or_subscription",
        failure_class=FailureClass.NON_RETRYABLE,
        patterns=(
            r"quotaexceeded",
            r"exceeds? (?:the )?quota",
            r"subscriptionnotfound",
            r"subscription .* (?:is )?disabled",
            r"locationnotavailableforresourcetype",
            r"provisioning is restricted in this region",
        ),
    ),
    ClassificationRule(
        name="rate_limited",
        failure_class=FailureClass.RETRYABLE,
        patterns=(
            r"too many requests",
            r"\b429\b",
            r"throttl",
            r"retry after",
        ),
    ),
    ClassificationRule(
        name="transient",
        failure_class=FailureClass.RETRYABLE,
        patterns=(
            r"anotheroperationinprogress",
            r"operation .*in progress",
            r"temporarily unavailable",
            r"service unavailable",
            r"\b50[234]\b",
            r"internal server error",
            r"timed out",
            r"connection (?:reset|refused|aborted)",
            r"could not resolve host",
            r"name or service not known",
        ),
    ),
    ClassificationRule(
        name="command_unusable",
        failure_class=FailureClass.FATAL,
        patterns=(
            r"command not found",
            r"no such file or directory",
            r"unrecognized arguments",
            r"the following arguments are required",
        ),
    ),
)


@dataclass(frozen=True, slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class is FailureClass.RETRYABLE

    def describe(self) -> str:
        if self.matched_pattern is None:
            return f"{self.failure_class.value} ({self.matched_rule})"
        return f"{self.failure_class.value} ({self.matched_rule}: {self.matched_pattern!r})"


def classify(output: str, exit_code: int | None = None) -> FailureClassification:
    """Classify failed command output into a deterministic retry class."""

    for rule in CLASSIFICATION_RULES:
        pattern = rule.first_match(output)
        if pattern is not None:
            return FailureClassification(
                failure_class=rule.failure_class,
                matched_rule=rule.name,
                matched_pattern=pattern,
            )

    if exit_code == COMMAND_NOT_FOUND_EXIT_CODE:
        return FailureClassification(
            failure_class=FailureClass.FATAL,
            matched_rule="command_not_found_exit_code",
            matched_pattern=None,
        )

    return FailureClassification(
        failure_class=FailureClass.FATAL,
        matched_rule="fallback_fatal",
        matched_pattern=None,
    )
