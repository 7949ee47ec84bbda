from __future__ import annotations

import allure
import pytest

from dab_deploy.orchestrator.failure_classifier import (
    CLASSIFICATION_RULES,
    COMMAND_NOT_FOUND_EXIT_CODE,
    FAILURE_CLASSIFIER_VERSION,
    classify,
)
from dab_deploy.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Provisioning Engine"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("output", "expected_class", "expected_rule"),
    [
        (
            "(PrincipalNotFound) Principal 4f1c does not exist in the directory 72f9.",
            FailureClass.RETRYABLE,
            "propagation_lag",
        ),
        (
            "Msg 33130: Principal 'id-dab-1' could not be found or this principal type "
            "is not supported.",
            FailureClass.RETRYABLE,
            "propagation_lag",
        ),
        (
            "Cannot open server 'sql-dab' requested by the login. Client with IP address "
            "'203.0.113.7' is not allowed to access the server.",
            FailureClass.RETRYABLE,
            "propagation_lag",
        ),
        (
            "Resource 'abc' does not exist or one of its queried reference-property objects "
            "are not present.",
            FailureClass.RETRYABLE,
            "propagation_lag",
        ),
        (
            "(ServerNameAlreadyExists) The name 'sql-dab' already exists. Choose a different name.",
            FailureClass.NON_RETRYABLE,
            "name_conflict",
        ),
        (
            "(AuthorizationFailed) The client does not have authorization to perform action.",
            FailureClass.NON_RETRYABLE,
            "permission_denied",
        ),
        (
            "Please run 'az login' to setup account.",
            FailureClass.NON_RETRYABLE,
            "permission_denied",
        ),
        (
            "(QuotaExceeded) Operation could not be completed as it results in exceeding quota.",
            FailureClass.NON_RETRYABLE,
            "quota_or_subscription",
        ),
        ("HTTP 429 Too Many Requests", FailureClass.RETRYABLE, "rate_limited"),
        (
            "(AnotherOperationInProgress) Another operation is in progress on the server.",
            FailureClass.RETRYABLE,
            "transient",
        ),
        ("az: error: unrecognized arguments: --bogus", FailureClass.FATAL, "command_unusable"),
    ],
)
def test_classifier_maps_known_cli_output(
    output: str,
    expected_class: FailureClass,
    expected_rule: str,
) -> None:
    classified = classify(output, exit_code=1)

    assert classified.failure_class is expected_class
    assert classified.matched_rule == expected_rule
    assert classified.matched_pattern is not None


def test_propagation_lag_wins_over_overlapping_permanent_wording() -> None:
    classified = classify(
        "PrincipalNotFound: principal does not exist in the directory; "
        "AuthorizationFailed for scope",
    )

    assert classified.failure_class is FailureClass.RETRYABLE
    assert classified.matched_rule == "propagation_lag"


def test_matching_is_case_insensitive() -> None:
    assert classify("TOO MANY REQUESTS").matched_rule == "rate_limited"


def test_missing_executable_exit_code_is_fatal() -> None:
    classified = classify("", exit_code=COMMAND_NOT_FOUND_EXIT_CODE)

    assert classified.failure_class is FailureClass.FATAL
    assert classified.matched_rule == "command_not_found_exit_code"
    assert classified.retryable is False


def test_classifier_falls_back_to_fatal() -> None:
    classified = classify("Something unexpected happened", exit_code=1)

    assert classified.failure_class is FailureClass.FATAL
    assert classified.matched_rule == "fallback_fatal"
    assert classified.matched_pattern is None
    assert classified.describe() == "fatal (fallback_fatal)"


def test_rule_names_are_unique() -> None:
    names = [rule.name for rule in CLASSIFICATION_RULES]

    assert len(names) == len(set(names))
