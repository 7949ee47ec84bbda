from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from dab_deploy import __version__
from dab_deploy.main import dab_deploy

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("dab-deploy commands"),
]


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in (
        "DAB_DEPLOY_SQL_SCHEMA_PATH",
        "DAB_DEPLOY_RESOURCE_GROUP",
        "DAB_DEPLOY_SUBSCRIPTION",
        "DAB_DEPLOY_NAME_PREFIX",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_version_option() -> None:
    result = CliRunner().invoke(dab_deploy, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_names_previews_sanitized_names() -> None:
    result = CliRunner().invoke(
        dab_deploy,
        ["names", "--prefix", "dab", "--suffix", "20260101000000", "--database", "catalog"],
    )

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == "Suffix: 20260101000000"
    assert any(line.split() == ["resource_group", "rg-dab-20260101000000"] for line in lines)
    assert any("acrdab20260101000000" in line for line in lines)
    assert any(line.split() == ["sql_database", "catalog"] for line in lines)


def test_names_rejects_unusable_database_name() -> None:
    result = CliRunner().invoke(dab_deploy, ["names", "--database", "a b"])

    assert result.exit_code != 0
    assert "Invalid name:" in result.output
    assert "Invalid resource name." in result.output


def test_classify_reads_output_from_stdin() -> None:
    result = CliRunner().invoke(
        dab_deploy,
        ["classify", "--exit-code", "1"],
        input="ERROR: (TooManyRequests) Too Many Requests\n",
    )

    assert result.exit_code == 0, result.output
    assert "Failure class: retryable" in result.output
    assert "Rule: rate_limited" in result.output
    assert "Retry: yes" in result.output


def test_classify_reads_output_from_file(tmp_path: Path) -> None:
    saved = tmp_path / "az-output.txt"
    saved.write_text("Something odd happened\n", encoding="utf-8")

    result = CliRunner().invoke(dab_deploy, ["classify", str(saved)])

    assert result.exit_code == 0, result.output
    assert "Failure class: fatal" in result.output
    assert "Rule: fallback_fatal" in result.output
    assert "Pattern:" not in result.output


def test_deploy_reports_configuration_errors(tmp_path: Path, clean_env: pytest.MonkeyPatch) -> None:
    result = CliRunner().invoke(
        dab_deploy,
        ["deploy", "--build-context", str(tmp_path), "--log-path", str(tmp_path / "run.log")],
    )

    assert result.exit_code != 0
    assert "Configuration error: Dockerfile not found" in result.output
    assert not (tmp_path / "run.log").exists()


def test_deploy_without_cli_fails_at_login_and_points_to_the_log(
    tmp_path: Path,
    clean_env: pytest.MonkeyPatch,
) -> None:
    clean_env.setenv("DAB_DEPLOY_AZ_EXECUTABLE", "az-missing-for-dab-deploy-tests")
    (tmp_path / "Dockerfile").write_text("FROM data-api-builder\n", encoding="utf-8")
    log_path = tmp_path / "run.log"

    result = CliRunner().invoke(
        dab_deploy,
        [
            "deploy",
            "--prefix",
            "dab",
            "--build-context",
            str(tmp_path),
            "--log-path",
            str(log_path),
            "--summary-path",
            str(tmp_path / "summary.json"),
        ],
    )

    assert result.exit_code != 0
    assert "Verify CLI login ..." in result.output
    assert "failed at step 'Verify CLI login'" in result.output
    assert "exited with 127" in result.output
    assert "Rollback: No resources were created by this run." in result.output
    assert f"Command log: {log_path}" in result.output
    assert "Deployment failed." in result.output
    assert "az-missing-for-dab-deploy-tests" in log_path.read_text(encoding="utf-8")
    assert not (tmp_path / "summary.json").exists()


def test_update_without_cli_never_requests_a_delete(
    tmp_path: Path,
    clean_env: pytest.MonkeyPatch,
) -> None:
    clean_env.setenv("DAB_DEPLOY_AZ_EXECUTABLE", "az-missing-for-dab-deploy-tests")
    (tmp_path / "Dockerfile").write_text("FROM data-api-builder\n", encoding="utf-8")
    log_path = tmp_path / "run.log"

    result = CliRunner().invoke(
        dab_deploy,
        ["update", "--build-context", str(tmp_path), "--log-path", str(log_path)],
    )

    assert result.exit_code != 0
    assert "Deployment update failed at step 'Verify CLI login'." in result.output
    assert "Update failed." in result.output
    assert "group delete" not in log_path.read_text(encoding="utf-8")
