"""CLI entrypoint for dab-deploy."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TextIO

import rich_click as click

from dab_deploy import __version__
from dab_deploy.controllers import (
    ClassifyCommand,
    DeployCommand,
    DeploymentCliController,
    NamesCommand,
    UpdateCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DeploymentCliController(emit=click.echo)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="dab-deploy")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def dab_deploy(verbose: bool) -> None:
    """Deploy Data API Builder to Azure Container Apps backed by Azure SQL.

    Settings come from `DAB_DEPLOY_*` environment variables; options override them.
    """

    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


def _output_options(func: Callable[..., None]) -> Callable[..., None]:
    """Options shared by deploy and update."""

    func = click.option(
        "--summary-path",
        type=click.Path(dir_okay=False, path_type=Path),
        default=None,
        help="Where to write the JSON deployment summary.",
    )(func)
    func = click.option(
        "--log-path",
        type=click.Path(dir_okay=False, path_type=Path),
        default=None,
        help="Append-only log of every external command.",
    )(func)
    func = click.option(
        "--dockerfile",
        type=click.Path(dir_okay=False, path_type=Path),
        default=None,
        help="Dockerfile, relative to the build context.",
    )(func)
    func = click.option(
        "--build-context",
        type=click.Path(file_okay=False, path_type=Path),
        default=None,
        help="Directory sent to the registry build.",
    )(func)
    return click.option("--subscription", default=None, help="Azure subscription id or name.")(
        func,
    )


@dab_deploy.command("deploy")
@click.option("--prefix", default=None, help="Name prefix for every created resource.")
@click.option("--location", default=None, help="Azure region, for example westus2.")
@click.option(
    "--resource-group",
    default=None,
    help="Resource group to create. Defaults to rg-<prefix>-<timestamp>.",
)
@click.option(
    "--schema",
    "schema_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="T-SQL script applied to the new database.",
)
@click.option(
    "--preserve-on-failure/--rollback-on-failure",
    default=None,
    help="Keep the resource group after a failure instead of deleting it.",
)
@click.option(
    "--validate-config/--skip-validate-config",
    default=None,
    help="Run `dab validate` in a one-shot Container Apps job before going live.",
)
@_output_options
def deploy(  # noqa: PLR0913
    prefix: str | None,
    location: str | None,
    resource_group: str | None,
    schema_path: Path | None,
    preserve_on_failure: bool | None,
    validate_config: bool | None,
    subscription: str | None,
    build_context: Path | None,
    dockerfile: Path | None,
    log_path: Path | None,
    summary_path: Path | None,
) -> None:
    """Provision a new deployment from scratch."""

    result = CONTROLLER.deploy(
        DeployCommand(
            prefix=prefix,
            location=location,
            resource_group=resource_group,
            subscription=subscription,
            schema_path=schema_path,
            build_context=build_context,
            dockerfile=dockerfile,
            log_path=log_path,
            summary_path=summary_path,
            preserve_on_failure=preserve_on_failure,
            validate_config=validate_config,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Deployment failed.")


@dab_deploy.command("update")
@click.option(
    "--resource-group",
    default=None,
    help="Existing deployment. Defaults to the newest group tagged with the app tag.",
)
@_output_options
def update(  # noqa: PLR0913
    resource_group: str | None,
    subscription: str | None,
    build_context: Path | None,
    dockerfile: Path | None,
    log_path: Path | None,
    summary_path: Path | None,
) -> None:
    """Rebuild the image and roll it out to an existing deployment."""

    result = CONTROLLER.update(
        UpdateCommand(
            resource_group=resource_group,
            subscription=subscription,
            build_context=build_context,
            dockerfile=dockerfile,
            log_path=log_path,
            summary_path=summary_path,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Update failed.")


@dab_deploy.command("names")
@click.option("--prefix", default="dab", show_default=True, help="Name prefix.")
@click.option("--suffix", default=None, help="Deployment suffix. Defaults to the current time.")
@click.option("--database", "database_name", default="dab", show_default=True)
@click.option("--resource-group", default=None, help="Explicit resource group name.")
def names(prefix: str, suffix: str | None, database_name: str, resource_group: str | None) -> None:
    """Preview the sanitized resource names a deployment would use."""

    result = CONTROLLER.names(
        NamesCommand(
            prefix=prefix,
            suffix=suffix,
            database_name=database_name,
            resource_group=resource_group,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Invalid resource name.")


@dab_deploy.command("classify")
@click.argument("output_file", type=click.File("r"), default="-")
@click.option("--exit-code", type=int, default=None, help="Exit code of the failed command.")
def classify_output(output_file: TextIO, exit_code: int | None) -> None:
    """Classify saved `az`/`sqlcmd` output as retryable, non-retryable or fatal.

    Reads OUTPUT_FILE, or standard input when omitted.
    """

    command = ClassifyCommand(output=output_file.read(), exit_code=exit_code)
    _emit_lines(CONTROLLER.classify(command))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    dab_deploy()
