"""Runtime configuration for provisioning runs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dab_deploy.orchestrator.naming import build_resource_names
from dab_deploy.orchestrator.retry import RetryPolicy

_MAX_PORT = 65_535


@dataclass(slots=True)
class AzureSettings:
    """Control-plane target and naming settings."""

    location: str = "westus2"
    name_prefix: str = "dab"
    resource_group: str | None = None
    subscription: str | None = None
    app_tag: str = "dab-deploy"
    az_executable: str = "az"


@dataclass(slots=True)
class SqlSettings:
    """Azure SQL settings."""

    database_name: str = "dab"
    service_objective: str = "Basic"
    schema_path: Path | None = None
    sqlcmd_executable: str = "sqlcmd"
    allow_client_ip: bool = True


@dataclass(slots=True)
class ContainerSettings:
    """Image build and container app settings."""

    build_context: Path = Path()
    dockerfile: Path = Path("Dockerfile")
    image_repository: str = "dab"
    target_port: int = 5000
    cpu: str = "0.5"
    memory: str = "1.0Gi"
    min_replicas: int = 1
    max_replicas: int = 1
    validate_config: bool = True
    # Dockerfile stage that carries the DAB CLI and dab-config.json.
    validation_target: str = "build"
    health_path: str = "/health"


@dataclass(slots=True)
class RetrySettings:
    """Retry budgets for the consistency-sensitive joins of a plan."""

    command_attempts: int = 3
    command_delay_seconds: float = 10.0
    propagation_deadline_seconds: float = 300.0
    propagation_base_delay_seconds: float = 10.0
    propagation_max_delay_seconds: float = 60.0
    readiness_deadline_seconds: float = 600.0
    readiness_delay_seconds: float = 15.0
    health_deadline_seconds: float = 600.0
    health_base_delay_seconds: float = 20.0
    health_max_delay_seconds: float = 240.0
    jitter: bool = True

    def command_policy(self) -> RetryPolicy:
        """Plain commands that may hit rate limits or transient control-plane errors."""

        return RetryPolicy.count(
            self.command_attempts,
            base_delay_seconds=self.command_delay_seconds,
            jitter=self.jitter,
        )

    def propagation_policy(self) -> RetryPolicy:
        """Identity or firewall changes becoming visible to a second subsystem."""

        return RetryPolicy.deadline(
            self.propagation_deadline_seconds,
            base_delay_seconds=self.propagation_base_delay_seconds,
            max_delay_seconds=self.propagation_max_delay_seconds,
            exponential=True,
            jitter=self.jitter,
        )

    def readiness_policy(self) -> RetryPolicy:
        return RetryPolicy.deadline(
            self.readiness_deadline_seconds,
            base_delay_seconds=self.readiness_delay_seconds,
            jitter=self.jitter,
        )

    def health_policy(self) -> RetryPolicy:
        return RetryPolicy.deadline(
            self.health_deadline_seconds,
            base_delay_seconds=self.health_base_delay_seconds,
            max_delay_seconds=self.health_max_delay_seconds,
            exponential=True,
            jitter=self.jitter,
        )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    log_path: Path = Path("dab-deploy.log")
    summary_path: Path = Path("deployment-summary.json")
    preserve_on_failure: bool = False
    azure: AzureSettings = field(default_factory=AzureSettings)
    sql: SqlSettings = field(default_factory=SqlSettings)
    container: ContainerSettings = field(default_factory=ContainerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for a demo deployment."""

        schema_path = os.getenv("DAB_DEPLOY_SQL_SCHEMA_PATH", "").strip()
        return cls(
            log_path=Path(os.getenv("DAB_DEPLOY_LOG_PATH", "dab-deploy.log")),
            summary_path=Path(os.getenv("DAB_DEPLOY_SUMMARY_PATH", "deployment-summary.json")),
            preserve_on_failure=_env_bool("DAB_DEPLOY_PRESERVE_ON_FAILURE", default=False),
            azure=AzureSettings(
                location=os.getenv("DAB_DEPLOY_LOCATION", "westus2"),
                name_prefix=os.getenv("DAB_DEPLOY_NAME_PREFIX", "dab"),
                resource_group=os.getenv("DAB_DEPLOY_RESOURCE_GROUP") or None,
                subscription=os.getenv("DAB_DEPLOY_SUBSCRIPTION") or None,
                app_tag=os.getenv("DAB_DEPLOY_APP_TAG", "dab-deploy"),
                az_executable=os.getenv("DAB_DEPLOY_AZ_EXECUTABLE", "az"),
            ),
            sql=SqlSettings(
                database_name=os.getenv("DAB_DEPLOY_SQL_DATABASE", "dab"),
                service_objective=os.getenv("DAB_DEPLOY_SQL_SERVICE_OBJECTIVE", "Basic"),
                schema_path=Path(schema_path) if schema_path else None,
                sqlcmd_executable=os.getenv("DAB_DEPLOY_SQLCMD_EXECUTABLE", "sqlcmd"),
                allow_client_ip=_env_bool("DAB_DEPLOY_SQL_ALLOW_CLIENT_IP", default=True),
            ),
            container=ContainerSettings(
                build_context=Path(os.getenv("DAB_DEPLOY_BUILD_CONTEXT", ".")),
                dockerfile=Path(os.getenv("DAB_DEPLOY_DOCKERFILE", "Dockerfile")),
                image_repository=os.getenv("DAB_DEPLOY_IMAGE_REPOSITORY", "dab"),
                target_port=int(os.getenv("DAB_DEPLOY_TARGET_PORT", "5000")),
                cpu=os.getenv("DAB_DEPLOY_CPU", "0.5"),
                memory=os.getenv("DAB_DEPLOY_MEMORY", "1.0Gi"),
                min_replicas=int(os.getenv("DAB_DEPLOY_MIN_REPLICAS", "1")),
                max_replicas=int(os.getenv("DAB_DEPLOY_MAX_REPLICAS", "1")),
                validate_config=_env_bool("DAB_DEPLOY_VALIDATE_CONFIG", default=True),
                validation_target=os.getenv("DAB_DEPLOY_VALIDATION_TARGET", "build"),
                health_path=os.getenv("DAB_DEPLOY_HEALTH_PATH", "/health"),
            ),
            retry=RetrySettings(
                command_attempts=int(os.getenv("DAB_DEPLOY_COMMAND_ATTEMPTS", "3")),
                command_delay_seconds=float(os.getenv("DAB_DEPLOY_COMMAND_DELAY_SECONDS", "10")),
                propagation_deadline_seconds=float(
                    os.getenv("DAB_DEPLOY_PROPAGATION_DEADLINE_SECONDS", "300"),
                ),
                readiness_deadline_seconds=float(
                    os.getenv("DAB_DEPLOY_READINESS_DEADLINE_SECONDS", "600"),
                ),
                health_deadline_seconds=float(
                    os.getenv("DAB_DEPLOY_HEALTH_DEADLINE_SECONDS", "600"),
                ),
                jitter=_env_bool("DAB_DEPLOY_RETRY_JITTER", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values no plan can run with."""

        if not self.azure.location.strip():
            raise ValueError("DAB_DEPLOY_LOCATION must not be empty.")
        if not self.azure.name_prefix.strip():
            raise ValueError("DAB_DEPLOY_NAME_PREFIX must not be empty.")
        if not self.azure.app_tag.strip():
            raise ValueError("DAB_DEPLOY_APP_TAG must not be empty.")
        if not 0 < self.container.target_port <= _MAX_PORT:
            raise ValueError(
                f"DAB_DEPLOY_TARGET_PORT must be in 1..{_MAX_PORT}: {self.container.target_port}",
            )
        if self.container.min_replicas < 0:
            raise ValueError("DAB_DEPLOY_MIN_REPLICAS must be >= 0.")
        if self.container.max_replicas < max(1, self.container.min_replicas):
            raise ValueError("DAB_DEPLOY_MAX_REPLICAS must be >= max(1, min replicas).")
        if not self.container.health_path.startswith("/"):
            raise ValueError("DAB_DEPLOY_HEALTH_PATH must start with '/'.")
        if self.container.validate_config and not self.container.validation_target.strip():
            raise ValueError("DAB_DEPLOY_VALIDATION_TARGET must not be empty.")
        if self.retry.command_attempts < 1:
            raise ValueError("DAB_DEPLOY_COMMAND_ATTEMPTS must be >= 1.")
        for name, value in (
            ("DAB_DEPLOY_PROPAGATION_DEADLINE_SECONDS", self.retry.propagation_deadline_seconds),
            ("DAB_DEPLOY_READINESS_DEADLINE_SECONDS", self.retry.readiness_deadline_seconds),
            ("DAB_DEPLOY_HEALTH_DEADLINE_SECONDS", self.retry.health_deadline_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")

    def validate_for_create(self) -> None:
        """Validate settings plus the local inputs the create plan consumes."""

        self.validate()
        self._validate_build_inputs()
        schema_path = self.sql.schema_path
        if schema_path is not None and not schema_path.is_file():
            raise ValueError(f"SQL schema script not found: {schema_path}")
        build_resource_names(
            self.azure.name_prefix,
            database_name=self.sql.database_name,
            resource_group=self.azure.resource_group,
        )

    def validate_for_update(self) -> None:
        self.validate()
        self._validate_build_inputs()

    def _validate_build_inputs(self) -> None:
        if not self.container.build_context.is_dir():
            raise ValueError(f"Build context directory not found: {self.container.build_context}")
        dockerfile = self.dockerfile_path
        if not dockerfile.is_file():
            raise ValueError(f"Dockerfile not found: {dockerfile}")

    @property
    def dockerfile_path(self) -> Path:
        dockerfile = self.container.dockerfile
        if dockerfile.is_absolute():
            return dockerfile
        return self.container.build_context / dockerfile


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
