"""Argument vectors for the Azure CLI and sqlcmd."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

CONNECTION_STRING_SECRET = "mssql-connection-string"  # noqa: S105
CONNECTION_STRING_ENV = "MSSQL_CONNECTION_STRING"
# Run from the validation stage's working directory, next to dab-config.json
# and the tool manifest that installs the DAB CLI.
DAB_VALIDATE_COMMAND = "dotnet"
DAB_VALIDATE_ARGS = ("tool", "run", "dab", "validate")
ACR_PULL_ROLE = "AcrPull"

JSON = ("--output", "json")


def _tags(tags: Mapping[str, str]) -> list[str]:
    return [f"{key}={value}" for key, value in tags.items()]


@dataclass(frozen=True, slots=True)
class AzCli:
    """Builds ``az`` argument vectors; never executes anything."""

    executable: str = "az"

    def _az(self, *args: str) -> list[str]:
        return [self.executable, *args]

    def account_set(self, subscription: str) -> list[str]:
        return self._az("account", "set", "--subscription", subscription)

    def account_show(self) -> list[str]:
        return self._az("account", "show", *JSON)

    def signed_in_user_show(self) -> list[str]:
        return self._az("ad", "signed-in-user", "show", *JSON)

    def service_principal_show(self, principal_id: str) -> list[str]:
        return self._az("ad", "sp", "show", "--id", principal_id, *JSON)

    def group_exists(self, name: str) -> list[str]:
        return self._az("group", "exists", "--name", name)

    def group_show(self, name: str) -> list[str]:
        return self._az("group", "show", "--name", name, *JSON)

    def group_create(self, name: str, location: str, tags: Mapping[str, str]) -> list[str]:
        return self._az(
            "group",
            "create",
            "--name",
            name,
            "--location",
            location,
            "--tags",
            *_tags(tags),
            *JSON,
        )

    def group_delete(self, name: str) -> list[str]:
        return self._az("group", "delete", "--name", name, "--yes", "--no-wait")

    def group_list(self, tag: str) -> list[str]:
        return self._az("group", "list", "--tag", tag, *JSON)

    def resource_list(self, resource_group: str) -> list[str]:
        return self._az("resource", "list", "--resource-group", resource_group, *JSON)

    def sql_server_create(  # noqa: PLR0913
        self,
        *,
        name: str,
        resource_group: str,
        location: str,
        admin_name: str,
        admin_sid: str,
        admin_type: str,
    ) -> list[str]:
        return self._az(
            "sql",
            "server",
            "create",
            "--name",
            name,
            "--resource-group",
            resource_group,
            "--location",
            location,
            "--enable-ad-only-auth",
            "--external-admin-principal-type",
            admin_type,
            "--external-admin-name",
            admin_name,
            "--external-admin-sid",
            admin_sid,
            *JSON,
        )

    def sql_server_show(self, *, name: str, resource_group: str) -> list[str]:
        return self._az(
            "sql",
            "server",
            "show",
            "--name",
            name,
            "--resource-group",
            resource_group,
            *JSON,
        )

    def sql_firewall_rule_create(  # noqa: PLR0913
        self,
        *,
        resource_group: str,
        server: str,
        rule_name: str,
        start_ip: str,
        end_ip: str,
    ) -> list[str]:
        return self._az(
            "sql",
            "server",
            "firewall-rule",
            "create",
            "--resource-group",
            resource_group,
            "--server",
            server,
            "--name",
            rule_name,
            "--start-ip-address",
            start_ip,
            "--end-ip-address",
            end_ip,
            *JSON,
        )

    def sql_db_create(
        self,
        *,
        resource_group: str,
        server: str,
        name: str,
        service_objective: str,
    ) -> list[str]:
        return self._az(
            "sql",
            "db",
            "create",
            "--resource-group",
            resource_group,
            "--server",
            server,
            "--name",
            name,
            "--service-objective",
            service_objective,
            *JSON,
        )

    def acr_create(self, *, name: str, resource_group: str, location: str) -> list[str]:
        return self._az(
            "acr",
            "create",
            "--name",
            name,
            "--resource-group",
            resource_group,
            "--location",
            location,
            "--sku",
            "Basic",
            *JSON,
        )

    def acr_show(self, *, name: str, resource_group: str) -> list[str]:
        return self._az("acr", "show", "--name", name, "--resource-group", resource_group, *JSON)

    def acr_build(  # noqa: PLR0913
        self,
        *,
        registry: str,
        image: str,
        dockerfile: Path,
        context: Path,
        target: str | None = None,
    ) -> list[str]:
        stage = ["--target", target] if target else []
        return self._az(
            "acr",
            "build",
            "--registry",
            registry,
            "--image",
            image,
            "--file",
            str(dockerfile),
            *stage,
            str(context),
        )

    def log_workspace_create(self, *, name: str, resource_group: str, location: str) -> list[str]:
        return self._az(
            "monitor",
            "log-analytics",
            "workspace",
            "create",
            "--workspace-name",
            name,
            "--resource-group",
            resource_group,
            "--location",
            location,
            *JSON,
        )

    def log_workspace_keys(self, *, name: str, resource_group: str) -> list[str]:
        return self._az(
            "monitor",
            "log-analytics",
            "workspace",
            "get-shared-keys",
            "--workspace-name",
            name,
            "--resource-group",
            resource_group,
            *JSON,
        )

    def containerapp_env_create(  # noqa: PLR0913
        self,
        *,
        name: str,
        resource_group: str,
        location: str,
        workspace_id: str,
        workspace_key: str,
    ) -> list[str]:
        return self._az(
            "containerapp",
            "env",
            "create",
            "--name",
            name,
            "--resource-group",
            resource_group,
            "--location",
            location,
            "--logs-workspace-id",
            workspace_id,
            "--logs-workspace-key",
            workspace_key,
            *JSON,
        )

    def containerapp_env_show(self, *, name: str, resource_group: str) -> list[str]:
        return self._az(
            "containerapp",
            "env",
            "show",
            "--name",
            name,
            "--resource-group",
            resource_group,
            *JSON,
        )

    def identity_create(self, *, name: str, resource_group: str, location: str) -> list[str]:
        return self._az(
            "identity",
            "create",
            "--name",
            name,
            "--resource-group",
            resource_group,
            "--location",
            location,
            *JSON,
        )

    def role_assignment_create(self, *, principal_id: str, role: str, scope: str) -> list[str]:
        return self._az(
            "role",
            "assignment",
            "create",
            "--assignee-object-id",
            principal_id,
            "--assignee-principal-type",
            "ServicePrincipal",
            "--role",
            role,
            "--scope",
            scope,
            *JSON,
        )

    def role_assignment_list(self, *, principal_id: str, role: str, scope: str) -> list[str]:
        return self._az(
            "role",
            "assignment",
            "list",
            "--assignee",
            principal_id,
            "--role",
            role,
            "--scope",
            scope,
            *JSON,
        )

    def containerapp_create(  # noqa: PLR0913
        self,
        *,
        name: str,
        resource_group: str,
        environment: str,
        image: str,
        registry_server: str,
        identity_id: str,
        connection_string: str,
        target_port: int,
        cpu: str,
        memory: str,
        min_replicas: int,
        max_replicas: int,
        tags: Mapping[str, str],
    ) -> list[str]:
        return self._az(
            "containerapp",
            "create",
            "--name",
            name,
            "--resource-group",
            resource_group,
            "--environment",
            environment,
            "--image",
            image,
            "--registry-server",
            registry_server,
            "--registry-identity",
            identity_id,
            "--user-assigned",
            identity_id,
            "--ingress",
            "external",
            "--target-port",
            str(target_port),
            "--cpu",
            cpu,
            "--memory",
            memory,
            "--min-replicas",
            str(min_replicas),
            "--max-replicas",
            str(max_replicas),
            "--secrets",
            f"{CONNECTION_STRING_SECRET}={connection_string}",
            "--env-vars",
            f"{CONNECTION_STRING_ENV}=secretref:{CONNECTION_STRING_SECRET}",
            "--tags",
            *_tags(tags),
            *JSON,
        )

    def containerapp_show(self, *, name: str, resource_group: str) -> list[str]:
        return self._az(
            "containerapp",
            "show",
            "--name",
            name,
            "--resource-group",
            resource_group,
            *JSON,
        )

    def containerapp_update_image(self, *, name: str, resource_group: str, image: str) -> list[str]:
        return self._az(
            "containerapp",
            "update",
            "--name",
            name,
            "--resource-group",
            resource_group,
            "--image",
            image,
            *JSON,
        )

    def containerapp_job_create(  # noqa: PLR0913
        self,
        *,
        name: str,
        resource_group: str,
        environment: str,
        image: str,
        registry_server: str,
        identity_id: str,
        connection_string: str,
    ) -> list[str]:
        return self._az(
            "containerapp",
            "job",
            "create",
            "--name",
            name,
            "--resource-group",
            resource_group,
            "--environment",
            environment,
            "--trigger-type",
            "Manual",
            "--replica-timeout",
            "300",
            "--replica-retry-limit",
            "0",
            "--image",
            image,
            "--registry-server",
            registry_server,
            "--registry-identity",
            identity_id,
            "--mi-user-assigned",
            identity_id,
            "--secrets",
            f"{CONNECTION_STRING_SECRET}={connection_string}",
            "--env-vars",
            f"{CONNECTION_STRING_ENV}=secretref:{CONNECTION_STRING_SECRET}",
            "--command",
            DAB_VALIDATE_COMMAND,
            "--args",
            *DAB_VALIDATE_ARGS,
            *JSON,
        )

    def containerapp_job_start(self, *, name: str, resource_group: str) -> list[str]:
        return self._az(
            "containerapp",
            "job",
            "start",
            "--name",
            name,
            "--resource-group",
            resource_group,
            *JSON,
        )

    def containerapp_job_execution_show(
        self,
        *,
        name: str,
        resource_group: str,
        execution: str,
    ) -> list[str]:
        return self._az(
            "containerapp",
            "job",
            "execution",
            "show",
            "--name",
            name,
            "--resource-group",
            resource_group,
            "--job-execution-name",
            execution,
            *JSON,
        )


@dataclass(frozen=True, slots=True)
class SqlCmd:
    """Builds ``sqlcmd`` argument vectors using Entra (AAD) default credentials."""

    executable: str = "sqlcmd"

    def _base(self, server_fqdn: str, database: str) -> list[str]:
        return [
            self.executable,
            "-S",
            f"tcp:{server_fqdn},1433",
            "-d",
            database,
            "--authentication-method",
            "ActiveDirectoryDefault",
            "-b",
        ]

    def run_script(self, *, server_fqdn: str, database: str, script: Path) -> list[str]:
        return [*self._base(server_fqdn, database), "-i", str(script)]

    def run_query(self, *, server_fqdn: str, database: str, query: str) -> list[str]:
        return [*self._base(server_fqdn, database), "-Q", query]


def identity_user_query(identity_name: str) -> str:
    """T-SQL that maps a managed identity to a database user with read/write rights."""

    user = f"[{identity_name}]"
    return (
        "IF NOT EXISTS (SELECT 1 FROM sys.database_principals "
        f"WHERE name = N'{identity_name}') "
        f"CREATE USER {user} FROM EXTERNAL PROVIDER; "
        f"ALTER ROLE db_datareader ADD MEMBER {user}; "
        f"ALTER ROLE db_datawriter ADD MEMBER {user}; "
        f"GRANT EXECUTE TO {user};"
    )


def connection_string(*, server_fqdn: str, database: str, client_id: str) -> str:
    """Connection string DAB uses to reach SQL as the user-assigned identity."""

    return (
        f"Server=tcp:{server_fqdn},1433;"
        f"Database={database};"
        "Authentication=Active Directory Managed Identity;"
        f"User Id={client_id};"
        "Encrypt=True;TrustServerCertificate=False;Connection Timeout=30;"
    )
