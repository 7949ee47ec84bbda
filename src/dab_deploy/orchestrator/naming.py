"""Resource name sanitization and validation per resource type."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from dab_deploy.orchestrator.errors import InvalidNameError
from dab_deploy.orchestrator.models import utc_now

SUFFIX_FORMAT = "%Y%m%d%H%M%S"

_DOUBLE_HYPHEN = re.compile(r"-{2,}")


class ResourceType(str, Enum):
    """Resource kinds with distinct naming rules."""

    RESOURCE_GROUP = "resource_group"
    SQL_SERVER = "sql_server"
    SQL_DATABASE = "sql_database"
    CONTAINER_REGISTRY = "container_registry"
    LOG_ANALYTICS_WORKSPACE = "log_analytics_workspace"
    CONTAINER_APP_ENVIRONMENT = "container_app_environment"
    CONTAINER_APP = "container_app"
    CONTAINER_APP_JOB = "container_app_job"
    MANAGED_IDENTITY = "managed_identity"


@dataclass(frozen=True, slots=True)
class ResourceNameRule:
    """Naming constraints for one resource type.

    ``strip_non_alnum`` removes every character outside ``[a-z0-9]`` (or
    ``[A-Za-z0-9]`` when case is preserved); ``keep_hyphens`` lets ``-``
    survive that pass.
    """

    min_len: int
    max_len: int
    allowed_chars_pattern: str
    lowercase_required: bool = False
    strip_non_alnum: bool = False
    keep_hyphens: bool = True
    no_leading_hyphen: bool = False
    no_trailing_hyphen: bool = False
    no_double_hyphen: bool = False


RESOURCE_NAME_RULES: dict[ResourceType, ResourceNameRule] = {
    ResourceType.RESOURCE_GROUP: ResourceNameRule(
        min_len=1,
        max_len=90,
        allowed_chars_pattern=r"[A-Za-z0-9_.()-]*[A-Za-z0-9_()-]",
        no_double_hyphen=True,
        no_leading_hyphen=True,
        no_trailing_hyphen=True,
    ),
    ResourceType.SQL_SERVER: ResourceNameRule(
        min_len=1,
        max_len=63,
        allowed_chars_pattern=r"[a-z0-9](?:[a-z0-9-]*[a-z0-9])?",
        lowercase_required=True,
        strip_non_alnum=True,
        no_leading_hyphen=True,
        no_trailing_hyphen=True,
        no_double_hyphen=True,
    ),
    ResourceType.SQL_DATABASE: ResourceNameRule(
        min_len=1,
        max_len=128,
        allowed_chars_pattern=r"[A-Za-z0-9_-]*[A-Za-z0-9_]",
        no_trailing_hyphen=True,
    ),
    ResourceType.CONTAINER_REGISTRY: ResourceNameRule(
        min_len=5,
        max_len=50,
        allowed_chars_pattern=r"[a-z0-9]+",
        lowercase_required=True,
        strip_non_alnum=True,
        keep_hyphens=False,
    ),
    ResourceType.LOG_ANALYTICS_WORKSPACE: ResourceNameRule(
        min_len=4,
        max_len=63,
        allowed_chars_pattern=r"[A-Za-z0-9][A-Za-z0-9-]*[A-Za-z0-9]",
        strip_non_alnum=True,
        no_leading_hyphen=True,
        no_trailing_hyphen=True,
        no_double_hyphen=True,
    ),
    ResourceType.CONTAINER_APP_ENVIRONMENT: ResourceNameRule(
        min_len=2,
        max_len=60,
        allowed_chars_pattern=r"[a-z][a-z0-9-]*[a-z0-9]",
        lowercase_required=True,
        strip_non_alnum=True,
        no_leading_hyphen=True,
        no_trailing_hyphen=True,
        no_double_hyphen=True,
    ),
    ResourceType.CONTAINER_APP: ResourceNameRule(
        min_len=2,
        max_len=32,
        allowed_chars_pattern=r"[a-z][a-z0-9-]*[a-z0-9]",
        lowercase_required=True,
        strip_non_alnum=True,
        no_leading_hyphen=True,
        no_trailing_hyphen=True,
        no_double_hyphen=True,
    ),
    ResourceType.CONTAINER_APP_JOB: ResourceNameRule(
        min_len=2,
        max_len=32,
        allowed_chars_pattern=r"[a-z][a-z0-9-]*[a-z0-9]",
        lowercase_required=True,
        strip_non_alnum=True,
        no_leading_hyphen=True,
        no_trailing_hyphen=True,
        no_double_hyphen=True,
    ),
    ResourceType.MANAGED_IDENTITY: ResourceNameRule(
        min_len=3,
        max_len=128,
        allowed_chars_pattern=r"[A-Za-z0-9][A-Za-z0-9_-]*",
        strip_non_alnum=True,
        no_leading_hyphen=True,
        no_double_hyphen=True,
    ),
}


def sanitize(name: str, rule: ResourceNameRule) -> str:
    """Normalize ``name`` according to ``rule`` or raise ``InvalidNameError``.

    Transformations run in a fixed order and each is conditional on the rule:
    lowercase, strip disallowed characters, collapse repeated hyphens, trim one
    leading and one trailing hyphen, truncate to ``max_len`` keeping the
    prefix, re-trim a trailing hyphen exposed by the cut, then the final
    pattern and length check.
    """

    value = name
    if rule.lowercase_required:
        value = value.lower()
    if rule.strip_non_alnum:
        value = _strip_pattern(rule).sub("", value)
    if rule.no_double_hyphen:
        value = _DOUBLE_HYPHEN.sub("-", value)
    if rule.no_leading_hyphen and value.startswith("-"):
        value = value[1:]
    if rule.no_trailing_hyphen and value.endswith("-"):
        value = value[:-1]
    if len(value) > rule.max_len:
        value = value[: rule.max_len]
        if rule.no_trailing_hyphen and value.endswith("-"):
            value = value[:-1]

    if len(value) < rule.min_len:
        raise InvalidNameError(
            name,
            value,
            f"length {len(value)} is below the minimum of {rule.min_len}",
        )
    if re.fullmatch(rule.allowed_chars_pattern, value) is None:
        raise InvalidNameError(
            name,
            value,
            f"does not match pattern {rule.allowed_chars_pattern!r}",
        )
    return value


def sanitize_for(resource_type: ResourceType, name: str) -> str:
    """Sanitize ``name`` with the rule registered for ``resource_type``."""

    return sanitize(name, RESOURCE_NAME_RULES[resource_type])


def _strip_pattern(rule: ResourceNameRule) -> re.Pattern[str]:
    letters = "a-z" if rule.lowercase_required else "A-Za-z"
    hyphen = "-" if rule.keep_hyphens else ""
    return re.compile(f"[^{letters}0-9{hyphen}]")


@dataclass(frozen=True, slots=True)
class ResourceNames:
    """Sanitized names of every resource one deployment creates."""

    resource_group: str
    sql_server: str
    sql_database: str
    container_registry: str
    log_analytics_workspace: str
    container_app_environment: str
    container_app: str
    validation_job: str
    managed_identity: str
    suffix: str

    def as_dict(self) -> dict[str, str]:
        return {
            "resource_group": self.resource_group,
            "sql_server": self.sql_server,
            "sql_database": self.sql_database,
            "container_registry": self.container_registry,
            "log_analytics_workspace": self.log_analytics_workspace,
            "container_app_environment": self.container_app_environment,
            "container_app": self.container_app,
            "validation_job": self.validation_job,
            "managed_identity": self.managed_identity,
        }


def deployment_suffix(now: datetime | None = None) -> str:
    """Timestamp suffix that keeps names unique across runs."""

    return (now or utc_now()).strftime(SUFFIX_FORMAT)


def build_resource_names(
    prefix: str,
    *,
    suffix: str | None = None,
    database_name: str = "dab",
    resource_group: str | None = None,
) -> ResourceNames:
    """Derive the full sanitized name set for one deployment.

    Truncation keeps the prefix, so long prefixes lose the tail of the
    timestamp suffix first.
    """

    resolved_suffix = suffix or deployment_suffix()
    base = f"{prefix}-{resolved_suffix}"
    return ResourceNames(
        resource_group=sanitize_for(
            ResourceType.RESOURCE_GROUP,
            resource_group or f"rg-{base}",
        ),
        sql_server=sanitize_for(ResourceType.SQL_SERVER, f"sql-{base}"),
        sql_database=sanitize_for(ResourceType.SQL_DATABASE, database_name),
        container_registry=sanitize_for(
            ResourceType.CONTAINER_REGISTRY,
            f"acr{prefix}{resolved_suffix}",
        ),
        log_analytics_workspace=sanitize_for(
            ResourceType.LOG_ANALYTICS_WORKSPACE,
            f"log-{base}",
        ),
        container_app_environment=sanitize_for(
            ResourceType.CONTAINER_APP_ENVIRONMENT,
            f"cae-{base}",
        ),
        container_app=sanitize_for(ResourceType.CONTAINER_APP, f"ca-{base}"),
        validation_job=sanitize_for(ResourceType.CONTAINER_APP_JOB, f"job-{base}"),
        managed_identity=sanitize_for(ResourceType.MANAGED_IDENTITY, f"id-{base}"),
        suffix=resolved_suffix,
    )
