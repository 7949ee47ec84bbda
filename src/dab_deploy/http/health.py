"""HTTP client for the DAB health endpoint and public IP discovery."""

from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 1
DEFAULT_USER_AGENT = "dab-deploy/health-probe"
HEALTHY_STATUS = "healthy"
PUBLIC_IP_URL = "https://api.ipify.org"


@dataclass(slots=True)
class HealthResult:
    """Result of one health endpoint probe."""

    url: str
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def is_healthy(self) -> bool:
        if self.status_code != 200:  # noqa: PLR2004
            return False
        status = self.body.get("status")
        return isinstance(status, str) and status.lower() == HEALTHY_STATUS

    def describe(self) -> str:
        if self.error is not None:
            return self.error
        status = self.body.get("status", "unknown")
        return f"HTTP {self.status_code}, status={status}"


class HealthProbe:
    """HTTP client wrapper with timeout and user-agent configuration."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self._client = httpx.Client(
            timeout=self._timeout,
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def check(self, url: str) -> HealthResult:
        """Probe ``url`` once; network errors become an unhealthy result."""

        try:
            response = self._client.get(url)
        except httpx.TimeoutException:
            logger.debug("Timeout probing %s", url)
            return HealthResult(url=url, status_code=0, error="timeout")
        except httpx.HTTPError as exc:
            logger.debug("HTTP error probing %s: %s", url, exc)
            return HealthResult(url=url, status_code=0, error=str(exc))

        return HealthResult(
            url=url,
            status_code=response.status_code,
            body=_json_body(response),
        )

    def public_ip(self, url: str = PUBLIC_IP_URL) -> str:
        """Return this machine's public IPv4 address as seen from the internet."""

        response = self._client.get(url)
        response.raise_for_status()
        address = response.text.strip()
        return str(ipaddress.IPv4Address(address))

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HealthProbe:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}
