"""HTTP helpers."""

from dab_deploy.http.health import HealthProbe, HealthResult

__all__ = ["HealthProbe", "HealthResult"]
