"""
Loads the rate limit policy table from configuration.

File format (YAML, or JSON since YAML parses it)::

    default:
      - {limit: 60, window_seconds: 60}
      - {limit: 1000, window_seconds: 3600}
    routes:
      - {route: /v1/stats, limit: 20, window_seconds: 60}
      - route: /v1/customers/{id}
        policies:
          - {limit: 30, window_seconds: 60}
    public_routes: [/, /health]

Flat route entries with the same route are merged into one policy set.
"""

from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ConfigurationError
from shared.logging import get_logger

from .models import Policy
from .registry import PolicyRegistry

logger = get_logger("gateway.policy_loader")


class QuotaEntry(BaseModel):
    """One (limit, window) pair."""
    limit: int = Field(..., gt=0)
    window_seconds: float = Field(..., gt=0)


class RouteEntry(BaseModel):
    """Per-route override: either a single quota or a list of them."""
    route: str = Field(..., min_length=1)
    limit: Optional[int] = Field(None, gt=0)
    window_seconds: Optional[float] = Field(None, gt=0)
    policies: List[QuotaEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_shape(self):
        flat = self.limit is not None or self.window_seconds is not None
        if flat and (self.limit is None or self.window_seconds is None):
            raise ValueError("limit and window_seconds must be given together")
        if flat and self.policies:
            raise ValueError("use either limit/window_seconds or policies, not both")
        if not flat and not self.policies:
            raise ValueError("route entry has no quota")
        return self

    def quotas(self) -> List[QuotaEntry]:
        if self.policies:
            return list(self.policies)
        return [QuotaEntry(limit=self.limit, window_seconds=self.window_seconds)]


class PolicyTable(BaseModel):
    """Whole rate limit configuration surface."""
    default: List[QuotaEntry] = Field(..., min_length=1)
    routes: List[RouteEntry] = Field(default_factory=list)
    public_routes: List[str] = Field(default_factory=list)

    def build_registry(self) -> PolicyRegistry:
        routes: Dict[str, List[Policy]] = {}
        for entry in self.routes:
            routes.setdefault(entry.route, []).extend(
                Policy(scope=entry.route, limit=q.limit, window=q.window_seconds)
                for q in entry.quotas()
            )
        default = [Policy(scope="*", limit=q.limit, window=q.window_seconds) for q in self.default]
        return PolicyRegistry(default=default, routes=routes, public_routes=self.public_routes)


DEFAULT_POLICY_TABLE = {
    "default": [
        {"limit": 60, "window_seconds": 60},
        {"limit": 1000, "window_seconds": 3600},
    ],
    "routes": [
        {"route": "/v1/stats", "policies": [
            {"limit": 30, "window_seconds": 60},
            {"limit": 1800, "window_seconds": 3600},
        ]},
        {"route": "/v1/auth/login", "policies": [
            {"limit": 5, "window_seconds": 900},
            {"limit": 10, "window_seconds": 3600},
        ]},
    ],
    "public_routes": ["/", "/health", "/health/detailed", "/metrics", "/v1/webhook", "/docs", "/openapi.json"],
}


def parse_policy_table(data: Union[dict, None]) -> PolicyTable:
    """Validate raw configuration into a ``PolicyTable``."""
    if not isinstance(data, dict):
        raise ConfigurationError("Rate limit configuration must be a mapping")
    try:
        return PolicyTable.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(
            "Invalid rate limit configuration",
            details={"errors": e.errors(include_url=False, include_context=False)}
        ) from e


def load_policy_table(path: Optional[Union[str, Path]] = None) -> PolicyRegistry:
    """Build the policy registry from ``path``, or the built-in table when None."""
    if path is None:
        table = parse_policy_table(DEFAULT_POLICY_TABLE)
        logger.info("Using built-in rate limit policies", routes=len(table.routes))
        return table.build_registry()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError("Cannot read rate limit configuration",
                                 details={"path": str(path), "error": str(e)}) from e
    except yaml.YAMLError as e:
        raise ConfigurationError("Rate limit configuration is not valid YAML",
                                 details={"path": str(path), "error": str(e)}) from e

    table = parse_policy_table(data)
    registry = table.build_registry()
    logger.info(
        "Loaded rate limit policies",
        path=str(path),
        routes=len(table.routes),
        public_routes=len(table.public_routes)
    )
    return registry
