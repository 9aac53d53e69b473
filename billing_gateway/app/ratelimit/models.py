"""
Rate limiting data models.
"""

from dataclasses import dataclass
from typing import Optional

from shared.errors import ConfigurationError


@dataclass(frozen=True)
class Policy:
    """A (limit, window) quota applied to one route scope.

    ``window`` is in seconds. Invalid values raise ``ConfigurationError`` so
    bad entries are caught while the policy table is loaded.
    """
    scope: str
    limit: int
    window: float

    def __post_init__(self):
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit <= 0:
            raise ConfigurationError(
                "Policy limit must be a positive integer",
                details={"scope": self.scope, "limit": self.limit}
            )
        if isinstance(self.window, bool) or not isinstance(self.window, (int, float)) or self.window <= 0:
            raise ConfigurationError(
                "Policy window must be a positive number of seconds",
                details={"scope": self.scope, "window": self.window}
            )

    @property
    def id(self) -> str:
        return f"{self.scope}:{self.window:g}s"

    def for_scope(self, scope: str) -> "Policy":
        """Copy of this policy counting under another route scope."""
        return Policy(scope=scope, limit=self.limit, window=self.window)


@dataclass(frozen=True)
class CounterSnapshot:
    """State of one counter right after an increment."""
    count: int
    window_start: float


@dataclass(frozen=True)
class Decision:
    """Admission outcome for a single request.

    ``limit``, ``remaining`` and ``reset_at`` describe the binding policy:
    the first violated one when denied, otherwise the one with the least
    quota left.
    """
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None
    policy: Optional[Policy] = None
    degraded: bool = False      # admitted without counting, store unavailable
    unavailable: bool = False   # denied because the store is unavailable

    @property
    def outcome(self) -> str:
        if self.unavailable:
            return "unavailable"
        if self.degraded:
            return "degraded"
        return "allowed" if self.allowed else "denied"
