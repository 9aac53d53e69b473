"""
Rate limiting package for the Gateway.

Holds the fixed-window admission gate, its counter stores (in-process and
Redis), the route policy registry and the middleware that enforces
per-identity request budgets.
"""

from .clock import Clock, ManualClock, SystemClock
from .gate import AdmissionGate
from .identifiers import IdentifierResolver, match_route_template, resolve_route_pattern
from .middleware import RateLimitMiddleware, denial_response, rate_limit_headers
from .models import CounterSnapshot, Decision, Policy
from .policy_loader import load_policy_table, parse_policy_table
from .redis_store import RedisCounterStore
from .registry import PolicyRegistry
from .store import CounterStore, InMemoryCounterStore

__all__ = [
    "AdmissionGate",
    "Clock",
    "CounterSnapshot",
    "CounterStore",
    "Decision",
    "IdentifierResolver",
    "InMemoryCounterStore",
    "ManualClock",
    "Policy",
    "PolicyRegistry",
    "RateLimitMiddleware",
    "RedisCounterStore",
    "SystemClock",
    "denial_response",
    "load_policy_table",
    "parse_policy_table",
    "rate_limit_headers",
    "match_route_template",
    "resolve_route_pattern",
]
