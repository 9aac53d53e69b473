"""
HTTP boundary for the admission gate.
"""

import math
from typing import Dict

from fastapi import Request
from fastapi.responses import JSONResponse

from .gate import AdmissionGate
from .identifiers import IdentifierResolver, resolve_route_pattern
from .models import Decision
from .registry import PolicyRegistry


def rate_limit_headers(decision: Decision) -> Dict[str, str]:
    """Quota headers for the binding policy; reset is a Unix timestamp."""
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(math.ceil(decision.reset_at)),
    }


def retry_after_seconds(decision: Decision) -> int:
    """Whole seconds a denied client should wait, at least 1."""
    return max(1, math.ceil(decision.retry_after or 0))


def denial_response(decision: Decision) -> JSONResponse:
    """429 for an exceeded quota, 503 when the store is down and failing closed."""
    seconds = retry_after_seconds(decision)
    headers = rate_limit_headers(decision)
    headers["Retry-After"] = str(seconds)

    if decision.unavailable:
        status_code, message = 503, "rate limiting unavailable"
    else:
        status_code, message = 429, "rate limit exceeded"

    return JSONResponse(
        status_code=status_code,
        content={"error": message, "retry_after": seconds},
        headers=headers
    )


class RateLimitMiddleware:
    """Rate limiting middleware for FastAPI.

    Register ``dispatch`` with ``app.middleware("http")`` inside the
    authentication middleware. Public routes pass straight through without
    touching the resolver, the store or the response headers.
    """

    def __init__(self, gate: AdmissionGate, registry: PolicyRegistry, resolver: IdentifierResolver):
        self.gate = gate
        self.registry = registry
        self.resolver = resolver

    async def dispatch(self, request: Request, call_next):
        if self.registry.is_public(request.url.path):
            return await call_next(request)

        identifier = self.resolver.resolve(request)
        route = resolve_route_pattern(request)
        policies = self.registry.resolve(route)

        decision = await self.gate.check(identifier, policies)
        request.state.rate_limit = decision
        request.state.rate_limit_identifier = identifier

        if not decision.allowed:
            return denial_response(decision)

        response = await call_next(request)
        response.headers.update(rate_limit_headers(decision))
        return response
