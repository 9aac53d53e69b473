"""
Rate limit subject and route pattern resolution.

The authentication layer runs first and leaves the caller on
``request.state``; nothing here authenticates.
"""

import ipaddress
from typing import Optional

from fastapi import Request
from starlette.routing import Match

from shared.logging import set_tenant_context


def _valid_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    candidate = value.strip()
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return None
    return candidate


class IdentifierResolver:
    """Derives the rate limit subject for a request.

    Tenants are limited by tenant, the master key by itself and anything
    else by client IP (``ip:<address>``).
    """

    def __init__(self, trust_proxy_headers: bool = False):
        self.trust_proxy_headers = trust_proxy_headers

    def resolve(self, request: Request) -> str:
        state = request.state

        tenant_id = getattr(state, "tenant_id", None)
        if tenant_id is None:
            user_info = getattr(state, "user_info", None)
            if isinstance(user_info, dict):
                tenant_id = user_info.get("tenant_id")
        if tenant_id is not None:
            set_tenant_context(str(tenant_id))
            return f"tenant:{tenant_id}"

        if getattr(state, "is_master", False) is True:
            return "master"

        return f"ip:{self.client_ip(request)}"

    def client_ip(self, request: Request) -> str:
        """Extract the caller IP, honouring proxy headers when trusted."""
        if self.trust_proxy_headers:
            for header in ("CF-Connecting-IP", "X-Real-IP"):
                ip = _valid_ip(request.headers.get(header))
                if ip:
                    return ip

            forwarded_for = request.headers.get("X-Forwarded-For")
            if forwarded_for:
                ip = _valid_ip(forwarded_for.split(",")[0])
                if ip:
                    return ip

        if request.client and request.client.host:
            return request.client.host
        return "unknown"


def match_route_template(app, path: str, method: str = "GET") -> Optional[str]:
    """Template path of the ``app`` route serving ``method path``, or None."""
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "root_path": "",
        "query_string": b"",
        "headers": [],
    }
    return _match_scope(app, scope)


def _match_scope(app, scope) -> Optional[str]:
    # A path matched under another method (405) still names its template.
    partial = None
    router = getattr(app, "router", None)
    for route in getattr(router, "routes", ()):
        match, _ = route.matches(scope)
        path = getattr(route, "path", None)
        if not path:
            continue
        if match == Match.FULL:
            return path
        if match == Match.PARTIAL and partial is None:
            partial = path
    return partial


def resolve_route_pattern(request: Request) -> str:
    """Template path of the route that will serve ``request``.

    Middleware runs before routing, so the router is asked directly. Falls
    back to the raw path when no route matches.
    """
    return _match_scope(request.app, request.scope) or request.url.path
