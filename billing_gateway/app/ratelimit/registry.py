"""
Route -> policy lookup.
"""

import functools
import re
from typing import Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple

from shared.errors import ConfigurationError

from .models import Policy

_PARAM_SEGMENT = re.compile(r"^(\{[^/{}]+\}|:[^/]+)$")


def normalize_route(route: str) -> str:
    """Strip query strings and trailing slashes; the root stays ``/``."""
    route = route.split("?", 1)[0].strip() or "/"
    if not route.startswith("/"):
        route = "/" + route
    if len(route) > 1:
        route = route.rstrip("/") or "/"
    return route


def _compile_pattern(route: str) -> Optional[Pattern]:
    """Regex for routes with ``{param}`` or ``:param`` segments, else None."""
    segments = route.split("/")
    if not any(_PARAM_SEGMENT.match(segment) for segment in segments):
        return None
    parts = ["[^/]+" if _PARAM_SEGMENT.match(segment) else re.escape(segment) for segment in segments]
    return re.compile("^" + "/".join(parts) + "$")


def _ordered(route: str, policies: Iterable[Policy]) -> Tuple[Policy, ...]:
    """Shortest window first so the first violated policy has the nearest reset."""
    ordered = tuple(sorted(policies, key=lambda p: (p.window, p.limit)))
    if not ordered:
        raise ConfigurationError("Route has no policies", details={"route": route})
    windows = [p.window for p in ordered]
    if len(set(windows)) != len(windows):
        raise ConfigurationError(
            "Route declares the same window twice",
            details={"route": route, "windows": windows}
        )
    return ordered


class PolicyRegistry:
    """Resolves the policies that apply to a route.

    Lookup order: exact route, parameterised pattern (``/v1/customers/{id}``
    or ``/v1/customers/:id``), prefix pattern (``/v1/reports/*``, longest
    first), then the default policy set. Default policies are re-scoped to
    the resolved route so every route keeps its own counters; override
    patterns share one set of counters across the routes they match.
    Results are memoised per route.
    """

    def __init__(self, default: Sequence[Policy],
                 routes: Optional[Mapping[str, Sequence[Policy]]] = None,
                 public_routes: Iterable[str] = (),
                 cache_size: int = 4096):
        self._default = _ordered("*", default)
        self._exact: Dict[str, Tuple[Policy, ...]] = {}
        self._patterns: List[Tuple[Pattern, Tuple[Policy, ...]]] = []
        self._prefixes: List[Tuple[str, Tuple[Policy, ...]]] = []

        for raw_route, policies in (routes or {}).items():
            route = normalize_route(raw_route)
            ordered = _ordered(route, [p.for_scope(route) for p in policies])
            if route.endswith("*"):
                self._prefixes.append((route[:-1], ordered))
                continue
            pattern = _compile_pattern(route)
            if pattern is not None:
                self._patterns.append((pattern, ordered))
            self._exact[route] = ordered
        self._prefixes.sort(key=lambda item: len(item[0]), reverse=True)

        self._public_exact = set()
        self._public_prefixes: List[str] = []
        for raw_route in public_routes:
            route = normalize_route(raw_route)
            if route.endswith("*"):
                self._public_prefixes.append(route[:-1])
            else:
                self._public_exact.add(route)

        self._resolve_cached = functools.lru_cache(maxsize=cache_size)(self._resolve_uncached)

    def resolve(self, route: str) -> Tuple[Policy, ...]:
        """Policies for ``route``, ordered shortest window first."""
        return self._resolve_cached(normalize_route(route))

    def _resolve_uncached(self, route: str) -> Tuple[Policy, ...]:
        exact = self._exact.get(route)
        if exact is not None:
            return exact
        for pattern, policies in self._patterns:
            if pattern.match(route):
                return policies
        for prefix, policies in self._prefixes:
            if route.startswith(prefix):
                return policies
        return tuple(p.for_scope(route) for p in self._default)

    def is_public(self, path: str) -> bool:
        """True when ``path`` is exempt from rate limiting."""
        path = normalize_route(path)
        if path in self._public_exact:
            return True
        return any(path.startswith(prefix) for prefix in self._public_prefixes)
