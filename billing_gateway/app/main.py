"""
API Gateway service for the Billing Gateway.

Wires the admission gate in front of every tenant-scoped route. Resource
handlers (customers, subscriptions, invoices, reports, ...) are mounted by
their own packages with ``GatewayService.app.include_router``.
"""

import asyncio
from typing import Dict, Optional

from fastapi import Query, Request

from shared.base_service import BaseService
from shared.config import ServiceConfig, StoreBackend

from billing_gateway.app.ratelimit.clock import Clock, SystemClock
from billing_gateway.app.ratelimit.gate import AdmissionGate
from billing_gateway.app.ratelimit.identifiers import IdentifierResolver, match_route_template
from billing_gateway.app.ratelimit.middleware import RateLimitMiddleware
from billing_gateway.app.ratelimit.policy_loader import load_policy_table
from billing_gateway.app.ratelimit.redis_store import RedisCounterStore
from billing_gateway.app.ratelimit.registry import PolicyRegistry, normalize_route
from billing_gateway.app.ratelimit.store import CounterStore, InMemoryCounterStore


class GatewayService(BaseService):
    """API Gateway service implementation.

    Collaborators may be injected (tests, embedding); otherwise they are
    built from configuration once, at construction.
    """

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 store: Optional[CounterStore] = None,
                 clock: Optional[Clock] = None,
                 registry: Optional[PolicyRegistry] = None,
                 identifier_resolver: Optional[IdentifierResolver] = None):
        self._injected_store = store
        self._injected_clock = clock
        self._injected_registry = registry
        self._injected_resolver = identifier_resolver
        super().__init__("gateway", 8000, config=config)

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    def _setup_components(self):
        """Build the rate limiting components from configuration."""
        self.clock = self._injected_clock if self._injected_clock is not None else SystemClock()
        self.policy_registry = self._injected_registry
        if self.policy_registry is None:
            self.policy_registry = load_policy_table(self.config.rate_limits_file)
        self.counter_store = self._injected_store
        if self.counter_store is None:
            self.counter_store = self._build_store()
        self.identifier_resolver = self._injected_resolver
        if self.identifier_resolver is None:
            self.identifier_resolver = IdentifierResolver(trust_proxy_headers=self.config.trust_proxy_headers)
        self.admission_gate = AdmissionGate(
            self.counter_store,
            failure_mode=self.config.rate_limit_failure_mode,
            clock=self.clock,
            timeout=self.config.rate_limit_store_timeout,
            key_prefix=self.config.rate_limit_key_prefix,
            metrics=self.metrics,
        )
        self.rate_limit_middleware: Optional[RateLimitMiddleware] = None
        if self.config.rate_limit_enabled:
            self.rate_limit_middleware = RateLimitMiddleware(
                self.admission_gate, self.policy_registry, self.identifier_resolver
            )

        self.logger.info(
            "Rate limiting configured",
            enabled=self.config.rate_limit_enabled,
            backend=self.counter_store.backend,
            failure_mode=self.admission_gate.failure_mode.value,
            timeout_ms=self.config.rate_limit_store_timeout_ms
        )

    def _build_store(self) -> CounterStore:
        if self.config.rate_limit_backend == StoreBackend.REDIS:
            return RedisCounterStore(self.config.redis_url, timeout=self.config.rate_limit_store_timeout)
        return InMemoryCounterStore(clock=self.clock)

    def _setup_middleware(self):
        # Added first so it sits innermost: timing, CORS and any
        # authentication middleware added later all run before it.
        if self.rate_limit_middleware is not None:
            self.app.middleware("http")(self.rate_limit_middleware.dispatch)
        else:
            self.logger.warning("Rate limiting disabled by configuration")
        super()._setup_middleware()

    def _setup_routes(self):
        super()._setup_routes()

        @self.app.on_event("startup")
        async def _startup():
            if isinstance(self.counter_store, InMemoryCounterStore):
                self.counter_store.start_reaper(self.config.rate_limit_reaper_interval_seconds)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.counter_store.close()

        @self.app.get("/")
        async def root():
            """Service information."""
            return {
                "service": "gateway",
                "message": "Billing Gateway - API Gateway",
                "version": "1.0.0",
                "rate_limiting": {
                    "enabled": self.rate_limit_middleware is not None,
                    "backend": self.counter_store.backend,
                    "failure_mode": self.admission_gate.failure_mode.value,
                }
            }

        @self.app.get("/v1/rate-limit/status")
        async def rate_limit_status(request: Request, route: str = Query(..., min_length=1)):
            """Caller's quota for ``route`` without spending any of it."""
            identifier = getattr(request.state, "rate_limit_identifier", None)
            if identifier is None:
                identifier = self.identifier_resolver.resolve(request)
            path = normalize_route(route)
            # Counters are kept per route template, as the middleware counts them.
            pattern = match_route_template(request.app, path) or path
            policies = self.policy_registry.resolve(pattern)
            quotas = await self.admission_gate.status(identifier, policies)
            return {
                "identifier": identifier,
                "route": path,
                "route_pattern": pattern,
                "public": self.policy_registry.is_public(route),
                "policies": quotas,
            }

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report counter store reachability."""
        try:
            reachable = await asyncio.wait_for(
                self.counter_store.ping(),
                timeout=self.config.rate_limit_store_timeout
            )
        except asyncio.TimeoutError:
            reachable = False
        return {"rate_limit_store": "ok" if reachable else "unavailable"}


def create_app():
    """Create FastAPI application."""
    service = GatewayService()
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
