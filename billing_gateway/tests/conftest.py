"""
Shared fixtures for gateway tests.
"""

import pytest
import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from fastapi import Request

from shared.config import get_config
from billing_gateway.app.main import GatewayService
from billing_gateway.app.ratelimit.clock import ManualClock
from billing_gateway.app.ratelimit.models import Policy
from billing_gateway.app.ratelimit.registry import PolicyRegistry
from billing_gateway.app.ratelimit.store import InMemoryCounterStore


START = 1_700_000_000.0


@pytest.fixture
def clock():
    """Manual clock starting at a fixed Unix time."""
    return ManualClock(START)


@pytest.fixture
def store(clock):
    """Fresh in-process counter store."""
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def registry():
    """Small policy table: 5/min by default, 2/min on /v1/stats."""
    return PolicyRegistry(
        default=[Policy(scope="*", limit=5, window=60)],
        routes={"/v1/stats": [Policy(scope="/v1/stats", limit=2, window=60)]},
        public_routes=["/", "/health", "/metrics", "/v1/webhook"],
    )


@pytest.fixture
def make_service(clock, store, registry):
    """Build a GatewayService with test collaborators and stub resource routes."""

    def _make(failure_mode="open", store_override=None, **overrides):
        config = get_config("gateway", 8000, rate_limit_failure_mode=failure_mode, **overrides)
        service = GatewayService(
            config=config,
            store=store if store_override is None else store_override,
            clock=clock,
            registry=registry,
        )
        app = service.app
        service.handler_calls = []

        @app.get("/v1/customers")
        async def list_customers():
            service.handler_calls.append("/v1/customers")
            return {"data": []}

        @app.get("/v1/customers/{customer_id}")
        async def get_customer(customer_id: str):
            service.handler_calls.append(f"/v1/customers/{customer_id}")
            return {"id": customer_id}

        @app.get("/v1/stats")
        async def stats():
            service.handler_calls.append("/v1/stats")
            return {"mrr": 0}

        @app.post("/v1/webhook")
        async def webhook():
            service.handler_calls.append("/v1/webhook")
            return {"received": True}

        # Stand-in for the authentication layer, which runs before the gate.
        @app.middleware("http")
        async def fake_auth(request: Request, call_next):
            tenant = request.headers.get("X-Tenant")
            if tenant:
                request.state.tenant_id = tenant
            return await call_next(request)

        return service

    return _make
