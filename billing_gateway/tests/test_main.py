"""
Tests for gateway service wiring.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from billing_gateway.app.main import GatewayService, create_app
from billing_gateway.app.ratelimit.redis_store import RedisCounterStore
from billing_gateway.app.ratelimit.store import CounterStore, InMemoryCounterStore
from shared.config import FailureMode, get_config
from shared.errors import StoreUnavailableError


class DownStore(CounterStore):
    """Store that reports itself unreachable."""

    backend = "test"

    async def increment(self, key, window, now):
        raise StoreUnavailableError(self.backend)

    async def peek(self, key, window, now):
        raise StoreUnavailableError(self.backend)

    async def reset(self, key):
        raise StoreUnavailableError(self.backend)

    async def ping(self):
        return False


class HangingStore(DownStore):
    """Store whose ping never returns."""

    async def ping(self):
        await asyncio.sleep(10)
        return True


class TestGatewayService:
    """Test cases for GatewayService."""

    def test_root(self, make_service):
        """Root describes the rate limiting setup."""
        service = make_service(failure_mode="closed")
        client = TestClient(service.app)

        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "gateway"
        assert data["rate_limiting"] == {"enabled": True, "backend": "memory", "failure_mode": "closed"}

    def test_health_ok(self, make_service):
        service = make_service()
        client = TestClient(service.app)

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["dependencies"] == {"rate_limit_store": "ok"}

    @pytest.mark.parametrize("bad_store", [DownStore(), HangingStore()])
    def test_health_degraded_when_store_unreachable(self, make_service, bad_store):
        """An unreachable store degrades health without failing it."""
        service = make_service(store_override=bad_store, rate_limit_store_timeout_ms=50)
        client = TestClient(service.app)

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["dependencies"] == {"rate_limit_store": "unavailable"}

    def test_metrics_endpoint(self, make_service):
        """Rate limit decisions are exported in Prometheus format."""
        service = make_service()
        client = TestClient(service.app)
        client.get("/v1/customers", headers={"X-Tenant": "t1"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "rate_limit_decisions_total" in response.text
        assert service.metrics.get_sample_value(
            "rate_limit_decisions_total", {"route": "/v1/customers", "outcome": "allowed"}
        ) == 1
        assert "rate_limit_check_duration_seconds_bucket" in response.text

    def test_reaper_follows_app_lifecycle(self, make_service, store):
        """The in-process reaper runs between startup and shutdown."""
        service = make_service()

        with TestClient(service.app):
            assert store._reaper_task is not None

        assert store._reaper_task is None

    def test_builds_memory_store_and_builtin_policies(self):
        """Without injected collaborators the service builds them from config."""
        service = GatewayService(config=get_config("gateway", 8000, rate_limit_failure_mode="open"))

        assert isinstance(service.counter_store, InMemoryCounterStore)
        assert service.policy_registry.resolve("/v1/auth/login")[0].window == 900
        assert service.admission_gate.timeout == 0.2

    def test_builds_redis_store(self):
        """The redis backend is selected by configuration."""
        config = get_config("gateway", 8000, rate_limit_failure_mode="closed",
                            rate_limit_backend="redis", redis_url="redis://cache:6379/2",
                            rate_limit_store_timeout_ms=150)

        service = GatewayService(config=config)

        assert isinstance(service.counter_store, RedisCounterStore)
        assert service.counter_store.redis_url == "redis://cache:6379/2"
        assert service.counter_store.timeout == 0.15
        assert service.admission_gate.failure_mode is FailureMode.CLOSED

    def test_loads_policy_file(self, tmp_path):
        """GATEWAY_RATE_LIMITS_FILE points at the policy table."""
        path = tmp_path / "limits.yaml"
        path.write_text("default:\n  - {limit: 3, window_seconds: 10}\n")

        service = GatewayService(config=get_config("gateway", 8000, rate_limit_failure_mode="open",
                                                   rate_limits_file=str(path)))

        assert [(p.limit, p.window) for p in service.policy_registry.resolve("/v1/anything")] == [(3, 10)]

    def test_create_app_reads_environment(self, monkeypatch):
        """create_app builds the service from GATEWAY_* variables."""
        monkeypatch.setenv("GATEWAY_RATE_LIMIT_FAILURE_MODE", "closed")
        monkeypatch.setenv("GATEWAY_RATE_LIMIT_STORE_TIMEOUT_MS", "75")

        app = create_app()

        service = app.state.gateway_service
        assert service.admission_gate.failure_mode is FailureMode.CLOSED
        assert service.admission_gate.timeout == 0.075


class TestRateLimitStatus:
    """Test cases for the quota status endpoint."""

    def test_reports_usage_without_counting(self, make_service):
        service = make_service()
        client = TestClient(service.app)
        tenant = {"X-Tenant": "t1"}
        client.get("/v1/stats", headers=tenant)

        first = client.get("/v1/rate-limit/status", params={"route": "/v1/stats"}, headers=tenant)
        second = client.get("/v1/rate-limit/status", params={"route": "/v1/stats/"}, headers=tenant)

        assert first.status_code == 200
        assert first.json() == second.json()
        body = first.json()
        assert body["identifier"] == "tenant:t1"
        assert body["route"] == "/v1/stats"
        assert body["route_pattern"] == "/v1/stats"
        assert body["public"] is False
        assert body["policies"] == [{
            "scope": "/v1/stats",
            "limit": 2,
            "window_seconds": 60,
            "used": 1,
            "remaining": 1,
            "reset_at": 1_700_000_060.0,
        }]

    def test_concrete_path_reports_template_usage(self, make_service):
        """Usage on a parameterised route is reported for any concrete path."""
        service = make_service()
        client = TestClient(service.app)
        tenant = {"X-Tenant": "t1"}
        for _ in range(3):
            client.get("/v1/customers/cus_1", headers=tenant)

        body = client.get("/v1/rate-limit/status", params={"route": "/v1/customers/cus_2"}, headers=tenant).json()

        assert body["route"] == "/v1/customers/cus_2"
        assert body["route_pattern"] == "/v1/customers/{customer_id}"
        assert body["policies"][0]["scope"] == "/v1/customers/{customer_id}"
        assert body["policies"][0]["used"] == 3
        assert body["policies"][0]["remaining"] == 2

    def test_public_route_status(self, make_service):
        service = make_service()
        client = TestClient(service.app)

        body = client.get("/v1/rate-limit/status", params={"route": "/health"}).json()

        assert body["public"] is True
        assert body["identifier"] == "ip:testclient"

    def test_route_is_required(self, make_service):
        client = TestClient(make_service().app)

        assert client.get("/v1/rate-limit/status").status_code == 422

    def test_store_unavailable(self, make_service):
        """Status reads fail with 503 when the store is down."""
        service = make_service(store_override=DownStore())
        client = TestClient(service.app)

        response = client.get("/v1/rate-limit/status", params={"route": "/v1/stats"})

        assert response.status_code == 503
        assert response.json()["code"] == "STORE_UNAVAILABLE"
