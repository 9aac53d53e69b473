"""
Admission gate: fixed-window quota enforcement across several policies.

Every check counts the request against each policy before deciding, even
when the request ends up denied, so a client hammering an endpoint gets no
free re-checks.

Fixed windows are reset at a hard boundary. A client can therefore be
admitted ``limit`` times at the end of one window and ``limit`` times at the
start of the next: at most ``2 x limit`` admissions within any span shorter
than ``window``, and never more than ``limit`` inside one window instance.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Sequence

from shared.config import FailureMode
from shared.errors import ConfigurationError, StoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .clock import Clock, SystemClock
from .models import CounterSnapshot, Decision, Policy
from .store import CounterStore


def _short(identifier: str) -> str:
    return identifier if len(identifier) <= 20 else identifier[:20] + "..."


class AdmissionGate:
    """Evaluates every policy of a route against the counter store."""

    def __init__(self,
                 store: CounterStore,
                 failure_mode: FailureMode,
                 clock: Optional[Clock] = None,
                 timeout: float = 0.2,
                 key_prefix: str = "ratelimit",
                 metrics: Optional[MetricsCollector] = None,
                 unavailable_retry_after: float = 1.0):
        try:
            self.failure_mode = FailureMode(failure_mode)
        except ValueError as e:
            raise ConfigurationError(
                "Unknown rate limit failure mode",
                details={"failure_mode": str(failure_mode)}
            ) from e
        if timeout <= 0:
            raise ConfigurationError("Store timeout must be positive", details={"timeout": timeout})

        self.store = store
        self.clock = clock or SystemClock()
        self.timeout = timeout
        self.key_prefix = key_prefix
        self.metrics = metrics
        self.unavailable_retry_after = unavailable_retry_after
        self.logger = get_logger("gateway.admission_gate")

    def key(self, identifier: str, policy: Policy) -> str:
        """Counter key; the hash tag keeps one identifier's keys in one cluster slot."""
        return f"{self.key_prefix}:{{{identifier}}}:{policy.id}"

    async def check(self, identifier: str, policies: Sequence[Policy], now: Optional[float] = None) -> Decision:
        """Count this request against ``policies`` and decide admission."""
        if not policies:
            raise ValueError("check() needs at least one policy")
        now = self.clock.now() if now is None else now
        requests = [(self.key(identifier, policy), policy.window) for policy in policies]

        started = time.perf_counter()
        try:
            snapshots = await asyncio.wait_for(
                self.store.increment_many(requests, now),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            error = StoreUnavailableError(self.store.backend, "timed out",
                                          details={"timeout_seconds": self.timeout})
            return self._on_store_failure(identifier, policies, now, error)
        except StoreUnavailableError as e:
            return self._on_store_failure(identifier, policies, now, e)
        finally:
            if self.metrics:
                self.metrics.observe_histogram(
                    "rate_limit_check_duration_seconds",
                    time.perf_counter() - started,
                    backend=self.store.backend
                )

        decision = self._decide(policies, snapshots, now)
        self._record(decision)

        if not decision.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                identifier=_short(identifier),
                route=decision.policy.scope,
                limit=decision.limit,
                window_seconds=decision.policy.window,
                retry_after=round(decision.retry_after, 3)
            )
        return decision

    def _decide(self, policies: Sequence[Policy], snapshots: Sequence[CounterSnapshot], now: float) -> Decision:
        binding = None
        violated = None
        for policy, snapshot in zip(policies, snapshots):
            remaining = max(0, policy.limit - snapshot.count)
            reset_at = snapshot.window_start + policy.window
            state = (policy, remaining, reset_at)
            if violated is None and snapshot.count > policy.limit:
                violated = state
            if binding is None or remaining < binding[1]:
                binding = state

        if violated is not None:
            policy, remaining, reset_at = violated
            return Decision(
                allowed=False,
                limit=policy.limit,
                remaining=remaining,
                reset_at=reset_at,
                retry_after=max(0.0, reset_at - now),
                policy=policy
            )

        policy, remaining, reset_at = binding
        return Decision(
            allowed=True,
            limit=policy.limit,
            remaining=remaining,
            reset_at=reset_at,
            policy=policy
        )

    def _on_store_failure(self, identifier: str, policies: Sequence[Policy], now: float,
                          error: StoreUnavailableError) -> Decision:
        policy = policies[0]
        if self.metrics:
            self.metrics.increment_counter("rate_limit_store_errors_total", backend=self.store.backend)

        if self.failure_mode is FailureMode.OPEN:
            self.logger.error(
                "Counter store unavailable, admitting request",
                identifier=_short(identifier),
                route=policy.scope,
                error=error.message
            )
            decision = Decision(
                allowed=True,
                limit=policy.limit,
                remaining=policy.limit,
                reset_at=now + policy.window,
                policy=policy,
                degraded=True
            )
        else:
            self.logger.error(
                "Counter store unavailable, denying request",
                identifier=_short(identifier),
                route=policy.scope,
                error=error.message
            )
            decision = Decision(
                allowed=False,
                limit=policy.limit,
                remaining=0,
                reset_at=now + self.unavailable_retry_after,
                retry_after=self.unavailable_retry_after,
                policy=policy,
                unavailable=True
            )
        self._record(decision)
        return decision

    def _record(self, decision: Decision) -> None:
        if self.metrics:
            self.metrics.increment_counter(
                "rate_limit_decisions_total",
                route=decision.policy.scope,
                outcome=decision.outcome
            )

    async def status(self, identifier: str, policies: Sequence[Policy],
                     now: Optional[float] = None) -> List[Dict[str, Any]]:
        """Quota state per policy without counting a request.

        Raises ``StoreUnavailableError`` when the store cannot be read.
        """
        now = self.clock.now() if now is None else now
        result = []
        for policy in policies:
            try:
                snapshot = await asyncio.wait_for(
                    self.store.peek(self.key(identifier, policy), policy.window, now),
                    timeout=self.timeout
                )
            except asyncio.TimeoutError as e:
                raise StoreUnavailableError(self.store.backend, "timed out",
                                            details={"timeout_seconds": self.timeout}) from e
            used = snapshot.count if snapshot else 0
            result.append({
                "scope": policy.scope,
                "limit": policy.limit,
                "window_seconds": policy.window,
                "used": used,
                "remaining": max(0, policy.limit - used),
                "reset_at": snapshot.window_start + policy.window if snapshot else None,
            })
        return result

    async def reset(self, identifier: str, policies: Sequence[Policy]) -> None:
        """Forget the counters of ``identifier`` for ``policies``."""
        for policy in policies:
            await self.store.reset(self.key(identifier, policy))
        self.logger.info("Rate limit counters reset", identifier=_short(identifier),
                         policies=[policy.id for policy in policies])
