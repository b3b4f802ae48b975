"""
Flow Session Store for Checkout Flow
====================================

Keeps one FlowRunner per browser session, in memory only.

Architecture Overview:
----------------------
Flows are ephemeral by design: nothing about an in-progress checkout is
written to the database. The store is a TTLCache of runners keyed by flow
id, so:
- Reads refresh a flow's last-access time
- Flows idle for longer than FLOW_SESSION_TTL_SECONDS are dropped
- When FLOW_SESSION_MAX_CACHE_SIZE is reached the least recently used 10%
  of flows are evicted

An evicted or expired flow is simply gone; the client starts a new one.

Coordinators are stateless and shared by every runner the store creates.
Flow instances themselves share no mutable state.

Usage:
------
    store = FlowSessionStore(backends)
    runner = store.create(FlowVariant.CATERING, SessionRole.GUEST)
    ...
    runner = store.get(flow_id)
    if runner is None:
        raise HTTPException(404, "Checkout session not found")
"""

import logging
import time
from typing import Callable, Optional

from ..backends import Backends
from ..config import (
    COORDINATOR_TIMEOUT_SECONDS,
    FLOW_SESSION_MAX_CACHE_SIZE,
    FLOW_SESSION_TTL_SECONDS,
)
from ..flow import (
    AccountMatcher,
    AuthenticationCoordinator,
    CheckoutOrchestrator,
    FlowRunner,
    FlowVariant,
    PaymentCoordinator,
    SessionRole,
)
from .cache import TTLCache

logger = logging.getLogger(__name__)


class FlowSessionStore:
    """In-memory registry of live checkout flows."""

    def __init__(
        self,
        backends: Backends,
        ttl_seconds: float = FLOW_SESSION_TTL_SECONDS,
        capacity: int = FLOW_SESSION_MAX_CACHE_SIZE,
        timeout: float = COORDINATOR_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.matcher = AccountMatcher(backends.directory)
        self.authentication = AuthenticationCoordinator(backends.otp, backends.directory)
        self.payments = PaymentCoordinator(backends.gateway)
        self.timeout = timeout
        self._runners: TTLCache[str, FlowRunner] = TTLCache(capacity, ttl_seconds, clock=clock)

    def __len__(self) -> int:
        return len(self._runners)

    def create(
        self,
        variant: FlowVariant = FlowVariant.CATERING,
        role: SessionRole = SessionRole.GUEST,
    ) -> FlowRunner:
        """Start a new flow and register its runner."""
        runner = FlowRunner(
            CheckoutOrchestrator(variant=variant, role=role),
            self.matcher,
            self.authentication,
            self.payments,
            timeout=self.timeout,
        )
        self._runners.set(runner.flow_id, runner)
        logger.info("Started %s checkout flow %s (role=%s)", variant.value, runner.flow_id, role.value)
        return runner

    def get(self, flow_id: str) -> Optional[FlowRunner]:
        runner = self._runners.get(flow_id)
        if runner is None:
            logger.debug("Checkout flow %s not found or expired", flow_id)
        return runner

    def discard(self, flow_id: str) -> None:
        if self._runners.pop(flow_id) is not None:
            logger.info("Discarded checkout flow %s", flow_id)
