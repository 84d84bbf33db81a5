"""Pool of payment gateways with per-gateway concurrency caps"""

import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List

from payment_engine.domain.exceptions import NoGatewayAvailableError, ProviderCapacityError
from payment_engine.domain.models import RetryPolicy, TransactionKind
from payment_engine.infrastructure.clients.provider import ProviderClient
from payment_engine.infrastructure.observability.metrics import gateway_in_flight_gauge


class Gateway:
    """One provider endpoint with a concurrency cap and retry policy"""

    def __init__(
        self,
        name: str,
        client: ProviderClient,
        max_concurrent: int,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 10.0,
    ):
        self.name = name
        self.client = client
        self.max_concurrent = max_concurrent
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self._in_flight = 0
        # Plain lock: held only for the counter update, never across an await
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def available(self) -> bool:
        return self._in_flight < self.max_concurrent

    def worst_case_seconds(self) -> float:
        """Longest this gateway can keep one transaction busy

        Each attempt may spend one timeout on the submit and a second on the
        status query that follows a timed-out submit.
        """
        policy = self.retry_policy
        return policy.max_attempts * 2 * self.timeout_seconds + policy.worst_case_backoff()

    def _acquire(self) -> None:
        with self._lock:
            if self._in_flight >= self.max_concurrent:
                raise ProviderCapacityError(f"Gateway {self.name} at capacity ({self.max_concurrent})")
            self._in_flight += 1
            gateway_in_flight_gauge.labels(gateway=self.name).set(self._in_flight)

    def _release(self) -> None:
        with self._lock:
            self._in_flight -= 1
            gateway_in_flight_gauge.labels(gateway=self.name).set(self._in_flight)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator["Gateway"]:
        """
        Hold one in-flight slot for the duration of the block.

        Raises:
            ProviderCapacityError: Gateway already at max_concurrent
        """
        self._acquire()
        try:
            yield self
        finally:
            self._release()

    def __repr__(self) -> str:
        return f"Gateway(name={self.name!r}, in_flight={self._in_flight}/{self.max_concurrent})"


class GatewayPool:
    """Gateways in failover priority order plus the primary route per transaction kind"""

    def __init__(self, gateways: List[Gateway], kind_routes: Dict[str, str] | None = None):
        if not gateways:
            raise ValueError("GatewayPool needs at least one gateway")
        self.gateways = list(gateways)
        self._by_name = {g.name: g for g in self.gateways}
        self.kind_routes = dict(kind_routes or {})
        for kind, name in self.kind_routes.items():
            if name not in self._by_name:
                raise ValueError(f"Route for {kind} points at unknown gateway {name}")

    def get(self, name: str) -> Gateway:
        return self._by_name[name]

    def select(self, kind: TransactionKind) -> Gateway:
        """Primary gateway for a transaction kind; first by priority when unrouted"""
        name = self.kind_routes.get(kind.value)
        if name is None:
            return self.gateways[0]
        return self._by_name[name]

    def select_failover(self, excluding: Iterable[str]) -> Gateway:
        """
        First gateway by priority that is not excluded and has a free slot.

        Raises:
            NoGatewayAvailableError: Nothing qualifies
        """
        excluded = set(excluding)
        for gateway in self.gateways:
            if gateway.name not in excluded and gateway.available:
                return gateway
        raise NoGatewayAvailableError(f"No gateway available (excluding {sorted(excluded)})")

    def worst_case_seconds(self) -> float:
        return sum(g.worst_case_seconds() for g in self.gateways)
