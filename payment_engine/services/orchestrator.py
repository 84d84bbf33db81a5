"""Drives one transaction through provider attempts, backoff and failover"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from payment_engine.domain.exceptions import (
    NoGatewayAvailableError,
    ProviderCapacityError,
    ProviderDeclinedError,
    ProviderError,
    ProviderTransientError,
)
from payment_engine.domain.fraud import FraudDetector
from payment_engine.domain.integrity import IntegrityService
from payment_engine.domain.models import ErrorKind, ProviderResponse, Transaction, TransactionStatus
from payment_engine.infrastructure.observability.metrics import (
    failover_counter,
    provider_failure_counter,
    provider_latency_histogram,
)
from payment_engine.services.gateway_pool import Gateway, GatewayPool
from payment_engine.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

FAILOVER_CAPACITY = "capacity"
FAILOVER_EXHAUSTED = "exhausted"


class RetryOrchestrator:
    """
    Per-transaction state machine.

    Retry strategy:
    - Transient errors (timeout, network, 5xx): back off base_delay * 2^(n-1)
      and retry the same gateway until its max_attempts is used up
    - Capacity exhaustion (local cap or provider throttling): fail over at once
    - Attempts exhausted: fail over to the next gateway by priority
    - No gateway left: dropped / gateway_unavailable
    - Whole run bounded by a hard deadline: dropped / timeout
    """

    def __init__(
        self,
        pool: GatewayPool,
        integrity: IntegrityService,
        fraud: FraudDetector,
        deadline_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pool = pool
        self.integrity = integrity
        self.fraud = fraud
        self.deadline_seconds = deadline_seconds
        self._sleep = sleep
        self._clock = clock

    def deadline_for(self) -> float:
        return self.deadline_seconds or self.pool.worst_case_seconds()

    async def execute(self, transaction: Transaction, payload: Dict[str, Any]) -> Transaction:
        """Run a queued transaction to a terminal status and return it"""
        deadline = self.deadline_for()
        try:
            await asyncio.wait_for(self._run(transaction, payload), timeout=deadline)
        except asyncio.TimeoutError:
            # The outstanding provider call was cancelled; its result, if any, is discarded
            if not transaction.status.is_terminal:
                transaction.fail(
                    TransactionStatus.DROPPED,
                    ErrorKind.TIMEOUT,
                    f"Deadline of {deadline:.1f}s exceeded",
                    at=self._clock(),
                )
                logger.warning(
                    "Transaction deadline exceeded",
                    extra={"transaction_id": transaction.id, "attempt_count": transaction.attempt_count},
                )
        return transaction

    async def _run(self, transaction: Transaction, payload: Dict[str, Any]) -> None:
        gateway = self.pool.select(transaction.kind)
        tried: List[str] = []

        while True:
            reason = await self._drive_gateway(transaction, payload, gateway)
            if reason is None:
                return

            tried.append(gateway.name)
            failover_counter.labels(from_gateway=gateway.name, reason=reason).inc()
            try:
                next_gateway = self.pool.select_failover(tried)
            except NoGatewayAvailableError as e:
                transaction.fail(TransactionStatus.DROPPED, ErrorKind.GATEWAY_UNAVAILABLE, str(e), at=self._clock())
                return

            logger.info(
                "Failing over",
                extra={
                    "transaction_id": transaction.id,
                    "from_gateway": gateway.name,
                    "to_gateway": next_gateway.name,
                    "reason": reason,
                },
            )
            gateway = next_gateway

    async def _drive_gateway(self, transaction: Transaction, payload: Dict[str, Any], gateway: Gateway) -> Optional[str]:
        """
        Attempt the transaction on one gateway.

        Returns None once the transaction is terminal, otherwise the reason
        to fail over.
        """
        policy = gateway.retry_policy

        for attempt in range(1, policy.max_attempts + 1):
            try:
                async with gateway.slot():
                    self._begin_attempt(transaction, gateway)
                    response = await self._send(gateway, transaction, payload)

            except ProviderCapacityError as e:
                provider_failure_counter.labels(gateway=gateway.name, reason="capacity").inc()
                logger.warning(f"Gateway capacity exhausted: {e}", extra={"transaction_id": transaction.id})
                self._mark_retrying(transaction)
                return FAILOVER_CAPACITY

            except ProviderDeclinedError as e:
                provider_failure_counter.labels(gateway=gateway.name, reason="declined").inc()
                transaction.fail(TransactionStatus.FAILED, ErrorKind.PROVIDER_DECLINED, str(e), at=self._clock())
                return None

            except ProviderTransientError as e:
                provider_failure_counter.labels(gateway=gateway.name, reason="transient").inc()
                self._mark_retrying(transaction)
                if attempt >= policy.max_attempts:
                    logger.warning(
                        f"All {policy.max_attempts} attempts on {gateway.name} exhausted: {e}",
                        extra={"transaction_id": transaction.id},
                    )
                    break

                delay = policy.delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt} on {gateway.name} failed, retrying in {delay}s: {e}",
                    extra={"transaction_id": transaction.id},
                )
                await self._sleep(delay)
                continue

            self._complete(transaction, response)
            return None

        return FAILOVER_EXHAUSTED

    def _begin_attempt(self, transaction: Transaction, gateway: Gateway) -> None:
        transaction.transition(TransactionStatus.SUBMITTING)
        transaction.attempt_count += 1
        transaction.gateway_name = gateway.name
        transaction.submitted_at = self._clock()

    def _mark_retrying(self, transaction: Transaction) -> None:
        if transaction.status == TransactionStatus.SUBMITTING:
            transaction.transition(TransactionStatus.RETRYING)

    async def _send(self, gateway: Gateway, transaction: Transaction, payload: Dict[str, Any]) -> ProviderResponse:
        try:
            with provider_latency_histogram.labels(gateway=gateway.name).time():
                return await asyncio.wait_for(gateway.client.submit(payload), timeout=gateway.timeout_seconds)
        except asyncio.TimeoutError as e:
            # The request may have landed; ask before sending it again
            response = await self._query_after_timeout(gateway, transaction)
            if response is not None:
                return response
            raise ProviderTransientError(f"{gateway.name} timeout after {gateway.timeout_seconds}s") from e

    async def _query_after_timeout(self, gateway: Gateway, transaction: Transaction) -> Optional[ProviderResponse]:
        try:
            return await asyncio.wait_for(
                gateway.client.query_status(transaction.id), timeout=gateway.timeout_seconds
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.info(f"Status query on {gateway.name} inconclusive: {e}", extra={"transaction_id": transaction.id})
            return None

    def _complete(self, transaction: Transaction, response: ProviderResponse) -> None:
        # An unverifiable success is indistinguishable from a forged one
        if not self.integrity.verify_response(response, transaction):
            self.fraud.record_failure(transaction.account_key)
            transaction.fail(
                TransactionStatus.FAILED,
                ErrorKind.INTEGRITY_VERIFICATION_FAILED,
                "Provider response failed integrity verification",
                at=self._clock(),
            )
            return

        transaction.provider_reference = response.reference
        transaction.transition(TransactionStatus.SUCCEEDED, at=self._clock())
