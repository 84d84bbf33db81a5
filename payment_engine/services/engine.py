"""Transaction engine facade - the single entry point for submitting payments"""

import asyncio
import logging
import math
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from payment_engine.config import Settings
from payment_engine.domain.fraud import FraudDetector
from payment_engine.domain.integrity import IntegrityService
from payment_engine.domain.ledger import AccountLedger, AccountSnapshot
from payment_engine.domain.limits import (
    LimitPolicy,
    calculate_fee,
    check_limits,
    effective_limits,
    penalize_trust,
    reward_trust,
)
from payment_engine.domain.models import (
    ErrorKind,
    RetryPolicy,
    Session,
    Transaction,
    TransactionKind,
    TransactionLimits,
    TransactionRequest,
    TransactionResult,
    TransactionStatus,
)
from payment_engine.infrastructure.clients.provider import HttpProviderClient
from payment_engine.infrastructure.observability.logging import log_transaction
from payment_engine.infrastructure.observability.metrics import (
    account_block_counter,
    fraud_flag_counter,
    record_outcome,
)
from payment_engine.services.gateway_pool import Gateway, GatewayPool
from payment_engine.services.lanes import AccountLanes
from payment_engine.services.orchestrator import RetryOrchestrator
from payment_engine.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class AccountSummary:
    """Read-only view of an account for callers and the API"""

    account_key: str
    trust_score: float
    is_verified: bool
    blocked: bool
    limits: TransactionLimits
    daily_total: float
    daily_count: int
    failed_attempts: int


def validate_request(request: TransactionRequest) -> Optional[str]:
    """Return why a request is malformed, or None"""
    if not isinstance(request.account_key, str) or not request.account_key.strip():
        return "account_key is required"
    amount = request.amount
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return "amount must be a number"
    if not math.isfinite(amount) or amount <= 0:
        return "amount must be a positive finite number"
    if abs(round(amount, 2) - amount) > 1e-9:
        return "amount has more than two decimal places"
    try:
        TransactionKind(request.kind)
    except ValueError:
        return f"unknown transaction kind: {request.kind!r}"
    return None


class TransactionEngine:
    """
    Validates, signs and submits transactions.

    Flow per submission:
    1. Shape validation (no side effects)
    2. On the account's lane: blocked account, presented session, fraud
       signals, trust-scaled limits against the daily aggregates
    3. Session creation (when none was presented) and signing
    4. Orchestrated provider attempts with retry and failover
    5. Ledger and trust update exactly once on the terminal status
    """

    def __init__(
        self,
        pool: GatewayPool,
        ledger: AccountLedger | None = None,
        integrity: IntegrityService | None = None,
        fraud: FraudDetector | None = None,
        policy: LimitPolicy | None = None,
        lane_idle_seconds: float = 30.0,
        history_size: int = 10_000,
        deadline_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pool = pool
        self.ledger = ledger or AccountLedger(clock=clock)
        self.integrity = integrity or IntegrityService(clock=clock)
        self.fraud = fraud or FraudDetector(self.ledger)
        self.policy = policy or LimitPolicy()
        self.lanes = AccountLanes(idle_seconds=lane_idle_seconds)
        self.orchestrator = RetryOrchestrator(
            pool, self.integrity, self.fraud, deadline_seconds=deadline_seconds, sleep=sleep, clock=clock
        )
        self.history_size = history_size
        self._clock = clock
        self._history: "OrderedDict[str, Transaction]" = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TransactionEngine":
        """Wire HTTP provider clients and tuning from configuration"""
        gateways = [
            Gateway(
                name=provider.name,
                client=HttpProviderClient(provider),
                max_concurrent=provider.max_concurrent,
                retry_policy=RetryPolicy(**provider.retry_policy.model_dump()),
                timeout_seconds=provider.timeout_seconds,
            )
            for provider in settings.providers
        ]
        ledger = AccountLedger()
        return cls(
            pool=GatewayPool(gateways, settings.kind_routes),
            ledger=ledger,
            integrity=IntegrityService(
                secret=settings.integrity_secret.get_secret_value().encode(),
                session_ttl_seconds=settings.session_ttl_seconds,
                stale_response_seconds=settings.stale_response_seconds,
            ),
            fraud=FraudDetector(
                ledger,
                max_failed_attempts=settings.max_failed_attempts,
                max_violations=settings.max_violations,
                sigma_threshold=settings.anomaly_sigma_threshold,
                min_history=settings.anomaly_min_history,
                zero_variance_abs_tolerance=settings.anomaly_zero_variance_abs_tolerance,
                zero_variance_rel_tolerance=settings.anomaly_zero_variance_rel_tolerance,
            ),
            policy=LimitPolicy.from_settings(settings),
            lane_idle_seconds=settings.lane_idle_seconds,
            history_size=settings.transaction_history_size,
            deadline_seconds=settings.transaction_deadline_seconds,
        )

    # Public API

    def create_session(self, account_key: str) -> Session:
        return self.integrity.create_session(account_key)

    async def submit(self, request: TransactionRequest) -> TransactionResult:
        """Process one transaction request to a definitive outcome"""
        error = validate_request(request)
        if error is not None:
            # Fixed label: the caller's kind may be anything here
            record_outcome(TransactionStatus.FAILED.value, "invalid", ErrorKind.INVALID_REQUEST.value, 0)
            return TransactionResult(
                success=False,
                transaction_id=str(uuid.uuid4()),
                status=TransactionStatus.FAILED,
                error_kind=ErrorKind.INVALID_REQUEST,
                error=error,
            )

        transaction = Transaction.from_request(request)
        transaction.kind = TransactionKind(request.kind)
        transaction.amount = round(float(request.amount), 2)
        transaction.created_at = self._clock()
        start_time = time.time()

        result = await self.lanes.run(transaction.account_key, lambda: self._process(transaction))

        duration_ms = (time.time() - start_time) * 1000
        log_transaction(
            transaction.id,
            transaction.account_key,
            transaction.kind.value,
            transaction.status.value,
            transaction.error_kind.value if transaction.error_kind else None,
            transaction.attempt_count,
            transaction.gateway_name,
            duration_ms,
        )
        return result

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self._history.get(transaction_id)

    def effective_limits(self, account_key: str) -> TransactionLimits:
        return effective_limits(
            self.ledger.trust_score(account_key), self.ledger.is_verified(account_key), self.policy
        )

    def account_summary(self, account_key: str) -> AccountSummary:
        return AccountSummary(
            account_key=account_key,
            trust_score=self.ledger.trust_score(account_key),
            is_verified=self.ledger.is_verified(account_key),
            blocked=self.ledger.is_blocked(account_key),
            limits=self.effective_limits(account_key),
            daily_total=self.ledger.daily_total(account_key),
            daily_count=self.ledger.daily_count(account_key),
            failed_attempts=self.ledger.failed_attempts(account_key),
        )

    def set_verified(self, account_key: str, verified: bool) -> None:
        self.ledger.set_verified(account_key, verified)

    def reset_block(self, account_key: str) -> None:
        self.fraud.reset_block(account_key)

    def snapshot(self, account_key: str) -> AccountSnapshot:
        return self.ledger.snapshot(account_key)

    def restore(self, snapshots: Iterable[AccountSnapshot]) -> int:
        count = 0
        for snapshot in snapshots:
            self.ledger.restore(snapshot)
            count += 1
        return count

    async def close(self) -> None:
        await self.lanes.close()

    # Lane work

    async def _process(self, transaction: Transaction) -> TransactionResult:
        key = transaction.account_key

        if self.fraud.is_blocked(key):
            return self._reject(transaction, ErrorKind.ACCOUNT_BLOCKED, "Account is suspended")

        if transaction.session_id is not None:
            session = self.integrity.consume_session(transaction.session_id, key)
            if session is None:
                self.fraud.record_failure(key)
                return self._reject(
                    transaction, ErrorKind.SESSION_EXPIRED_OR_REUSED, "Session expired, reused or unknown"
                )

        assessment = self.fraud.assess(key, transaction.amount)
        if assessment.suspicious:
            fraud_flag_counter.labels(signal=assessment.signal).inc()
            logger.warning(
                f"Suspicious activity: {assessment.detail}",
                extra={"account_key": key, "transaction_id": transaction.id, "signal": assessment.signal},
            )
            self.fraud.record_failure(key)
            if self.fraud.record_violation(key, assessment.signal):
                account_block_counter.inc()
            self._penalize(key, self.policy.flag_penalty)
            return self._reject(transaction, ErrorKind.SUSPICIOUS_ACTIVITY, "Suspicious activity detected")

        limits = self.effective_limits(key)
        breach = check_limits(
            transaction.amount, limits, self.ledger.daily_total(key), self.ledger.daily_count(key)
        )
        if breach is not None:
            return self._reject(transaction, ErrorKind.LIMIT_EXCEEDED, breach)

        transaction.transition(TransactionStatus.VALIDATED)

        if transaction.session_id is None:
            session = self.integrity.create_session(key)
            self.integrity.consume_session(session.id, key)
            transaction.session_id = session.id

        transaction.fee = calculate_fee(transaction.amount, transaction.kind, self.policy)
        transaction.security_hash = self.integrity.sign(transaction)
        transaction.transition(TransactionStatus.QUEUED)

        try:
            await self.orchestrator.execute(transaction, self._build_payload(transaction))
        except Exception as e:
            logger.exception(f"Unexpected orchestration error: {e}", extra={"transaction_id": transaction.id})
            if not transaction.status.is_terminal:
                transaction.fail(
                    TransactionStatus.DROPPED, ErrorKind.GATEWAY_UNAVAILABLE, "Internal processing error", at=self._clock()
                )

        self._settle(transaction)
        return self._finish(transaction)

    def _build_payload(self, transaction: Transaction) -> Dict[str, Any]:
        # The session token stays inside the engine; only the id travels
        return {
            "transaction_id": transaction.id,
            "account_key": transaction.account_key,
            "amount": transaction.amount,
            "fee": transaction.fee,
            "kind": transaction.kind.value,
            "destination": transaction.destination,
            "description": transaction.description,
            "session_id": transaction.session_id,
            "timestamp": transaction.created_at.isoformat(),
            "security_hash": transaction.security_hash,
        }

    def _settle(self, transaction: Transaction) -> None:
        """Apply ledger and trust effects of a terminal transaction"""
        key = transaction.account_key

        if transaction.status == TransactionStatus.SUCCEEDED:
            committed = self.ledger.record_transaction(
                key, transaction.amount, self._clock(), transaction.id
            )
            if committed:
                self.ledger.set_trust_score(key, reward_trust(self.ledger.trust_score(key), self.policy))
            return

        if transaction.status == TransactionStatus.FAILED:
            # Integrity failures were already recorded when the response was rejected
            if transaction.error_kind != ErrorKind.INTEGRITY_VERIFICATION_FAILED:
                self.fraud.record_failure(key)
            self._penalize(key, self.policy.failure_penalty)
            return

        if transaction.status == TransactionStatus.DROPPED:
            self.fraud.record_failure(key)

    def _penalize(self, key: str, penalty: float) -> None:
        self.ledger.set_trust_score(key, penalize_trust(self.ledger.trust_score(key), penalty, self.policy))

    def _reject(self, transaction: Transaction, error_kind: ErrorKind, error: str) -> TransactionResult:
        transaction.fail(TransactionStatus.FAILED, error_kind, error, at=self._clock())
        return self._finish(transaction)

    def _finish(self, transaction: Transaction) -> TransactionResult:
        self._history[transaction.id] = transaction
        while len(self._history) > self.history_size:
            self._history.popitem(last=False)

        record_outcome(
            transaction.status.value,
            transaction.kind.value,
            transaction.error_kind.value if transaction.error_kind else None,
            transaction.attempt_count,
        )
        return TransactionResult.from_transaction(transaction)
