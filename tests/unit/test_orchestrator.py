"""Unit tests for retry, backoff, failover and deadline handling"""

import pytest
from payment_engine.domain.exceptions import (
    InvalidStateTransitionError,
    ProviderCapacityError,
    ProviderDeclinedError,
    ProviderTransientError,
)
from payment_engine.domain.fraud import FraudDetector
from payment_engine.domain.models import (
    ErrorKind,
    RetryPolicy,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from payment_engine.services.gateway_pool import Gateway, GatewayPool
from payment_engine.services.orchestrator import RetryOrchestrator

ACCOUNT = "254700000001"


@pytest.fixture
def fraud(ledger) -> FraudDetector:
    return FraudDetector(ledger, max_failed_attempts=3, max_violations=3)


@pytest.fixture
def orchestrator(pool, integrity, fraud, sleeps, clock) -> RetryOrchestrator:
    return RetryOrchestrator(pool, integrity, fraud, sleep=sleeps, clock=clock)


def _queued(integrity, clock, amount: float = 500.0) -> Transaction:
    txn = Transaction(account_key=ACCOUNT, amount=amount, kind=TransactionKind.P2P, created_at=clock())
    txn.transition(TransactionStatus.VALIDATED)
    txn.security_hash = integrity.sign(txn)
    txn.transition(TransactionStatus.QUEUED)
    return txn


def _payload(txn: Transaction) -> dict:
    return {"transaction_id": txn.id, "account_key": txn.account_key, "amount": txn.amount}


async def test_first_attempt_success(orchestrator, integrity, clock, primary_client, sleeps):
    txn = _queued(integrity, clock)

    await orchestrator.execute(txn, _payload(txn))

    assert txn.status == TransactionStatus.SUCCEEDED
    assert txn.attempt_count == 1
    assert txn.gateway_name == "primary"
    assert txn.provider_reference.startswith("REF-")
    assert sleeps.delays == []


async def test_transient_errors_retry_with_exponential_backoff(
    orchestrator, integrity, clock, primary_client, secondary_client, sleeps
):
    """Two transient failures then success: three attempts, delays 1s then 2s"""
    primary_client.script = [ProviderTransientError("502"), ProviderTransientError("timeout")]
    txn = _queued(integrity, clock)

    await orchestrator.execute(txn, _payload(txn))

    assert txn.status == TransactionStatus.SUCCEEDED
    assert txn.attempt_count == 3
    assert sleeps.delays == [1.0, 2.0]
    assert secondary_client.submitted == []
    assert TransactionStatus.RETRYING in txn.history


async def test_provider_capacity_fails_over_without_backoff(
    orchestrator, integrity, clock, primary_client, secondary_client, sleeps
):
    primary_client.script = [ProviderCapacityError("429")]
    txn = _queued(integrity, clock)

    await orchestrator.execute(txn, _payload(txn))

    assert txn.status == TransactionStatus.SUCCEEDED
    assert txn.gateway_name == "secondary"
    assert txn.attempt_count == 2
    assert sleeps.delays == []
    assert len(secondary_client.submitted) == 1


async def test_local_capacity_cap_fails_over(integrity, clock, fraud, sleeps, primary_client, secondary_client):
    """A full gateway is never called; the transaction goes straight to the next one"""
    primary = Gateway("primary", primary_client, max_concurrent=1, retry_policy=RetryPolicy(3, 1.0), timeout_seconds=5)
    secondary = Gateway("secondary", secondary_client, max_concurrent=1, retry_policy=RetryPolicy(3, 1.0), timeout_seconds=5)
    orchestrator = RetryOrchestrator(GatewayPool([primary, secondary]), integrity, fraud, sleep=sleeps, clock=clock)
    txn = _queued(integrity, clock)

    async with primary.slot():
        await orchestrator.execute(txn, _payload(txn))

    assert txn.status == TransactionStatus.SUCCEEDED
    assert txn.gateway_name == "secondary"
    assert primary_client.submitted == []
    assert primary.in_flight == 0
    assert secondary.in_flight == 0


async def test_exhausted_everywhere_is_dropped(orchestrator, integrity, clock, primary_client, secondary_client, sleeps):
    primary_client.script = [ProviderTransientError("down")] * 3
    secondary_client.script = [ProviderTransientError("down")] * 3
    txn = _queued(integrity, clock)

    await orchestrator.execute(txn, _payload(txn))

    assert txn.status == TransactionStatus.DROPPED
    assert txn.error_kind == ErrorKind.GATEWAY_UNAVAILABLE
    assert txn.attempt_count == 6
    assert sleeps.delays == [1.0, 2.0, 1.0, 2.0]


async def test_attempts_never_exceed_policy_per_gateway(orchestrator, integrity, clock, primary_client, secondary_client):
    primary_client.script = [ProviderTransientError("down")] * 10
    txn = _queued(integrity, clock)

    await orchestrator.execute(txn, _payload(txn))

    assert len(primary_client.submitted) == 3
    assert txn.gateway_name == "secondary"
    assert txn.status == TransactionStatus.SUCCEEDED


async def test_declined_is_failed_without_retry(orchestrator, integrity, clock, primary_client, secondary_client, sleeps):
    primary_client.script = [ProviderDeclinedError("insufficient funds")]
    txn = _queued(integrity, clock)

    await orchestrator.execute(txn, _payload(txn))

    assert txn.status == TransactionStatus.FAILED
    assert txn.error_kind == ErrorKind.PROVIDER_DECLINED
    assert txn.attempt_count == 1
    assert secondary_client.submitted == []
    assert sleeps.delays == []


async def test_tampered_response_never_succeeds(orchestrator, integrity, clock, primary_client, ledger):
    """A response whose amount was altered after signing fails and counts as a failed attempt"""
    primary_client.script = ["tamper"]
    txn = _queued(integrity, clock)

    await orchestrator.execute(txn, _payload(txn))

    assert txn.status == TransactionStatus.FAILED
    assert txn.error_kind == ErrorKind.INTEGRITY_VERIFICATION_FAILED
    assert TransactionStatus.SUCCEEDED not in txn.history
    assert ledger.failed_attempts(ACCOUNT) == 1


async def test_deadline_drops_hung_transaction(integrity, clock, fraud, pool, primary_client):
    primary_client.script = ["hang"]
    orchestrator = RetryOrchestrator(pool, integrity, fraud, deadline_seconds=0.05, clock=clock)
    txn = _queued(integrity, clock)

    await orchestrator.execute(txn, _payload(txn))

    assert txn.status == TransactionStatus.DROPPED
    assert txn.error_kind == ErrorKind.TIMEOUT
    assert pool.get("primary").in_flight == 0


async def test_hung_gateway_leaves_time_to_fail_over(integrity, clock, fraud, primary_client, secondary_client):
    """Submit and status query both hang on the primary; the computed deadline still reaches the secondary"""
    primary_client.script = ["hang", "hang"]
    primary_client.status_hangs = True
    pool = GatewayPool(
        [
            Gateway("primary", primary_client, max_concurrent=1, retry_policy=RetryPolicy(2, 0.0), timeout_seconds=0.1),
            Gateway("secondary", secondary_client, max_concurrent=1, retry_policy=RetryPolicy(2, 0.0), timeout_seconds=0.1),
        ]
    )
    orchestrator = RetryOrchestrator(pool, integrity, fraud, clock=clock)
    txn = _queued(integrity, clock)

    await orchestrator.execute(txn, _payload(txn))

    assert orchestrator.deadline_for() == pytest.approx(0.8)
    assert txn.status == TransactionStatus.SUCCEEDED
    assert txn.gateway_name == "secondary"
    assert txn.attempt_count == 3
    assert len(secondary_client.submitted) == 1


async def test_timeout_queries_status_before_resending(integrity, clock, fraud, sleeps, primary_client):
    """The request landed but the reply was lost: the status query completes it"""
    primary_client.script = ["land_then_hang"]
    gateway = Gateway("primary", primary_client, max_concurrent=1, retry_policy=RetryPolicy(3, 1.0), timeout_seconds=0.05)
    orchestrator = RetryOrchestrator(GatewayPool([gateway]), integrity, fraud, sleep=sleeps, clock=clock)
    txn = _queued(integrity, clock)

    await orchestrator.execute(txn, _payload(txn))

    assert txn.status == TransactionStatus.SUCCEEDED
    assert txn.attempt_count == 1
    assert len(primary_client.submitted) == 1
    assert sleeps.delays == []


async def test_terminal_transaction_cannot_transition_again(orchestrator, integrity, clock):
    txn = _queued(integrity, clock)
    await orchestrator.execute(txn, _payload(txn))

    with pytest.raises(InvalidStateTransitionError):
        txn.transition(TransactionStatus.SUCCEEDED)
    with pytest.raises(InvalidStateTransitionError):
        txn.transition(TransactionStatus.RETRYING)
