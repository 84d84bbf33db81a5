"""Unit tests for fraud signals and account blocking"""

import pytest
from payment_engine.domain.fraud import (
    SIGNAL_AMOUNT_ANOMALY,
    SIGNAL_ATTEMPT_RATE,
    FraudDetector,
    amount_statistics,
)
from payment_engine.domain.ledger import AccountLedger

ACCOUNT = "254700000001"


@pytest.fixture
def detector(ledger: AccountLedger) -> FraudDetector:
    return FraudDetector(
        ledger,
        max_failed_attempts=3,
        max_violations=3,
        sigma_threshold=3.0,
        min_history=5,
        zero_variance_abs_tolerance=1.0,
        zero_variance_rel_tolerance=0.1,
    )


def _history(ledger: AccountLedger, clock, amounts):
    for i, amount in enumerate(amounts):
        ledger.record_transaction(ACCOUNT, amount, clock(), f"h{i}")


def test_amount_statistics_population_std():
    mean, std_dev = amount_statistics([90.0, 100.0, 110.0, 95.0, 105.0])

    assert mean == 100.0
    assert std_dev == pytest.approx(7.0711, rel=1e-4)


def test_identical_history_flags_huge_outlier(detector: FraudDetector, ledger, clock):
    """Zero-variance history still catches a wildly different amount"""
    _history(ledger, clock, [100.0] * 5)

    assessment = detector.assess(ACCOUNT, 100_000.0)

    assert assessment.suspicious is True
    assert assessment.signal == SIGNAL_AMOUNT_ANOMALY


def test_identical_history_tolerates_near_repeat(detector: FraudDetector, ledger, clock):
    _history(ledger, clock, [100.0] * 5)

    assert detector.is_suspicious(ACCOUNT, 100.0) is False
    assert detector.is_suspicious(ACCOUNT, 105.0) is False


def test_three_sigma_rule(detector: FraudDetector, ledger, clock):
    """Mean 100, sigma ~7.07: 115 is ordinary, 130 is an anomaly"""
    _history(ledger, clock, [90.0, 100.0, 110.0, 95.0, 105.0])

    assert detector.is_suspicious(ACCOUNT, 115.0) is False
    assert detector.is_suspicious(ACCOUNT, 130.0) is True


def test_short_history_never_anomalous(detector: FraudDetector, ledger, clock):
    _history(ledger, clock, [100.0] * 4)

    assert detector.is_suspicious(ACCOUNT, 100_000.0) is False


def test_failed_attempt_rate_flags_until_window_passes(detector: FraudDetector, clock):
    for _ in range(3):
        detector.record_failure(ACCOUNT)

    assessment = detector.assess(ACCOUNT, 100.0)
    assert assessment.suspicious is True
    assert assessment.signal == SIGNAL_ATTEMPT_RATE

    clock.advance(minutes=61)

    assert detector.is_suspicious(ACCOUNT, 100.0) is False


def test_two_failures_are_not_enough(detector: FraudDetector):
    detector.record_failure(ACCOUNT)
    detector.record_failure(ACCOUNT)

    assert detector.is_suspicious(ACCOUNT, 100.0) is False


def test_third_violation_blocks_account(detector: FraudDetector):
    assert detector.record_violation(ACCOUNT, SIGNAL_AMOUNT_ANOMALY) is False
    assert detector.record_violation(ACCOUNT, SIGNAL_AMOUNT_ANOMALY) is False
    assert detector.is_blocked(ACCOUNT) is False

    assert detector.record_violation(ACCOUNT, SIGNAL_ATTEMPT_RATE) is True
    assert detector.is_blocked(ACCOUNT) is True


def test_reset_block_keeps_incident_log(detector: FraudDetector, ledger):
    """After an administrative unblock the next incident blocks again"""
    for _ in range(3):
        detector.record_violation(ACCOUNT, SIGNAL_ATTEMPT_RATE)

    detector.reset_block(ACCOUNT)

    assert detector.is_blocked(ACCOUNT) is False
    assert ledger.incident_count(ACCOUNT) == 3
    assert detector.record_violation(ACCOUNT, SIGNAL_ATTEMPT_RATE) is True
