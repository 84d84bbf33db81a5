"""Fraud signals: failed-attempt rate and amount anomaly against recent history"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from payment_engine.config import settings
from payment_engine.domain.ledger import AccountLedger

logger = logging.getLogger(__name__)

SIGNAL_ATTEMPT_RATE = "attempt_rate"
SIGNAL_AMOUNT_ANOMALY = "amount_anomaly"


@dataclass
class FraudAssessment:
    """Which signal (if any) flagged a prospective transaction"""

    suspicious: bool
    signal: Optional[str] = None
    detail: str = ""


def amount_statistics(amounts: List[float]) -> tuple[float, float]:
    """Mean and population standard deviation"""
    mean = sum(amounts) / len(amounts)
    variance = sum((a - mean) ** 2 for a in amounts) / len(amounts)
    return mean, math.sqrt(variance)


class FraudDetector:
    """
    Flags transactions using two independent signals, either one sufficient.

    Attempt rate: failed attempts in the trailing hour >= max_failed_attempts.
    Amount anomaly: with at least min_history recent amounts, |amount - mean|
    beyond sigma_threshold standard deviations. Identical history (sigma = 0)
    falls back to a tolerance so exact or near repeats are not flagged.
    """

    def __init__(
        self,
        ledger: AccountLedger,
        max_failed_attempts: int | None = None,
        max_violations: int | None = None,
        sigma_threshold: float | None = None,
        min_history: int | None = None,
        zero_variance_abs_tolerance: float | None = None,
        zero_variance_rel_tolerance: float | None = None,
    ):
        self.ledger = ledger
        self.max_failed_attempts = max_failed_attempts or settings.max_failed_attempts
        self.max_violations = max_violations or settings.max_violations
        self.sigma_threshold = sigma_threshold or settings.anomaly_sigma_threshold
        self.min_history = min_history or settings.anomaly_min_history
        self.abs_tolerance = (
            zero_variance_abs_tolerance
            if zero_variance_abs_tolerance is not None
            else settings.anomaly_zero_variance_abs_tolerance
        )
        self.rel_tolerance = (
            zero_variance_rel_tolerance
            if zero_variance_rel_tolerance is not None
            else settings.anomaly_zero_variance_rel_tolerance
        )

    def assess(self, account_key: str, amount: float) -> FraudAssessment:
        failures = self.ledger.failed_attempts(account_key)
        if failures >= self.max_failed_attempts:
            return FraudAssessment(
                suspicious=True,
                signal=SIGNAL_ATTEMPT_RATE,
                detail=f"{failures} failed attempts in the last hour",
            )

        history = self.ledger.recent_amounts(account_key)
        if len(history) < self.min_history:
            return FraudAssessment(suspicious=False)

        mean, std_dev = amount_statistics(history)
        deviation = abs(amount - mean)

        if std_dev == 0:
            # All recent amounts identical
            tolerance = max(self.abs_tolerance, self.rel_tolerance * abs(mean))
            anomalous = deviation > tolerance
        else:
            anomalous = deviation > self.sigma_threshold * std_dev

        if anomalous:
            return FraudAssessment(
                suspicious=True,
                signal=SIGNAL_AMOUNT_ANOMALY,
                detail=f"amount {amount:.2f} deviates {deviation:.2f} from mean {mean:.2f} (sigma {std_dev:.2f})",
            )
        return FraudAssessment(suspicious=False)

    def is_suspicious(self, account_key: str, amount: float) -> bool:
        return self.assess(account_key, amount).suspicious

    def record_failure(self, account_key: str) -> None:
        self.ledger.record_attempt(account_key)

    def record_violation(self, account_key: str, kind: str) -> bool:
        """
        Append a security incident and block the account once the count
        reaches max_violations. Returns True when this call blocked it.
        """
        self.ledger.record_incident(account_key, kind)
        if self.ledger.is_blocked(account_key):
            return False
        if self.ledger.incident_count(account_key) >= self.max_violations:
            self.ledger.set_blocked(account_key, True)
            logger.warning(
                "Account blocked after repeated security incidents",
                extra={"account_key": account_key, "incident_kind": kind},
            )
            return True
        return False

    def is_blocked(self, account_key: str) -> bool:
        return self.ledger.is_blocked(account_key)

    def reset_block(self, account_key: str) -> None:
        """Administrative unblock; the incident log itself is kept"""
        self.ledger.set_blocked(account_key, False)
