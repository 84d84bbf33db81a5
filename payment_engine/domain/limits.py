"""Trust-scaled transaction limits and trust score adjustment"""

import math
from dataclasses import dataclass
from typing import Optional

from payment_engine.config import Settings
from payment_engine.domain.models import TransactionKind, TransactionLimits


@dataclass(frozen=True)
class LimitPolicy:
    """Base limits and trust tuning, usually built from Settings"""

    base_min_amount: float = 10.0
    base_max_amount: float = 150_000.0
    base_daily_amount_limit: float = 300_000.0
    base_daily_count_limit: int = 30
    verified_multiplier: float = 2.0
    trust_ceiling: float = 1.5
    trust_floor: float = 0.1
    reward_rate: float = 0.05
    failure_penalty: float = 0.1
    flag_penalty: float = 0.25
    business_fee_rate: float = 0.02
    personal_fee_rate: float = 0.01

    @classmethod
    def from_settings(cls, settings: Settings) -> "LimitPolicy":
        return cls(
            base_min_amount=settings.base_min_amount,
            base_max_amount=settings.base_max_amount,
            base_daily_amount_limit=settings.base_daily_amount_limit,
            base_daily_count_limit=settings.base_daily_count_limit,
            verified_multiplier=settings.verified_multiplier,
            trust_ceiling=settings.trust_score_multiplier,
            trust_floor=settings.trust_floor,
            reward_rate=settings.trust_reward_rate,
            failure_penalty=settings.trust_failure_penalty,
            flag_penalty=settings.trust_flag_penalty,
            business_fee_rate=settings.business_fee_rate,
            personal_fee_rate=settings.personal_fee_rate,
        )


def effective_limits(trust_score: float, is_verified: bool, policy: LimitPolicy) -> TransactionLimits:
    """
    Scale the base limits by trust and verification.

    - max_amount / daily_amount_limit: base x verified multiplier x trust score
    - daily_count_limit: floor(base x verified multiplier), trust does not apply
    - min_amount: always the base minimum, never scaled down

    Scaled amounts are clamped so min_amount <= max_amount holds for any trust score.
    """
    multiplier = policy.verified_multiplier if is_verified else 1.0
    min_amount = policy.base_min_amount
    max_amount = policy.base_max_amount * multiplier * trust_score
    daily_amount = policy.base_daily_amount_limit * multiplier * trust_score

    return TransactionLimits(
        min_amount=min_amount,
        max_amount=round(max(max_amount, min_amount), 2),
        daily_amount_limit=round(max(daily_amount, min_amount), 2),
        daily_count_limit=math.floor(policy.base_daily_count_limit * multiplier),
    )


def check_limits(amount: float, limits: TransactionLimits, daily_total: float, daily_count: int) -> Optional[str]:
    """Return why the amount breaches the limits, or None when it fits"""
    if amount < limits.min_amount:
        return f"Amount {amount:.2f} below minimum {limits.min_amount:.2f}"
    if amount > limits.max_amount:
        return f"Amount {amount:.2f} above maximum {limits.max_amount:.2f}"
    if daily_count >= limits.daily_count_limit:
        return f"Daily transaction count limit {limits.daily_count_limit} reached"
    if daily_total + amount > limits.daily_amount_limit:
        return f"Daily amount limit {limits.daily_amount_limit:.2f} would be exceeded"
    return None


def reward_trust(score: float, policy: LimitPolicy) -> float:
    """Move the score a fixed fraction of the way toward the ceiling"""
    if score >= policy.trust_ceiling:
        return policy.trust_ceiling
    return round(score + (policy.trust_ceiling - score) * policy.reward_rate, 6)


def penalize_trust(score: float, penalty: float, policy: LimitPolicy) -> float:
    """Shrink the score multiplicatively, never below the floor"""
    return round(max(policy.trust_floor, score * (1 - penalty)), 6)


def calculate_fee(amount: float, kind: TransactionKind, policy: LimitPolicy) -> float:
    """Business payments carry the business rate, every other kind the personal rate"""
    rate = policy.business_fee_rate if kind == TransactionKind.BUSINESS else policy.personal_fee_rate
    return round(amount * rate, 2)
