"""Account endpoints: summary, verification flag and transaction history"""

from typing import List
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from payment_engine.api.v1.schemas import AccountResponse, LimitsSchema, TransactionDetail, VerificationRequest
from payment_engine.api.v1.transactions import record_to_detail
from payment_engine.api.dependencies import get_engine
from payment_engine.infrastructure.database.session import get_db
from payment_engine.infrastructure.database.repositories import AccountRepository, TransactionRepository
from payment_engine.services.engine import TransactionEngine

router = APIRouter()


def _account_response(engine: TransactionEngine, account_key: str) -> AccountResponse:
    summary = engine.account_summary(account_key)
    return AccountResponse(
        account_key=summary.account_key,
        trust_score=summary.trust_score,
        is_verified=summary.is_verified,
        blocked=summary.blocked,
        limits=LimitsSchema(
            min_amount=summary.limits.min_amount,
            max_amount=summary.limits.max_amount,
            daily_amount_limit=summary.limits.daily_amount_limit,
            daily_count_limit=summary.limits.daily_count_limit,
        ),
        daily_total=summary.daily_total,
        daily_count=summary.daily_count,
        failed_attempts=summary.failed_attempts,
    )


@router.get("/accounts/{account_key}", response_model=AccountResponse)
def get_account(account_key: str, engine: TransactionEngine = Depends(get_engine)):
    """Trust score, effective limits and today's usage for an account"""
    return _account_response(engine, account_key)


@router.put("/accounts/{account_key}/verification", response_model=AccountResponse)
def set_verification(
    account_key: str,
    body: VerificationRequest,
    db: Session = Depends(get_db),
    engine: TransactionEngine = Depends(get_engine),
):
    """Mark an account verified (or not); verified accounts get the verified multiplier"""
    engine.set_verified(account_key, body.is_verified)
    AccountRepository(db).save_snapshot(engine.snapshot(account_key))
    db.commit()
    return _account_response(engine, account_key)


@router.get("/accounts/{account_key}/transactions", response_model=List[TransactionDetail])
def get_account_transactions(
    account_key: str,
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Most recent persisted transactions for an account, newest first"""
    records = TransactionRepository(db).list_by_account(account_key, limit=limit)
    return [record_to_detail(r) for r in records]
