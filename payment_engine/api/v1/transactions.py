"""POST /v1/transactions and GET /v1/transactions/{transaction_id}"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payment_engine.api.v1.schemas import TransactionDetail, TransactionResponse, TransactionSubmitRequest
from payment_engine.api.dependencies import get_engine, get_request_id
from payment_engine.infrastructure.database.session import get_db
from payment_engine.infrastructure.database.models import PaymentTransactionRecord
from payment_engine.infrastructure.database.repositories import AccountRepository, TransactionRepository
from payment_engine.domain.models import TransactionRequest
from payment_engine.services.engine import TransactionEngine

router = APIRouter()


@router.post("/transactions", response_model=TransactionResponse)
async def submit_transaction(
    request_body: TransactionSubmitRequest,
    request: Request,
    db: Session = Depends(get_db),
    engine: TransactionEngine = Depends(get_engine),
):
    """
    Submit a transaction and wait for its definitive outcome.

    Flow:
    1. Engine validates, signs and drives the transaction to a terminal status
    2. Persist the transaction and the account snapshot
    3. Return the outcome; error_kind tells the caller whether to retry,
       switch payment method or show an account-suspended message
    """
    request_id = get_request_id(request)

    result = await engine.submit(
        TransactionRequest(
            account_key=request_body.account_key,
            amount=request_body.amount,
            kind=request_body.kind,
            destination=request_body.destination,
            description=request_body.description,
            session_id=request_body.session_id,
        )
    )

    try:
        transaction = engine.get_transaction(result.transaction_id)
        if transaction is not None:
            TransactionRepository(db).save(transaction)
        AccountRepository(db).save_snapshot(engine.snapshot(request_body.account_key))
        db.commit()
    except SQLAlchemyError as e:
        # The outcome already happened; in-memory ledger state stays authoritative
        db.rollback()
        logging.error(f"Failed to persist transaction: {e}", extra={"request_id": request_id})

    return TransactionResponse(
        success=result.success,
        transaction_id=result.transaction_id,
        status=result.status,
        error_kind=result.error_kind,
        error=result.error,
        fee=result.fee,
        attempt_count=result.attempt_count,
        gateway_name=result.gateway_name,
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionDetail)
def get_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    engine: TransactionEngine = Depends(get_engine),
):
    """Read-only history of a finished transaction"""
    transaction = engine.get_transaction(transaction_id)
    if transaction is not None:
        return TransactionDetail(
            transaction_id=transaction.id,
            account_key=transaction.account_key,
            amount=transaction.amount,
            fee=transaction.fee,
            kind=transaction.kind.value,
            status=transaction.status.value,
            error_kind=transaction.error_kind.value if transaction.error_kind else None,
            attempt_count=transaction.attempt_count,
            gateway_name=transaction.gateway_name,
            created_at=transaction.created_at.isoformat(),
            completed_at=transaction.completed_at.isoformat() if transaction.completed_at else None,
        )

    record = TransactionRepository(db).get(transaction_id)
    if not record:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return record_to_detail(record)


def record_to_detail(record: PaymentTransactionRecord) -> TransactionDetail:
    return TransactionDetail(
        transaction_id=record.id,
        account_key=record.account_key,
        amount=record.amount,
        fee=record.fee,
        kind=record.kind,
        status=record.status,
        error_kind=record.error_kind,
        attempt_count=record.attempt_count,
        gateway_name=record.gateway_name,
        created_at=record.created_at.isoformat(),
        completed_at=record.completed_at.isoformat() if record.completed_at else None,
    )
