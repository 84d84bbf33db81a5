"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, Field
from typing import Optional

from payment_engine.domain.models import ErrorKind, TransactionKind, TransactionStatus


class SessionRequest(BaseModel):
    """Request body for POST /v1/sessions"""

    account_key: str = Field(..., min_length=1, description="Phone number or user id")


class SessionResponse(BaseModel):
    """Response for POST /v1/sessions; the session token itself is never returned"""

    session_id: str
    account_key: str
    expires_at: str


class TransactionSubmitRequest(BaseModel):
    """Request body for POST /v1/transactions"""

    account_key: str = Field(..., min_length=1, description="Phone number or user id")
    amount: float = Field(..., gt=0, description="Amount in KES, at most two decimals")
    kind: TransactionKind
    destination: str = Field("", description="Phone number or account receiving the funds")
    description: str = ""
    session_id: Optional[str] = Field(None, description="Session issued by POST /v1/sessions")


class TransactionResponse(BaseModel):
    """Outcome of a submission"""

    success: bool
    transaction_id: str
    status: TransactionStatus
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    fee: float = 0.0
    attempt_count: int = 0
    gateway_name: Optional[str] = None


class TransactionDetail(BaseModel):
    """Response for GET /v1/transactions/{transaction_id}"""

    transaction_id: str
    account_key: str
    amount: float
    fee: float
    kind: str
    status: str
    error_kind: Optional[str] = None
    attempt_count: int
    gateway_name: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None


class LimitsSchema(BaseModel):
    min_amount: float
    max_amount: float
    daily_amount_limit: float
    daily_count_limit: int


class AccountResponse(BaseModel):
    """Response for GET /v1/accounts/{account_key}"""

    account_key: str
    trust_score: float
    is_verified: bool
    blocked: bool
    limits: LimitsSchema
    daily_total: float
    daily_count: int
    failed_attempts: int


class VerificationRequest(BaseModel):
    """Request body for PUT /v1/accounts/{account_key}/verification"""

    is_verified: bool
