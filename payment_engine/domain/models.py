"""Domain models - pure Python dataclasses representing business entities"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from payment_engine.domain.exceptions import InvalidStateTransitionError
from payment_engine.utils.time_utils import utcnow


class TransactionKind(str, Enum):
    BUSINESS = "business"
    INVESTMENT = "investment"
    P2P = "p2p"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    CREATED = "created"
    VALIDATED = "validated"
    QUEUED = "queued"
    SUBMITTING = "submitting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DROPPED = "dropped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {TransactionStatus.SUCCEEDED, TransactionStatus.FAILED, TransactionStatus.DROPPED}
)

ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.CREATED: frozenset({TransactionStatus.VALIDATED, TransactionStatus.FAILED}),
    TransactionStatus.VALIDATED: frozenset({TransactionStatus.QUEUED, TransactionStatus.FAILED}),
    TransactionStatus.QUEUED: frozenset({TransactionStatus.SUBMITTING, TransactionStatus.DROPPED}),
    TransactionStatus.SUBMITTING: frozenset(
        {
            TransactionStatus.SUCCEEDED,
            TransactionStatus.RETRYING,
            TransactionStatus.FAILED,
            TransactionStatus.DROPPED,
        }
    ),
    TransactionStatus.RETRYING: frozenset({TransactionStatus.SUBMITTING, TransactionStatus.DROPPED}),
}


class ErrorKind(str, Enum):
    """Why a transaction did not succeed"""

    INVALID_REQUEST = "invalid_request"
    LIMIT_EXCEEDED = "limit_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SESSION_EXPIRED_OR_REUSED = "session_expired_or_reused"
    ACCOUNT_BLOCKED = "account_blocked"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    PROVIDER_DECLINED = "provider_declined"
    INTEGRITY_VERIFICATION_FAILED = "integrity_verification_failed"
    TIMEOUT = "timeout"

    @property
    def retryable(self) -> bool:
        """Whether the caller may simply try the same request again later"""
        return self in (ErrorKind.GATEWAY_UNAVAILABLE, ErrorKind.TIMEOUT)


@dataclass
class TransactionRequest:
    """Inbound submission from an economy component"""

    account_key: str
    amount: float
    kind: TransactionKind
    destination: str = ""
    description: str = ""
    session_id: Optional[str] = None


@dataclass
class TransactionLimits:
    """Effective limits for one account, derived per request"""

    min_amount: float
    max_amount: float
    daily_amount_limit: float
    daily_count_limit: int


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    exponential_backoff: bool = True

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows failed attempt number `attempt` (1-based)"""
        if not self.exponential_backoff:
            return self.base_delay
        return self.base_delay * (2 ** (attempt - 1))

    def worst_case_backoff(self) -> float:
        return sum(self.delay_for(attempt) for attempt in range(1, self.max_attempts))


@dataclass
class Session:
    """Short-lived single-use credential binding one transaction"""

    id: str
    account_key: str
    issued_at: datetime
    expires_at: datetime
    token: str = field(repr=False)
    consumed: bool = False

    def is_valid_at(self, moment: datetime) -> bool:
        return not self.consumed and self.issued_at <= moment < self.expires_at


@dataclass
class ProviderResponse:
    """What a provider claims happened to a submitted transaction"""

    transaction_id: str
    amount: float
    timestamp: datetime
    claimed_hash: str
    reference: str = ""
    # Timestamp exactly as it arrived on the wire; the hash covers this text
    timestamp_raw: Optional[str] = None

    @property
    def signed_timestamp(self) -> str:
        return self.timestamp_raw if self.timestamp_raw is not None else self.timestamp.isoformat()


@dataclass
class SecurityIncident:
    account_key: str
    kind: str
    timestamp: datetime


@dataclass
class LedgerEntry:
    """A committed transaction inside the trailing 24h window"""

    transaction_id: str
    amount: float
    timestamp: datetime


@dataclass
class Transaction:
    """A transaction owned by the engine until it reaches a terminal status"""

    account_key: str
    amount: float
    kind: TransactionKind
    destination: str = ""
    description: str = ""
    fee: float = 0.0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = None
    security_hash: Optional[str] = None
    status: TransactionStatus = TransactionStatus.CREATED
    attempt_count: int = 0
    gateway_name: Optional[str] = None
    provider_reference: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    history: List[TransactionStatus] = field(default_factory=list)

    @classmethod
    def from_request(cls, request: TransactionRequest) -> "Transaction":
        return cls(
            account_key=request.account_key,
            amount=request.amount,
            kind=request.kind,
            destination=request.destination,
            description=request.description,
            session_id=request.session_id,
        )

    def transition(self, new_status: TransactionStatus, at: Optional[datetime] = None) -> None:
        """
        Move to new_status, refusing anything the state machine does not allow.

        `at` stamps completed_at when new_status is terminal.
        """
        allowed = ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidStateTransitionError(
                f"Transaction {self.id}: {self.status.value} -> {new_status.value} not allowed"
            )
        self.history.append(self.status)
        self.status = new_status
        if new_status.is_terminal:
            self.completed_at = at or utcnow()

    def fail(self, status: TransactionStatus, error_kind: ErrorKind, error: str, at: Optional[datetime] = None) -> None:
        self.transition(status, at)
        self.error_kind = error_kind
        self.error = error


@dataclass
class TransactionResult:
    """Definitive outcome returned to the caller of Submit"""

    success: bool
    transaction_id: str
    status: TransactionStatus
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    fee: float = 0.0
    attempt_count: int = 0
    gateway_name: Optional[str] = None

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionResult":
        return cls(
            success=transaction.status == TransactionStatus.SUCCEEDED,
            transaction_id=transaction.id,
            status=transaction.status,
            error_kind=transaction.error_kind,
            error=transaction.error,
            fee=transaction.fee,
            attempt_count=transaction.attempt_count,
            gateway_name=transaction.gateway_name,
        )
