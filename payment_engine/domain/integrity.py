"""Session issuance, request signing and provider response verification"""

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Union

from payment_engine.config import settings
from payment_engine.domain.models import ProviderResponse, Session, Transaction
from payment_engine.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


def canonical_amount(amount: float) -> str:
    return f"{amount:.2f}"


class IntegrityService:
    """
    Keyed-hash integrity for transactions.

    Outgoing payloads carry HMAC-SHA256(account_key:amount:created_at).
    Provider responses must carry HMAC-SHA256(transaction_id:amount:timestamp)
    under the same shared secret, arrive within the staleness bound, and
    match the transaction they answer.
    """

    def __init__(
        self,
        secret: bytes | None = None,
        session_ttl_seconds: float | None = None,
        stale_response_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._secret = secret or settings.integrity_secret.get_secret_value().encode()
        self.session_ttl = timedelta(seconds=session_ttl_seconds or settings.session_ttl_seconds)
        self.stale_bound = timedelta(seconds=stale_response_seconds or settings.stale_response_seconds)
        self._clock = clock
        self._sessions: Dict[str, Session] = {}

    def _digest(self, message: str) -> str:
        return hmac.new(self._secret, message.encode("utf-8"), hashlib.sha256).hexdigest()

    # Sessions

    def create_session(self, account_key: str) -> Session:
        now = self._clock()
        self._purge_expired(now)
        session = Session(
            id=str(uuid.uuid4()),
            account_key=account_key,
            issued_at=now,
            expires_at=now + self.session_ttl,
            token=secrets.token_urlsafe(32),
        )
        self._sessions[session.id] = session
        return session

    def consume_session(self, session_id: str, account_key: str) -> Optional[Session]:
        """
        Spend a session. Returns None when it is unknown, expired, already
        spent or issued to another account. A found session is marked
        consumed whatever the outcome.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None
        valid = session.is_valid_at(self._clock()) and session.account_key == account_key
        session.consumed = True
        return session if valid else None

    def _purge_expired(self, now: datetime) -> None:
        # Consumed sessions are kept until expiry so reuse is still detected
        expired = [sid for sid, s in self._sessions.items() if s.expires_at <= now]
        for sid in expired:
            del self._sessions[sid]

    # Signing

    def sign(self, transaction: Transaction) -> str:
        """Bind account, amount and creation time into the outgoing request"""
        message = ":".join(
            [transaction.account_key, canonical_amount(transaction.amount), transaction.created_at.isoformat()]
        )
        return self._digest(message)

    def verify_request(self, account_key: str, amount: float, timestamp: str, security_hash: str) -> bool:
        expected = self._digest(":".join([account_key, canonical_amount(amount), timestamp]))
        return hmac.compare_digest(expected, security_hash)

    def sign_response(self, transaction_id: str, amount: float, timestamp: Union[datetime, str]) -> str:
        """Hash a response over the timestamp text the provider sends"""
        if isinstance(timestamp, datetime):
            timestamp = timestamp.isoformat()
        return self._digest(":".join([transaction_id, canonical_amount(amount), timestamp]))

    def verify_response(self, response: ProviderResponse, transaction: Transaction) -> bool:
        if response.transaction_id != transaction.id:
            logger.warning("Provider response names a different transaction", extra={"transaction_id": transaction.id})
            return False

        expected = self.sign_response(response.transaction_id, response.amount, response.signed_timestamp)
        if not hmac.compare_digest(expected, response.claimed_hash):
            logger.warning("Provider response hash mismatch", extra={"transaction_id": transaction.id})
            return False

        if canonical_amount(response.amount) != canonical_amount(transaction.amount):
            logger.warning("Provider response amount mismatch", extra={"transaction_id": transaction.id})
            return False

        submitted_at = transaction.submitted_at or transaction.created_at
        now = self._clock()
        if now - submitted_at > self.stale_bound or response.timestamp - submitted_at > self.stale_bound:
            logger.warning("Provider response is stale", extra={"transaction_id": transaction.id})
            return False
        if submitted_at - response.timestamp > self.stale_bound:
            # Timestamped long before we ever sent it: a replayed response
            logger.warning("Provider response predates submission", extra={"transaction_id": transaction.id})
            return False

        return True
