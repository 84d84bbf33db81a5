"""Data access layer for account snapshots and transaction history"""

from typing import List, Optional
from sqlalchemy.orm import Session
from payment_engine.infrastructure.database.models import (
    AccountRecord,
    FailedAttemptRecord,
    LedgerEntryRecord,
    PaymentTransactionRecord,
    SecurityIncidentRecord,
)
from payment_engine.domain.ledger import AccountSnapshot
from payment_engine.domain.models import LedgerEntry, SecurityIncident, Transaction
from payment_engine.utils.time_utils import ensure_utc


class AccountRepository:
    """Repository for account snapshots"""

    def __init__(self, db: Session):
        self.db = db

    def save_snapshot(self, snapshot: AccountSnapshot) -> AccountRecord:
        """
        Persist an account snapshot.

        Windowed rows (ledger entries, failed attempts) are replaced by the
        snapshot's; incidents are append-only, so only ones newer than the
        latest stored incident are inserted.
        """
        record = self.db.get(AccountRecord, snapshot.key)
        if record is None:
            record = AccountRecord(account_key=snapshot.key)
            self.db.add(record)

        record.trust_score = snapshot.trust_score
        record.is_verified = snapshot.is_verified
        record.blocked = snapshot.blocked

        # Diff by transaction id; delete-then-insert would trip the unique constraint
        wanted = {e.transaction_id: e for e in snapshot.transactions}
        for entry in list(record.ledger_entries):
            if entry.transaction_id not in wanted:
                record.ledger_entries.remove(entry)
        existing = {entry.transaction_id for entry in record.ledger_entries}
        for transaction_id, e in wanted.items():
            if transaction_id not in existing:
                record.ledger_entries.append(
                    LedgerEntryRecord(transaction_id=transaction_id, amount=e.amount, occurred_at=e.timestamp)
                )

        record.failed_attempts = [FailedAttemptRecord(occurred_at=ts) for ts in snapshot.failed_attempts]

        stored = len(record.incidents)
        for incident in snapshot.incidents[stored:]:
            record.incidents.append(SecurityIncidentRecord(kind=incident.kind, occurred_at=incident.timestamp))

        self.db.flush()  # Get ID without committing
        return record

    def load_snapshot(self, account_key: str) -> Optional[AccountSnapshot]:
        record = self.db.get(AccountRecord, account_key)
        if record is None:
            return None
        return self._to_snapshot(record)

    def load_all(self) -> List[AccountSnapshot]:
        """Every stored account, for restoring the ledger at startup"""
        return [self._to_snapshot(r) for r in self.db.query(AccountRecord).all()]

    def _to_snapshot(self, record: AccountRecord) -> AccountSnapshot:
        return AccountSnapshot(
            key=record.account_key,
            trust_score=record.trust_score,
            is_verified=record.is_verified,
            blocked=record.blocked,
            transactions=[
                LedgerEntry(transaction_id=e.transaction_id, amount=e.amount, timestamp=ensure_utc(e.occurred_at))
                for e in record.ledger_entries
            ],
            failed_attempts=[ensure_utc(a.occurred_at) for a in record.failed_attempts],
            incidents=[
                SecurityIncident(account_key=record.account_key, kind=i.kind, timestamp=ensure_utc(i.occurred_at))
                for i in sorted(record.incidents, key=lambda i: i.id)
            ],
        )


class TransactionRepository:
    """Repository for terminal transactions"""

    def __init__(self, db: Session):
        self.db = db

    def save(self, transaction: Transaction) -> PaymentTransactionRecord:
        """Insert or update the history row for a transaction"""
        record = self.db.get(PaymentTransactionRecord, transaction.id)
        if record is None:
            record = PaymentTransactionRecord(id=transaction.id)
            self.db.add(record)

        record.account_key = transaction.account_key
        record.amount = transaction.amount
        record.fee = transaction.fee
        record.kind = transaction.kind.value
        record.status = transaction.status.value
        record.error_kind = transaction.error_kind.value if transaction.error_kind else None
        record.error = transaction.error
        record.attempt_count = transaction.attempt_count
        record.gateway_name = transaction.gateway_name
        record.provider_reference = transaction.provider_reference
        record.created_at = transaction.created_at
        record.completed_at = transaction.completed_at
        self.db.flush()
        return record

    def get(self, transaction_id: str) -> Optional[PaymentTransactionRecord]:
        return self.db.get(PaymentTransactionRecord, transaction_id)

    def list_by_account(self, account_key: str, limit: int = 20) -> List[PaymentTransactionRecord]:
        """Fetch recent transactions for an account"""
        return (
            self.db.query(PaymentTransactionRecord)
            .filter(PaymentTransactionRecord.account_key == account_key)
            .order_by(PaymentTransactionRecord.created_at.desc())
            .limit(limit)
            .all()
        )
