"""Per-account ledger of recent transactions, failed attempts and trust state"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Set

from payment_engine.domain.models import LedgerEntry, SecurityIncident
from payment_engine.utils.time_utils import utcnow, window_cutoff

TRANSACTION_WINDOW = timedelta(hours=24)
FAILED_ATTEMPT_WINDOW = timedelta(hours=1)


@dataclass
class Account:
    """Mutable state for one account; only the ledger touches it"""

    key: str
    trust_score: float = 1.0
    is_verified: bool = False
    blocked: bool = False
    transactions: Deque[LedgerEntry] = field(default_factory=deque)
    failed_attempts: Deque[datetime] = field(default_factory=deque)
    incidents: List[SecurityIncident] = field(default_factory=list)
    committed_ids: Set[str] = field(default_factory=set)


@dataclass
class AccountSnapshot:
    """Restorable copy of an account, timestamps included"""

    key: str
    trust_score: float
    is_verified: bool
    blocked: bool
    transactions: List[LedgerEntry]
    failed_attempts: List[datetime]
    incidents: List[SecurityIncident]


class AccountLedger:
    """
    Owns every account's history behind a small interface.

    Reads prune entries that fell out of their trailing window first, so
    daily_total/daily_count/recent_amounts are always window-correct.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._accounts: Dict[str, Account] = {}

    def _account(self, key: str) -> Account:
        account = self._accounts.get(key)
        if account is None:
            account = Account(key=key)
            self._accounts[key] = account
        return account

    def _prune(self, account: Account) -> None:
        now = self._clock()
        txn_cutoff = window_cutoff(now, TRANSACTION_WINDOW)
        while account.transactions and account.transactions[0].timestamp < txn_cutoff:
            expired = account.transactions.popleft()
            account.committed_ids.discard(expired.transaction_id)
        attempt_cutoff = window_cutoff(now, FAILED_ATTEMPT_WINDOW)
        while account.failed_attempts and account.failed_attempts[0] < attempt_cutoff:
            account.failed_attempts.popleft()

    def record_attempt(self, key: str) -> None:
        """Note a rejected or failed attempt; feeds the fraud rate signal"""
        account = self._account(key)
        self._prune(account)
        account.failed_attempts.append(self._clock())

    def record_transaction(self, key: str, amount: float, timestamp: datetime, transaction_id: str) -> bool:
        """
        Commit a successful transaction. Returns False (and changes nothing)
        when this transaction id was already committed.
        """
        account = self._account(key)
        if transaction_id in account.committed_ids:
            return False
        account.committed_ids.add(transaction_id)
        account.transactions.append(LedgerEntry(transaction_id=transaction_id, amount=amount, timestamp=timestamp))
        self._prune(account)
        return True

    def daily_total(self, key: str) -> float:
        account = self._account(key)
        self._prune(account)
        return round(sum(entry.amount for entry in account.transactions), 2)

    def daily_count(self, key: str) -> int:
        account = self._account(key)
        self._prune(account)
        return len(account.transactions)

    def recent_amounts(self, key: str) -> List[float]:
        account = self._account(key)
        self._prune(account)
        return [entry.amount for entry in account.transactions]

    def failed_attempts(self, key: str) -> int:
        account = self._account(key)
        self._prune(account)
        return len(account.failed_attempts)

    # Trust and verification

    def trust_score(self, key: str) -> float:
        return self._account(key).trust_score

    def set_trust_score(self, key: str, score: float) -> None:
        self._account(key).trust_score = score

    def is_verified(self, key: str) -> bool:
        return self._account(key).is_verified

    def set_verified(self, key: str, verified: bool) -> None:
        self._account(key).is_verified = verified

    # Security incidents

    def record_incident(self, key: str, kind: str) -> SecurityIncident:
        incident = SecurityIncident(account_key=key, kind=kind, timestamp=self._clock())
        self._account(key).incidents.append(incident)
        return incident

    def incident_count(self, key: str) -> int:
        return len(self._account(key).incidents)

    def is_blocked(self, key: str) -> bool:
        account = self._accounts.get(key)
        return account is not None and account.blocked

    def set_blocked(self, key: str, blocked: bool) -> None:
        self._account(key).blocked = blocked

    # Persistence

    def account_keys(self) -> List[str]:
        return list(self._accounts)

    def snapshot(self, key: str) -> AccountSnapshot:
        account = self._account(key)
        self._prune(account)
        return AccountSnapshot(
            key=account.key,
            trust_score=account.trust_score,
            is_verified=account.is_verified,
            blocked=account.blocked,
            transactions=list(account.transactions),
            failed_attempts=list(account.failed_attempts),
            incidents=list(account.incidents),
        )

    def restore(self, snapshot: AccountSnapshot) -> None:
        """Replace an account's state with a snapshot; stale entries are pruned on load"""
        account = Account(
            key=snapshot.key,
            trust_score=snapshot.trust_score,
            is_verified=snapshot.is_verified,
            blocked=snapshot.blocked,
            transactions=deque(sorted(snapshot.transactions, key=lambda e: e.timestamp)),
            failed_attempts=deque(sorted(snapshot.failed_attempts)),
            incidents=list(snapshot.incidents),
            committed_ids={entry.transaction_id for entry in snapshot.transactions},
        )
        self._prune(account)
        self._accounts[snapshot.key] = account
