"""SQLAlchemy ORM models for account snapshots, incidents and transaction history"""

from sqlalchemy import Column, String, Boolean, Float, DateTime, Integer, ForeignKey, Text
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class AccountRecord(Base):
    """Trust and status flags for one account"""

    __tablename__ = "account"

    account_key = Column(Text, primary_key=True)
    trust_score = Column(Float, nullable=False, default=1.0)
    is_verified = Column(Boolean, nullable=False, default=False)
    blocked = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    ledger_entries = relationship("LedgerEntryRecord", back_populates="account", cascade="all, delete-orphan")
    failed_attempts = relationship("FailedAttemptRecord", back_populates="account", cascade="all, delete-orphan")
    incidents = relationship("SecurityIncidentRecord", back_populates="account", cascade="all, delete-orphan")


class LedgerEntryRecord(Base):
    """Committed transaction inside the trailing 24h window"""

    __tablename__ = "ledger_entry"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_key = Column(Text, ForeignKey("account.account_key", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id = Column(String(36), nullable=False, unique=True)
    amount = Column(Float, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    account = relationship("AccountRecord", back_populates="ledger_entries")


class FailedAttemptRecord(Base):
    """Failed or rejected attempt inside the trailing 1h window"""

    __tablename__ = "failed_attempt"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_key = Column(Text, ForeignKey("account.account_key", ondelete="CASCADE"), nullable=False, index=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    account = relationship("AccountRecord", back_populates="failed_attempts")


class SecurityIncidentRecord(Base):
    """Append-only security incident log"""

    __tablename__ = "security_incident"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_key = Column(Text, ForeignKey("account.account_key", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(Text, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    account = relationship("AccountRecord", back_populates="incidents")


class PaymentTransactionRecord(Base):
    """Terminal transaction kept as read-only history"""

    __tablename__ = "payment_transaction"

    id = Column(String(36), primary_key=True)
    account_key = Column(Text, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    fee = Column(Float, nullable=False, default=0.0)
    kind = Column(Text, nullable=False)
    status = Column(Text, nullable=False)
    error_kind = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    gateway_name = Column(Text, nullable=True)
    provider_reference = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
