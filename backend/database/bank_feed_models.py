"""
Bank Reconciliation - Database Models

Tables:
- bank_accounts: accounts whose feeds are reconciled (owned by the feed importer)
- bank_feed_lines: imported bank transactions, never deleted
- bank_matches: line-to-ledger-record assertions, hard-deleted on removal

Status columns hold enum values as plain strings.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Float, Date, DateTime,
    CheckConstraint, ForeignKey, Index, UniqueConstraint, JSON, Numeric
)
from sqlalchemy.orm import relationship

from database.connection import Base
from bank_reconciliation.models import FeedStatus, LineStatus, MatchMethod, RecordType


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def one_of(column: str, enum_cls, name: str) -> CheckConstraint:
    """CHECK constraint limiting a string column to the values of an enum."""
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=name)


class BankAccountDB(Base):
    __tablename__ = "bank_accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    company_id = Column(String(36), nullable=False, index=True)
    company_name = Column(String(255), nullable=False)
    project_id = Column(String(36), nullable=True, index=True)
    currency = Column(String(3), nullable=False)
    feed_status = Column(String(16), nullable=False, default=FeedStatus.ACTIVE.value)

    last_import_at = Column(DateTime(timezone=True), nullable=True)
    last_import_source = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    lines = relationship("BankFeedLineDB", back_populates="bank_account")

    __table_args__ = (
        one_of("feed_status", FeedStatus, "bank_accounts_feed_status_check"),
    )


class BankFeedLineDB(Base):
    """
    One imported bank transaction.

    Import columns are immutable after insert. Only status, confidence,
    ignore audit and match audit columns change afterwards, and status is
    written solely by the match ledger.
    """
    __tablename__ = "bank_feed_lines"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bank_account_id = Column(String(36), ForeignKey("bank_accounts.id"), nullable=False)
    company_id = Column(String(36), nullable=True, index=True)
    project_id = Column(String(36), nullable=True, index=True)

    # Imported data
    currency = Column(String(3), nullable=False)
    transaction_date = Column(Date, nullable=False, index=True)
    value_date = Column(Date, nullable=True)
    amount = Column(Numeric(14, 2), nullable=False)  # Positive = inflow
    description = Column(Text, nullable=False, default="")
    description_hash = Column(String(32), nullable=False)
    reference = Column(String(255), nullable=True)
    running_balance = Column(Numeric(14, 2), nullable=True)

    # Reconciliation state
    status = Column(String(32), nullable=False, default=LineStatus.UNMATCHED.value, index=True)
    confidence_score = Column(Float, nullable=True)

    # Import audit
    imported_at = Column(DateTime(timezone=True), default=utc_now)
    imported_by = Column(String(100), nullable=True)
    import_source = Column(String(100), nullable=True)

    # Ignore audit
    ignored_at = Column(DateTime(timezone=True), nullable=True)
    ignored_by = Column(String(100), nullable=True)
    ignored_reason = Column(Text, nullable=True)

    # Last match audit
    matched_by = Column(String(100), nullable=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)

    notes = Column(Text, nullable=True)
    attachments = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    bank_account = relationship("BankAccountDB", back_populates="lines")
    matches = relationship(
        "BankMatchDB",
        back_populates="line",
        cascade="all, delete-orphan",
        order_by="BankMatchDB.matched_at",
    )

    __table_args__ = (
        UniqueConstraint(
            'bank_account_id', 'transaction_date', 'amount', 'description_hash',
            name='uq_bank_feed_lines_dedupe'
        ),
        CheckConstraint("amount <> 0", name="bank_feed_lines_amount_nonzero"),
        one_of("status", LineStatus, "bank_feed_lines_status_check"),
        Index('ix_bank_feed_lines_account_date', 'bank_account_id', 'transaction_date'),
        Index('ix_bank_feed_lines_account_status', 'bank_account_id', 'status'),
    )


class BankMatchDB(Base):
    __tablename__ = "bank_matches"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bank_feed_line_id = Column(
        String(36), ForeignKey("bank_feed_lines.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Loosely typed ledger reference (records live across several ledger tables)
    system_record_type = Column(String(32), nullable=False)
    system_record_id = Column(String(100), nullable=False)
    project_id = Column(String(36), nullable=True)

    matched_amount = Column(Numeric(14, 2), nullable=False)
    amount_difference = Column(Numeric(14, 2), nullable=True)
    matched_by = Column(String(100), nullable=False)
    matched_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    match_score = Column(Float, nullable=False, default=100.0)
    match_method = Column(String(16), nullable=False, default=MatchMethod.MANUAL.value)
    rule_id = Column(String(100), nullable=True)

    line = relationship("BankFeedLineDB", back_populates="matches")

    __table_args__ = (
        Index('ix_bank_matches_record', 'system_record_type', 'system_record_id'),
        CheckConstraint("matched_amount > 0", name="bank_matches_amount_positive"),
        CheckConstraint("match_score BETWEEN 0 AND 100", name="bank_matches_score_range"),
        one_of("system_record_type", RecordType, "bank_matches_record_type_check"),
        one_of("match_method", MatchMethod, "bank_matches_method_check"),
    )
