"""
Bank Reconciliation - Domain Types

Enums and read models shared by the engine, the service layer and the API.

Record types:
- receipt: customer payment expected to arrive in the bank
- expense: supplier payment expected to leave the bank
- transfer: movement between own accounts
- owner_contribution: owner capital paid into the business

Sign convention: a bank line amount is signed (positive = inflow); system
record amounts are unsigned outstanding balances.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RecordType(str, Enum):
    """Ledger record kinds a bank line can be matched against."""
    RECEIPT = "receipt"
    EXPENSE = "expense"
    TRANSFER = "transfer"
    OWNER_CONTRIBUTION = "owner_contribution"


class LineStatus(str, Enum):
    """
    Stored status of a bank feed line.

    Derived from (matched total, ignored flag) and written only by the
    match ledger.
    """
    UNMATCHED = "unmatched"
    PARTIALLY_MATCHED = "partially_matched"
    MATCHED = "matched"
    IGNORED = "ignored"


class ReconciliationLabel(str, Enum):
    """On-demand classification. Never persisted."""
    UNMATCHED = "unmatched"
    PARTIALLY_MATCHED = "partially_matched"
    MATCHED = "matched"
    IGNORED = "ignored"
    NEEDS_REVIEW = "needs_review"
    MISSING_RECORD = "missing_record"


class MatchMethod(str, Enum):
    MANUAL = "manual"
    SUGGESTED = "suggested"
    QUICK = "quick"
    RULE = "rule"


class FeedStatus(str, Enum):
    """Reported by the feed-import collaborator."""
    ACTIVE = "active"
    BROKEN = "broken"
    MANUAL = "manual"


class CoverageStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    ERROR = "error"


# ==================== EXTERNAL VIEWS ====================

class SystemRecord(BaseModel):
    """Read-only view of a ledger record with its outstanding (unsigned) amount."""
    id: str
    record_type: RecordType
    amount: Decimal
    record_date: date
    currency: str
    reference: Optional[str] = None
    counterparty: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    project_id: Optional[str] = None
    company_id: Optional[str] = None
    paid_date: Optional[date] = None

    @property
    def key(self) -> tuple:
        return (self.record_type.value, self.id)


class BankAccount(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    company_id: str
    company_name: str
    project_id: Optional[str] = None
    currency: str
    feed_status: FeedStatus = FeedStatus.ACTIVE
    last_import_at: Optional[datetime] = None
    last_import_source: Optional[str] = None


# ==================== LINES AND MATCHES ====================

class BankMatch(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    bank_feed_line_id: str
    system_record_type: RecordType
    system_record_id: str
    project_id: Optional[str] = None
    matched_amount: Decimal
    amount_difference: Optional[Decimal] = None
    matched_by: str
    matched_at: datetime
    match_score: float = 100.0
    match_method: MatchMethod = MatchMethod.MANUAL
    rule_id: Optional[str] = None


class BankFeedLine(BaseModel):
    """
    One imported bank transaction with the matches that explain it.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    bank_account_id: str
    company_id: Optional[str] = None
    project_id: Optional[str] = None
    currency: str
    transaction_date: date
    value_date: Optional[date] = None
    amount: Decimal
    description: str = ""
    reference: Optional[str] = None
    running_balance: Optional[Decimal] = None
    status: LineStatus = LineStatus.UNMATCHED
    matches: List[BankMatch] = Field(default_factory=list)
    confidence_score: Optional[float] = None
    imported_at: Optional[datetime] = None
    imported_by: Optional[str] = None
    import_source: Optional[str] = None
    ignored_at: Optional[datetime] = None
    ignored_by: Optional[str] = None
    ignored_reason: Optional[str] = None
    matched_by: Optional[str] = None
    matched_at: Optional[datetime] = None
    notes: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)

    @property
    def is_ignored(self) -> bool:
        return self.ignored_at is not None

    @property
    def matched_total(self) -> Decimal:
        return sum((m.matched_amount for m in self.matches), Decimal("0"))

    @property
    def remaining_amount(self) -> Decimal:
        return abs(self.amount) - self.matched_total

    @property
    def matched_record_keys(self) -> set:
        return {(m.system_record_type.value, m.system_record_id) for m in self.matches}


# ==================== DERIVED OUTPUTS ====================

class SuggestedMatch(BaseModel):
    """Scored candidate for one line. Never persisted."""
    system_record_type: RecordType
    system_record_id: str
    reference: Optional[str] = None
    counterparty: Optional[str] = None
    project_id: Optional[str] = None
    amount: Decimal
    record_date: date
    description: Optional[str] = None
    match_score: float = Field(ge=0, le=100)
    match_reasons: List[str] = Field(default_factory=list)
    scoring_breakdown: Dict[str, float] = Field(default_factory=dict)
    rule_id: Optional[str] = None


class BankAccountCoverage(BaseModel):
    bank_account_id: str
    bank_account_name: str
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    currency: str
    feed_status: FeedStatus
    last_import_date: Optional[datetime] = None
    last_import_source: Optional[str] = None
    total_lines: int = 0
    matched_lines: int = 0
    partially_matched_lines: int = 0
    unmatched_lines: int = 0
    ignored_lines: int = 0
    needs_review_lines: int = 0
    missing_record_lines: int = 0
    bank_net_movement: Decimal = Decimal("0")
    system_net_movement: Decimal = Decimal("0")
    net_difference: Decimal = Decimal("0")
    reconciled_percentage: float = 100.0
    coverage_status: CoverageStatus = CoverageStatus.OK
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class MissingFromBankItem(BaseModel):
    record_type: RecordType
    record_id: str
    reference: Optional[str] = None
    counterparty: Optional[str] = None
    notes: Optional[str] = None
    project_id: Optional[str] = None
    amount: Decimal
    record_date: date
    days_outstanding: int
