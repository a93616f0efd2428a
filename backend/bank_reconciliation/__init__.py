"""
Bank Reconciliation Module

Matches imported bank feed lines against ledger records (receipts, expenses,
transfers, owner contributions).

Submodules:
- models: enums and read models
- errors: domain error hierarchy
- matching_config: scoring weights and classification thresholds
- status_machine: line status derivation and review labels
- matching_rules: rule evaluation and suggestion scoring
- coverage: per-account reconciliation coverage
- missing_from_bank: settled records with no bank line
- providers: ledger record access
- services: persistence-backed match ledger and service facade
- endpoints: FastAPI router
"""

from .errors import (
    BankReconciliationError,
    ValidationError,
    NotFoundError,
    OverMatchError,
    AlreadyIgnoredError,
    HasMatchesError,
    NoConfidentMatchError,
    DuplicateImportError,
    ProviderUnavailableError,
    InvariantViolationError,
)
from .matching_config import (
    MatchingConfig,
    ClassificationPolicy,
    DEFAULT_MATCHING_CONFIG,
    DEFAULT_CLASSIFICATION_POLICY,
)
from .models import (
    RecordType,
    LineStatus,
    ReconciliationLabel,
    MatchMethod,
    FeedStatus,
    CoverageStatus,
    SystemRecord,
    BankAccount,
    BankMatch,
    BankFeedLine,
    SuggestedMatch,
    BankAccountCoverage,
    MissingFromBankItem,
)
from .status_machine import derive_status, classify
from .coverage import compute_coverage, reconciled_percentage
from .missing_from_bank import find_missing_from_bank, summarize_missing

__all__ = [
    "BankReconciliationError",
    "ValidationError",
    "NotFoundError",
    "OverMatchError",
    "AlreadyIgnoredError",
    "HasMatchesError",
    "NoConfidentMatchError",
    "DuplicateImportError",
    "ProviderUnavailableError",
    "InvariantViolationError",
    "MatchingConfig",
    "ClassificationPolicy",
    "DEFAULT_MATCHING_CONFIG",
    "DEFAULT_CLASSIFICATION_POLICY",
    "RecordType",
    "LineStatus",
    "ReconciliationLabel",
    "MatchMethod",
    "FeedStatus",
    "CoverageStatus",
    "SystemRecord",
    "BankAccount",
    "BankMatch",
    "BankFeedLine",
    "SuggestedMatch",
    "BankAccountCoverage",
    "MissingFromBankItem",
    "derive_status",
    "classify",
    "compute_coverage",
    "reconciled_percentage",
    "find_missing_from_bank",
    "summarize_missing",
]
