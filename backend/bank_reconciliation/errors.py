"""
Bank Reconciliation - Error Taxonomy

Every failure the engine reports to a caller is a BankReconciliationError
carrying a stable machine-readable code, a human message and optional
details. The API layer maps `http_status` onto the response.
"""

from typing import Any, Dict, Optional


class BankReconciliationError(Exception):
    """Base class for all bank reconciliation failures"""

    code = "bank_reconciliation_error"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BankReconciliationError):
    """Malformed input, e.g. a non-positive or non-finite matched amount"""
    code = "validation_error"
    http_status = 422


class NotFoundError(BankReconciliationError):
    """Unknown line, match, account or system record"""
    code = "not_found"
    http_status = 404


class OverMatchError(BankReconciliationError):
    """Matched amount would exceed what the line or record has outstanding"""
    code = "amount_exceeds_remaining"
    http_status = 409


class AlreadyIgnoredError(BankReconciliationError):
    code = "already_ignored"
    http_status = 409


class HasMatchesError(BankReconciliationError):
    code = "has_matches"
    http_status = 409


class NoConfidentMatchError(BankReconciliationError):
    code = "no_confident_match"
    http_status = 409


class DuplicateImportError(BankReconciliationError):
    """A concurrent import inserted the same bank line first"""
    code = "duplicate_line"
    http_status = 409


class ProviderUnavailableError(BankReconciliationError):
    """The ledger service could not be reached or answered with a server error"""
    code = "provider_unavailable"
    http_status = 503


class InvariantViolationError(BankReconciliationError):
    """Stored facts disagree with the matched-amount invariant. Always a defect."""
    code = "invariant_violation"
    http_status = 500
