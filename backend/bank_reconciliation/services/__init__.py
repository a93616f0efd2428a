"""
Bank reconciliation services
"""

from .line_locks import LineLockRegistry, line_locks
from .match_ledger import MatchLedger, BankReconciliationAuditEvent, log_bank_reconciliation_event
from .reconciliation_service import BankReconciliationService, BankLineImport

__all__ = [
    "LineLockRegistry",
    "line_locks",
    "MatchLedger",
    "BankReconciliationAuditEvent",
    "log_bank_reconciliation_event",
    "BankReconciliationService",
    "BankLineImport",
]
