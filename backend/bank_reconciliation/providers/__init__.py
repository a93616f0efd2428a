"""
Ledger record providers
"""

from .system_records import SystemRecordProvider, LedgerApiRecordProvider, UnconfiguredRecordProvider

__all__ = ["SystemRecordProvider", "LedgerApiRecordProvider", "UnconfiguredRecordProvider"]
