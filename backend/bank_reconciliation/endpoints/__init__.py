"""
Bank reconciliation API
"""

from .bank_reconciliation_api import router

__all__ = ["router"]
