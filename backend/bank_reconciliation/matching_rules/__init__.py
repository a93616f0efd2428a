"""
Matching Rules Module
"""

from .bank_rules import MatchingRule, evaluate_rule, select_rule
from .suggestion_engine import BankLineScorer, generate_suggestions, auto_accept_threshold

__all__ = [
    "MatchingRule",
    "evaluate_rule",
    "select_rule",
    "BankLineScorer",
    "generate_suggestions",
    "auto_accept_threshold",
]
