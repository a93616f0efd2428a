"""
Bank Matching Rules

User-defined rules that recognise recurring bank lines (rent, payroll,
card settlements) and hint which kind of ledger record explains them.

A rule applies to a line when every condition it sets holds:
- description contains one of the keywords (case-insensitive)
- abs(amount) within [amount_min, amount_max]
- amount sign is debit (outflow) or credit (inflow)
- line belongs to one of the listed bank accounts

The applicable enabled rule with the highest priority wins. It adds the
rule_match bonus to candidates of its suggested record type and may lower
or raise the quick-match threshold for that line.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional

from bank_reconciliation.models import BankFeedLine, RecordType


DEBIT = "debit"
CREDIT = "credit"


@dataclass(frozen=True)
class MatchingRule:
    id: str
    name: str
    enabled: bool = True
    priority: int = 0  # Higher = evaluated first
    description_contains: List[str] = field(default_factory=list)
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    amount_sign: Optional[str] = None
    bank_account_ids: List[str] = field(default_factory=list)
    suggest_type: Optional[RecordType] = None
    auto_match_if_confidence: Optional[float] = None

    def __post_init__(self):
        if self.amount_sign not in (None, DEBIT, CREDIT):
            raise ValueError(f"amount_sign must be '{DEBIT}' or '{CREDIT}', got {self.amount_sign!r}")


def evaluate_rule(rule: MatchingRule, line: BankFeedLine) -> bool:
    """Return True when every condition set on the rule holds for the line."""
    if rule.description_contains:
        description = (line.description or "").upper()
        if not any(keyword.upper() in description for keyword in rule.description_contains):
            return False

    abs_amount = abs(line.amount)
    if rule.amount_min is not None and abs_amount < rule.amount_min:
        return False
    if rule.amount_max is not None and abs_amount > rule.amount_max:
        return False

    if rule.amount_sign:
        is_debit = line.amount < 0
        if rule.amount_sign == DEBIT and not is_debit:
            return False
        if rule.amount_sign == CREDIT and is_debit:
            return False

    if rule.bank_account_ids and line.bank_account_id not in rule.bank_account_ids:
        return False

    return True


def select_rule(rules: Iterable[MatchingRule], line: BankFeedLine) -> Optional[MatchingRule]:
    """Highest-priority enabled rule that applies to the line (ties by id)."""
    ordered = sorted(
        (r for r in rules if r.enabled),
        key=lambda r: (-r.priority, r.id),
    )
    for rule in ordered:
        if evaluate_rule(rule, line):
            return rule
    return None
