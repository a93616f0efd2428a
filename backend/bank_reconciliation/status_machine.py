"""
Line status derivation and review classification.

`derive_status` is the single source of truth for a line's stored status.
`classify` layers age and suggestion-score policy on top of it to produce
the labels used by coverage and the scheduler; those labels are never
persisted.
"""

from decimal import Decimal
from typing import Optional

from bank_reconciliation.errors import InvariantViolationError
from bank_reconciliation.matching_config import ClassificationPolicy, DEFAULT_CLASSIFICATION_POLICY
from bank_reconciliation.models import BankFeedLine, LineStatus, ReconciliationLabel


def derive_status(matched_total: Decimal, line_amount: Decimal, ignored: bool) -> LineStatus:
    """
    Derive the status of a line from its current facts.

    Raises:
        InvariantViolationError: matched_total exceeds abs(line_amount)
    """
    line_abs = abs(line_amount)

    if matched_total < 0:
        raise InvariantViolationError(
            "Matched total cannot be negative",
            details={"matched_total": str(matched_total)},
        )
    if matched_total > line_abs:
        raise InvariantViolationError(
            "Matched total exceeds line amount",
            details={"matched_total": str(matched_total), "line_amount": str(line_amount)},
        )

    if matched_total == 0:
        return LineStatus.IGNORED if ignored else LineStatus.UNMATCHED
    if matched_total < line_abs:
        return LineStatus.PARTIALLY_MATCHED
    return LineStatus.MATCHED


def line_status(line: BankFeedLine) -> LineStatus:
    return derive_status(line.matched_total, line.amount, line.is_ignored)


def classify(
    line: BankFeedLine,
    age_days: int,
    best_suggestion_score: Optional[float],
    policy: ClassificationPolicy = DEFAULT_CLASSIFICATION_POLICY,
) -> ReconciliationLabel:
    """
    Label a line for review queues.

    - ignored / matched pass through
    - partially matched and older than review_after_days: needs_review
    - unmatched with a strong suggestion waiting: needs_review
    - unmatched and older than missing_record_after_days: missing_record
    """
    status = line_status(line)

    if status == LineStatus.IGNORED:
        return ReconciliationLabel.IGNORED
    if status == LineStatus.MATCHED:
        return ReconciliationLabel.MATCHED
    if status == LineStatus.PARTIALLY_MATCHED:
        if age_days > policy.review_after_days:
            return ReconciliationLabel.NEEDS_REVIEW
        return ReconciliationLabel.PARTIALLY_MATCHED

    if best_suggestion_score is not None and best_suggestion_score >= policy.review_score_threshold:
        return ReconciliationLabel.NEEDS_REVIEW
    if age_days >= policy.missing_record_after_days:
        return ReconciliationLabel.MISSING_RECORD
    return ReconciliationLabel.UNMATCHED
