"""
Per-account reconciliation coverage.

Pure aggregation over lines already loaded from the store: running it twice
over the same inputs yields identical output and nothing is mutated.

Sign convention for net_difference: bank_net_movement minus
system_net_movement. Positive means the bank shows more inflow (or less
outflow) than the matched ledger records explain.
"""

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Collection, Dict, Iterable, List, Optional

from bank_reconciliation.errors import BankReconciliationError
from bank_reconciliation.matching_config import ClassificationPolicy, DEFAULT_CLASSIFICATION_POLICY
from bank_reconciliation.models import (
    BankAccount,
    BankAccountCoverage,
    BankFeedLine,
    CoverageStatus,
    ReconciliationLabel,
)
from bank_reconciliation.status_machine import classify

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

_LABEL_FIELDS = {
    ReconciliationLabel.MATCHED: "matched_lines",
    ReconciliationLabel.PARTIALLY_MATCHED: "partially_matched_lines",
    ReconciliationLabel.UNMATCHED: "unmatched_lines",
    ReconciliationLabel.IGNORED: "ignored_lines",
    ReconciliationLabel.NEEDS_REVIEW: "needs_review_lines",
    ReconciliationLabel.MISSING_RECORD: "missing_record_lines",
}


def reconciled_percentage(matched_lines: int, total_lines: int) -> float:
    if total_lines == 0:
        return 100.0
    return round(matched_lines / total_lines * 100, 2)


def _sign(amount: Decimal) -> int:
    return -1 if amount < 0 else 1


def _account_coverage(
    account: BankAccount,
    lines: List[BankFeedLine],
    as_of: date,
    best_scores: Dict[str, float],
    degraded: bool,
    policy: ClassificationPolicy,
) -> BankAccountCoverage:
    coverage = BankAccountCoverage(
        bank_account_id=account.id,
        bank_account_name=account.name,
        company_id=account.company_id,
        company_name=account.company_name,
        currency=account.currency,
        feed_status=account.feed_status,
        last_import_date=account.last_import_at,
        last_import_source=account.last_import_source,
    )

    foreign = sorted({line.currency for line in lines if line.currency != account.currency})
    if foreign:
        coverage.coverage_status = CoverageStatus.ERROR
        coverage.error = f"Lines in {', '.join(foreign)} do not match account currency {account.currency}"
        return coverage

    counts: Dict[str, int] = defaultdict(int)
    bank_net = ZERO
    system_net = ZERO

    for line in lines:
        score = best_scores.get(line.id)
        age_days = (as_of - line.transaction_date).days
        label = classify(line, age_days, score, policy)
        counts[_LABEL_FIELDS[label]] += 1

        if not line.is_ignored:
            bank_net += line.amount
            system_net += _sign(line.amount) * line.matched_total

    coverage.total_lines = len(lines)
    for field_name in _LABEL_FIELDS.values():
        setattr(coverage, field_name, counts[field_name])

    coverage.bank_net_movement = bank_net
    coverage.system_net_movement = system_net
    coverage.net_difference = bank_net - system_net
    coverage.reconciled_percentage = reconciled_percentage(coverage.matched_lines, coverage.total_lines)

    if degraded:
        coverage.coverage_status = CoverageStatus.DEGRADED
        coverage.warnings.append(
            "Live suggestion scores unavailable; review labels use the last recorded scores"
        )

    return coverage


def compute_coverage(
    accounts: Iterable[BankAccount],
    lines: Iterable[BankFeedLine],
    date_from: date,
    date_to: date,
    as_of: date,
    best_scores: Optional[Dict[str, float]] = None,
    policy: ClassificationPolicy = DEFAULT_CLASSIFICATION_POLICY,
    degraded_account_ids: Collection[str] = (),
) -> List[BankAccountCoverage]:
    """
    Compute coverage for every account, ordered by company, account name and id.

    best_scores maps line id to its best suggestion score. Accounts listed
    in degraded_account_ids are reported "degraded" (their scores are
    stale or missing); passing best_scores=None degrades every account.
    An account that cannot be computed is returned with coverage_status
    "error" rather than dropped.
    """
    all_degraded = best_scores is None
    scores = best_scores or {}

    by_account: Dict[str, List[BankFeedLine]] = defaultdict(list)
    for line in lines:
        if date_from <= line.transaction_date <= date_to:
            by_account[line.bank_account_id].append(line)

    results = []
    for account in sorted(accounts, key=lambda a: (a.company_name or "", a.name, a.id)):
        account_lines = sorted(by_account.get(account.id, []), key=lambda l: (l.transaction_date, l.id))
        try:
            degraded = all_degraded or account.id in degraded_account_ids
            coverage = _account_coverage(account, account_lines, as_of, scores, degraded, policy)
        except (BankReconciliationError, ArithmeticError) as e:
            logger.error(f"Coverage failed for bank account {account.id}: {e}")
            coverage = BankAccountCoverage(
                bank_account_id=account.id,
                bank_account_name=account.name,
                company_id=account.company_id,
                company_name=account.company_name,
                currency=account.currency,
                feed_status=account.feed_status,
                last_import_date=account.last_import_at,
                last_import_source=account.last_import_source,
                total_lines=len(account_lines),
                coverage_status=CoverageStatus.ERROR,
                error=str(e),
            )
        results.append(coverage)

    return results
