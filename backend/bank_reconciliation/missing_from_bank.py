"""
Missing-from-bank report: ledger records marked settled that no bank line
in the window explains.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from bank_reconciliation.models import MissingFromBankItem, RecordType, SystemRecord


def settled_on(record: SystemRecord) -> date:
    return record.paid_date or record.record_date


def _matches_search(record: SystemRecord, needle: str) -> bool:
    haystack = " ".join(
        part for part in (record.reference, record.counterparty, record.notes) if part
    ).lower()
    return needle in haystack


def find_missing_from_bank(
    settled_records: Iterable[SystemRecord],
    matched_record_keys: Set[Tuple[str, str]],
    date_from: date,
    date_to: date,
    record_type: Optional[RecordType] = None,
    search_text: Optional[str] = None,
) -> List[MissingFromBankItem]:
    """
    Settled records dated inside [date_from, date_to] with no match on a
    line inside the same window.

    matched_record_keys holds (record_type, record_id) pairs for matches on
    lines whose transaction date falls inside the window. Results are
    ordered by settlement date, then record id.
    """
    needle = (search_text or "").strip().lower()
    items = []

    for record in settled_records:
        settled = settled_on(record)
        if not (date_from <= settled <= date_to):
            continue
        if record_type is not None and record.record_type != record_type:
            continue
        if record.key in matched_record_keys:
            continue
        if needle and not _matches_search(record, needle):
            continue

        items.append(MissingFromBankItem(
            record_type=record.record_type,
            record_id=record.id,
            reference=record.reference,
            counterparty=record.counterparty,
            notes=record.notes,
            project_id=record.project_id,
            amount=record.amount,
            record_date=settled,
            days_outstanding=(date_to - settled).days,
        ))

    items.sort(key=lambda i: (i.record_date, i.record_id))
    return items


def summarize_missing(items: List[MissingFromBankItem]) -> Dict[str, Any]:
    by_type: Dict[str, Dict[str, Any]] = {}
    total = Decimal("0")
    for item in items:
        bucket = by_type.setdefault(item.record_type.value, {"count": 0, "total_amount": Decimal("0")})
        bucket["count"] += 1
        bucket["total_amount"] += item.amount
        total += item.amount

    return {
        "count": len(items),
        "total_amount": total,
        "by_type": by_type,
    }
