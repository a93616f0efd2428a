"""
Match Ledger

The only write path for matches, ignore state and line status.

Every mutation runs inside a per-line scope:
1. acquire the process-local line lock
2. load the line and its matches with SELECT ... FOR UPDATE
3. validate and apply the change
4. recompute status, flush, re-check sum(matched_amount) <= abs(amount)
   against the database
5. commit, or roll back on any failure

Errors are raised, never coerced: an amount over what remains is rejected,
not clamped.

A ledger record can be split across several lines, but the amounts claimed
by all bank matches together never exceed the balance the ledger reports
for it. Claims are serialised by a per-record lock taken before the line
lock.
"""

import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.bank_feed_models import BankFeedLineDB, BankMatchDB, generate_uuid
from bank_reconciliation.errors import (
    AlreadyIgnoredError,
    BankReconciliationError,
    HasMatchesError,
    InvariantViolationError,
    NoConfidentMatchError,
    NotFoundError,
    OverMatchError,
    ValidationError,
)
from bank_reconciliation.matching_config import MatchingConfig, DEFAULT_MATCHING_CONFIG
from bank_reconciliation.matching_rules.bank_rules import MatchingRule
from bank_reconciliation.matching_rules.suggestion_engine import generate_suggestions, auto_accept_threshold
from bank_reconciliation.models import (
    BankFeedLine,
    LineStatus,
    MatchMethod,
    RecordType,
    SuggestedMatch,
    SystemRecord,
)
from bank_reconciliation.providers.system_records import SystemRecordProvider
from bank_reconciliation.services.line_locks import LineLockRegistry, line_locks, record_lock_key
from bank_reconciliation.status_machine import derive_status, line_status
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class BankReconciliationAuditEvent:
    """Audit event types for bank reconciliation operations."""
    MATCH_CREATED = "bank_reconciliation.match_created"
    MATCH_REMOVED = "bank_reconciliation.match_removed"
    LINE_IGNORED = "bank_reconciliation.line_ignored"
    LINE_UNIGNORED = "bank_reconciliation.line_unignored"
    QUICK_MATCH_REJECTED = "bank_reconciliation.quick_match_rejected"
    LINES_IMPORTED = "bank_reconciliation.lines_imported"
    SUGGESTION_RUN_COMPLETED = "bank_reconciliation.suggestion_run_completed"


def log_bank_reconciliation_event(
    event_type: str,
    line_id: Optional[str],
    details: Dict[str, Any],
    match_id: Optional[str] = None,
    actor: str = "system"
):
    """Log bank reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "line_id": line_id,
        "match_id": match_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Bank reconciliation event: {event_type}", extra=log_entry)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_read_model(line: BankFeedLineDB) -> BankFeedLine:
    """Convert a loaded ORM line (matches eagerly loaded) to its read model with status recomputed."""
    model = BankFeedLine.model_validate(line)
    model.status = line_status(model)
    return model


def parse_amount(value: Any, parameter: str = "matched_amount") -> Decimal:
    """Parse a positive, finite money amount with at most two decimal places."""
    if isinstance(value, bool):
        raise ValidationError(f"{parameter} must be a number", details={"parameter": parameter})
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"{parameter} must be a finite number", details={"parameter": parameter})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{parameter} must be a number", details={"parameter": parameter})

    if not amount.is_finite():
        raise ValidationError(f"{parameter} must be a finite number", details={"parameter": parameter})
    if amount <= 0:
        raise ValidationError(
            f"{parameter} must be greater than zero",
            details={"parameter": parameter, "received_value": str(amount)},
        )
    if amount != amount.quantize(CENT):
        raise ValidationError(
            f"{parameter} cannot have more than two decimal places",
            details={"parameter": parameter, "received_value": str(amount)},
        )
    return amount


def parse_record_type(value: Any) -> RecordType:
    try:
        return RecordType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown system record type: {value}",
            details={"parameter": "system_record_type", "allowed": [t.value for t in RecordType]},
        )


def _require_actor(actor: Optional[str]) -> str:
    if not actor or not str(actor).strip():
        raise ValidationError("actor is required", details={"parameter": "actor"})
    return str(actor).strip()


class MatchLedger:
    """
    Validated mutations on bank feed lines.

    One instance per request/session. The lock registry is shared across
    instances in the same process.
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: SystemRecordProvider,
        config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
        rules: Iterable[MatchingRule] = (),
        locks: LineLockRegistry = line_locks,
    ):
        self.db = db
        self.provider = provider
        self.config = config
        self.rules = tuple(rules)
        self.locks = locks

    # ==================== SCOPE ====================

    async def _load_line(self, line_id: str, for_update: bool = False) -> Optional[BankFeedLineDB]:
        stmt = (
            select(BankFeedLineDB)
            .where(BankFeedLineDB.id == line_id)
            .options(selectinload(BankFeedLineDB.matches))
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    @asynccontextmanager
    async def _line_scope(self, line_id: str):
        """Exclusive, transactional scope over one line and its matches."""
        async with self.locks.lock_for(line_id):
            try:
                line = await self._load_line(line_id, for_update=True)
                if line is None:
                    raise NotFoundError(f"Bank feed line {line_id} not found", code="line_not_found",
                                        details={"line_id": line_id})
                yield line
                line.status = derive_status(
                    self._matched_total(line), line.amount, line.ignored_at is not None
                ).value
                await self.db.flush()
                await self._assert_invariant(line)
                await self.db.commit()
            except InvariantViolationError as e:
                await self.db.rollback()
                logger.error(f"Invariant violation on bank line {line_id}: {e.message} {e.details}")
                capture_exception(e, line_id=line_id)
                raise
            except BankReconciliationError:
                await self.db.rollback()
                raise
            except SQLAlchemyError as e:
                logger.error(f"Failed to commit change to bank line {line_id}: {e}")
                await self.db.rollback()
                raise

    @staticmethod
    def _matched_total(line: BankFeedLineDB) -> Decimal:
        return sum((Decimal(m.matched_amount) for m in line.matches), Decimal("0"))

    async def _assert_invariant(self, line: BankFeedLineDB):
        """Re-read the persisted matched total and check it against the line before commit."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(BankMatchDB.matched_amount), 0))
            .where(BankMatchDB.bank_feed_line_id == line.id)
        )
        persisted_total = Decimal(str(result.scalar_one())).quantize(CENT)
        expected = derive_status(persisted_total, line.amount, line.ignored_at is not None)
        if expected.value != line.status:
            raise InvariantViolationError(
                "Stored status disagrees with persisted matches",
                details={"line_id": line.id, "status": line.status, "expected": expected.value},
            )

    # ==================== RECORD CLAIMS ====================

    async def claimed_amounts(self, keys: Iterable[Tuple[str, str]]) -> Dict[Tuple[str, str], Decimal]:
        """Sum of matched_amount per (record type, record id) across every bank line."""
        keys = set(keys)
        if not keys:
            return {}
        result = await self.db.execute(
            select(
                BankMatchDB.system_record_type,
                BankMatchDB.system_record_id,
                func.sum(BankMatchDB.matched_amount),
            )
            .where(BankMatchDB.system_record_id.in_(sorted({record_id for _, record_id in keys})))
            .group_by(BankMatchDB.system_record_type, BankMatchDB.system_record_id)
        )
        return {
            (record_type, record_id): Decimal(str(total)).quantize(CENT)
            for record_type, record_id, total in result.all()
            if (record_type, record_id) in keys
        }

    async def available_candidates(self, candidates: Iterable[SystemRecord]) -> List[SystemRecord]:
        """Drop or shrink candidates by what bank lines have already claimed against them."""
        candidates = list(candidates)
        claims = await self.claimed_amounts(record.key for record in candidates)
        available = []
        for record in candidates:
            claimed = claims.get(record.key)
            if claimed is None:
                available.append(record)
            elif record.amount > claimed:
                available.append(record.model_copy(update={"amount": record.amount - claimed}))
        return available

    async def _check_record_claims(self, record_type: RecordType, record_id: str, record_remaining: Decimal,
                                   amount: Decimal, include_pending: bool):
        key = (record_type.value, record_id)
        claimed = (await self.claimed_amounts([key])).get(key, Decimal("0"))
        total = claimed if include_pending else claimed + amount
        if total > record_remaining:
            raise OverMatchError(
                f"Matched amount {amount} exceeds the {record_type.value}'s unclaimed balance",
                code="amount_exceeds_record_remaining",
                details={
                    "system_record_id": record_id,
                    "matched_amount": str(amount),
                    "record_remaining": str(record_remaining),
                    "already_claimed": str(total - amount),
                },
            )

    # ==================== MATCHES ====================

    async def _append_match(
        self,
        line: BankFeedLineDB,
        record_type: RecordType,
        record_id: str,
        amount: Decimal,
        actor: str,
        method: MatchMethod,
        match_score: float,
        rule_id: Optional[str],
    ) -> BankMatchDB:
        if line.ignored_at is not None:
            raise AlreadyIgnoredError(
                "Cannot match an ignored bank line; unignore it first",
                details={"line_id": line.id},
            )

        remaining = abs(Decimal(line.amount)) - self._matched_total(line)
        if remaining <= 0:
            raise OverMatchError(
                "Bank line is already fully matched",
                code="line_fully_matched",
                details={"line_id": line.id, "remaining": str(remaining)},
            )
        if amount > remaining:
            raise OverMatchError(
                f"Matched amount {amount} exceeds remaining {remaining} on the bank line",
                code="amount_exceeds_remaining",
                details={"line_id": line.id, "matched_amount": str(amount), "remaining": str(remaining)},
            )

        record = await self.provider.get_record(record_type, record_id)
        record_remaining = await self.provider.get_record_remaining_amount(record_type, record_id)
        if record is None or record_remaining is None:
            raise NotFoundError(
                f"{record_type.value} {record_id} not found in the ledger",
                code="record_not_found",
                details={"system_record_type": record_type.value, "system_record_id": record_id},
            )
        await self._check_record_claims(record_type, record_id, record_remaining, amount, include_pending=False)

        now = utc_now()
        match = BankMatchDB(
            id=generate_uuid(),
            bank_feed_line_id=line.id,
            system_record_type=record_type.value,
            system_record_id=record_id,
            project_id=record.project_id or line.project_id,
            matched_amount=amount,
            amount_difference=record.amount - amount,
            matched_by=actor,
            matched_at=now,
            match_score=round(float(match_score), 2),
            match_method=method.value,
            rule_id=rule_id,
        )
        line.matches.append(match)
        line.matched_by = actor
        line.matched_at = now
        line.confidence_score = match.match_score

        # another worker may have claimed the record since the check above
        await self.db.flush()
        await self._check_record_claims(record_type, record_id, record_remaining, amount, include_pending=True)
        return match

    async def create_match(
        self,
        line_id: str,
        system_record_id: str,
        system_record_type: Any,
        matched_amount: Any,
        actor: str,
        method: MatchMethod = MatchMethod.MANUAL,
        match_score: float = 100.0,
        rule_id: Optional[str] = None,
    ) -> BankFeedLine:
        """
        Match part or all of a bank line to a ledger record.

        Raises:
            ValidationError: amount not a positive finite number, bad type or actor
            NotFoundError: unknown line or record
            AlreadyIgnoredError: line is ignored
            OverMatchError: amount exceeds what the line or the record has left
        """
        amount = parse_amount(matched_amount)
        record_type = parse_record_type(system_record_type)
        actor = _require_actor(actor)
        if not system_record_id:
            raise ValidationError("system_record_id is required", details={"parameter": "system_record_id"})

        async with self.locks.lock_for(record_lock_key(record_type.value, system_record_id)):
            async with self._line_scope(line_id) as line:
                match = await self._append_match(
                    line, record_type, system_record_id, amount, actor, MatchMethod(method), match_score, rule_id
                )

        result = to_read_model(line)
        log_bank_reconciliation_event(
            BankReconciliationAuditEvent.MATCH_CREATED,
            line_id,
            {
                "system_record_type": record_type.value,
                "system_record_id": system_record_id,
                "matched_amount": str(amount),
                "match_method": match.match_method,
                "match_score": match.match_score,
                "status": result.status.value,
            },
            match_id=match.id,
            actor=actor,
        )
        return result

    async def remove_match(self, match_id: str, actor: str) -> BankFeedLine:
        """Delete a match and recompute the owning line's status."""
        actor = _require_actor(actor)

        owner = await self.db.execute(
            select(BankMatchDB.bank_feed_line_id).where(BankMatchDB.id == match_id)
        )
        line_id = owner.scalar_one_or_none()
        if line_id is None:
            raise NotFoundError(f"Match {match_id} not found", code="match_not_found",
                                details={"match_id": match_id})

        async with self._line_scope(line_id) as line:
            match = next((m for m in line.matches if m.id == match_id), None)
            if match is None:
                raise NotFoundError(f"Match {match_id} not found", code="match_not_found",
                                    details={"match_id": match_id})
            line.matches.remove(match)
            line.confidence_score = max((m.match_score for m in line.matches), default=None)

        result = to_read_model(line)
        log_bank_reconciliation_event(
            BankReconciliationAuditEvent.MATCH_REMOVED,
            line_id,
            {
                "system_record_type": match.system_record_type,
                "system_record_id": match.system_record_id,
                "matched_amount": str(match.matched_amount),
                "status": result.status.value,
            },
            match_id=match_id,
            actor=actor,
        )
        return result

    async def accept_suggestion(
        self,
        line_id: str,
        suggestion: SuggestedMatch,
        actor: str,
        method: MatchMethod = MatchMethod.SUGGESTED,
    ) -> BankFeedLine:
        """
        Create a match for a suggestion, capped at what remains on the line.

        Raises:
            ValidationError: suggestion amount not positive or finer than a cent
            OverMatchError: line already fully matched, or record already claimed
        """
        actor = _require_actor(actor)
        offered = parse_amount(suggestion.amount, "amount")
        record_type = suggestion.system_record_type

        async with self.locks.lock_for(record_lock_key(record_type.value, suggestion.system_record_id)):
            async with self._line_scope(line_id) as line:
                if line.ignored_at is not None:
                    raise AlreadyIgnoredError("Cannot match an ignored bank line", details={"line_id": line_id})
                remaining = abs(Decimal(line.amount)) - self._matched_total(line)
                if remaining <= 0:
                    raise OverMatchError(
                        "Bank line is already fully matched",
                        code="line_fully_matched",
                        details={"line_id": line_id},
                    )
                amount = min(offered, remaining)
                match = await self._append_match(
                    line,
                    record_type,
                    suggestion.system_record_id,
                    amount,
                    actor,
                    method,
                    suggestion.match_score,
                    suggestion.rule_id,
                )

        result = to_read_model(line)
        log_bank_reconciliation_event(
            BankReconciliationAuditEvent.MATCH_CREATED,
            line_id,
            {
                "system_record_type": suggestion.system_record_type.value,
                "system_record_id": suggestion.system_record_id,
                "matched_amount": str(amount),
                "match_method": method.value,
                "match_score": suggestion.match_score,
                "match_reasons": suggestion.match_reasons,
                "status": result.status.value,
            },
            match_id=match.id,
            actor=actor,
        )
        return result

    async def quick_match(self, line_id: str, actor: str) -> BankFeedLine:
        """
        Accept the best suggestion if it clears the auto-accept threshold.

        Raises:
            NoConfidentMatchError: nothing scored high enough; nothing was changed
        """
        actor = _require_actor(actor)

        line_db = await self._load_line(line_id)
        if line_db is None:
            raise NotFoundError(f"Bank feed line {line_id} not found", code="line_not_found",
                                details={"line_id": line_id})
        line = to_read_model(line_db)
        if line.is_ignored:
            raise AlreadyIgnoredError("Cannot match an ignored bank line", details={"line_id": line_id})
        if line.remaining_amount <= 0:
            raise OverMatchError("Bank line is already fully matched", code="line_fully_matched",
                                 details={"line_id": line_id})

        window = timedelta(days=self.config.date_window_days)
        candidates = await self.provider.list_unmatched_records(
            currency=line.currency,
            date_from=line.transaction_date - window,
            date_to=line.transaction_date + window,
            company_id=line.company_id,
        )
        candidates = await self.available_candidates(candidates)
        suggestions = generate_suggestions(line, candidates, self.config, self.rules)
        threshold, rule = auto_accept_threshold(line, self.config, self.rules)

        best = suggestions[0] if suggestions else None
        if best is None or best.match_score < threshold:
            details = {
                "best_score": best.match_score if best else None,
                "threshold": threshold,
                "candidates": len(suggestions),
            }
            log_bank_reconciliation_event(
                BankReconciliationAuditEvent.QUICK_MATCH_REJECTED, line_id, details, actor=actor
            )
            raise NoConfidentMatchError(
                "No suggestion meets the auto-accept threshold",
                details=details,
            )

        method = MatchMethod.RULE if rule is not None and rule.auto_match_if_confidence is not None else MatchMethod.QUICK
        return await self.accept_suggestion(line_id, best, actor, method=method)

    # ==================== IGNORE ====================

    async def ignore(self, line_id: str, actor: str, reason: Optional[str] = None) -> BankFeedLine:
        """Mark a line with no matches as not needing reconciliation."""
        actor = _require_actor(actor)

        async with self._line_scope(line_id) as line:
            if line.ignored_at is not None:
                raise AlreadyIgnoredError("Bank line is already ignored", details={"line_id": line_id})
            if line.matches:
                raise HasMatchesError(
                    "Remove existing matches before ignoring this bank line",
                    details={"line_id": line_id, "match_count": len(line.matches)},
                )
            line.ignored_at = utc_now()
            line.ignored_by = actor
            line.ignored_reason = reason

        result = to_read_model(line)
        log_bank_reconciliation_event(
            BankReconciliationAuditEvent.LINE_IGNORED, line_id, {"reason": reason}, actor=actor
        )
        return result

    async def unignore(self, line_id: str, actor: str) -> BankFeedLine:
        actor = _require_actor(actor)

        async with self._line_scope(line_id) as line:
            if line.ignored_at is None:
                raise ValidationError("Bank line is not ignored", code="line_not_ignored",
                                      details={"line_id": line_id})
            line.ignored_at = None
            line.ignored_by = None
            line.ignored_reason = None

        result = to_read_model(line)
        log_bank_reconciliation_event(
            BankReconciliationAuditEvent.LINE_UNIGNORED, line_id, {"status": result.status.value}, actor=actor
        )
        return result

    # ==================== CONFIDENCE ====================

    async def record_confidence(self, line_id: str, score: Optional[float]) -> None:
        """Cache the best suggestion score on a line that still has something to match."""
        async with self._line_scope(line_id) as line:
            if line.status in (LineStatus.UNMATCHED.value, LineStatus.PARTIALLY_MATCHED.value):
                line.confidence_score = score
