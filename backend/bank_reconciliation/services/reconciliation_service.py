"""
Bank Reconciliation Service

Facade used by the API and by schedulers:
- Importing parsed bank lines (with duplicate detection)
- Listing lines and generating suggestions
- Match / ignore mutations (delegated to the MatchLedger)
- Bulk suggestion runs per account, optionally auto-matching
- Line classification for review queues
- Coverage and missing-from-bank reports

Reads take no locks and tolerate slightly stale snapshots. When the ledger
is unreachable, suggestions degrade to an empty list with a warning and
coverage is marked degraded; listing never depends on the ledger.
"""

import hashlib
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.bank_feed_models import BankAccountDB, BankFeedLineDB, BankMatchDB, generate_uuid
from bank_reconciliation.coverage import compute_coverage
from bank_reconciliation.errors import (
    BankReconciliationError,
    DuplicateImportError,
    NotFoundError,
    ProviderUnavailableError,
    ValidationError,
)
from bank_reconciliation.matching_config import (
    ClassificationPolicy,
    MatchingConfig,
    DEFAULT_CLASSIFICATION_POLICY,
    DEFAULT_MATCHING_CONFIG,
)
from bank_reconciliation.matching_rules.bank_rules import MatchingRule
from bank_reconciliation.matching_rules.suggestion_engine import generate_suggestions, auto_accept_threshold
from bank_reconciliation.missing_from_bank import find_missing_from_bank, summarize_missing
from bank_reconciliation.models import (
    BankAccount,
    BankAccountCoverage,
    BankFeedLine,
    LineStatus,
    MatchMethod,
    RecordType,
    SuggestedMatch,
    SystemRecord,
)
from bank_reconciliation.providers.system_records import SystemRecordProvider
from bank_reconciliation.services.line_locks import LineLockRegistry, line_locks
from bank_reconciliation.services.match_ledger import (
    BankReconciliationAuditEvent,
    MatchLedger,
    CENT,
    log_bank_reconciliation_event,
    to_read_model,
    utc_now,
)
from bank_reconciliation.status_machine import classify

logger = logging.getLogger(__name__)

IMPORT_BATCH_SIZE = 100


class BankLineImport(BaseModel):
    """One already-parsed bank statement line."""
    transaction_date: date
    value_date: Optional[date] = None
    amount: Decimal
    description: str = ""
    reference: Optional[str] = None
    running_balance: Optional[Decimal] = None
    currency: Optional[str] = None
    project_id: Optional[str] = None
    notes: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)


def description_hash(description: str) -> str:
    return hashlib.md5((description or "").encode("utf-8")).hexdigest()


def _dedupe_key(account_id: str, transaction_date: date, amount: Decimal, desc_hash: str) -> Tuple:
    return (account_id, transaction_date, Decimal(amount).quantize(CENT), desc_hash)


class BankReconciliationService:
    """
    Service for reconciling bank feed lines against ledger records.
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: SystemRecordProvider,
        config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
        policy: ClassificationPolicy = DEFAULT_CLASSIFICATION_POLICY,
        rules: Iterable[MatchingRule] = (),
        locks: LineLockRegistry = line_locks,
    ):
        self.db = db
        self.provider = provider
        self.config = config
        self.policy = policy
        self.rules = tuple(rules)
        self.ledger = MatchLedger(db, provider, config, self.rules, locks)

    # ==================== ACCOUNTS ====================

    async def _get_account_db(self, account_id: str) -> BankAccountDB:
        account = await self.db.get(BankAccountDB, account_id)
        if account is None:
            raise NotFoundError(f"Bank account {account_id} not found", code="account_not_found",
                                details={"bank_account_id": account_id})
        return account

    async def get_account(self, account_id: str) -> BankAccount:
        return BankAccount.model_validate(await self._get_account_db(account_id))

    async def list_accounts(self, company_id: Optional[str] = None,
                            project_id: Optional[str] = None) -> List[BankAccount]:
        stmt = select(BankAccountDB)
        if company_id:
            stmt = stmt.where(BankAccountDB.company_id == company_id)
        if project_id:
            stmt = stmt.where(BankAccountDB.project_id == project_id)
        result = await self.db.execute(stmt)
        return [BankAccount.model_validate(a) for a in result.scalars().all()]

    # ==================== IMPORT ====================

    async def import_lines(
        self,
        account_id: str,
        lines: List[BankLineImport],
        actor: str,
        source: str = "manual",
    ) -> Dict[str, Any]:
        """
        Insert parsed lines for an account, skipping duplicates.

        A line is a duplicate when (account, transaction date, amount,
        description hash) already exists, either in the store or earlier in
        the same batch.
        """
        if not actor:
            raise ValidationError("actor is required", details={"parameter": "actor"})
        account = await self._get_account_db(account_id)

        for index, item in enumerate(lines):
            if item.currency and item.currency.upper() != account.currency.upper():
                raise ValidationError(
                    f"Line {index} currency {item.currency} does not match account currency {account.currency}",
                    code="currency_mismatch",
                    details={"index": index, "currency": item.currency, "account_currency": account.currency},
                )
            if not item.amount.is_finite() or item.amount == 0:
                raise ValidationError(
                    f"Line {index} amount must be a non-zero number",
                    details={"index": index, "parameter": "amount"},
                )
            if item.amount != item.amount.quantize(CENT):
                raise ValidationError(
                    f"Line {index} amount cannot have more than two decimal places",
                    details={"index": index, "parameter": "amount"},
                )

        existing: Set[Tuple] = set()
        if lines:
            dates = [item.transaction_date for item in lines]
            result = await self.db.execute(
                select(
                    BankFeedLineDB.transaction_date,
                    BankFeedLineDB.amount,
                    BankFeedLineDB.description_hash,
                ).where(
                    BankFeedLineDB.bank_account_id == account_id,
                    BankFeedLineDB.transaction_date >= min(dates),
                    BankFeedLineDB.transaction_date <= max(dates),
                )
            )
            existing = {_dedupe_key(account_id, *row) for row in result.all()}

        now = utc_now()
        inserted_ids: List[str] = []
        duplicates = 0
        pending: List[BankFeedLineDB] = []

        try:
            for item in lines:
                desc_hash = description_hash(item.description)
                key = _dedupe_key(account_id, item.transaction_date, item.amount, desc_hash)
                if key in existing:
                    duplicates += 1
                    continue
                existing.add(key)

                line = BankFeedLineDB(
                    id=generate_uuid(),
                    bank_account_id=account_id,
                    company_id=account.company_id,
                    project_id=item.project_id or account.project_id,
                    currency=account.currency,
                    transaction_date=item.transaction_date,
                    value_date=item.value_date,
                    amount=item.amount,
                    description=item.description,
                    description_hash=desc_hash,
                    reference=item.reference,
                    running_balance=item.running_balance,
                    status=LineStatus.UNMATCHED.value,
                    imported_at=now,
                    imported_by=actor,
                    import_source=source,
                    notes=item.notes,
                    attachments=list(item.attachments),
                )
                pending.append(line)
                inserted_ids.append(line.id)

                if len(pending) >= IMPORT_BATCH_SIZE:
                    self.db.add_all(pending)
                    await self.db.flush()
                    pending = []

            if pending:
                self.db.add_all(pending)

            account.last_import_at = now
            account.last_import_source = source
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.warning(f"Concurrent import collided on bank account {account_id}: {e}")
            raise DuplicateImportError(
                "Another import inserted the same bank lines; retry the import",
                details={"bank_account_id": account_id},
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to import bank lines for account {account_id}: {e}")
            await self.db.rollback()
            raise

        summary = {"inserted": len(inserted_ids), "duplicates": duplicates, "line_ids": inserted_ids}
        log_bank_reconciliation_event(
            BankReconciliationAuditEvent.LINES_IMPORTED,
            None,
            {"bank_account_id": account_id, "source": source,
             "inserted": summary["inserted"], "duplicates": duplicates},
            actor=actor,
        )
        return summary

    # ==================== LINES ====================

    async def list_lines(
        self,
        account_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        status: Optional[LineStatus] = None,
        company_id: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[BankFeedLine]:
        stmt = select(BankFeedLineDB).options(selectinload(BankFeedLineDB.matches))
        if account_id:
            stmt = stmt.where(BankFeedLineDB.bank_account_id == account_id)
        if date_from:
            stmt = stmt.where(BankFeedLineDB.transaction_date >= date_from)
        if date_to:
            stmt = stmt.where(BankFeedLineDB.transaction_date <= date_to)
        if status:
            stmt = stmt.where(BankFeedLineDB.status == LineStatus(status).value)
        if company_id:
            stmt = stmt.where(BankFeedLineDB.company_id == company_id)
        if project_id:
            stmt = stmt.where(BankFeedLineDB.project_id == project_id)

        stmt = stmt.order_by(
            BankFeedLineDB.transaction_date.desc(), BankFeedLineDB.id
        ).limit(limit).offset(offset)

        result = await self.db.execute(stmt)
        return [to_read_model(line) for line in result.scalars().all()]

    async def get_line(self, line_id: str) -> BankFeedLine:
        result = await self.db.execute(
            select(BankFeedLineDB)
            .where(BankFeedLineDB.id == line_id)
            .options(selectinload(BankFeedLineDB.matches))
            .execution_options(populate_existing=True)
        )
        line = result.scalar_one_or_none()
        if line is None:
            raise NotFoundError(f"Bank feed line {line_id} not found", code="line_not_found",
                                details={"line_id": line_id})
        return to_read_model(line)

    # ==================== SUGGESTIONS ====================

    async def _candidates(self, currency: str, date_from: date, date_to: date,
                          company_id: Optional[str]) -> List[SystemRecord]:
        """Ledger records open around the given dates, net of what bank lines already claim."""
        window = timedelta(days=self.config.date_window_days)
        records = await self.provider.list_unmatched_records(
            currency=currency,
            date_from=date_from - window,
            date_to=date_to + window,
            company_id=company_id,
        )
        return await self.ledger.available_candidates(records)

    async def get_suggestions(self, line_id: str) -> Tuple[List[SuggestedMatch], List[str]]:
        """
        Ranked suggestions for a line, plus warnings.

        A ledger outage yields an empty list and a warning, never an error.
        """
        line = await self.get_line(line_id)
        if line.is_ignored or line.remaining_amount <= 0:
            return [], []

        try:
            candidates = await self._candidates(
                line.currency, line.transaction_date, line.transaction_date, line.company_id
            )
        except ProviderUnavailableError as e:
            logger.warning(f"Suggestions for bank line {line_id} degraded: {e.message}")
            return [], [f"Ledger unavailable: {e.message}"]

        return generate_suggestions(line, candidates, self.config, self.rules), []

    async def run_suggestions(
        self,
        account_id: str,
        actor: str,
        auto_match: bool = False,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> Dict[str, Any]:
        """
        Generate suggestions for every open line of an account.

        Each line is processed and committed on its own, so an interrupted
        run leaves processed lines valid and a re-run picks up the rest.
        With auto_match, a line's best suggestion is accepted when it clears
        the auto-accept threshold; a record consumed by one line is not
        offered to later lines in the same run.
        """
        if not actor:
            raise ValidationError("actor is required", details={"parameter": "actor"})
        account = await self.get_account(account_id)

        stmt = select(BankFeedLineDB.id, BankFeedLineDB.transaction_date).where(
            BankFeedLineDB.bank_account_id == account_id,
            BankFeedLineDB.status.in_([LineStatus.UNMATCHED.value, LineStatus.PARTIALLY_MATCHED.value]),
        )
        if date_from:
            stmt = stmt.where(BankFeedLineDB.transaction_date >= date_from)
        if date_to:
            stmt = stmt.where(BankFeedLineDB.transaction_date <= date_to)
        rows = (await self.db.execute(
            stmt.order_by(BankFeedLineDB.transaction_date, BankFeedLineDB.id)
        )).all()

        summary: Dict[str, Any] = {
            "bank_account_id": account_id,
            "processed": 0,
            "with_suggestions": 0,
            "auto_matched": 0,
            "failed": 0,
            "results": [],
        }
        if not rows:
            return summary

        candidates = await self._candidates(
            account.currency, min(r[1] for r in rows), max(r[1] for r in rows), account.company_id
        )
        used_record_keys: Set[Tuple[str, str]] = set()

        for line_id, _ in rows:
            line = await self.get_line(line_id)
            suggestions = generate_suggestions(line, candidates, self.config, self.rules,
                                               exclude_record_keys=used_record_keys)
            best = suggestions[0] if suggestions else None
            entry = {
                "line_id": line_id,
                "suggestions": len(suggestions),
                "best_score": best.match_score if best else None,
                "matched": False,
            }
            summary["processed"] += 1
            if best:
                summary["with_suggestions"] += 1

            try:
                threshold, rule = auto_accept_threshold(line, self.config, self.rules)
                if auto_match and best is not None and best.match_score >= threshold:
                    method = MatchMethod.RULE if rule is not None else MatchMethod.SUGGESTED
                    await self.ledger.accept_suggestion(line_id, best, actor, method=method)
                    used_record_keys.add((best.system_record_type.value, best.system_record_id))
                    summary["auto_matched"] += 1
                    entry["matched"] = True
                else:
                    await self.ledger.record_confidence(line_id, entry["best_score"])
            except BankReconciliationError as e:
                logger.warning(f"Suggestion run skipped bank line {line_id}: {e.code} {e.message}")
                summary["failed"] += 1
                entry["error"] = e.code

            summary["results"].append(entry)

        log_bank_reconciliation_event(
            BankReconciliationAuditEvent.SUGGESTION_RUN_COMPLETED,
            None,
            {key: summary[key] for key in ("bank_account_id", "processed", "with_suggestions",
                                           "auto_matched", "failed")},
            actor=actor,
        )
        return summary

    # ==================== MUTATIONS ====================

    async def create_match(self, line_id: str, system_record_id: str, system_record_type: Any,
                           matched_amount: Any, actor: str) -> BankFeedLine:
        return await self.ledger.create_match(
            line_id, system_record_id, system_record_type, matched_amount, actor, MatchMethod.MANUAL
        )

    async def remove_match(self, match_id: str, actor: str) -> BankFeedLine:
        return await self.ledger.remove_match(match_id, actor)

    async def accept_suggestion(self, line_id: str, suggestion: SuggestedMatch, actor: str) -> BankFeedLine:
        return await self.ledger.accept_suggestion(line_id, suggestion, actor)

    async def quick_match(self, line_id: str, actor: str) -> BankFeedLine:
        return await self.ledger.quick_match(line_id, actor)

    async def ignore(self, line_id: str, actor: str, reason: Optional[str] = None) -> BankFeedLine:
        return await self.ledger.ignore(line_id, actor, reason)

    async def unignore(self, line_id: str, actor: str) -> BankFeedLine:
        return await self.ledger.unignore(line_id, actor)

    # ==================== CLASSIFICATION & REPORTS ====================

    async def _load_lines(self, date_from: date, date_to: date, account_ids: List[str],
                          project_id: Optional[str] = None) -> List[BankFeedLine]:
        if not account_ids:
            return []
        stmt = (
            select(BankFeedLineDB)
            .options(selectinload(BankFeedLineDB.matches))
            .where(
                BankFeedLineDB.bank_account_id.in_(account_ids),
                BankFeedLineDB.transaction_date >= date_from,
                BankFeedLineDB.transaction_date <= date_to,
            )
        )
        if project_id:
            stmt = stmt.where(BankFeedLineDB.project_id == project_id)
        result = await self.db.execute(stmt.order_by(BankFeedLineDB.transaction_date, BankFeedLineDB.id))
        return [to_read_model(line) for line in result.scalars().all()]

    async def _best_scores(self, accounts: List[BankAccount],
                           lines: List[BankFeedLine]) -> Tuple[Dict[str, float], Set[str]]:
        """
        Best live suggestion score per open line. Accounts whose candidates
        could not be fetched fall back to each line's cached confidence
        score and are reported as degraded.
        """
        scores: Dict[str, float] = {}
        degraded: Set[str] = set()

        for account in accounts:
            open_lines = [
                line for line in lines
                if line.bank_account_id == account.id and not line.is_ignored and line.remaining_amount > 0
            ]
            if not open_lines:
                continue

            try:
                candidates = await self._candidates(
                    account.currency,
                    min(line.transaction_date for line in open_lines),
                    max(line.transaction_date for line in open_lines),
                    account.company_id,
                )
            except ProviderUnavailableError as e:
                logger.warning(f"Using cached scores for bank account {account.id}: {e.message}")
                degraded.add(account.id)
                for line in open_lines:
                    if line.confidence_score is not None:
                        scores[line.id] = line.confidence_score
                continue

            for line in open_lines:
                suggestions = generate_suggestions(line, candidates, self.config, self.rules)
                if suggestions:
                    scores[line.id] = suggestions[0].match_score

        return scores, degraded

    @staticmethod
    def _check_range(date_from: date, date_to: date):
        if date_from > date_to:
            raise ValidationError(
                "date_from must be on or before date_to",
                details={"date_from": date_from.isoformat(), "date_to": date_to.isoformat()},
            )

    async def classify_lines(
        self,
        date_from: date,
        date_to: date,
        account_id: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> List[Dict[str, Any]]:
        """Review label for every line in range; meant for an external scheduler."""
        self._check_range(date_from, date_to)
        as_of = as_of or datetime.now(timezone.utc).date()
        accounts = [await self.get_account(account_id)] if account_id else await self.list_accounts()

        lines = await self._load_lines(date_from, date_to, [a.id for a in accounts])
        scores, degraded = await self._best_scores(accounts, lines)

        labels = []
        for line in lines:
            age_days = (as_of - line.transaction_date).days
            best = scores.get(line.id)
            labels.append({
                "line_id": line.id,
                "bank_account_id": line.bank_account_id,
                "status": line.status.value,
                "label": classify(line, age_days, best, self.policy).value,
                "age_days": age_days,
                "best_score": best,
                "degraded": line.bank_account_id in degraded,
            })
        return labels

    async def get_coverage(
        self,
        date_from: date,
        date_to: date,
        company_id: Optional[str] = None,
        project_id: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> List[BankAccountCoverage]:
        self._check_range(date_from, date_to)
        as_of = as_of or datetime.now(timezone.utc).date()

        accounts = await self.list_accounts(company_id=company_id)
        lines = await self._load_lines(date_from, date_to, [a.id for a in accounts], project_id)
        scores, degraded = await self._best_scores(accounts, lines)

        return compute_coverage(
            accounts, lines, date_from, date_to, as_of,
            best_scores=scores, policy=self.policy, degraded_account_ids=degraded,
        )

    async def get_missing_from_bank(
        self,
        date_from: date,
        date_to: date,
        company_id: Optional[str] = None,
        project_id: Optional[str] = None,
        record_type: Optional[RecordType] = None,
        search_text: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Settled ledger records with no match on a bank line dated inside the window."""
        self._check_range(date_from, date_to)

        settled = await self.provider.list_settled_records(
            date_from, date_to, record_type=record_type, company_id=company_id, project_id=project_id
        )

        stmt = (
            select(BankMatchDB.system_record_type, BankMatchDB.system_record_id)
            .join(BankFeedLineDB, BankMatchDB.bank_feed_line_id == BankFeedLineDB.id)
            .where(
                BankFeedLineDB.transaction_date >= date_from,
                BankFeedLineDB.transaction_date <= date_to,
            )
        )
        if company_id:
            stmt = stmt.where(BankFeedLineDB.company_id == company_id)
        if project_id:
            stmt = stmt.where(BankFeedLineDB.project_id == project_id)
        matched_keys = {(row[0], row[1]) for row in (await self.db.execute(stmt)).all()}

        items = find_missing_from_bank(settled, matched_keys, date_from, date_to, record_type, search_text)
        return {
            "date_from": date_from,
            "date_to": date_to,
            "items": items,
            "summary": summarize_missing(items),
        }
