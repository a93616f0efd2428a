"""
Bank Reconciliation API Endpoints

REST API for the bank feed reconciliation engine:
- GET /api/bank-reconciliation/status - Module status
- GET /api/bank-reconciliation/config - Active scoring configuration
- POST /api/bank-reconciliation/accounts/{account_id}/lines/import - Import parsed bank lines
- GET /api/bank-reconciliation/lines - List bank feed lines
- GET /api/bank-reconciliation/lines/labels - Review labels for a scheduler
- GET /api/bank-reconciliation/lines/{line_id} - Get a single line
- GET /api/bank-reconciliation/lines/{line_id}/suggestions - Ranked match suggestions
- POST /api/bank-reconciliation/lines/{line_id}/matches - Create a manual match
- DELETE /api/bank-reconciliation/matches/{match_id} - Remove a match
- POST /api/bank-reconciliation/lines/{line_id}/accept-suggestion - Accept a suggestion
- POST /api/bank-reconciliation/lines/{line_id}/quick-match - Accept the best suggestion if confident
- POST /api/bank-reconciliation/lines/{line_id}/ignore - Ignore a line
- POST /api/bank-reconciliation/lines/{line_id}/unignore - Unignore a line
- POST /api/bank-reconciliation/accounts/{account_id}/suggestions/run - Bulk suggestion run
- GET /api/bank-reconciliation/coverage - Per-account coverage
- GET /api/bank-reconciliation/missing-from-bank - Settled records with no bank line

Every endpoint except /status requires X-Internal-Api-Key. Mutations take
the acting user from X-User-Id.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Header, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database.connection import get_db
from middleware.internal_auth import InternalService, get_internal_service
from bank_reconciliation.errors import BankReconciliationError
from bank_reconciliation.matching_rules.bank_rules import MatchingRule
from bank_reconciliation.models import (
    BankAccountCoverage,
    BankFeedLine,
    LineStatus,
    MissingFromBankItem,
    RecordType,
    SuggestedMatch,
)
from bank_reconciliation.providers.system_records import (
    LedgerApiRecordProvider,
    SystemRecordProvider,
    UnconfiguredRecordProvider,
)
from bank_reconciliation.services.reconciliation_service import BankLineImport, BankReconciliationService
from utils.validation_errors import raise_missing_parameter, validate_date_range

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bank-reconciliation", tags=["Bank Reconciliation"])


# ==================== Request/Response Models ====================

class ImportLinesRequest(BaseModel):
    """Request to import already-parsed bank lines."""
    source: str = Field(default="manual", description="Import source (feed provider, csv, manual)")
    lines: List[BankLineImport] = Field(..., min_length=1, max_length=5000)


class ImportLinesResponse(BaseModel):
    inserted: int
    duplicates: int
    line_ids: List[str]


class CreateMatchRequest(BaseModel):
    """Request to match part or all of a line to a ledger record."""
    system_record_id: str = Field(..., min_length=1)
    system_record_type: str = Field(..., description="receipt, expense, transfer or owner_contribution")
    matched_amount: Decimal = Field(..., description="Positive amount, at most the line's remaining amount")


class IgnoreLineRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class RunSuggestionsRequest(BaseModel):
    auto_match: bool = Field(default=False, description="Accept best suggestions that clear the threshold")
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class LineListResponse(BaseModel):
    lines: List[BankFeedLine]
    count: int
    limit: int
    offset: int


class SuggestionsResponse(BaseModel):
    line_id: str
    suggestions: List[SuggestedMatch]
    warnings: List[str]


class CoverageResponse(BaseModel):
    date_from: date
    date_to: date
    accounts: List[BankAccountCoverage]


class MissingTypeTotal(BaseModel):
    count: int
    total_amount: Decimal


class MissingSummary(BaseModel):
    count: int
    total_amount: Decimal
    by_type: Dict[str, MissingTypeTotal]


class MissingFromBankResponse(BaseModel):
    date_from: date
    date_to: date
    items: List[MissingFromBankItem]
    summary: MissingSummary


# ==================== Dependencies ====================

def get_record_provider(settings: Settings = Depends(get_settings)) -> SystemRecordProvider:
    if not settings.LEDGER_API_URL:
        return UnconfiguredRecordProvider()
    return LedgerApiRecordProvider(
        base_url=settings.LEDGER_API_URL,
        token=settings.LEDGER_API_TOKEN,
        timeout=settings.LEDGER_API_TIMEOUT,
    )


def get_matching_rules(request: Request) -> Tuple[MatchingRule, ...]:
    """Rules are injected at startup via app.state.matching_rules."""
    return tuple(getattr(request.app.state, "matching_rules", ()))


def get_service(
    db: AsyncSession = Depends(get_db),
    provider: SystemRecordProvider = Depends(get_record_provider),
    rules: Tuple[MatchingRule, ...] = Depends(get_matching_rules),
    settings: Settings = Depends(get_settings),
) -> BankReconciliationService:
    return BankReconciliationService(
        db,
        provider,
        config=settings.matching_config(),
        policy=settings.classification_policy(),
        rules=rules,
    )


def get_actor(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Acting user for audit fields. Required on every mutation."""
    if not x_user_id or not x_user_id.strip():
        raise_missing_parameter("X-User-Id", "X-User-Id header identifying the acting user is required")
    return x_user_id.strip()


def to_http_exception(error: BankReconciliationError) -> HTTPException:
    if error.http_status >= 500:
        logger.error(f"Bank reconciliation error {error.code}: {error.message}")
    return HTTPException(status_code=error.http_status, detail=error.to_dict())


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get bank reconciliation module status.
    """
    return {
        "module": "bank_reconciliation",
        "status": "operational",
        "version": "1.0.0",
        "features": {
            "suggestions": True,
            "quick_match": True,
            "bulk_suggestion_runs": True,
            "coverage": True,
            "missing_from_bank": True,
        },
        "record_types": [t.value for t in RecordType],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/config", summary="Active scoring configuration")
async def get_matching_configuration(
    settings: Settings = Depends(get_settings),
    rules: Tuple[MatchingRule, ...] = Depends(get_matching_rules),
    _auth: InternalService = Depends(get_internal_service)
):
    return {
        "matching": settings.matching_config().to_dict(),
        "classification": settings.classification_policy().to_dict(),
        "ledger_configured": bool(settings.LEDGER_API_URL),
        "rules": [{"id": r.id, "name": r.name, "enabled": r.enabled, "priority": r.priority} for r in rules],
    }


@router.post("/accounts/{account_id}/lines/import", response_model=ImportLinesResponse,
             status_code=201, summary="Import bank lines")
async def import_lines(
    account_id: str,
    request: ImportLinesRequest,
    service: BankReconciliationService = Depends(get_service),
    actor: str = Depends(get_actor),
    _auth: InternalService = Depends(get_internal_service)
):
    """
    Import already-parsed lines for a bank account.

    Lines identical to an existing one (same date, amount and description)
    are counted as duplicates and skipped.
    """
    try:
        return await service.import_lines(account_id, request.lines, actor, request.source)
    except BankReconciliationError as e:
        raise to_http_exception(e)


@router.get("/lines", response_model=LineListResponse, summary="List bank feed lines")
async def list_lines(
    account_id: Optional[str] = Query(default=None),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    status: Optional[LineStatus] = Query(default=None, description="Filter by status"),
    company_id: Optional[str] = Query(default=None),
    project_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: BankReconciliationService = Depends(get_service),
    _auth: InternalService = Depends(get_internal_service)
):
    if date_from and date_to:
        validate_date_range(date_from, date_to)

    lines = await service.list_lines(
        account_id=account_id,
        date_from=date_from,
        date_to=date_to,
        status=status,
        company_id=company_id,
        project_id=project_id,
        limit=limit,
        offset=offset,
    )
    return LineListResponse(lines=lines, count=len(lines), limit=limit, offset=offset)


@router.get("/lines/labels", summary="Review labels")
async def get_line_labels(
    date_from: date = Query(...),
    date_to: date = Query(...),
    account_id: Optional[str] = Query(default=None),
    as_of: Optional[date] = Query(default=None, description="Reference date for line age (default today)"),
    service: BankReconciliationService = Depends(get_service),
    _auth: InternalService = Depends(get_internal_service)
):
    """
    Classify lines into review labels (needs_review, missing_record, ...).

    Nothing is persisted; intended for a periodic scheduler.
    """
    validate_date_range(date_from, date_to)
    try:
        labels = await service.classify_lines(date_from, date_to, account_id=account_id, as_of=as_of)
    except BankReconciliationError as e:
        raise to_http_exception(e)
    return {"labels": labels, "count": len(labels)}


@router.get("/lines/{line_id}", response_model=BankFeedLine, summary="Get a bank feed line")
async def get_line(
    line_id: str,
    service: BankReconciliationService = Depends(get_service),
    _auth: InternalService = Depends(get_internal_service)
):
    try:
        return await service.get_line(line_id)
    except BankReconciliationError as e:
        raise to_http_exception(e)


@router.get("/lines/{line_id}/suggestions", response_model=SuggestionsResponse, summary="Suggestions for a line")
async def get_suggestions(
    line_id: str,
    service: BankReconciliationService = Depends(get_service),
    _auth: InternalService = Depends(get_internal_service)
):
    """
    Ranked candidate matches for a line.

    When the ledger is unreachable the list is empty and `warnings`
    explains why.
    """
    try:
        suggestions, warnings = await service.get_suggestions(line_id)
    except BankReconciliationError as e:
        raise to_http_exception(e)
    return SuggestionsResponse(line_id=line_id, suggestions=suggestions, warnings=warnings)


@router.post("/lines/{line_id}/matches", response_model=BankFeedLine, status_code=201, summary="Create a match")
async def create_match(
    line_id: str,
    request: CreateMatchRequest,
    service: BankReconciliationService = Depends(get_service),
    actor: str = Depends(get_actor),
    _auth: InternalService = Depends(get_internal_service)
):
    """
    Match part or all of a line to a ledger record.

    Returns 409 with error `amount_exceeds_remaining`, `line_fully_matched`
    or `amount_exceeds_record_remaining` when the amount does not fit.
    """
    try:
        return await service.create_match(
            line_id,
            request.system_record_id,
            request.system_record_type,
            request.matched_amount,
            actor,
        )
    except BankReconciliationError as e:
        raise to_http_exception(e)


@router.delete("/matches/{match_id}", response_model=BankFeedLine, summary="Remove a match")
async def remove_match(
    match_id: str,
    service: BankReconciliationService = Depends(get_service),
    actor: str = Depends(get_actor),
    _auth: InternalService = Depends(get_internal_service)
):
    try:
        return await service.remove_match(match_id, actor)
    except BankReconciliationError as e:
        raise to_http_exception(e)


@router.post("/lines/{line_id}/accept-suggestion", response_model=BankFeedLine, summary="Accept a suggestion")
async def accept_suggestion(
    line_id: str,
    suggestion: SuggestedMatch,
    service: BankReconciliationService = Depends(get_service),
    actor: str = Depends(get_actor),
    _auth: InternalService = Depends(get_internal_service)
):
    try:
        return await service.accept_suggestion(line_id, suggestion, actor)
    except BankReconciliationError as e:
        raise to_http_exception(e)


@router.post("/lines/{line_id}/quick-match", response_model=BankFeedLine, summary="Quick match")
async def quick_match(
    line_id: str,
    service: BankReconciliationService = Depends(get_service),
    actor: str = Depends(get_actor),
    _auth: InternalService = Depends(get_internal_service)
):
    """Accept the best suggestion only if it clears the auto-accept threshold (409 otherwise)."""
    try:
        return await service.quick_match(line_id, actor)
    except BankReconciliationError as e:
        raise to_http_exception(e)


@router.post("/lines/{line_id}/ignore", response_model=BankFeedLine, summary="Ignore a line")
async def ignore_line(
    line_id: str,
    request: Optional[IgnoreLineRequest] = None,
    service: BankReconciliationService = Depends(get_service),
    actor: str = Depends(get_actor),
    _auth: InternalService = Depends(get_internal_service)
):
    try:
        return await service.ignore(line_id, actor, request.reason if request else None)
    except BankReconciliationError as e:
        raise to_http_exception(e)


@router.post("/lines/{line_id}/unignore", response_model=BankFeedLine, summary="Unignore a line")
async def unignore_line(
    line_id: str,
    service: BankReconciliationService = Depends(get_service),
    actor: str = Depends(get_actor),
    _auth: InternalService = Depends(get_internal_service)
):
    try:
        return await service.unignore(line_id, actor)
    except BankReconciliationError as e:
        raise to_http_exception(e)


@router.post("/accounts/{account_id}/suggestions/run", summary="Bulk suggestion run")
async def run_suggestions(
    account_id: str,
    request: RunSuggestionsRequest,
    service: BankReconciliationService = Depends(get_service),
    actor: str = Depends(get_actor),
    _auth: InternalService = Depends(get_internal_service)
):
    """
    Generate suggestions for every open line of an account.

    Lines are committed one by one; re-running after an interruption is safe.
    """
    if request.date_from and request.date_to:
        validate_date_range(request.date_from, request.date_to)
    try:
        return await service.run_suggestions(
            account_id,
            actor,
            auto_match=request.auto_match,
            date_from=request.date_from,
            date_to=request.date_to,
        )
    except BankReconciliationError as e:
        raise to_http_exception(e)


@router.get("/coverage", response_model=CoverageResponse, summary="Per-account coverage")
async def get_coverage(
    date_from: date = Query(...),
    date_to: date = Query(...),
    company_id: Optional[str] = Query(default=None),
    project_id: Optional[str] = Query(default=None),
    as_of: Optional[date] = Query(default=None),
    service: BankReconciliationService = Depends(get_service),
    _auth: InternalService = Depends(get_internal_service)
):
    validate_date_range(date_from, date_to)
    try:
        accounts = await service.get_coverage(
            date_from, date_to, company_id=company_id, project_id=project_id, as_of=as_of
        )
    except BankReconciliationError as e:
        raise to_http_exception(e)
    return CoverageResponse(date_from=date_from, date_to=date_to, accounts=accounts)


@router.get("/missing-from-bank", response_model=MissingFromBankResponse, summary="Missing from bank")
async def get_missing_from_bank(
    date_from: date = Query(...),
    date_to: date = Query(...),
    company_id: Optional[str] = Query(default=None),
    project_id: Optional[str] = Query(default=None),
    record_type: Optional[RecordType] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=200),
    service: BankReconciliationService = Depends(get_service),
    _auth: InternalService = Depends(get_internal_service)
):
    """Ledger records marked settled in the window with no matching bank line."""
    validate_date_range(date_from, date_to)
    try:
        return await service.get_missing_from_bank(
            date_from,
            date_to,
            company_id=company_id,
            project_id=project_id,
            record_type=record_type,
            search_text=search,
        )
    except BankReconciliationError as e:
        raise to_http_exception(e)
