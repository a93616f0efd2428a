"""
System Record Providers

Read-only access to the ledger service that owns receipts, expenses,
transfers and owner contributions. The ledger is the source of truth for a
record's outstanding balance; other consumers may hold claims against the
same record, so the engine always asks rather than computing it.

Ledger HTTP contract (JSON):
    GET /api/ledger/records/unmatched?currency&date_from&date_to[&record_type&company_id&project_id]
        -> {"records": [SystemRecord, ...]}
    GET /api/ledger/records/settled?date_from&date_to[&record_type&company_id&project_id]
        -> {"records": [SystemRecord, ...]}
    GET /api/ledger/records/{record_type}/{record_id}
        -> SystemRecord | 404
    GET /api/ledger/records/{record_type}/{record_id}/remaining
        -> {"remaining_amount": "123.45"} | 404
"""

import logging
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from bank_reconciliation.errors import ProviderUnavailableError
from bank_reconciliation.models import RecordType, SystemRecord

logger = logging.getLogger(__name__)


class SystemRecordProvider(ABC):
    """Query surface over ledger records, parameterised by record type."""

    @abstractmethod
    async def list_unmatched_records(
        self,
        currency: str,
        date_from: date,
        date_to: date,
        record_type: Optional[RecordType] = None,
        company_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> List[SystemRecord]:
        ...

    @abstractmethod
    async def get_record(self, record_type: RecordType, record_id: str) -> Optional[SystemRecord]:
        """Return the record or None when the ledger does not know it."""

    @abstractmethod
    async def get_record_remaining_amount(self, record_type: RecordType, record_id: str) -> Optional[Decimal]:
        """Outstanding balance, or None when the ledger does not know the record."""

    @abstractmethod
    async def list_settled_records(
        self,
        date_from: date,
        date_to: date,
        record_type: Optional[RecordType] = None,
        company_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> List[SystemRecord]:
        ...


class LedgerApiRecordProvider(SystemRecordProvider):
    """
    SystemRecordProvider backed by the ledger service's HTTP API.

    Transport failures, timeouts and 5xx responses raise
    ProviderUnavailableError. A 404 on a single-record lookup means the
    record is unknown.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "X-Service-Name": "bank-reconciliation"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """GET a ledger path. Returns parsed JSON, or None on 404."""
        query = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                response = await client.get(path, params=query)
        except httpx.TimeoutException:
            logger.warning(f"Ledger request timed out: {path}")
            raise ProviderUnavailableError("Ledger service timed out", details={"path": path})
        except httpx.RequestError as e:
            logger.warning(f"Ledger request error on {path}: {e}")
            raise ProviderUnavailableError("Ledger service unreachable", details={"path": path})

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.warning(f"Ledger returned {response.status_code} for {path}: {response.text[:200]}")
            raise ProviderUnavailableError(
                "Ledger service error",
                details={"path": path, "status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError:
            raise ProviderUnavailableError("Ledger returned invalid JSON", details={"path": path})

    def _parse_records(self, payload: Optional[Dict[str, Any]], path: str) -> List[SystemRecord]:
        if payload is None:
            return []
        try:
            return [SystemRecord.model_validate(item) for item in payload.get("records", [])]
        except (PydanticValidationError, AttributeError) as e:
            logger.error(f"Malformed ledger record list from {path}: {e}")
            raise ProviderUnavailableError("Ledger returned malformed records", details={"path": path})

    async def list_unmatched_records(
        self,
        currency: str,
        date_from: date,
        date_to: date,
        record_type: Optional[RecordType] = None,
        company_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> List[SystemRecord]:
        path = "/api/ledger/records/unmatched"
        payload = await self._get(path, {
            "currency": currency,
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
            "record_type": record_type.value if record_type else None,
            "company_id": company_id,
            "project_id": project_id,
        })
        return self._parse_records(payload, path)

    async def list_settled_records(
        self,
        date_from: date,
        date_to: date,
        record_type: Optional[RecordType] = None,
        company_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> List[SystemRecord]:
        path = "/api/ledger/records/settled"
        payload = await self._get(path, {
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
            "record_type": record_type.value if record_type else None,
            "company_id": company_id,
            "project_id": project_id,
        })
        return self._parse_records(payload, path)

    async def get_record(self, record_type: RecordType, record_id: str) -> Optional[SystemRecord]:
        path = f"/api/ledger/records/{record_type.value}/{record_id}"
        payload = await self._get(path)
        if payload is None:
            return None
        try:
            return SystemRecord.model_validate(payload)
        except PydanticValidationError as e:
            logger.error(f"Malformed ledger record from {path}: {e}")
            raise ProviderUnavailableError("Ledger returned a malformed record", details={"path": path})

    async def get_record_remaining_amount(self, record_type: RecordType, record_id: str) -> Optional[Decimal]:
        path = f"/api/ledger/records/{record_type.value}/{record_id}/remaining"
        payload = await self._get(path)
        if payload is None:
            return None
        try:
            return Decimal(str(payload["remaining_amount"]))
        except (KeyError, TypeError, InvalidOperation):
            raise ProviderUnavailableError("Ledger returned a malformed balance", details={"path": path})


class UnconfiguredRecordProvider(SystemRecordProvider):
    """Stand-in used when LEDGER_API_URL is not set. Every call reports the ledger as unavailable."""

    def _unavailable(self):
        raise ProviderUnavailableError("Ledger provider not configured", code="provider_not_configured")

    async def list_unmatched_records(self, currency, date_from, date_to, record_type=None,
                                     company_id=None, project_id=None):
        self._unavailable()

    async def list_settled_records(self, date_from, date_to, record_type=None,
                                   company_id=None, project_id=None):
        self._unavailable()

    async def get_record(self, record_type, record_id):
        self._unavailable()

    async def get_record_remaining_amount(self, record_type, record_id):
        self._unavailable()
