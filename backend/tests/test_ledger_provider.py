"""
Unit Tests for the ledger HTTP record provider

Uses httpx.MockTransport in place of the ledger service.

Run with: pytest tests/test_ledger_provider.py -v
"""

from datetime import date
from decimal import Decimal

import httpx
import pytest

from bank_reconciliation.errors import ProviderUnavailableError
from bank_reconciliation.models import RecordType
from bank_reconciliation.providers import LedgerApiRecordProvider, UnconfiguredRecordProvider

RECORD_JSON = {
    "id": "rcpt-1",
    "record_type": "receipt",
    "amount": "1500.00",
    "record_date": "2024-03-15",
    "currency": "THB",
    "reference": "INV-2024-001",
    "counterparty": "Acme",
}


def provider_for(handler) -> LedgerApiRecordProvider:
    return LedgerApiRecordProvider(
        base_url="http://ledger.test/",
        token="secret-token",
        transport=httpx.MockTransport(handler),
    )


class TestLedgerApiRecordProvider:

    @pytest.mark.asyncio
    async def test_list_unmatched_sends_filters(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"records": [RECORD_JSON]})

        records = await provider_for(handler).list_unmatched_records(
            "THB", date(2024, 2, 14), date(2024, 4, 14), record_type=RecordType.RECEIPT
        )

        assert seen["path"] == "/api/ledger/records/unmatched"
        assert seen["params"] == {
            "currency": "THB",
            "date_from": "2024-02-14",
            "date_to": "2024-04-14",
            "record_type": "receipt",
        }
        assert seen["auth"] == "Bearer secret-token"
        assert records[0].id == "rcpt-1"
        assert records[0].amount == Decimal("1500.00")
        assert records[0].record_type == RecordType.RECEIPT

    @pytest.mark.asyncio
    async def test_lookup_404_means_unknown(self):
        provider = provider_for(lambda request: httpx.Response(404, json={"detail": "not found"}))

        assert await provider.get_record(RecordType.EXPENSE, "ghost") is None
        assert await provider.get_record_remaining_amount(RecordType.EXPENSE, "ghost") is None

    @pytest.mark.asyncio
    async def test_remaining_amount(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/ledger/records/receipt/rcpt-1/remaining"
            return httpx.Response(200, json={"remaining_amount": "250.50"})

        remaining = await provider_for(handler).get_record_remaining_amount(RecordType.RECEIPT, "rcpt-1")

        assert remaining == Decimal("250.50")

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self):
        provider = provider_for(lambda request: httpx.Response(502, text="bad gateway"))

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await provider.list_settled_records(date(2024, 3, 1), date(2024, 3, 31))

        assert exc_info.value.details["status_code"] == 502
        assert exc_info.value.http_status == 503

    @pytest.mark.asyncio
    async def test_connection_error_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderUnavailableError):
            await provider_for(handler).get_record(RecordType.RECEIPT, "rcpt-1")

    @pytest.mark.asyncio
    async def test_malformed_records_are_unavailable(self):
        provider = provider_for(lambda request: httpx.Response(200, json={"records": [{"id": "x"}]}))

        with pytest.raises(ProviderUnavailableError):
            await provider.list_unmatched_records("THB", date(2024, 3, 1), date(2024, 3, 31))

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self):
        with pytest.raises(ProviderUnavailableError) as exc_info:
            await UnconfiguredRecordProvider().list_unmatched_records("THB", date(2024, 3, 1), date(2024, 3, 31))

        assert exc_info.value.code == "provider_not_configured"
