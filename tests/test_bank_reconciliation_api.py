"""
Bank Reconciliation API Tests

Tests for the bank reconciliation endpoints:
- GET /api/bank-reconciliation/status - Module status (public)
- GET /api/bank-reconciliation/config - Scoring configuration
- POST /api/bank-reconciliation/accounts/{account_id}/lines/import - Import lines
- GET /api/bank-reconciliation/lines - List lines
- GET /api/bank-reconciliation/lines/labels - Review labels
- GET /api/bank-reconciliation/lines/{line_id}/suggestions - Suggestions
- POST /api/bank-reconciliation/lines/{line_id}/matches - Create match
- DELETE /api/bank-reconciliation/matches/{match_id} - Remove match
- POST /api/bank-reconciliation/lines/{line_id}/accept-suggestion - Accept suggestion
- POST /api/bank-reconciliation/lines/{line_id}/quick-match - Quick match
- POST /api/bank-reconciliation/lines/{line_id}/ignore|unignore - Ignore state
- POST /api/bank-reconciliation/accounts/{account_id}/suggestions/run - Bulk run
- GET /api/bank-reconciliation/coverage - Coverage
- GET /api/bank-reconciliation/missing-from-bank - Missing from bank

The app runs in-process against a temporary SQLite database; the ledger
service is replaced by an httpx.MockTransport.
"""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config import Settings, get_settings
from database.connection import Base, get_db
from database.bank_feed_models import BankAccountDB
from bank_reconciliation.endpoints.bank_reconciliation_api import get_record_provider
from bank_reconciliation.providers import LedgerApiRecordProvider
from server import app

API_KEY = "test-internal-key-0123456789abcdef"
PREFIX = "/api/bank-reconciliation"
ACCOUNT_ID = "acct-1"

RECEIPT = {
    "id": "rcpt-1",
    "record_type": "receipt",
    "amount": "1500.00",
    "record_date": "2024-03-15",
    "currency": "THB",
    "reference": "INV-2024-001",
    "counterparty": "Acme",
}
EXPENSE = {
    "id": "exp-1",
    "record_type": "expense",
    "amount": "80.00",
    "record_date": "2024-03-16",
    "currency": "THB",
    "reference": "BILL-77",
    "counterparty": "Coffee Co",
}
SETTLED_EXPENSE = {
    "id": "exp-9",
    "record_type": "expense",
    "amount": "45.00",
    "record_date": "2024-03-10",
    "currency": "THB",
    "counterparty": "Globex",
}


class FakeLedger:
    """Serves the ledger HTTP contract from a dict of records."""

    def __init__(self):
        self.records = {("receipt", "rcpt-1"): RECEIPT, ("expense", "exp-1"): EXPENSE}
        self.settled = [SETTLED_EXPENSE]
        self.available = True

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not self.available:
            return httpx.Response(503, text="maintenance")

        parts = request.url.path.strip("/").split("/")[3:]  # after api/ledger/records
        if parts == ["unmatched"]:
            currency = request.url.params.get("currency")
            return httpx.Response(200, json={
                "records": [r for r in self.records.values() if r["currency"] == currency]
            })
        if parts == ["settled"]:
            return httpx.Response(200, json={"records": self.settled})

        record = self.records.get((parts[0], parts[1]))
        if record is None:
            return httpx.Response(404, json={"detail": "not found"})
        if len(parts) == 3 and parts[2] == "remaining":
            return httpx.Response(200, json={"remaining_amount": record["amount"]})
        return httpx.Response(200, json=record)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def client(tmp_path, ledger):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    async def prepare():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with factory() as session:
            session.add(BankAccountDB(
                id=ACCOUNT_ID,
                name="Operating",
                company_id="company-1",
                company_name="Siam Trading",
                currency="THB",
            ))
            await session.commit()

    asyncio.run(prepare())

    async def override_get_db():
        async with factory() as session:
            yield session

    settings = Settings(
        _env_file=None,
        ENVIRONMENT="test",
        INTERNAL_API_KEY=API_KEY,
        LEDGER_API_URL="http://ledger.test",
    )
    provider = LedgerApiRecordProvider("http://ledger.test", transport=httpx.MockTransport(ledger.handler))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_record_provider] = lambda: provider

    test_client = TestClient(app)
    test_client.headers.update({"X-Internal-Api-Key": API_KEY, "X-User-Id": "alice"})
    yield test_client

    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


def import_lines(client, lines):
    response = client.post(f"{PREFIX}/accounts/{ACCOUNT_ID}/lines/import", json={"source": "csv", "lines": lines})
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def line_ids(client):
    """Inflow matching the receipt, outflow matching the expense, an unexplained fee."""
    result = import_lines(client, [
        {"transaction_date": "2024-03-15", "amount": "1500.00", "description": "TRANSFER ACME INV-2024-001"},
        {"transaction_date": "2024-03-16", "amount": "-80.00", "description": "COFFEE CO BILL-77"},
        {"transaction_date": "2024-03-17", "amount": "-12.00", "description": "ACCOUNT FEE"},
    ])
    return dict(zip(["receipt", "expense", "fee"], result["line_ids"]))


# ==================== PUBLIC & AUTH ====================

class TestPublicAndAuth:

    def test_status_is_public(self, client):
        """GET /status - Returns module status without a key."""
        response = client.get(f"{PREFIX}/status", headers={"X-Internal-Api-Key": ""})

        assert response.status_code == 200
        data = response.json()
        assert data["module"] == "bank_reconciliation"
        assert data["status"] == "operational"
        assert "owner_contribution" in data["record_types"]

    def test_liveness(self, client):
        assert client.get("/api/health/live").json()["status"] == "alive"

    def test_missing_key_rejected(self, client):
        response = client.get(f"{PREFIX}/lines", headers={"X-Internal-Api-Key": ""})
        assert response.status_code == 401

    def test_wrong_key_rejected(self, client):
        response = client.get(f"{PREFIX}/lines", headers={"X-Internal-Api-Key": "nope-nope-nope"})
        assert response.status_code == 401

    def test_config(self, client):
        data = client.get(f"{PREFIX}/config").json()

        assert data["matching"]["date_window_days"] == 30
        assert data["matching"]["amount_epsilon"] == "0.01"
        assert data["classification"]["missing_record_after_days"] == 7
        assert data["ledger_configured"] is True


# ==================== IMPORT & LISTING ====================

class TestImportAndList:

    def test_import_and_dedupe(self, client, line_ids):
        again = import_lines(client, [
            {"transaction_date": "2024-03-15", "amount": "1500.00", "description": "TRANSFER ACME INV-2024-001"},
        ])
        assert again == {"inserted": 0, "duplicates": 1, "line_ids": []}

    def test_import_currency_mismatch(self, client):
        response = client.post(f"{PREFIX}/accounts/{ACCOUNT_ID}/lines/import", json={
            "lines": [{"transaction_date": "2024-03-15", "amount": "10.00", "currency": "USD"}]
        })

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "currency_mismatch"

    def test_list_lines(self, client, line_ids):
        data = client.get(f"{PREFIX}/lines", params={"account_id": ACCOUNT_ID}).json()

        assert data["count"] == 3
        assert [line["id"] for line in data["lines"]] == [line_ids["fee"], line_ids["expense"], line_ids["receipt"]]
        assert data["lines"][2]["amount"] == "1500.00"
        assert data["lines"][2]["status"] == "unmatched"

    def test_get_unknown_line(self, client):
        response = client.get(f"{PREFIX}/lines/does-not-exist")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "line_not_found"

    def test_invalid_date_range(self, client):
        response = client.get(f"{PREFIX}/lines", params={"date_from": "2024-03-31", "date_to": "2024-03-01"})

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "invalid_parameter"


# ==================== MATCHING ====================

class TestMatching:

    def test_suggest_and_accept(self, client, line_ids):
        line_id = line_ids["receipt"]
        data = client.get(f"{PREFIX}/lines/{line_id}/suggestions").json()

        best = data["suggestions"][0]
        assert data["warnings"] == []
        assert best["system_record_id"] == "rcpt-1"
        assert best["match_score"] >= 90
        assert "exact_amount" in best["match_reasons"]

        response = client.post(f"{PREFIX}/lines/{line_id}/accept-suggestion", json=best)

        assert response.status_code == 200, response.text
        line = response.json()
        assert line["status"] == "matched"
        assert line["matches"][0]["matched_amount"] == "1500.00"
        assert line["matches"][0]["matched_by"] == "alice"

    @pytest.mark.parametrize("amount", ["-5.00", "0", "0.004"])
    def test_accept_suggestion_rejects_bad_amount(self, client, line_ids, amount):
        line_id = line_ids["receipt"]
        best = client.get(f"{PREFIX}/lines/{line_id}/suggestions").json()["suggestions"][0]
        best["amount"] = amount

        response = client.post(f"{PREFIX}/lines/{line_id}/accept-suggestion", json=best)

        assert response.status_code == 422, response.text
        assert response.json()["detail"]["error"] == "validation_error"
        assert client.get(f"{PREFIX}/lines/{line_id}").json()["status"] == "unmatched"

    def test_record_cannot_explain_two_lines(self, client, line_ids):
        [second] = import_lines(client, [
            {"transaction_date": "2024-03-15", "amount": "1500.00", "description": "SECOND ACME INV-2024-001"},
        ])["line_ids"]
        response = client.post(f"{PREFIX}/lines/{line_ids['receipt']}/quick-match")
        assert response.status_code == 200

        suggestions = client.get(f"{PREFIX}/lines/{second}/suggestions").json()["suggestions"]
        assert all(s["system_record_id"] != "rcpt-1" for s in suggestions)

        response = client.post(f"{PREFIX}/lines/{second}/matches", json={
            "system_record_id": "rcpt-1", "system_record_type": "receipt", "matched_amount": "1500.00"
        })
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "amount_exceeds_record_remaining"

    def test_create_and_remove_match(self, client, line_ids):
        line_id = line_ids["expense"]
        response = client.post(f"{PREFIX}/lines/{line_id}/matches", json={
            "system_record_id": "exp-1", "system_record_type": "expense", "matched_amount": "50.00"
        })
        assert response.status_code == 201, response.text
        line = response.json()
        assert line["status"] == "partially_matched"

        response = client.delete(f"{PREFIX}/matches/{line['matches'][0]['id']}")
        assert response.status_code == 200
        assert response.json()["status"] == "unmatched"

    def test_over_match_conflict(self, client, line_ids):
        response = client.post(f"{PREFIX}/lines/{line_ids['receipt']}/matches", json={
            "system_record_id": "rcpt-1", "system_record_type": "receipt", "matched_amount": "1600.00"
        })

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "amount_exceeds_remaining"

    def test_mutation_requires_user(self, client, line_ids):
        response = client.post(
            f"{PREFIX}/lines/{line_ids['fee']}/ignore",
            headers={"X-User-Id": ""},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["parameter"] == "X-User-Id"

    def test_quick_match(self, client, line_ids):
        response = client.post(f"{PREFIX}/lines/{line_ids['receipt']}/quick-match")
        assert response.status_code == 200
        assert response.json()["matches"][0]["match_method"] == "quick"

        response = client.post(f"{PREFIX}/lines/{line_ids['fee']}/quick-match")
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "no_confident_match"

    def test_ignore_round_trip(self, client, line_ids):
        line_id = line_ids["fee"]

        response = client.post(f"{PREFIX}/lines/{line_id}/ignore", json={"reason": "bank fee"})
        assert response.json()["status"] == "ignored"
        assert response.json()["ignored_reason"] == "bank fee"

        response = client.post(f"{PREFIX}/lines/{line_id}/ignore")
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "already_ignored"

        response = client.post(f"{PREFIX}/lines/{line_id}/unignore")
        assert response.json()["status"] == "unmatched"

    def test_suggestions_when_ledger_down(self, client, ledger, line_ids):
        ledger.available = False

        response = client.get(f"{PREFIX}/lines/{line_ids['receipt']}/suggestions")

        assert response.status_code == 200
        assert response.json()["suggestions"] == []
        assert response.json()["warnings"]

    def test_bulk_run(self, client, line_ids):
        response = client.post(f"{PREFIX}/accounts/{ACCOUNT_ID}/suggestions/run", json={"auto_match": True})

        assert response.status_code == 200
        summary = response.json()
        assert summary["processed"] == 3
        assert summary["auto_matched"] >= 1
        assert summary["failed"] == 0


# ==================== REPORTS ====================

class TestReports:

    def test_labels_route_is_not_a_line_id(self, client, line_ids):
        response = client.get(f"{PREFIX}/lines/labels", params={
            "date_from": "2024-03-01", "date_to": "2024-03-31", "as_of": "2024-03-18"
        })

        assert response.status_code == 200
        assert response.json()["count"] == 3

    def test_coverage(self, client, line_ids):
        client.post(f"{PREFIX}/lines/{line_ids['receipt']}/quick-match")

        response = client.get(f"{PREFIX}/coverage", params={
            "date_from": "2024-03-01", "date_to": "2024-03-31", "as_of": "2024-03-18"
        })

        assert response.status_code == 200
        [coverage] = response.json()["accounts"]
        assert coverage["total_lines"] == 3
        assert coverage["matched_lines"] == 1
        assert coverage["reconciled_percentage"] == 33.33
        assert coverage["bank_net_movement"] == "1408.00"
        assert coverage["net_difference"] == "-92.00"

    def test_missing_from_bank(self, client):
        response = client.get(f"{PREFIX}/missing-from-bank", params={
            "date_from": "2024-03-01", "date_to": "2024-03-31"
        })

        assert response.status_code == 200
        data = response.json()
        assert [item["record_id"] for item in data["items"]] == ["exp-9"]
        assert data["summary"]["by_type"]["expense"]["count"] == 1
        assert data["summary"]["total_amount"] == "45.00"
