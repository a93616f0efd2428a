"""
Shared fixtures for bank reconciliation unit tests.

Lines and matches live in a throwaway SQLite file (aiosqlite) so that two
sessions can race against the same rows. Ledger records come from an
in-memory provider.
"""

from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database.connection import Base
from database.bank_feed_models import BankAccountDB, BankFeedLineDB
from bank_reconciliation.errors import ProviderUnavailableError
from bank_reconciliation.models import LineStatus, RecordType, SystemRecord
from bank_reconciliation.providers.system_records import SystemRecordProvider
from bank_reconciliation.services.line_locks import LineLockRegistry
from bank_reconciliation.services.reconciliation_service import description_hash


class InMemoryRecordProvider(SystemRecordProvider):
    """
    Ledger fake. Outstanding balances are set explicitly and never change
    as a side effect of matching.
    """

    def __init__(self):
        self.records: Dict[Tuple[str, str], SystemRecord] = {}
        self.remaining: Dict[Tuple[str, str], Decimal] = {}
        self.settled: List[SystemRecord] = []
        self.available = True

    def add(self, record: SystemRecord, remaining: Optional[Decimal] = None) -> SystemRecord:
        self.records[record.key] = record
        self.remaining[record.key] = record.amount if remaining is None else remaining
        return record

    def _check(self):
        if not self.available:
            raise ProviderUnavailableError("Ledger service unreachable")

    async def list_unmatched_records(self, currency, date_from, date_to, record_type=None,
                                     company_id=None, project_id=None):
        self._check()
        results = []
        for key, record in sorted(self.records.items()):
            if record.currency != currency:
                continue
            if not (date_from <= record.record_date <= date_to):
                continue
            if record_type is not None and record.record_type != record_type:
                continue
            remaining = self.remaining[key]
            if remaining <= 0:
                continue
            results.append(record.model_copy(update={"amount": remaining}))
        return results

    async def get_record(self, record_type, record_id):
        self._check()
        return self.records.get((RecordType(record_type).value, record_id))

    async def get_record_remaining_amount(self, record_type, record_id):
        self._check()
        return self.remaining.get((RecordType(record_type).value, record_id))

    async def list_settled_records(self, date_from, date_to, record_type=None,
                                   company_id=None, project_id=None):
        self._check()
        return [
            record for record in self.settled
            if (record_type is None or record.record_type == record_type)
            and (project_id is None or record.project_id == project_id)
        ]


def make_record(record_id: str, record_type: RecordType, amount: str, record_date: date,
                currency: str = "THB", **kwargs) -> SystemRecord:
    return SystemRecord(
        id=record_id,
        record_type=record_type,
        amount=Decimal(amount),
        record_date=record_date,
        currency=currency,
        **kwargs,
    )


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bank_feed.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider():
    return InMemoryRecordProvider()


@pytest.fixture
def locks():
    return LineLockRegistry()


@pytest.fixture
def seed(session_factory):
    """Insert accounts and lines directly, bypassing import validation."""

    class Seeder:
        async def account(self, account_id: str = "acct-1", currency: str = "THB",
                          company_id: str = "company-1", company_name: str = "Siam Trading",
                          name: str = "Operating", **kwargs) -> str:
            async with session_factory() as session:
                session.add(BankAccountDB(
                    id=account_id,
                    name=name,
                    company_id=company_id,
                    company_name=company_name,
                    currency=currency,
                    **kwargs,
                ))
                await session.commit()
            return account_id

        async def line(self, line_id: str, amount: str, transaction_date: date,
                       account_id: str = "acct-1", currency: str = "THB",
                       description: str = "", reference: Optional[str] = None,
                       company_id: Optional[str] = "company-1", **kwargs) -> str:
            async with session_factory() as session:
                session.add(BankFeedLineDB(
                    id=line_id,
                    bank_account_id=account_id,
                    company_id=company_id,
                    currency=currency,
                    transaction_date=transaction_date,
                    amount=Decimal(amount),
                    description=description,
                    description_hash=description_hash(f"{line_id} {description}"),
                    reference=reference,
                    status=LineStatus.UNMATCHED.value,
                    attachments=[],
                    **kwargs,
                ))
                await session.commit()
            return line_id

    return Seeder()
