"""
Database Migration: Create Bank Feed Tables

Creates bank accounts, imported bank feed lines and line-to-record matches,
plus the unique key used to reject duplicate imports.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text

from config import get_settings
from database.connection import init_engine, get_engine, dispose_engine


SQL_STATEMENTS = [
    # Bank accounts (written by the feed importer)
    """
    CREATE TABLE IF NOT EXISTS public.bank_accounts (
        id VARCHAR(36) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        company_id VARCHAR(36) NOT NULL,
        company_name VARCHAR(255) NOT NULL,
        project_id VARCHAR(36),
        currency VARCHAR(3) NOT NULL,
        feed_status VARCHAR(16) NOT NULL DEFAULT 'active',

        last_import_at TIMESTAMPTZ,
        last_import_source VARCHAR(100),

        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT bank_accounts_feed_status_check
            CHECK (feed_status IN ('active', 'broken', 'manual'))
    )
    """,

    # Imported bank lines
    """
    CREATE TABLE IF NOT EXISTS public.bank_feed_lines (
        id VARCHAR(36) PRIMARY KEY,
        bank_account_id VARCHAR(36) NOT NULL REFERENCES public.bank_accounts(id),
        company_id VARCHAR(36),
        project_id VARCHAR(36),

        -- Imported data (immutable)
        currency VARCHAR(3) NOT NULL,
        transaction_date DATE NOT NULL,
        value_date DATE,
        amount NUMERIC(14,2) NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        description_hash VARCHAR(32) NOT NULL,
        reference VARCHAR(255),
        running_balance NUMERIC(14,2),

        -- Reconciliation state
        status VARCHAR(32) NOT NULL DEFAULT 'unmatched',
        confidence_score DOUBLE PRECISION,

        -- Import audit
        imported_at TIMESTAMPTZ,
        imported_by VARCHAR(100),
        import_source VARCHAR(100),

        -- Ignore audit
        ignored_at TIMESTAMPTZ,
        ignored_by VARCHAR(100),
        ignored_reason TEXT,

        -- Last match audit
        matched_by VARCHAR(100),
        matched_at TIMESTAMPTZ,

        notes TEXT,
        attachments JSON NOT NULL DEFAULT '[]',

        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT bank_feed_lines_amount_nonzero CHECK (amount <> 0),
        CONSTRAINT bank_feed_lines_status_check
            CHECK (status IN ('unmatched', 'partially_matched', 'matched', 'ignored'))
    )
    """,

    # Line-to-record matches
    """
    CREATE TABLE IF NOT EXISTS public.bank_matches (
        id VARCHAR(36) PRIMARY KEY,
        bank_feed_line_id VARCHAR(36) NOT NULL
            REFERENCES public.bank_feed_lines(id) ON DELETE CASCADE,

        system_record_type VARCHAR(32) NOT NULL,
        system_record_id VARCHAR(100) NOT NULL,
        project_id VARCHAR(36),

        matched_amount NUMERIC(14,2) NOT NULL,
        amount_difference NUMERIC(14,2),
        matched_by VARCHAR(100) NOT NULL,
        matched_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        match_score DOUBLE PRECISION NOT NULL DEFAULT 100,
        match_method VARCHAR(16) NOT NULL DEFAULT 'manual',
        rule_id VARCHAR(100),

        CONSTRAINT bank_matches_amount_positive CHECK (matched_amount > 0),
        CONSTRAINT bank_matches_score_range CHECK (match_score BETWEEN 0 AND 100),
        CONSTRAINT bank_matches_record_type_check
            CHECK (system_record_type IN ('receipt', 'expense', 'transfer', 'owner_contribution')),
        CONSTRAINT bank_matches_method_check
            CHECK (match_method IN ('manual', 'suggested', 'quick', 'rule'))
    )
    """,

    # Duplicate import key
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_bank_feed_lines_dedupe
        ON public.bank_feed_lines(bank_account_id, transaction_date, amount, description_hash)
    """,

    # Indexes for bank_accounts
    "CREATE INDEX IF NOT EXISTS ix_bank_accounts_company_id ON public.bank_accounts(company_id)",
    "CREATE INDEX IF NOT EXISTS ix_bank_accounts_project_id ON public.bank_accounts(project_id)",

    # Indexes for bank_feed_lines
    "CREATE INDEX IF NOT EXISTS ix_bank_feed_lines_account_date ON public.bank_feed_lines(bank_account_id, transaction_date)",
    "CREATE INDEX IF NOT EXISTS ix_bank_feed_lines_account_status ON public.bank_feed_lines(bank_account_id, status)",
    "CREATE INDEX IF NOT EXISTS ix_bank_feed_lines_transaction_date ON public.bank_feed_lines(transaction_date)",
    "CREATE INDEX IF NOT EXISTS ix_bank_feed_lines_status ON public.bank_feed_lines(status)",
    "CREATE INDEX IF NOT EXISTS ix_bank_feed_lines_company_id ON public.bank_feed_lines(company_id)",
    "CREATE INDEX IF NOT EXISTS ix_bank_feed_lines_project_id ON public.bank_feed_lines(project_id)",

    # Indexes for bank_matches
    "CREATE INDEX IF NOT EXISTS ix_bank_matches_bank_feed_line_id ON public.bank_matches(bank_feed_line_id)",
    "CREATE INDEX IF NOT EXISTS ix_bank_matches_record ON public.bank_matches(system_record_type, system_record_id)",
]


async def create_tables():
    """Create the bank feed tables."""
    print("Creating bank feed tables...")

    settings = get_settings()
    init_engine(
        settings.get_database_url(),
        pool_size=1,
        max_overflow=0,
        ssl=settings.POSTGRES_SSLMODE or None,
    )

    try:
        async with get_engine().begin() as conn:
            for i, sql in enumerate(SQL_STATEMENTS):
                await conn.execute(text(sql))
                print(f"  ✓ Statement {i+1}/{len(SQL_STATEMENTS)} executed")

        print("\n✅ Bank feed tables created successfully!")
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(create_tables())
