from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
import logging

logger = logging.getLogger(__name__)

engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def init_engine(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 10,
    ssl: Optional[str] = "require",
    **engine_kwargs,
) -> AsyncEngine:
    """
    Create the async engine and session factory.

    Called once from the app lifespan (or a test fixture). SQLite URLs skip
    pool sizing and SSL.
    """
    global engine, AsyncSessionLocal

    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if database_url.startswith("sqlite"):
        kwargs = dict(engine_kwargs)
    else:
        kwargs = dict(
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            **engine_kwargs,
        )
        if ssl and "ssl=" not in database_url:
            kwargs["connect_args"] = {"ssl": ssl}

    engine = create_async_engine(database_url, echo=False, **kwargs)

    AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )
    return engine


def get_engine() -> AsyncEngine:
    if engine is None:
        raise RuntimeError("Database engine not initialised; call init_engine() first")
    return engine


def get_session_factory() -> async_sessionmaker:
    if AsyncSessionLocal is None:
        raise RuntimeError("Database engine not initialised; call init_engine() first")
    return AsyncSessionLocal


async def get_db():
    """Dependency to get database session"""
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(create_tables: bool = False):
    """Verify the connection and optionally create missing tables"""
    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

            if create_tables:
                await conn.run_sync(Base.metadata.create_all)
                logger.info(f"Ensured tables: {sorted(Base.metadata.tables)}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise


async def dispose_engine():
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None
