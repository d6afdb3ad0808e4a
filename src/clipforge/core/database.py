"""Database session factory setup."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel


def create_engine(db_url: str, pool_size: int = 20) -> AsyncEngine:
    """Create the async engine.

    PostgreSQL (postgresql+psycopg://...) gets a bounded connection pool.
    SQLite (sqlite+aiosqlite://...) is used for local development and tests;
    an in-memory database is pinned to a single shared connection.
    """
    if db_url.startswith("sqlite"):
        if ":memory:" in db_url or db_url.endswith("sqlite+aiosqlite://"):
            return create_async_engine(
                db_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
        return create_async_engine(db_url, echo=False)

    return create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,  # No overflow beyond pool_size
        pool_pre_ping=True,  # Verify connections before using
        echo=False,  # Don't log SQL queries (use structlog instead)
    )


def setup_db_session(
    db_url: str, pool_size: int = 20, engine: AsyncEngine | None = None
) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database connection URL
        pool_size: Maximum number of connections in the pool (PostgreSQL only)
        engine: Pre-built engine to bind instead of creating one

    Returns:
        Async session factory for creating database sessions
    """
    engine = engine or create_engine(db_url, pool_size)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )

    return session_factory


async def create_tables(engine: AsyncEngine) -> None:
    """Create all SQLModel tables (development and tests)."""
    # Import models so they register with SQLModel metadata
    from clipforge import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
