# ==== DATABASE CONNECTION AND SESSION MANAGEMENT ==== #

"""
Database connection and session management for the reverse-logistics engine.

This module provides async SQLAlchemy connectivity for PostgreSQL (asyncpg)
in production and SQLite (aiosqlite) for local runs and tests, plus the
session helpers used by services, flows and the FastAPI dependency.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, List, Tuple

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from reverse_logistics.business.errors import ConflictError
from reverse_logistics.settings import settings
from reverse_logistics.observability.metrics import db_connections_active


# ==== SQLALCHEMY CONFIGURATION ==== #

# SQLAlchemy base for model definitions
Base = declarative_base()

# Global engine and session factory instances
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


# ==== DATABASE INITIALIZATION ==== #

def normalize_database_url(db_url: str) -> str:
    """Force async drivers onto plain PostgreSQL and SQLite URLs.

    Args:
        db_url: URL as configured in the environment

    Returns:
        str: URL using ``asyncpg`` or ``aiosqlite``
    """
    if db_url.startswith("sqlite://"):
        return db_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif db_url.startswith("postgresql+psycopg://"):
        db_url = db_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)

    # Fix SSL parameter for asyncpg compatibility
    return db_url.replace("sslmode=require", "ssl=require")


def build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with dialect-appropriate pooling.

    In-memory SQLite shares one connection so every session sees the same
    database.
    """
    db_url = normalize_database_url(db_url)

    if db_url.startswith("sqlite"):
        return create_async_engine(
            db_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        db_url,
        echo=echo,
        pool_pre_ping=True,
        connect_args={"server_settings": {"application_name": settings.SERVICE_NAME, "timezone": "UTC"}},
    )


def init_database() -> None:
    """
    Initialize database engine and session factory.

    Safe to call repeatedly; only the first call creates the engine.
    """
    global engine, SessionLocal

    if engine is not None:
        return

    engine = build_engine(settings.DATABASE_URL, echo=False)
    SessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_tables() -> None:
    """Create all tables known to the ORM metadata."""
    # Register models on the metadata before create_all
    from reverse_logistics.storage import models  # noqa: F401

    if engine is None:
        init_database()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session with automatic cleanup.

    Yields:
        AsyncSession: Database session

    Raises:
        Exception: Re-raises any error after rolling back
    """
    if SessionLocal is None:
        init_database()

    async with SessionLocal() as session:
        db_connections_active.inc()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            db_connections_active.dec()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions.

    Yields:
        AsyncSession: Database session for request handling
    """
    async with get_session() as session:
        yield session


async def close_database() -> None:
    """Close database connections on shutdown."""
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
        engine = None
        SessionLocal = None


# ==== OPTIMISTIC WRITES ==== #


async def flush_or_conflict(db: AsyncSession, entity: str) -> None:
    """Flush pending changes, mapping lost races to ``ConflictError``.

    A stale ``version`` (another writer committed first) or a unique-index
    violation (a concurrent insert won) both surface as conflicts; the
    session is rolled back so the caller can re-read.

    Raises:
        ConflictError: ``CONCURRENT_MODIFICATION`` or ``DUPLICATE_RECORD``
    """
    try:
        await db.flush()
    except StaleDataError as e:
        await db.rollback()
        raise ConflictError(
            f"The {entity} was modified concurrently; reload and retry",
            code="CONCURRENT_MODIFICATION",
            details={"entity": entity},
        ) from e
    except IntegrityError as e:
        await db.rollback()
        raise ConflictError(
            f"A conflicting {entity} already exists",
            code="DUPLICATE_RECORD",
            details={"entity": entity},
        ) from e


async def paginate(db: AsyncSession, stmt: Select, page: int, limit: int) -> Tuple[List[Any], int]:
    """Run ``stmt`` for one page and count the full result.

    Args:
        db: Database session
        stmt: Ordered ORM select
        page: 1-based page number
        limit: Page size

    Returns:
        Tuple[List[Any], int]: Page rows and total row count
    """
    total = await db.scalar(select(func.count()).select_from(stmt.order_by(None).subquery()))
    result = await db.execute(stmt.offset((page - 1) * limit).limit(limit))
    return list(result.scalars().all()), int(total or 0)
