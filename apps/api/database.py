"""
Async database engine, session factory and declarative base.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


def _async_database_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///"):]
    return url


def configure_sqlite_locking(engine: AsyncEngine) -> AsyncEngine:
    """Make every SQLite transaction take the write lock up front.

    SQLite has no row locks, so `SELECT ... FOR UPDATE` is a no-op there.
    Starting transactions with BEGIN IMMEDIATE serializes writers instead.
    """
    if engine.dialect.name != "sqlite":
        return engine

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine for the given URL."""
    async_url = _async_database_url(url)
    if async_url.startswith("sqlite"):
        return configure_sqlite_locking(create_async_engine(async_url))
    return configure_sqlite_locking(
        create_async_engine(
            async_url,
            pool_size=20,
            max_overflow=0,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    )


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL)
async_session_maker = build_session_maker(engine)

Base = declarative_base()
