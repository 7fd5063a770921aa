"""
Async SQLAlchemy engine and session factory.
Uses asyncpg for PostgreSQL in production and aiosqlite for local/test databases.
The engine is created by the application lifespan, not at import time.
"""
import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the given URL."""
    if _is_sqlite(database_url):
        engine = create_async_engine(database_url, echo=echo)

        @event.listens_for(engine.sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # take over BEGIN from the driver (see _on_begin)
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _on_begin(conn):
            # Lock at BEGIN so concurrent read-modify-write transactions queue
            # on the busy timeout instead of deadlocking on lock upgrade.
            conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        engine = create_async_engine(
            database_url,
            echo=echo,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
        )
    logger.info(f"Created async engine for {database_url.split('@')[-1]}")
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to the engine; one session per core operation."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def dispose_engine(engine: AsyncEngine) -> None:
    """Dispose the engine on shutdown (call from lifespan)."""
    await engine.dispose()
    logger.info("Async engine disposed")
