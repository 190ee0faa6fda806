"""Database connection manager for IntroFlow."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from introflow.core.errors import TransientIOError
from introflow.db.models import Base


def _enable_foreign_keys(dbapi_conn: Any, connection_record: Any) -> None:
    """Enable foreign key constraints and hand transaction control to SQLAlchemy."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    # The driver's implicit BEGIN breaks SAVEPOINT; transactions start in _begin_immediate
    dbapi_conn.isolation_level = None


def _begin_immediate(conn: Any) -> None:
    """Take the write lock when a transaction starts.

    Writers then queue on the busy timeout instead of deadlocking on a
    shared-to-reserved lock upgrade.
    """
    conn.exec_driver_sql("BEGIN IMMEDIATE")


class DatabaseManager:
    """Manages async SQLite database connections."""

    def __init__(self, db_path: Path | str = "introflow.db", busy_timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.db_url = f"sqlite+aiosqlite:///{self.db_path}"

        # Concurrent dispatchers wait on the SQLite write lock instead of failing
        self.engine = create_async_engine(
            self.db_url,
            echo=False,
            future=True,
            connect_args={"timeout": busy_timeout},
        )

        event.listen(self.engine.sync_engine, "connect", _enable_foreign_keys)
        event.listen(self.engine.sync_engine, "begin", _begin_immediate)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def init_db(self) -> None:
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close database connections."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional session.

        Commits on success, rolls back on any exception. Store-level
        operational failures surface as TransientIOError so callers can retry.
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except OperationalError as e:
                await session.rollback()
                raise TransientIOError(f"Store unavailable: {e}") from e
            except Exception:
                await session.rollback()
                raise


# Singleton access
_db_manager: DatabaseManager | None = None


def init_db_manager(db_path: Path | str = "introflow.db") -> DatabaseManager:
    """Initialize the global database manager."""
    global _db_manager
    _db_manager = DatabaseManager(db_path)
    return _db_manager


def get_db_manager() -> DatabaseManager:
    """Get the database manager (must be initialized first)."""
    if _db_manager is None:
        raise RuntimeError("Database not initialized. Call init_db_manager() first.")
    return _db_manager


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions."""
    db = get_db_manager()
    async with db.session() as session:
        yield session
