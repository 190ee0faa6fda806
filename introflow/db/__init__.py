"""Database package for the IntroFlow coordination store."""

from introflow.db.database import DatabaseManager, get_async_session, get_db_manager, init_db_manager

__all__ = [
    "DatabaseManager",
    "get_async_session",
    "get_db_manager",
    "init_db_manager",
]
