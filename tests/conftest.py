"""Shared fixtures for IntroFlow tests."""

import tempfile
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from introflow.api.app import create_app
from introflow.core.config import Config
from introflow.db.database import DatabaseManager, init_db_manager
from introflow.db.models import User


@pytest.fixture
async def db_manager():
    """Provide a temporary database manager."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        manager = DatabaseManager(db_path)
        await manager.init_db()
        yield manager
        await manager.close()


@pytest.fixture
def config():
    """Config with quiet hours disabled so sends are not time-of-day dependent."""
    config = Config()
    config.rate_limits.quiet_hours = None
    config.rate_limits.default_timezone = "UTC"
    return config


@pytest.fixture
def add_user(db_manager: DatabaseManager):
    """Insert a user and return its id."""

    async def _add_user(**fields) -> str:
        async with db_manager.session() as session:
            user = User(**{"timezone": "UTC", **fields})
            session.add(user)
            await session.flush()
            return user.id

    return _add_user


@asynccontextmanager
async def lifespan_context(app):
    """Manually trigger app lifespan for testing."""
    # Startup
    db_manager = init_db_manager(app.state.config.db_path)
    await db_manager.init_db()
    app.state.db_manager = db_manager

    yield

    # Shutdown
    await db_manager.close()


@pytest.fixture
async def api_app():
    """Create a test FastAPI app with a temporary database, lifespan started."""
    with tempfile.TemporaryDirectory() as tmpdir:
        app = create_app(Config(db_path=str(Path(tmpdir) / "test.db")))
        async with lifespan_context(app):
            yield app


@pytest.fixture
async def client(api_app):
    """HTTP client bound to the test app."""
    async with AsyncClient(transport=ASGITransport(app=api_app), base_url="http://test") as client:
        yield client
