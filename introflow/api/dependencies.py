"""FastAPI dependency injection providers."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from introflow.api.services.admin_service import AdminService
from introflow.api.services.monitoring_service import MonitoringService
from introflow.core.config import Config
from introflow.db.database import get_async_session
from introflow.runtime.engine import CoordinationEngine


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide database session.

    Yields:
        AsyncSession: Database session with automatic commit/rollback
    """
    async for session in get_async_session():
        yield session


def get_config(request: Request) -> Config:
    """Get application configuration from app state."""
    config: Config = request.app.state.config
    return config


def get_engine(request: Request) -> CoordinationEngine | None:
    """
    Get coordination engine from app state.

    The engine is None when the API runs without a worker.
    """
    return getattr(request.app.state, "engine", None)


async def get_monitoring_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    engine: Annotated[CoordinationEngine | None, Depends(get_engine)],
) -> MonitoringService:
    """Get monitoring service instance."""
    return MonitoringService(session, engine)


async def get_admin_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    config: Annotated[Config, Depends(get_config)],
) -> AdminService:
    """Get admin service instance."""
    return AdminService(session, config)


# Type aliases for annotating dependencies
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Engine = Annotated[CoordinationEngine | None, Depends(get_engine)]
Monitoring = Annotated[MonitoringService, Depends(get_monitoring_service)]
Admin = Annotated[AdminService, Depends(get_admin_service)]
