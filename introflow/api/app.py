"""FastAPI application factory for the IntroFlow operator API."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from introflow.api.routes.admin import router as admin_router
from introflow.api.routes.monitoring import router as monitoring_router
from introflow.core.config import Config
from introflow.db.database import init_db_manager
from introflow.runtime.engine import CoordinationEngine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown lifecycle."""
    # Startup: Initialize database
    db_manager = init_db_manager(app.state.config.db_path)
    await db_manager.init_db()

    # Note: engine is already set in create_app (or attached later by the CLI)
    app.state.db_manager = db_manager

    yield

    # Shutdown: Cleanup resources
    await db_manager.close()


def create_app(config: Config | None = None, engine: CoordinationEngine | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Application configuration (defaults to Config()).
        engine: Optional running CoordinationEngine reported by /health.

    Returns:
        Configured FastAPI application instance
    """
    config = config or Config()

    app = FastAPI(
        title="IntroFlow Operator API",
        description="Queue monitoring and admin operations for the IntroFlow coordination engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount routes at /api/v1
    api_v1 = FastAPI()
    api_v1.include_router(monitoring_router)
    api_v1.include_router(admin_router)

    # Share state with sub-app so dependencies can reach config and engine
    api_v1.state = app.state

    app.mount("/api/v1", api_v1)

    return app


def attach_engine(app: FastAPI, engine: CoordinationEngine) -> None:
    """
    Attach a coordination engine to a running FastAPI application.

    Args:
        app: FastAPI application instance
        engine: Running CoordinationEngine
    """
    app.state.engine = engine
