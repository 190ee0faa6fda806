"""API route modules."""

from introflow.api.routes.admin import router as admin_router
from introflow.api.routes.monitoring import router as monitoring_router

__all__ = ["admin_router", "monitoring_router"]
