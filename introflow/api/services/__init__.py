"""Business logic behind the operator API."""

from introflow.api.services.admin_service import AdminService
from introflow.api.services.monitoring_service import MonitoringService

__all__ = ["AdminService", "MonitoringService"]
