"""Multi-variant introduction sagas."""

from introflow.sagas.base import SagaService
from introflow.sagas.completion import CompletionCoordinator
from introflow.sagas.connection_requests import ConnectionRequestSaga
from introflow.sagas.expiry import VARIANTS, force_close, saga_for, sweep_expired
from introflow.sagas.handlers import register_saga_handlers
from introflow.sagas.offers import OfferSaga
from introflow.sagas.opportunities import OpportunitySaga

__all__ = [
    "VARIANTS",
    "CompletionCoordinator",
    "ConnectionRequestSaga",
    "OfferSaga",
    "OpportunitySaga",
    "SagaService",
    "force_close",
    "register_saga_handlers",
    "saga_for",
    "sweep_expired",
]
