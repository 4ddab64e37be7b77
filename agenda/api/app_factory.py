"""
FastAPI application factory.

Creates the application with the booking routes, error mapping for the
booking core's exception taxonomy, and a lifespan that starts the janitor
scheduler and closes the Supabase clients on shutdown.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..database import close_all_clients, get_client_stats
from ..exceptions import (
    AgendaError,
    AppointmentNotFoundError,
    InvalidPaymentRequestError,
    InvalidTransitionError,
    PaymentConfigurationError,
    ProviderUnavailableError,
    RecordStoreError,
    SlotConflictError,
)
from ..services.lifecycle_janitor import JanitorScheduler
from ..utils.circuit_breaker import get_circuit_stats
from ..utils.logging_config import configure_logging
from .routes import router

logger = logging.getLogger(__name__)

# exception -> (status code, action the client should take)
ERROR_RESPONSES = {
    ProviderUnavailableError: (503, "retry"),
    PaymentConfigurationError: (409, "configure_provider"),
    SlotConflictError: (409, "slot_taken"),
    InvalidPaymentRequestError: (422, "invalid_payment_request"),
    InvalidTransitionError: (409, "invalid_transition"),
    AppointmentNotFoundError: (404, "not_found"),
    RecordStoreError: (503, "retry"),
}


def _error_response(exc: AgendaError) -> JSONResponse:
    for exc_type, (status_code, action) in ERROR_RESPONSES.items():
        if isinstance(exc, exc_type):
            break
    else:
        status_code, action = 500, "error"
    return JSONResponse(
        status_code=status_code,
        content={"error": action, "detail": str(exc), "retryable": exc.retryable},
    )


def configure_error_handlers(app: FastAPI):
    """Map the booking core's exceptions to HTTP responses."""

    @app.exception_handler(AgendaError)
    async def agenda_error_handler(request: Request, exc: AgendaError):
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return _error_response(exc)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"error": "invalid_request", "detail": str(exc)})


def build_lifespan(janitor_scheduler: JanitorScheduler = None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.janitor_scheduler = janitor_scheduler
        if janitor_scheduler is not None:
            janitor_scheduler.start()
        try:
            yield
        finally:
            if janitor_scheduler is not None:
                janitor_scheduler.stop()
            await close_all_clients()
            logger.info("Booking core shut down")

    return lifespan


def create_app(janitor_scheduler: JanitorScheduler = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        janitor_scheduler: Optional scheduler started with the app

    Returns:
        Configured FastAPI application instance
    """
    configure_logging()

    app = FastAPI(
        title="Agenda Booking Core",
        description="Appointment lifecycle and PIX payment reconciliation.",
        version="1.0.0",
        lifespan=build_lifespan(janitor_scheduler),
    )
    configure_error_handlers(app)
    app.include_router(router)

    @app.get("/health", tags=["health"])
    async def health():
        return {
            "status": "ok",
            "circuits": get_circuit_stats(),
            "database": get_client_stats(),
        }

    return app
