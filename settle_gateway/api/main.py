"""FastAPI application factory"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from settle_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from settle_gateway.api.v1 import attempts, obligations, webhooks
from settle_gateway.domain.exceptions import (
    ConcurrentUpdateError,
    DomainException,
    GatewayError,
    InvalidStateTransition,
    NotFoundError,
    PaymentRetryLimitError,
    ValidationError,
)
from settle_gateway.infrastructure.observability.logging import setup_logging
from settle_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)

logger = logging.getLogger(__name__)


def status_code_for(exc: DomainException) -> int:
    """HTTP status for a domain error raised out of a route"""
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (InvalidStateTransition, PaymentRetryLimitError, ConcurrentUpdateError)):
        return 409
    if isinstance(exc, GatewayError):
        return 503 if exc.retryable else 502
    return 500


async def domain_error_handler(request: Request, exc: DomainException):
    status_code = status_code_for(exc)
    content = {"detail": str(exc)}
    current_status = getattr(exc, "current_status", None)
    if current_status is not None:
        content["current_status"] = current_status
    if isinstance(exc, PaymentRetryLimitError):
        content["attempts_count"] = exc.attempts_count

    log = logger.error if status_code >= 500 else logger.info
    log(
        f"{type(exc).__name__}: {exc}",
        extra={"request_id": getattr(request.state, "request_id", "unknown"), "status_code": status_code},
    )
    return JSONResponse(status_code=status_code, content=content)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(
        f"Unexpected error: {exc}",
        extra={"request_id": getattr(request.state, "request_id", "unknown")},
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Settle Gateway",
        description="Obligation ledger and payment attempt reconciliation service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(DomainException, domain_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(obligations.router, prefix="/v1", tags=["obligations"])
    app.include_router(attempts.router, prefix="/v1", tags=["attempts"])
    app.include_router(webhooks.router, prefix="/v1", tags=["webhooks"])

    return app


app = create_app()
