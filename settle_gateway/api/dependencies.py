"""Dependency injection for FastAPI endpoints"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from settle_gateway.config import settings
from settle_gateway.domain.notifications import HmacSignatureVerifier
from settle_gateway.infrastructure.clients.base import GatewayClient
from settle_gateway.infrastructure.clients.processor import ProcessorClient
from settle_gateway.infrastructure.database.session import SessionLocal, get_db
from settle_gateway.services.ledger import ObligationLedger
from settle_gateway.services.orchestrator import AttemptOrchestrator
from settle_gateway.services.reconciler import WebhookReconciler


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_gateway_client() -> GatewayClient:
    """Provide payment processor client instance"""
    return ProcessorClient()


def get_ledger(db: Session = Depends(get_db)) -> ObligationLedger:
    return ObligationLedger(db)


def get_orchestrator(
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
) -> AttemptOrchestrator:
    return AttemptOrchestrator(db, gateway)


def get_reconciler(gateway: GatewayClient = Depends(get_gateway_client)) -> WebhookReconciler:
    """Reconciler whose background work opens its own session"""
    return WebhookReconciler(
        gateway,
        verifier=HmacSignatureVerifier(settings.webhook_secret),
        session_factory=SessionLocal,
    )
