"""Obligation endpoints: create, read, cancel and start a checkout"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from settle_gateway.api.dependencies import get_ledger, get_orchestrator
from settle_gateway.api.v1.schemas import (
    AttemptListResponse,
    AttemptResponse,
    CancelRequest,
    ObligationCreateRequest,
    ObligationListResponse,
    ObligationResponse,
    PayerSchema,
)
from settle_gateway.domain.models import PayerInfo
from settle_gateway.infrastructure.database.session import get_db, run_in_transaction
from settle_gateway.services.ledger import ObligationLedger
from settle_gateway.services.orchestrator import AttemptOrchestrator

router = APIRouter()


@router.post("/obligations", response_model=ObligationResponse, status_code=201)
def create_obligation(
    request_body: ObligationCreateRequest,
    db: Session = Depends(get_db),
    ledger: ObligationLedger = Depends(get_ledger),
):
    """Register a new obligation owed by an account holder"""
    obligation = run_in_transaction(
        db,
        lambda: ledger.create(
            owner_id=request_body.owner_id,
            amount=request_body.amount,
            currency=request_body.currency,
            due_date=request_body.due_date,
            category=request_body.category,
            description=request_body.description,
            notes=request_body.notes,
            created_by=request_body.created_by,
        ),
    )
    return ObligationResponse.model_validate(obligation)


@router.get("/obligations/{obligation_id}", response_model=ObligationResponse)
def get_obligation(
    obligation_id: uuid.UUID,
    db: Session = Depends(get_db),
    ledger: ObligationLedger = Depends(get_ledger),
):
    """
    Retrieve an obligation with its status history.

    A pending obligation past its due date is flipped to overdue on read.
    """
    obligation = run_in_transaction(db, lambda: ledger.get(obligation_id))
    return ObligationResponse.model_validate(obligation)


@router.get("/obligations", response_model=ObligationListResponse)
def list_obligations(
    owner_id: str = Query(..., description="Account holder identifier"),
    status: Optional[str] = Query(None, description="Filter by status"),
    db: Session = Depends(get_db),
    ledger: ObligationLedger = Depends(get_ledger),
):
    obligations = run_in_transaction(db, lambda: ledger.list_by_owner(owner_id, status))
    return ObligationListResponse(
        owner_id=owner_id,
        obligations=[ObligationResponse.model_validate(o) for o in obligations],
    )


@router.post("/obligations/{obligation_id}/cancel", response_model=ObligationResponse)
async def cancel_obligation(
    obligation_id: uuid.UUID,
    request_body: CancelRequest,
    orchestrator: AttemptOrchestrator = Depends(get_orchestrator),
):
    """Cancel an unpaid obligation and any checkout still in flight"""
    obligation = await orchestrator.cancel_obligation(obligation_id, request_body.reason or "Cancelled by operator")
    return ObligationResponse.model_validate(obligation)


@router.post("/obligations/{obligation_id}/attempts", response_model=AttemptResponse, status_code=201)
async def create_attempt(
    obligation_id: uuid.UUID,
    payer: PayerSchema,
    orchestrator: AttemptOrchestrator = Depends(get_orchestrator),
):
    """
    Start paying an obligation.

    Returns the attempt carrying the checkout URL to redirect the payer to. An
    attempt opened in the last few minutes is returned instead of a new one.
    """
    attempt = await orchestrator.create_attempt(obligation_id, PayerInfo(**payer.model_dump()))
    return AttemptResponse.model_validate(attempt)


@router.get("/obligations/{obligation_id}/attempts", response_model=AttemptListResponse)
def list_obligation_attempts(
    obligation_id: uuid.UUID,
    orchestrator: AttemptOrchestrator = Depends(get_orchestrator),
):
    attempts = orchestrator.list_attempts_for_obligation(obligation_id)
    return AttemptListResponse(attempts=[AttemptResponse.model_validate(a) for a in attempts])
