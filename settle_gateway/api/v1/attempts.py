"""Payment attempt endpoints: read, retry, cancel and refund"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query

from settle_gateway.api.dependencies import get_orchestrator
from settle_gateway.api.v1.schemas import (
    AttemptListResponse,
    AttemptResponse,
    CancelRequest,
    RefundRequest,
    RefundResponse,
    RetryRequest,
)
from settle_gateway.domain.models import PayerInfo
from settle_gateway.services.orchestrator import AttemptOrchestrator

router = APIRouter()


@router.get("/attempts/{attempt_id}", response_model=AttemptResponse)
def get_attempt(attempt_id: uuid.UUID, orchestrator: AttemptOrchestrator = Depends(get_orchestrator)):
    return AttemptResponse.model_validate(orchestrator.get_attempt(attempt_id))


@router.get("/attempts", response_model=AttemptListResponse)
def list_attempts(
    owner_id: str = Query(..., description="Account holder identifier"),
    status: Optional[str] = Query(None, description="Filter by status"),
    orchestrator: AttemptOrchestrator = Depends(get_orchestrator),
):
    attempts = orchestrator.list_attempts_by_owner(owner_id, status)
    return AttemptListResponse(attempts=[AttemptResponse.model_validate(a) for a in attempts])


@router.post("/attempts/{attempt_id}/retry", response_model=AttemptResponse)
async def retry_attempt(
    attempt_id: uuid.UUID,
    request_body: RetryRequest,
    orchestrator: AttemptOrchestrator = Depends(get_orchestrator),
):
    """Re-open a rejected or cancelled attempt with a fresh checkout"""
    payer = PayerInfo(**request_body.payer.model_dump()) if request_body.payer else None
    attempt = await orchestrator.retry(attempt_id, payer)
    return AttemptResponse.model_validate(attempt)


@router.post("/attempts/{attempt_id}/cancel", response_model=AttemptResponse)
async def cancel_attempt(
    attempt_id: uuid.UUID,
    request_body: CancelRequest,
    orchestrator: AttemptOrchestrator = Depends(get_orchestrator),
):
    """Cancel a pending or processing attempt"""
    attempt = await orchestrator.cancel(attempt_id, request_body.reason)
    return AttemptResponse.model_validate(attempt)


@router.post("/attempts/{attempt_id}/refund", response_model=RefundResponse)
async def refund_attempt(
    attempt_id: uuid.UUID,
    request_body: RefundRequest,
    orchestrator: AttemptOrchestrator = Depends(get_orchestrator),
):
    """Refund an approved attempt, fully or partially"""
    refund = await orchestrator.request_refund(attempt_id, request_body.amount, request_body.reason)
    return RefundResponse(refund_id=refund.refund_id, amount_cents=refund.amount_cents, status=refund.status)
