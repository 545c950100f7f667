"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID

Currency = Literal["ARS", "USD"]
Category = Literal["service", "product", "subscription", "fine", "other"]


class ObligationCreateRequest(BaseModel):
    """Request body for POST /v1/obligations"""

    owner_id: str = Field(..., min_length=1, description="Account holder identifier")
    description: str = Field(..., min_length=1, max_length=500)
    amount: Decimal = Field(..., gt=0, decimal_places=2, description="Amount owed, at most 2 decimals")
    currency: Currency = "ARS"
    due_date: date
    category: Category = "other"
    notes: Optional[str] = Field(None, max_length=1000)
    created_by: Optional[str] = None


class CancelRequest(BaseModel):
    """Request body for cancellation endpoints"""

    reason: Optional[str] = Field(None, max_length=500)


class PayerSchema(BaseModel):
    """Payer details forwarded to the processor checkout"""

    email: str = Field(..., min_length=3)
    name: str = ""
    surname: str = ""
    identification_type: Optional[str] = None
    identification_number: Optional[str] = None


class RetryRequest(BaseModel):
    """Request body for POST /v1/attempts/{id}/retry"""

    payer: Optional[PayerSchema] = None


class RefundRequest(BaseModel):
    """Request body for POST /v1/attempts/{id}/refund"""

    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)


class StatusChangeSchema(BaseModel):
    """Single status history entry"""

    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[str]
    to_status: str
    actor: str
    reason: Optional[str]
    created_at: datetime


class ObligationResponse(BaseModel):
    """Obligation as returned by the API"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: str
    description: str
    amount_cents: int
    currency: str
    due_date: date
    status: str
    category: str
    notes: Optional[str]
    reminders_sent: int
    payment_attempts: int
    paid_attempt_id: Optional[UUID]
    created_at: datetime
    history: List[StatusChangeSchema] = []


class ObligationListResponse(BaseModel):
    """Response for GET /v1/obligations"""

    owner_id: str
    obligations: List[ObligationResponse]


class AttemptResponse(BaseModel):
    """Payment attempt as returned by the API"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    obligation_id: UUID
    owner_id: str
    amount_cents: int
    currency: str
    status: str
    checkout_url: Optional[str]
    processor_payment_id: Optional[str]
    external_reference: str
    attempts_count: int
    status_detail: Optional[str]
    refunded_amount_cents: int
    created_at: datetime
    history: List[StatusChangeSchema] = []


class AttemptListResponse(BaseModel):
    """Response for attempt listings"""

    attempts: List[AttemptResponse]


class RefundResponse(BaseModel):
    """Response for POST /v1/attempts/{id}/refund"""

    refund_id: str
    amount_cents: int
    status: str


class ErrorResponse(BaseModel):
    detail: str
    current_status: Optional[str] = None
