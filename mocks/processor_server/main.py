from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel

app = FastAPI(title="Mock Payment Processor", version="1.0.0")

# In-memory state, reset between test runs with reset()
PREFERENCES: Dict[str, Dict[str, Any]] = {}
IDEMPOTENCY: Dict[str, str] = {}
PAYMENTS: Dict[str, Dict[str, Any]] = {}
FAILURES: List[int] = []


def reset() -> None:
    PREFERENCES.clear()
    IDEMPOTENCY.clear()
    PAYMENTS.clear()
    FAILURES.clear()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _maybe_fail() -> None:
    if FAILURES:
        raise HTTPException(status_code=FAILURES.pop(0), detail="injected failure")


class SimulatedPayment(BaseModel):
    preference_id: str
    status: str = "approved"
    status_detail: Optional[str] = None
    payer_email: Optional[str] = None


class SimulatedFailures(BaseModel):
    status_codes: List[int]


class RefundBody(BaseModel):
    amount: Optional[float] = None


@app.get("/health")
def health(): return {"status": "ok"}


@app.post("/checkout/preferences", status_code=201)
def create_preference(body: Dict[str, Any], x_idempotency_key: Optional[str] = Header(None)):
    _maybe_fail()
    if not body.get("items") or not body.get("external_reference"):
        raise HTTPException(status_code=400, detail="items and external_reference are required")
    if x_idempotency_key and x_idempotency_key in IDEMPOTENCY:
        return PREFERENCES[IDEMPOTENCY[x_idempotency_key]]

    preference_id = f"pref-{uuid.uuid4().hex[:16]}"
    preference = {
        "id": preference_id,
        "init_point": f"https://checkout.mock/pay/{preference_id}",
        "external_reference": body["external_reference"],
        "items": body["items"],
        "expires": body.get("expires", False),
        "expiration_date_to": body.get("expiration_date_to"),
        "date_created": _now(),
    }
    PREFERENCES[preference_id] = preference
    if x_idempotency_key:
        IDEMPOTENCY[x_idempotency_key] = preference_id
    return preference


@app.put("/checkout/preferences/{preference_id}")
def update_preference(preference_id: str, body: Dict[str, Any]):
    _maybe_fail()
    preference = PREFERENCES.get(preference_id)
    if preference is None:
        raise HTTPException(status_code=404, detail="preference not found")
    preference.update({k: v for k, v in body.items() if k in ("expires", "expiration_date_to")})
    return preference


@app.get("/v1/payments/{payment_id}")
def get_payment(payment_id: str):
    _maybe_fail()
    payment = PAYMENTS.get(payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="payment not found")
    return payment


@app.post("/v1/payments/{payment_id}/refunds", status_code=201)
def refund_payment(payment_id: str, body: RefundBody, x_idempotency_key: Optional[str] = Header(None)):
    _maybe_fail()
    payment = PAYMENTS.get(payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="payment not found")
    if payment["status"] != "approved":
        raise HTTPException(status_code=400, detail=f"payment is {payment['status']}")

    amount = body.amount if body.amount is not None else payment["transaction_amount"]
    if amount > payment["transaction_amount"]:
        raise HTTPException(status_code=400, detail="amount exceeds payment")
    if amount == payment["transaction_amount"]:
        payment["status"] = "refunded"
    payment["date_last_updated"] = _now()
    return {"id": f"ref-{uuid.uuid4().hex[:12]}", "payment_id": payment_id, "amount": amount, "status": "approved"}


# Test helpers, not part of the processor's API

@app.post("/mock/payments", status_code=201)
def simulate_payment(body: SimulatedPayment):
    """Pay a preference as the checkout would, and return the resulting payment"""
    preference = PREFERENCES.get(body.preference_id)
    if preference is None:
        raise HTTPException(status_code=404, detail="preference not found")

    item = preference["items"][0]
    payment_id = str(len(PAYMENTS) + 1000001)
    PAYMENTS[payment_id] = {
        "id": int(payment_id),
        "status": body.status,
        "status_detail": body.status_detail or ("accredited" if body.status == "approved" else body.status),
        "transaction_amount": item["unit_price"],
        "currency_id": item["currency_id"],
        "external_reference": preference["external_reference"],
        "payer": {"email": body.payer_email},
        "date_created": _now(),
        "date_last_updated": _now(),
    }
    return PAYMENTS[payment_id]


@app.patch("/mock/payments/{payment_id}")
def update_payment_status(payment_id: str, body: Dict[str, Any]):
    payment = PAYMENTS.get(payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="payment not found")
    payment["status"] = body["status"]
    payment["status_detail"] = body.get("status_detail", payment["status_detail"])
    payment["date_last_updated"] = _now()
    return payment


@app.post("/mock/failures")
def inject_failures(body: SimulatedFailures):
    """Queue status codes the next processor calls will fail with"""
    FAILURES.extend(body.status_codes)
    return {"queued": len(FAILURES)}
