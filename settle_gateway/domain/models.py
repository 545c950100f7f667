"""Domain models - pure Python dataclasses exchanged with the payment processor"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class PayerInfo:
    """Who is paying, as sent to the processor checkout"""

    email: str
    name: str = ""
    surname: str = ""
    identification_type: Optional[str] = None
    identification_number: Optional[str] = None


@dataclass
class CheckoutRequest:
    """Everything the processor needs to open a checkout session"""

    amount_cents: int
    currency: str
    external_reference: str
    title: str
    category: str
    payer: PayerInfo
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class CheckoutSession:
    """Checkout session created at the processor"""

    session_id: str
    redirect_url: str
    external_reference: str


@dataclass
class PaymentInfo:
    """Authoritative payment state fetched from the processor"""

    payment_id: str
    status: str
    amount_cents: int
    currency: Optional[str]
    external_reference: Optional[str]
    status_detail: Optional[str] = None
    payer_email: Optional[str] = None
    last_modified: Optional[datetime] = None
    raw_detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundInfo:
    """Refund issued by the processor"""

    refund_id: str
    amount_cents: int
    status: str


@dataclass
class Notification:
    """Routing data extracted from an inbound webhook"""

    notification_type: str
    external_id: str
    notification_id: Optional[str] = None
    action: Optional[str] = None
