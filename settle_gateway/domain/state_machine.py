"""Obligation and payment attempt state machines plus the processor status table"""

from datetime import date
from typing import Dict, FrozenSet

from settle_gateway.domain.exceptions import InvalidStateTransition, UnmappedProcessorStatus

# Obligation statuses
PENDING = "pending"
PROCESSING = "processing"
OVERDUE = "overdue"
PAID = "paid"
CANCELLED = "cancelled"

OBLIGATION_STATUSES: FrozenSet[str] = frozenset({PENDING, PROCESSING, OVERDUE, PAID, CANCELLED})
SETTLEABLE: FrozenSet[str] = frozenset({PENDING, OVERDUE, PROCESSING})
OBLIGATION_TERMINAL: FrozenSet[str] = frozenset({PAID, CANCELLED})

# Attempt statuses ("pending", "processing" and "cancelled" are shared spellings)
APPROVED = "approved"
REJECTED = "rejected"
REFUNDED = "refunded"
IN_MEDIATION = "in_mediation"
CHARGED_BACK = "charged_back"

ATTEMPT_STATUSES: FrozenSet[str] = frozenset(
    {PENDING, PROCESSING, APPROVED, REJECTED, CANCELLED, REFUNDED, IN_MEDIATION, CHARGED_BACK}
)
ATTEMPT_ACTIVE: FrozenSet[str] = frozenset({PENDING, PROCESSING})
ATTEMPT_RETRYABLE: FrozenSet[str] = frozenset({REJECTED, CANCELLED})
ATTEMPT_TERMINAL_FAILURE: FrozenSet[str] = frozenset({CANCELLED, REJECTED, REFUNDED, CHARGED_BACK})
# money was taken under the attempt's tracked payment
ATTEMPT_SETTLED: FrozenSet[str] = frozenset({APPROVED, IN_MEDIATION, REFUNDED, CHARGED_BACK})

OBLIGATION_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({PROCESSING, OVERDUE, PAID, CANCELLED}),
    OVERDUE: frozenset({PROCESSING, PAID, CANCELLED}),
    PROCESSING: frozenset({PENDING, OVERDUE, PAID, CANCELLED}),
    # paid -> payable happens only through the refund reopening rule
    PAID: frozenset({PENDING, OVERDUE}),
    CANCELLED: frozenset(),
}

# Local attempt transitions. Anything else reported by the processor is an
# out-of-order delivery and is skipped.
ATTEMPT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({PROCESSING, APPROVED, REJECTED, CANCELLED}),
    PROCESSING: frozenset({APPROVED, REJECTED, CANCELLED}),
    APPROVED: frozenset({REFUNDED, IN_MEDIATION, CHARGED_BACK}),
    IN_MEDIATION: frozenset({APPROVED, REFUNDED, CHARGED_BACK}),
    # retry re-opens failed attempts; a late approval still settles money taken
    REJECTED: frozenset({PENDING, APPROVED}),
    CANCELLED: frozenset({PENDING, APPROVED}),
    REFUNDED: frozenset(),
    CHARGED_BACK: frozenset(),
}

# Processor status vocabulary
PROCESSOR_STATUSES = (
    "pending",
    "approved",
    "authorized",
    "in_process",
    "in_mediation",
    "rejected",
    "cancelled",
    "refunded",
    "charged_back",
)

PROCESSOR_STATUS_MAP: Dict[str, str] = {
    "approved": APPROVED,
    "pending": PROCESSING,
    "in_process": PROCESSING,
    "authorized": PROCESSING,
    "rejected": REJECTED,
    "cancelled": CANCELLED,
    "refunded": REFUNDED,
    "in_mediation": IN_MEDIATION,
    "charged_back": CHARGED_BACK,
}


def _check_status_table() -> None:
    missing = set(PROCESSOR_STATUSES) - set(PROCESSOR_STATUS_MAP)
    extra = set(PROCESSOR_STATUS_MAP) - set(PROCESSOR_STATUSES)
    if missing or extra:
        raise RuntimeError(f"Processor status table out of sync: missing={sorted(missing)} extra={sorted(extra)}")
    unknown_targets = set(PROCESSOR_STATUS_MAP.values()) - ATTEMPT_STATUSES
    if unknown_targets:
        raise RuntimeError(f"Processor status table maps to unknown attempt statuses: {sorted(unknown_targets)}")


_check_status_table()


def map_processor_status(processor_status: str) -> str:
    """Translate a processor status into the local attempt vocabulary"""
    try:
        return PROCESSOR_STATUS_MAP[(processor_status or "").strip().lower()]
    except KeyError:
        raise UnmappedProcessorStatus(f"Unmapped processor status: {processor_status!r}") from None


def can_transition_attempt(old: str, new: str) -> bool:
    return new in ATTEMPT_TRANSITIONS.get(old, frozenset())


def assert_attempt_transition(old: str, new: str) -> None:
    if not can_transition_attempt(old, new):
        raise InvalidStateTransition(f"Illegal payment attempt transition: {old} -> {new}", current_status=old)


def assert_obligation_transition(old: str, new: str) -> None:
    if new not in OBLIGATION_TRANSITIONS.get(old, frozenset()):
        raise InvalidStateTransition(f"Illegal obligation transition: {old} -> {new}", current_status=old)


def payable_status(due_date: date, today: date) -> str:
    """Status an obligation falls back to when it becomes payable again"""
    return OVERDUE if due_date < today else PENDING


def is_past_due(status: str, due_date: date, today: date) -> bool:
    return status == PENDING and due_date < today
