"""Integration tests for the obligation ledger against the test database"""

import uuid
import pytest
from datetime import timedelta
from sqlalchemy.orm import Session
from settle_gateway.domain import state_machine as sm
from settle_gateway.domain.exceptions import InvalidStateTransition, NotFoundError, ValidationError
from settle_gateway.infrastructure.database.models import Obligation
from settle_gateway.services.ledger import ObligationLedger
from settle_gateway.utils.date_utils import utcnow

pytestmark = pytest.mark.integration


def _past_ledger(db: Session, days: int = 10) -> ObligationLedger:
    """Ledger whose clock runs `days` behind, to create obligations that are now past due"""
    past = utcnow() - timedelta(days=days)
    return ObligationLedger(db, clock=lambda: past)


def _create(ledger: ObligationLedger, due_in_days: int = 5, **overrides) -> Obligation:
    fields = dict(
        owner_id="owner_1",
        amount="250.75",
        currency="USD",
        due_date=ledger.today() + timedelta(days=due_in_days),
        category="fine",
        description="Parking fine",
    )
    fields.update(overrides)
    return ledger.create(**fields)


def test_create_obligation(db, ledger):
    obligation = _create(ledger, notes="Ticket #42", created_by="admin_7")
    db.commit()

    assert obligation.status == sm.PENDING
    assert obligation.amount_cents == 25075
    assert obligation.currency == "USD"
    assert obligation.payment_attempts == 0
    assert obligation.version == 1
    assert [(h.from_status, h.to_status, h.actor) for h in obligation.history] == [(None, sm.PENDING, "admin_7")]


def test_create_normalises_currency(db, ledger):
    assert _create(ledger, currency="ars").currency == "ARS"


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": "0"},
        {"amount": "-10"},
        {"amount": "10.001"},
        {"currency": "EUR"},
        {"category": "loan"},
        {"description": "   "},
        {"description": "x" * 501},
        {"notes": "x" * 1001},
        {"owner_id": ""},
    ],
)
def test_create_validation(db, ledger, overrides):
    with pytest.raises(ValidationError):
        _create(ledger, **overrides)


def test_due_date_in_the_past_is_rejected(db, ledger):
    with pytest.raises(ValidationError):
        _create(ledger, due_in_days=-1)


def test_due_today_is_accepted(db, ledger):
    assert _create(ledger, due_in_days=0).status == sm.PENDING


def test_get_unknown_obligation(db, ledger):
    with pytest.raises(NotFoundError):
        ledger.get(uuid.uuid4())


def test_get_flips_past_due_pending_to_overdue(db, ledger):
    obligation = _create(_past_ledger(db), due_in_days=2)
    db.commit()

    loaded = ledger.get(obligation.id)
    db.commit()

    assert loaded.status == sm.OVERDUE
    assert loaded.history[-1].from_status == sm.PENDING
    assert loaded.history[-1].actor == "system"


def test_list_by_owner_applies_overdue_and_filters(db, ledger):
    _create(_past_ledger(db), due_in_days=2)
    _create(ledger)
    _create(ledger, owner_id="owner_2")
    db.commit()

    assert len(ledger.list_by_owner("owner_1")) == 2
    overdue = ledger.list_by_owner("owner_1", status=sm.OVERDUE)
    assert len(overdue) == 1


def test_mark_processing_then_paid(db, ledger):
    obligation = _create(ledger)
    attempt_id = uuid.uuid4()

    ledger.mark_processing(obligation, attempt_id)
    assert obligation.status == sm.PROCESSING
    assert obligation.active_attempt_id == attempt_id
    assert obligation.payment_attempts == 1
    assert obligation.last_payment_attempt_at is not None

    assert ledger.mark_paid(obligation, attempt_id) is True
    assert obligation.status == sm.PAID
    assert obligation.paid_attempt_id == attempt_id
    assert obligation.active_attempt_id is None


def test_mark_paid_is_idempotent_for_the_same_attempt(db, ledger):
    obligation = _create(ledger)
    attempt_id = uuid.uuid4()
    ledger.mark_paid(obligation, attempt_id)
    history_size = len(obligation.history)

    assert ledger.mark_paid(obligation, attempt_id) is False
    assert len(obligation.history) == history_size


def test_mark_paid_by_another_attempt_fails(db, ledger):
    obligation = _create(ledger)
    ledger.mark_paid(obligation, uuid.uuid4())

    with pytest.raises(InvalidStateTransition) as exc_info:
        ledger.mark_paid(obligation, uuid.uuid4())
    assert exc_info.value.current_status == sm.PAID


def test_mark_processing_requires_payable(db, ledger):
    obligation = _create(ledger)
    ledger.mark_processing(obligation, uuid.uuid4())

    with pytest.raises(InvalidStateTransition):
        ledger.mark_processing(obligation, uuid.uuid4())


def test_mark_cancelled(db, ledger):
    obligation = _create(ledger)

    assert ledger.mark_cancelled(obligation, "Waived") is True
    assert ledger.mark_cancelled(obligation, "Waived again") is False
    assert obligation.status == sm.CANCELLED
    with pytest.raises(InvalidStateTransition):
        ledger.mark_paid(obligation, uuid.uuid4())


def test_paid_obligation_cannot_be_cancelled(db, ledger):
    obligation = _create(ledger)
    ledger.mark_paid(obligation, uuid.uuid4())

    with pytest.raises(InvalidStateTransition):
        ledger.mark_cancelled(obligation, "Too late")


def test_revert_to_pending(db, ledger):
    obligation = _create(ledger)
    ledger.mark_processing(obligation, uuid.uuid4())

    assert ledger.revert_to_pending(obligation, "Payment rejected") == sm.PENDING
    assert obligation.status == sm.PENDING
    assert obligation.active_attempt_id is None


def test_revert_lands_on_overdue_when_past_due(db, ledger):
    past_ledger = _past_ledger(db)
    obligation = _create(past_ledger, due_in_days=2)
    past_ledger.mark_processing(obligation, uuid.uuid4())
    db.commit()

    assert ledger.revert_to_pending(obligation, "Payment rejected") == sm.OVERDUE
    assert obligation.status == sm.OVERDUE


def test_revert_requires_processing(db, ledger):
    obligation = _create(ledger)
    with pytest.raises(InvalidStateTransition):
        ledger.revert_to_pending(obligation, "nothing to revert")


def test_reopen_after_refund(db, ledger):
    obligation = _create(ledger)
    attempt_id = uuid.uuid4()
    ledger.mark_paid(obligation, attempt_id)

    with pytest.raises(InvalidStateTransition):
        ledger.reopen_after_refund(obligation, uuid.uuid4())

    assert ledger.reopen_after_refund(obligation, attempt_id) == sm.PENDING
    assert obligation.paid_attempt_id is None
    assert ledger.can_be_settled(obligation)


def test_sweep_overdue(db, ledger):
    past_ledger = _past_ledger(db)
    _create(past_ledger, due_in_days=1)
    _create(past_ledger, due_in_days=3)
    _create(ledger)
    db.commit()

    assert ledger.sweep_overdue() == 2
    db.commit()
    assert ledger.sweep_overdue() == 0


def test_archive_dormant_only_touches_old_terminal_records(db, ledger):
    past_ledger = _past_ledger(db, days=30)
    old_cancelled = _create(past_ledger)
    past_ledger.mark_cancelled(old_cancelled, "Waived")
    old_pending = _create(past_ledger, due_in_days=60)
    recent_cancelled = _create(ledger)
    ledger.mark_cancelled(recent_cancelled, "Waived")
    db.commit()

    assert ledger.archive_dormant(timedelta(days=7)) == 1
    db.commit()

    assert db.get(Obligation, old_cancelled.id).archived_at is not None
    assert db.get(Obligation, old_pending.id).archived_at is None
    assert db.get(Obligation, recent_cancelled.id).archived_at is None
