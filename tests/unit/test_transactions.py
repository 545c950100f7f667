"""Unit tests for the optimistic-concurrency unit-of-work runner"""

import pytest
from unittest.mock import MagicMock
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from settle_gateway.domain.exceptions import ConcurrentUpdateError, InvalidStateTransition
from settle_gateway.infrastructure.database.session import run_in_transaction


def test_commits_result_of_work():
    db = MagicMock()
    assert run_in_transaction(db, lambda: "done") == "done"
    db.commit.assert_called_once()
    db.rollback.assert_not_called()


def test_reruns_work_after_version_conflict():
    db = MagicMock()
    db.commit.side_effect = [StaleDataError("version mismatch"), None]
    calls = []

    result = run_in_transaction(db, lambda: calls.append(1) or len(calls), max_attempts=3)

    assert result == 2
    assert len(calls) == 2
    db.rollback.assert_called_once()


def test_reruns_work_after_unique_index_race():
    db = MagicMock()
    db.commit.side_effect = [IntegrityError("INSERT", {}, Exception("unique")), None]

    assert run_in_transaction(db, lambda: "ok", max_attempts=2) == "ok"
    assert db.commit.call_count == 2


def test_gives_up_after_retry_budget():
    db = MagicMock()
    db.commit.side_effect = StaleDataError("version mismatch")

    with pytest.raises(ConcurrentUpdateError):
        run_in_transaction(db, lambda: None, max_attempts=3)

    assert db.commit.call_count == 3
    assert db.rollback.call_count == 3


def test_domain_errors_roll_back_and_propagate_without_retry():
    db = MagicMock()
    calls = []

    def work():
        calls.append(1)
        raise InvalidStateTransition("nope", current_status="paid")

    with pytest.raises(InvalidStateTransition):
        run_in_transaction(db, work, max_attempts=3)

    assert len(calls) == 1
    db.rollback.assert_called_once()
    db.commit.assert_not_called()
