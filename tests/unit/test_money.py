"""Unit tests for amount conversion"""

import pytest
from decimal import Decimal, InvalidOperation
from settle_gateway.domain.exceptions import ValidationError
from settle_gateway.utils.money import from_cents, reported_cents, to_cents


@pytest.mark.parametrize(
    "amount,cents",
    [
        ("1000", 100000),
        ("10.5", 1050),
        (Decimal("0.01"), 1),
        (25, 2500),
        (19.99, 1999),
        ("3.10", 310),
    ],
)
def test_to_cents(amount, cents):
    assert to_cents(amount) == cents


@pytest.mark.parametrize("amount", ["0", "-5", 0, "-0.01"])
def test_to_cents_rejects_non_positive(amount):
    with pytest.raises(ValidationError):
        to_cents(amount)


def test_to_cents_rejects_more_than_two_decimals():
    with pytest.raises(ValidationError, match="2 decimal places"):
        to_cents("10.001")


def test_to_cents_accepts_trailing_zeros():
    assert to_cents("10.500") == 1050


@pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity"])
def test_to_cents_rejects_garbage(amount):
    with pytest.raises(ValidationError):
        to_cents(amount)


def test_from_cents():
    assert from_cents(100000) == Decimal("1000.00")
    assert from_cents(1) == Decimal("0.01")


@pytest.mark.parametrize(
    "amount,cents",
    [
        (3200.0, 320000),
        ("3200", 320000),
        (0, 0),
        (None, 0),
        ("10.125", 1012),
        ("10.135", 1014),
    ],
)
def test_reported_cents(amount, cents):
    assert reported_cents(amount) == cents


def test_reported_cents_fails_on_garbage():
    with pytest.raises(InvalidOperation):
        reported_cents("abc")
