"""Amount conversion between decimal units and integer cents"""

from decimal import Decimal, InvalidOperation

from settle_gateway.domain.exceptions import ValidationError


def to_cents(amount: Decimal | int | str) -> int:
    """
    Convert a positive amount with at most 2 decimal places into cents.

    Raises:
        ValidationError: amount is not a number, not positive, or too precise
    """
    if isinstance(amount, float):
        amount = repr(amount)
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount: {amount!r}") from e

    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    if value <= 0:
        raise ValidationError("Amount must be greater than 0")
    if value.as_tuple().exponent < -2 and value != value.quantize(Decimal("0.01")):
        raise ValidationError("Amount must have at most 2 decimal places")

    return int(value.quantize(Decimal("0.01")) * 100)


def from_cents(amount_cents: int) -> Decimal:
    return (Decimal(amount_cents) / 100).quantize(Decimal("0.01"))


def reported_cents(amount: Decimal | int | float | str | None) -> int:
    """
    Cents for an amount reported by an outside party, rounded half-even.

    Missing amounts count as 0. Unlike to_cents nothing is validated; a value
    that is not a number raises decimal.InvalidOperation.
    """
    if amount is None:
        return 0
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1")))
