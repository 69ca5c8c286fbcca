"""
Threshold resolver: maps a quote amount to the approval level that gates it.

A level applies when it is active and
``amount_threshold <= amount <= max_amount_threshold`` (a null max is
unbounded). When bands overlap the lowest ``order_level`` wins; equal ranks
fall back to the order of the input sequence.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence, TypeVar, Union

from tiered_approvals.services.errors import ValidationError

Amount = Union[Decimal, int, float, str]
L = TypeVar("L")


def to_amount(value: Amount, field_name: str = "amount") -> Decimal:
    """Coerce to Decimal. Floats go through str() so 0.1 stays 0.1."""
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"{field_name} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return amount


def check_amount(value: Amount) -> Decimal:
    amount = to_amount(value)
    if amount < 0:
        raise ValidationError("amount must be greater than or equal to 0")
    return amount


def check_band(
    amount_threshold: Amount, max_amount_threshold: Optional[Amount]
) -> tuple[Decimal, Optional[Decimal]]:
    """Validate a band and return it as Decimals."""
    low = to_amount(amount_threshold, "amount_threshold")
    if low < 0:
        raise ValidationError("amount_threshold must be greater than or equal to 0")
    if max_amount_threshold is None:
        return low, None
    high = to_amount(max_amount_threshold, "max_amount_threshold")
    if high < low:
        raise ValidationError(
            "max_amount_threshold must be greater than or equal to amount_threshold"
        )
    return low, high


def band_contains(level, amount: Decimal) -> bool:
    if amount < level.amount_threshold:
        return False
    return level.max_amount_threshold is None or amount <= level.max_amount_threshold


def resolve(amount: Amount, levels: Sequence[L]) -> Optional[L]:
    """
    Pick the level governing ``amount``. Pure; returns None when nothing applies
    or ``amount`` is not a finite number.

    Works on anything exposing ``active``, ``amount_threshold``,
    ``max_amount_threshold`` and ``order_level``.
    """
    try:
        value = to_amount(amount)
    except ValidationError:
        return None
    best = None
    for level in levels:
        if not level.active or not band_contains(level, value):
            continue
        # strict < keeps the first of equal ranks
        if best is None or level.order_level < best.order_level:
            best = level
    return best


def resolve_amount(amount: Amount, levels: Sequence[L]) -> Optional[L]:
    """Validate ``amount`` then resolve. Raises ValidationError for negatives."""
    return resolve(check_amount(amount), levels)
