"""Whole-rupee amount helpers."""

from __future__ import annotations

from typing import Any


def ensure_amount(value: Any, *, allow_zero: bool = False) -> int:
    """Return ``value`` as a positive whole-rupee integer.

    Raises:
        ValueError: If the value is fractional, non-numeric, negative, or zero
            (unless ``allow_zero``).
    """
    if isinstance(value, bool):
        raise ValueError("amount must be a number, not a boolean")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"amount must be a whole number of rupees, got {value}")
        value = int(value)
    try:
        amount = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"amount must be an integer, got {value!r}") from exc
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValueError(f"amount must be positive, got {amount}")
    return amount
