from __future__ import annotations

from typing import Any


# Maximum amount: 999,999,999 in whole currency units
# This prevents database overflow issues and nonsensical totals
MAX_AMOUNT = 999_999_999

# Largest quantity one sub-variant may book in a single submission
MAX_QUANTITY = 1_000_000


class ValidationError(ValueError):
    """400-level input problem. Raised before anything is written."""


def coerce_int(value: Any, field: str, *, default: int | None = None) -> int:
    """
    Strict integer coercion for JSON input.

    Rejects floats, booleans, decimals and scientific notation. None returns
    default when one is given.
    """
    if value is None:
        if default is not None:
            return default
        raise ValidationError(f"{field} is required")

    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value

    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            if default is not None:
                return default
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")

    # Reject floats explicitly
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValidationError(f"{field} must be an integer, not a decimal")

    raise ValidationError(f"{field} must be an integer")


def coerce_text(value: Any, field: str, *, max_length: int = 255) -> str | None:
    """Strip a text value; None and blank strings become None."""
    if value is None:
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValidationError(f"{field} must be a string")
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return text


def enforce_quantity(quantity: int, field: str) -> int:
    if quantity < 0:
        raise ValidationError(f"{field} cannot be negative")
    if quantity > MAX_QUANTITY:
        raise ValidationError(f"{field} cannot exceed {MAX_QUANTITY}")
    return quantity


def enforce_amount(amount: int, field: str) -> int:
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT:,}")
    return amount
