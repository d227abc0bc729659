"""
Money helpers.

All amounts are integer cents. Percentages arrive as user input and are
parsed as Decimal; anything derived from a percentage is rounded to the
nearest cent, half-up.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

HUNDRED = Decimal(100)
ZERO_PCT = Decimal(0)


def parse_percentage(value, field: str) -> Decimal:
    """
    Parse a percentage in [0, 100].

    Accepts int, float, Decimal or numeric strings. Booleans are rejected.
    Raises ValueError with a field-specific message on bad input.
    """
    if value is None:
        return ZERO_PCT
    if isinstance(value, bool):
        raise ValueError(f"{field} must be a number")
    try:
        pct = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"{field} must be a number")
    if not pct.is_finite():
        raise ValueError(f"{field} must be a finite number")
    if pct < 0 or pct > HUNDRED:
        raise ValueError(f"{field} must be between 0 and 100")
    return pct


def percent_of_cents(amount_cents: int, pct: Decimal) -> int:
    """amount_cents * pct / 100, rounded half-up to a whole cent."""
    if not pct:
        return 0
    raw = Decimal(amount_cents) * pct / HUNDRED
    return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_cents(amount_cents: int | None) -> str | None:
    """Render cents as a fixed two-decimal string (e.g. 3300 -> "33.00")."""
    if amount_cents is None:
        return None
    sign = "-" if amount_cents < 0 else ""
    whole, frac = divmod(abs(amount_cents), 100)
    return f"{sign}{whole}.{frac:02d}"
