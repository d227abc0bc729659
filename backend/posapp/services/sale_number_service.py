# Overview: Service-layer operations for sale numbering.

"""
Sale numbers: SAL-<YYYYMMDD>-<NNNN>

The sequence restarts every calendar day (UTC) and is derived from the
highest number already issued for that day, so no counter lives outside the
sales table. Two transactions can still compute the same "next" number; the
unique constraint on sales.sale_number rejects the loser, and the checkout
retries with a freshly computed number (see checkout_service).
"""

from __future__ import annotations

import re
from datetime import date

from sqlalchemy import func

from ..extensions import db
from ..models import Sale

SALE_NUMBER_PREFIX = "SAL"
SEQUENCE_PAD = 4
SALE_NUMBER_RE = re.compile(r"^SAL-(\d{8})-(\d{4,})$")


def day_prefix(on_date: date) -> str:
    return f"{SALE_NUMBER_PREFIX}-{on_date:%Y%m%d}-"


def format_sale_number(on_date: date, sequence: int) -> str:
    return f"{day_prefix(on_date)}{sequence:0{SEQUENCE_PAD}d}"


def parse_sequence(sale_number: str) -> int:
    """Return the numeric suffix of a sale number. Raises ValueError if malformed."""
    match = SALE_NUMBER_RE.match(sale_number or "")
    if not match:
        raise ValueError(f"Malformed sale number: {sale_number!r}")
    return int(match.group(2))


def next_sale_number(on_date: date) -> str:
    """
    Compute the next sale number for `on_date`.

    Must run inside the same transaction that inserts the sale. Sequences
    past 9999 widen rather than wrap, so ordering is by length first.
    """
    prefix = day_prefix(on_date)
    last = (
        db.session.query(Sale.sale_number)
        .filter(Sale.sale_number.like(f"{prefix}%"))
        .order_by(func.length(Sale.sale_number).desc(), Sale.sale_number.desc())
        .limit(1)
        .scalar()
    )

    sequence = 1
    if last:
        try:
            sequence = parse_sequence(last) + 1
        except ValueError:
            sequence = 1
    return format_sale_number(on_date, sequence)
