"""
Sales Service - persistence and lookup of completed sales

Sales and their items are written once, by checkout_service, through
create_sale_with_items(). Everything else here is read-only.

VISIBILITY: cashiers only see sales they processed; managers and admins
see all sales.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Sale, SaleItem, User
from ..models.sales import PAYMENT_METHODS
from ..pagination import paginate
from ..time_utils import parse_iso_datetime

SALE_SORT_FIELDS = {"created_at", "final_amount_cents", "sale_number", "total_cents"}


def create_sale_with_items(sale_data: dict, items: list[dict]) -> Sale:
    """
    Add one Sale row plus one SaleItem per entry in `items` and flush.

    Does not commit: the caller's transaction decides. Each item dict needs
    product_id, quantity and unit_price_cents; line totals are derived here.
    """
    sale = Sale(**sale_data)
    for item in items:
        sale.items.append(SaleItem(
            product_id=item["product_id"],
            quantity=item["quantity"],
            unit_price_cents=item["unit_price_cents"],
            line_total_cents=item["unit_price_cents"] * item["quantity"],
        ))
    db.session.add(sale)
    db.session.flush()
    return sale


def scope_for_user(query, user: User | None):
    """Restrict a Sale query to what `user` may see."""
    if user is not None and user.is_cashier:
        query = query.filter(Sale.user_id == user.id)
    return query


def get_sale(sale_id: int, user: User | None = None) -> Sale:
    sale = scope_for_user(db.session.query(Sale).filter(Sale.id == sale_id), user).first()
    if not sale:
        raise NotFoundError("Sale not found", details={"sale_id": sale_id})
    return sale


def _ordered(query, sort_by: str | None, sort_order: str | None):
    field = sort_by if sort_by in SALE_SORT_FIELDS else "created_at"
    column = getattr(Sale, field)
    if sort_order == "asc":
        return query.order_by(column.asc(), Sale.id.asc())
    return query.order_by(column.desc(), Sale.id.desc())


def list_sales(
    *,
    user: User | None = None,
    page: int | None = None,
    limit: int | None = None,
    sort_by: str | None = None,
    sort_order: str | None = None,
) -> dict:
    query = _ordered(scope_for_user(db.session.query(Sale), user), sort_by, sort_order)
    sales, pagination = paginate(query, page, limit)
    return {
        "items": [s.to_dict() for s in sales],
        "pagination": pagination,
    }


def _parse_bound(value: str | None, field: str) -> datetime | None:
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def search_sales(
    *,
    user: User | None = None,
    q: str | None = None,
    sale_number: str | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    payment_method: str | None = None,
    start: str | None = None,
    end: str | None = None,
    min_amount_cents: int | None = None,
    max_amount_cents: int | None = None,
    user_id: int | None = None,
    page: int | None = None,
    limit: int | None = None,
    sort_by: str | None = None,
    sort_order: str | None = None,
) -> dict:
    """
    Filtered, paginated sale search with a summary over the whole match set.

    `q` matches sale number, customer name, customer phone and notes.
    """
    if payment_method and payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"payment_method must be one of {', '.join(PAYMENT_METHODS)}",
            details={"payment_method": payment_method},
        )
    start_dt = _parse_bound(start, "start")
    end_dt = _parse_bound(end, "end")

    query = scope_for_user(db.session.query(Sale), user)

    if q and q.strip():
        pattern = f"%{q.strip()}%"
        query = query.filter(or_(
            Sale.sale_number.ilike(pattern),
            Sale.customer_name.ilike(pattern),
            Sale.customer_phone.ilike(pattern),
            Sale.notes.ilike(pattern),
        ))
    if sale_number:
        query = query.filter(Sale.sale_number.ilike(f"%{sale_number}%"))
    if customer_name:
        query = query.filter(Sale.customer_name.ilike(f"%{customer_name}%"))
    if customer_phone:
        query = query.filter(Sale.customer_phone.ilike(f"%{customer_phone}%"))
    if payment_method:
        query = query.filter(Sale.payment_method == payment_method)
    if start_dt:
        query = query.filter(Sale.created_at >= start_dt)
    if end_dt:
        query = query.filter(Sale.created_at <= end_dt)
    if min_amount_cents is not None:
        query = query.filter(Sale.final_amount_cents >= min_amount_cents)
    if max_amount_cents is not None:
        query = query.filter(Sale.final_amount_cents <= max_amount_cents)
    if user_id is not None:
        query = query.filter(Sale.user_id == user_id)

    sales, pagination = paginate(_ordered(query, sort_by, sort_order), page, limit)

    count, revenue, tax, discount = query.with_entities(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.final_amount_cents), 0),
        func.coalesce(func.sum(Sale.tax_cents), 0),
        func.coalesce(func.sum(Sale.discount_cents), 0),
    ).order_by(None).one()

    return {
        "items": [s.to_dict() for s in sales],
        "pagination": pagination,
        "summary": {
            "total_sales": int(count),
            "total_revenue_cents": int(revenue),
            "average_order_value_cents": int(revenue) // int(count) if count else 0,
            "total_tax_cents": int(tax),
            "total_discount_cents": int(discount),
        },
        "search_criteria": {
            "q": q,
            "sale_number": sale_number,
            "customer_name": customer_name,
            "customer_phone": customer_phone,
            "payment_method": payment_method,
            "start": start,
            "end": end,
            "min_amount_cents": min_amount_cents,
            "max_amount_cents": max_amount_cents,
            "user_id": user_id,
        },
    }
