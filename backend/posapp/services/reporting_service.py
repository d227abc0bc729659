# Overview: Service-layer read models over completed sales (today, period analytics, receipts).

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from ..errors import ValidationError
from ..extensions import db
from ..models import Product, Sale, SaleItem, User
from ..money import format_cents
from ..time_utils import day_bounds, to_utc_z, utc_today, utcnow
from .sales_service import get_sale, scope_for_user

ANALYTICS_PERIODS = ("day", "week", "month")
TOP_PRODUCTS_LIMIT = 10
RECENT_SALES_LIMIT = 10


def today_sales(user: User | None = None) -> dict:
    """Count, revenue and the most recent sales for the current UTC day."""
    start, end = day_bounds(utc_today())
    query = scope_for_user(
        db.session.query(Sale).filter(Sale.created_at >= start, Sale.created_at < end),
        user,
    )

    count, revenue = query.with_entities(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.final_amount_cents), 0),
    ).one()
    recent = query.order_by(Sale.created_at.desc(), Sale.id.desc()).limit(RECENT_SALES_LIMIT).all()

    count, revenue = int(count), int(revenue)
    return {
        "summary": {
            "sales_count": count,
            "total_revenue_cents": revenue,
            "average_order_value_cents": revenue // count if count else 0,
        },
        "recent_sales": [s.to_dict() for s in recent],
    }


def period_start(period: str, now: datetime | None = None) -> datetime:
    """
    Start of the reporting window.

    day   -> midnight today (UTC)
    week  -> now minus 7 days (rolling)
    month -> first day of the current month
    """
    now = now or utcnow()
    if period == "day":
        return day_bounds(now.date())[0]
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return datetime(now.year, now.month, 1)
    raise ValidationError(
        f"period must be one of {', '.join(ANALYTICS_PERIODS)}",
        details={"period": period},
    )


def analytics(period: str = "day", user: User | None = None) -> dict:
    start = period_start(period or "day")
    sales = scope_for_user(db.session.query(Sale).filter(Sale.created_at >= start), user)

    count, revenue, tax, discount = sales.with_entities(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.final_amount_cents), 0),
        func.coalesce(func.sum(Sale.tax_cents), 0),
        func.coalesce(func.sum(Sale.discount_cents), 0),
    ).one()
    count, revenue = int(count), int(revenue)

    sale_ids = sales.with_entities(Sale.id).subquery()
    qty_sold = func.sum(SaleItem.quantity).label("quantity_sold")
    top_rows = (
        db.session.query(
            Product,
            qty_sold,
            func.sum(SaleItem.line_total_cents).label("revenue_cents"),
        )
        .join(SaleItem, SaleItem.product_id == Product.id)
        .filter(SaleItem.sale_id.in_(db.session.query(sale_ids.c.id)))
        .group_by(Product.id)
        .order_by(qty_sold.desc(), Product.id.asc())
        .limit(TOP_PRODUCTS_LIMIT)
        .all()
    )

    method_rows = (
        sales.with_entities(
            Sale.payment_method,
            func.count(Sale.id),
            func.coalesce(func.sum(Sale.final_amount_cents), 0),
        )
        .group_by(Sale.payment_method)
        .order_by(Sale.payment_method.asc())
        .all()
    )

    return {
        "period": period or "day",
        "start": to_utc_z(start),
        "total_sales": count,
        "total_revenue_cents": revenue,
        "average_order_value_cents": revenue // count if count else 0,
        "total_tax_cents": int(tax),
        "total_discount_cents": int(discount),
        "top_products": [
            {
                "product": product.to_summary(),
                "quantity_sold": int(quantity),
                "total_revenue_cents": int(product_revenue or 0),
            }
            for product, quantity, product_revenue in top_rows
        ],
        "payment_method_breakdown": [
            {"method": method, "count": int(n), "revenue_cents": int(total)}
            for method, n, total in method_rows
        ],
    }


def receipt(sale_id: int, user: User | None = None) -> dict:
    """Sale plus the header/footer data a printed receipt needs."""
    sale = get_sale(sale_id, user)
    cfg = current_app.config
    return {
        "sale": sale.to_dict(),
        "receipt_data": {
            "company_name": cfg["RECEIPT_COMPANY_NAME"],
            "address": cfg["RECEIPT_ADDRESS"],
            "phone": cfg["RECEIPT_PHONE"],
            "email": cfg["RECEIPT_EMAIL"],
            "website": cfg["RECEIPT_WEBSITE"],
            "receipt_number": sale.sale_number,
            "date_time": to_utc_z(sale.created_at),
            "cashier": sale.user.to_summary() if sale.user else None,
            "customer": {
                "name": sale.customer_name,
                "phone": sale.customer_phone,
            },
            "lines": [
                {
                    "name": item.product.name if item.product else None,
                    "code": item.product.code if item.product else None,
                    "quantity": item.quantity,
                    "unit_price": format_cents(item.unit_price_cents),
                    "line_total": format_cents(item.line_total_cents),
                }
                for item in sale.items
            ],
            "subtotal": format_cents(sale.total_cents),
            "discount": format_cents(sale.discount_cents),
            "tax": format_cents(sale.tax_cents),
            "total": format_cents(sale.final_amount_cents),
            "amount_received": format_cents(sale.amount_received_cents),
            "change": format_cents(sale.change_cents),
            "payment_method": sale.payment_method,
        },
    }
