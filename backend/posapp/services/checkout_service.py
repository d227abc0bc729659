# Overview: Service-layer checkout; turns a cart into a committed sale and the matching stock decrements.

"""
Checkout Service - the one path that creates sales

A checkout is a single unit of work:
1. Validate the request shape (no datastore access)
2. Lock the referenced products (sorted by id) and check stock for every line
3. Price every line from the catalog, compute discount / tax / final amount
4. Allocate a sale number, insert Sale + SaleItems, decrement stock
5. Commit

Either all of it is visible afterwards or none of it is. Stock is only
decremented through catalog_service.decrement_stock(), whose guarded UPDATE
refuses to take stock below zero even if two checkouts race past step 2.

RETRIES: a sale-number collision (unique constraint on sales.sale_number)
re-runs the whole unit with a freshly computed number, up to
SALE_NUMBER_MAX_ATTEMPTS. Lock timeouts and version conflicts are reported
to the caller as ConflictError and are not retried here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Iterable

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import AuthorizationError, ConflictError, InsufficientStockError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, Sale, User
from ..models.sales import PAYMENT_CASH, PAYMENT_METHODS
from ..money import parse_percentage, percent_of_cents
from ..time_utils import utcnow
from ..validation import coerce_int
from . import catalog_service
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry, translate_db_errors
from .sale_number_service import next_sale_number
from .sales_service import create_sale_with_items

logger = logging.getLogger(__name__)

CUSTOMER_NAME_MAX = 255
CUSTOMER_PHONE_MAX = 32


class SaleNumberCollision(Exception):
    """Another transaction committed the same sale number first."""

    def __init__(self, sale_number: str):
        super().__init__(f"Sale number already taken: {sale_number}")
        self.sale_number = sale_number


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    # Display hint from the client. Never used for pricing.
    unit_price_cents: int | None = None


@dataclass(frozen=True)
class CheckoutRequest:
    lines: tuple[CartLine, ...]
    payment_method: str
    user_id: int
    discount_pct: Decimal
    tax_pct: Decimal
    customer_name: str | None = None
    customer_phone: str | None = None
    notes: str | None = None
    amount_received_cents: int | None = None


@dataclass(frozen=True)
class CheckoutTotals:
    total_cents: int
    discount_cents: int
    tax_cents: int
    final_amount_cents: int


def compute_totals(line_totals: Iterable[int], discount_pct: Decimal, tax_pct: Decimal) -> CheckoutTotals:
    """
    Sale amounts from per-line totals.

    Tax applies to the discounted amount. The final amount is derived by
    exact integer arithmetic so total - discount + tax == final always holds.
    """
    total = sum(line_totals)
    discount = percent_of_cents(total, discount_pct)
    tax = percent_of_cents(total - discount, tax_pct)
    return CheckoutTotals(
        total_cents=total,
        discount_cents=discount,
        tax_cents=tax,
        final_amount_cents=total - discount + tax,
    )


# =============================================================================
# Request validation (pure)
# =============================================================================

def _optional_text(value: Any, field: str, max_len: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if not value:
        return None
    if max_len and len(value) > max_len:
        raise ValidationError(f"{field} exceeds max length {max_len}")
    return value


def _price_hint(raw: Any) -> int | None:
    # Hints that do not parse are dropped rather than rejected; they are never authoritative.
    if isinstance(raw, int) and not isinstance(raw, bool) and raw >= 0:
        return raw
    return None


def parse_cart(cart: Any, max_quantity: int) -> tuple[CartLine, ...]:
    if not isinstance(cart, (list, tuple)) or not cart:
        raise ValidationError("Cart cannot be empty")

    lines = []
    for index, entry in enumerate(cart):
        if isinstance(entry, CartLine):
            raw_id, raw_qty, hint = entry.product_id, entry.quantity, entry.unit_price_cents
        elif isinstance(entry, dict):
            raw_id, raw_qty, hint = entry.get("product_id"), entry.get("quantity"), entry.get("unit_price_cents")
        else:
            raise ValidationError(f"Cart line {index + 1} is malformed", details={"line": index})

        if raw_id is None:
            raise ValidationError(f"Cart line {index + 1}: product_id is required", details={"line": index})
        product_id = coerce_int(raw_id, "product_id")
        if product_id <= 0:
            raise ValidationError("product_id must be a positive integer", details={"line": index})

        if raw_qty is None:
            raise ValidationError(f"Cart line {index + 1}: quantity is required", details={"line": index})
        quantity = coerce_int(raw_qty, "quantity")
        if quantity <= 0:
            raise ValidationError("quantity must be > 0", details={"line": index, "product_id": product_id})
        if quantity > max_quantity:
            raise ValidationError(
                f"quantity cannot exceed {max_quantity}",
                details={"line": index, "product_id": product_id},
            )

        lines.append(CartLine(product_id=product_id, quantity=quantity, unit_price_cents=_price_hint(hint)))
    return tuple(lines)


def validate_request(
    cart: Any,
    payment_method: Any,
    user_id: Any,
    *,
    discount_pct: Any = None,
    tax_pct: Any = None,
    customer_name: Any = None,
    customer_phone: Any = None,
    notes: Any = None,
    amount_received_cents: Any = None,
) -> CheckoutRequest:
    """Shape checks only. Raises ValidationError; never touches the database."""
    lines = parse_cart(cart, current_app.config["MAX_LINE_QUANTITY"])

    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"payment_method must be one of {', '.join(PAYMENT_METHODS)}",
            details={"payment_method": payment_method},
        )

    if user_id is None:
        raise ValidationError("user_id is required")
    user_id = coerce_int(user_id, "user_id")

    try:
        discount = parse_percentage(discount_pct, "discount_pct")
        tax = parse_percentage(tax_pct, "tax_pct")
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    received = None
    if amount_received_cents is not None:
        received = coerce_int(amount_received_cents, "amount_received_cents")
        if received < 0:
            raise ValidationError("amount_received_cents must be >= 0")

    return CheckoutRequest(
        lines=lines,
        payment_method=payment_method,
        user_id=user_id,
        discount_pct=discount,
        tax_pct=tax,
        customer_name=_optional_text(customer_name, "customer_name", CUSTOMER_NAME_MAX),
        customer_phone=_optional_text(customer_phone, "customer_phone", CUSTOMER_PHONE_MAX),
        notes=_optional_text(notes, "notes"),
        amount_received_cents=received,
    )


# =============================================================================
# Checkout
# =============================================================================

def _requested_by_product(lines: tuple[CartLine, ...]) -> dict[int, int]:
    requested: dict[int, int] = {}
    for line in lines:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity
    return requested


def _lock_products(product_ids: list[int]) -> dict[int, Product]:
    # Sorted ids give every checkout the same lock order.
    query = (
        db.session.query(Product)
        .filter(Product.id.in_(sorted(product_ids)), Product.is_active.is_(True))
        .order_by(Product.id.asc())
        .populate_existing()
    )
    return {p.id: p for p in lock_for_update(query).all()}


def _check_stock(requested: dict[int, int], products: dict[int, Product]) -> None:
    missing = [pid for pid in requested if pid not in products]
    if missing:
        raise NotFoundError("Product not found", details={"product_ids": missing})

    insufficient = [
        {
            "product_id": pid,
            "product_name": products[pid].name,
            "requested": qty,
            "available": products[pid].stock_qty,
        }
        for pid, qty in requested.items()
        if products[pid].stock_qty < qty
    ]
    if insufficient:
        raise InsufficientStockError(insufficient)


def _is_sale_number_collision(exc: IntegrityError) -> bool:
    return "sale_number" in str(exc.orig)


def checkout(
    cart: Any,
    payment_method: Any,
    user_id: Any,
    *,
    discount_pct: Any = None,
    tax_pct: Any = None,
    customer_name: Any = None,
    customer_phone: Any = None,
    notes: Any = None,
    amount_received_cents: Any = None,
    sale_date: date | None = None,
) -> Sale:
    """
    Create a sale from `cart` and commit it together with the stock decrements.

    cart: sequence of CartLine or {"product_id", "quantity"[, "unit_price_cents"]}.
    Duplicate product ids are allowed; their quantities are checked together.

    Raises ValidationError, NotFoundError, InsufficientStockError (listing
    every short line), ConflictError or StorageError. On any error nothing
    has been written.
    """
    request = validate_request(
        cart,
        payment_method,
        user_id,
        discount_pct=discount_pct,
        tax_pct=tax_pct,
        customer_name=customer_name,
        customer_phone=customer_phone,
        notes=notes,
        amount_received_cents=amount_received_cents,
    )
    requested = _requested_by_product(request.lines)

    def _op() -> Sale:
        begin_write_transaction()

        user = db.session.get(User, request.user_id)
        if not user or not user.is_active:
            raise AuthorizationError("Unknown or inactive user", details={"user_id": request.user_id})

        products = _lock_products(list(requested))
        _check_stock(requested, products)

        items = []
        for line in request.lines:
            product = products[line.product_id]
            if line.unit_price_cents is not None and line.unit_price_cents != product.price_cents:
                logger.warning(
                    "Client price hint ignored for product %s: hint=%s catalog=%s",
                    product.id, line.unit_price_cents, product.price_cents,
                )
            items.append({
                "product_id": product.id,
                "quantity": line.quantity,
                "unit_price_cents": product.price_cents,
            })

        totals = compute_totals(
            (item["unit_price_cents"] * item["quantity"] for item in items),
            request.discount_pct,
            request.tax_pct,
        )

        received = change = None
        if request.payment_method == PAYMENT_CASH and request.amount_received_cents is not None:
            received = request.amount_received_cents
            if received < totals.final_amount_cents:
                raise ValidationError(
                    "Amount received is less than the amount due",
                    details={"amount_due_cents": totals.final_amount_cents, "amount_received_cents": received},
                )
            change = received - totals.final_amount_cents

        now = utcnow()
        sale_number = next_sale_number(sale_date or now.date())
        try:
            sale = create_sale_with_items(
                {
                    "sale_number": sale_number,
                    "total_cents": totals.total_cents,
                    "discount_cents": totals.discount_cents,
                    "tax_cents": totals.tax_cents,
                    "final_amount_cents": totals.final_amount_cents,
                    "payment_method": request.payment_method,
                    "amount_received_cents": received,
                    "change_cents": change,
                    "user_id": user.id,
                    "customer_name": request.customer_name,
                    "customer_phone": request.customer_phone,
                    "notes": request.notes,
                    "created_at": now,
                    "updated_at": now,
                },
                items,
            )
        except IntegrityError as exc:
            if _is_sale_number_collision(exc):
                raise SaleNumberCollision(sale_number) from exc
            raise

        for item in items:
            catalog_service.decrement_stock(
                item["product_id"],
                item["quantity"],
                reason="Product sold",
                reference=sale_number,
                user_id=user.id,
            )

        db.session.commit()
        logger.info(
            "Sale created: %s - Total: %s - Customer: %s - Cashier: %s",
            sale_number, totals.final_amount_cents, request.customer_name or "Walk-in", user.username,
        )
        return sale

    with translate_db_errors("Checkout conflicted with a concurrent update; submit it again"):
        try:
            return run_with_retry(
                _op,
                attempts=max(1, current_app.config["SALE_NUMBER_MAX_ATTEMPTS"]),
                backoff_base=0.01,
                retry_on=(SaleNumberCollision,),
            )
        except SaleNumberCollision as exc:
            logger.error("Could not allocate a unique sale number; last tried %s", exc.sale_number)
            raise ConflictError(
                "Could not allocate a unique sale number; submit the checkout again",
                details={"sale_number": exc.sale_number},
            ) from exc
