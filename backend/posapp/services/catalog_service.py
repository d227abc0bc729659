# backend/posapp/services/catalog_service.py
"""
Catalog Service - product master data and stock quantity

STOCK INVARIANTS:
- Product.stock_qty never goes below zero. decrement_stock() uses a guarded
  UPDATE ... WHERE stock_qty >= :amount, so the check and the write are one
  statement regardless of isolation level (the table CHECK constraint backs
  it up).
- Every stock change appends a StockMovement row in the same transaction.

LIFECYCLE:
- Reads only ever return active products.
- A product that appears on any SaleItem is retired (is_active=False) on
  delete and never physically removed.
"""
from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import case, func, or_, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, SaleItem, StockMovement
from ..models.catalog import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_PURCHASE,
    MOVEMENT_RETURN,
    MOVEMENT_SALE,
)
from ..pagination import paginate
from .concurrency import lock_for_update, run_with_retry, translate_db_errors

logger = logging.getLogger(__name__)

PRODUCT_MUTABLE_FIELDS = {"code", "name", "description", "category", "image_url", "price_cents", "is_active"}
PRODUCT_SORT_FIELDS = {"created_at", "updated_at", "name", "price_cents", "stock_qty"}


def serialize(product: Product) -> dict:
    cfg = current_app.config
    return product.to_dict(
        low_stock_threshold=cfg["LOW_STOCK_THRESHOLD"],
        default_category=cfg["DEFAULT_PRODUCT_CATEGORY"],
    )


def _active_query():
    return db.session.query(Product).filter(Product.is_active.is_(True))


def get_product(product_id: int) -> Product:
    product = _active_query().filter(Product.id == product_id).first()
    if not product:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def get_product_by_code(code: str) -> Product:
    product = _active_query().filter(Product.code == code).first()
    if not product:
        raise NotFoundError("Product not found", details={"code": code})
    return product


def _code_taken(code: str, exclude_id: int | None = None) -> bool:
    query = _active_query().filter(Product.code == code)
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    return db.session.query(query.exists()).scalar()


def has_sale_history(product_id: int) -> bool:
    return db.session.query(
        db.session.query(SaleItem.id).filter(SaleItem.product_id == product_id).exists()
    ).scalar()


def _record_movement(
    product: Product,
    movement_type: str,
    quantity: int,
    previous_qty: int,
    new_qty: int,
    reason: str | None,
    reference: str | None = None,
    user_id: int | None = None,
) -> StockMovement:
    movement = StockMovement(
        product_id=product.id,
        movement_type=movement_type,
        quantity=quantity,
        previous_qty=previous_qty,
        new_qty=new_qty,
        reason=reason,
        reference=reference,
        user_id=user_id,
    )
    db.session.add(movement)
    logger.info(
        "Stock movement: product=%s type=%s qty=%s previous=%s new=%s reason=%s ref=%s",
        product.id, movement_type, quantity, previous_qty, new_qty, reason, reference,
    )
    return movement


# =============================================================================
# Reads
# =============================================================================

def list_products(
    *,
    page: int | None = None,
    limit: int | None = None,
    sort_by: str | None = None,
    sort_order: str | None = None,
    search: str | None = None,
    category: str | None = None,
    min_price_cents: int | None = None,
    max_price_cents: int | None = None,
) -> dict:
    """
    Paginated listing of active products.

    Unknown sort fields fall back to created_at; sort_order is asc|desc
    (default desc).
    """
    sort_field = sort_by if sort_by in PRODUCT_SORT_FIELDS else "created_at"
    direction = "asc" if sort_order == "asc" else "desc"

    query = _active_query()

    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))
    if category:
        query = query.filter(Product.category == category)
    if min_price_cents is not None:
        query = query.filter(Product.price_cents >= min_price_cents)
    if max_price_cents is not None:
        query = query.filter(Product.price_cents <= max_price_cents)

    column = getattr(Product, sort_field)
    if direction == "asc":
        query = query.order_by(column.asc(), Product.id.asc())
    else:
        query = query.order_by(column.desc(), Product.id.desc())

    products, pagination = paginate(query, page, limit, default_limit=12)

    return {
        "items": [serialize(p) for p in products],
        "pagination": pagination,
        "filters": {
            "search": search,
            "category": category,
            "min_price_cents": min_price_cents,
            "max_price_cents": max_price_cents,
            "sort_by": sort_field,
            "sort_order": direction,
        },
    }


def search_products(q: str | None, page: int | None = None, limit: int | None = None) -> dict:
    if not q or not q.strip():
        raise ValidationError("Search query is required")

    term = q.strip()
    pattern = f"%{term}%"
    query = (
        _active_query()
        .filter(or_(
            Product.name.ilike(pattern),
            Product.code.ilike(pattern),
            Product.description.ilike(pattern),
        ))
        .order_by(Product.name.asc(), Product.code.asc())
    )
    products, pagination = paginate(query, page, limit)
    return {
        "items": [serialize(p) for p in products],
        "pagination": pagination,
        "query": term,
    }


def list_low_stock() -> dict:
    threshold = current_app.config["LOW_STOCK_THRESHOLD"]
    products = (
        _active_query()
        .filter(Product.stock_qty <= threshold)
        .order_by(Product.stock_qty.asc(), Product.name.asc())
        .all()
    )
    return {
        "items": [serialize(p) for p in products],
        "count": len(products),
        "threshold": threshold,
    }


def get_stock_movements(product_id: int, page: int | None = None, limit: int | None = None) -> dict:
    get_product(product_id)
    query = (
        db.session.query(StockMovement)
        .filter(StockMovement.product_id == product_id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
    )
    movements, pagination = paginate(query, page, limit)
    return {
        "items": [m.to_dict() for m in movements],
        "pagination": pagination,
    }


# =============================================================================
# Writes
# =============================================================================

def create_product(*, patch: dict, user_id: int | None = None) -> Product:
    """
    Create product using a validated patch dict.

    Raises ConflictError if the code is already used by an active product.
    """
    def _op() -> Product:
        code = patch.get("code")
        if code and _code_taken(code):
            raise ConflictError("Product with this code already exists", details={"code": code})

        fields = {k: v for k, v in patch.items() if k in PRODUCT_MUTABLE_FIELDS}
        initial_stock = patch.get("stock_qty") or 0

        product = Product(**fields)
        if not product.category:
            product.category = current_app.config["DEFAULT_PRODUCT_CATEGORY"]
        product.stock_qty = initial_stock
        db.session.add(product)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConflictError("Product with this code already exists", details={"code": code}) from exc

        if initial_stock > 0:
            _record_movement(product, MOVEMENT_PURCHASE, initial_stock, 0, initial_stock, "Initial stock", user_id=user_id)

        db.session.commit()
        logger.info("Product created: %s (%s)", product.name, product.code)
        return product

    with translate_db_errors("Product was modified concurrently; retry the request"):
        return run_with_retry(_op)


def update_product(product_id: int, patch: dict) -> Product:
    """Apply a validated patch. Stock is not writable here; use set_stock()."""
    def _op() -> Product:
        product = lock_for_update(_active_query().filter(Product.id == product_id)).first()
        if not product:
            raise NotFoundError("Product not found", details={"product_id": product_id})

        new_code = patch.get("code")
        if new_code and new_code != product.code and _code_taken(new_code, exclude_id=product.id):
            raise ConflictError("Product with this code already exists", details={"code": new_code})

        for k, v in patch.items():
            if k in PRODUCT_MUTABLE_FIELDS:
                setattr(product, k, v)

        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConflictError("Product with this code already exists", details={"code": new_code}) from exc

        db.session.commit()
        logger.info("Product updated: %s (%s)", product.name, product.code)
        return product

    with translate_db_errors("Product was modified concurrently; retry the request"):
        return run_with_retry(_op)


def set_stock(product_id: int, quantity: int, reason: str, user_id: int | None = None) -> Product:
    """Set absolute on-hand quantity (stock count / receiving)."""
    if quantity < 0:
        raise ValidationError("Stock quantity cannot be negative")
    if not reason or not reason.strip():
        raise ValidationError("reason is required")

    def _op() -> Product:
        product = lock_for_update(_active_query().filter(Product.id == product_id)).first()
        if not product:
            raise NotFoundError("Product not found", details={"product_id": product_id})

        previous_qty = product.stock_qty
        product.stock_qty = quantity
        movement_type = MOVEMENT_PURCHASE if quantity > previous_qty else MOVEMENT_ADJUSTMENT
        _record_movement(
            product, movement_type, abs(quantity - previous_qty), previous_qty, quantity,
            reason.strip(), user_id=user_id,
        )
        db.session.commit()
        logger.info("Stock updated for %s: %s -> %s", product.name, previous_qty, quantity)
        return product

    with translate_db_errors("Stock was modified concurrently; retry the request"):
        return run_with_retry(_op)


def decrement_stock(
    product_id: int,
    amount: int,
    *,
    reason: str = "Product sold",
    reference: str | None = None,
    user_id: int | None = None,
) -> Product:
    """
    Remove `amount` units from stock with a guarded UPDATE.

    Fails with InsufficientStockError (never writes) if stock_qty < amount.
    Never commits: the caller owns the transaction (checkout commits it
    together with the sale rows).
    """
    if amount <= 0:
        raise ValidationError("amount must be > 0")

    stmt = (
        update(Product)
        .where(
            Product.id == product_id,
            Product.is_active.is_(True),
            Product.stock_qty >= amount,
        )
        .values(stock_qty=Product.stock_qty - amount, version_id=Product.version_id + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)

    product = db.session.get(Product, product_id, populate_existing=True)
    if result.rowcount != 1:
        if product is None or not product.is_active:
            raise NotFoundError("Product not found", details={"product_id": product_id})
        raise InsufficientStockError([{
            "product_id": product.id,
            "product_name": product.name,
            "requested": amount,
            "available": product.stock_qty,
        }])

    _record_movement(
        product, MOVEMENT_SALE, amount, product.stock_qty + amount, product.stock_qty,
        reason, reference=reference, user_id=user_id,
    )
    return product


def increment_stock(
    product_id: int,
    amount: int,
    reason: str,
    *,
    reference: str | None = None,
    user_id: int | None = None,
    movement_type: str = MOVEMENT_RETURN,
) -> Product:
    """Add units back (returns, adjustments). Commits on success."""
    if amount <= 0:
        raise ValidationError("amount must be > 0")
    if not reason or not reason.strip():
        raise ValidationError("reason is required")

    def _op() -> Product:
        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.is_active.is_(True))
            .values(stock_qty=Product.stock_qty + amount, version_id=Product.version_id + 1)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        if result.rowcount != 1:
            raise NotFoundError("Product not found", details={"product_id": product_id})

        product = db.session.get(Product, product_id, populate_existing=True)
        _record_movement(
            product, movement_type, amount, product.stock_qty - amount, product.stock_qty,
            reason.strip(), reference=reference, user_id=user_id,
        )
        db.session.commit()
        return product

    with translate_db_errors("Stock was modified concurrently; retry the request"):
        return run_with_retry(_op)


def delete_product(product_id: int) -> dict:
    """
    Remove a product from the catalog.

    Products referenced by any SaleItem are retired instead of deleted.
    Returns {"product_id", "retired", "deleted"}.
    """
    def _op() -> dict:
        product = lock_for_update(_active_query().filter(Product.id == product_id)).first()
        if not product:
            raise NotFoundError("Product not found", details={"product_id": product_id})

        if has_sale_history(product.id):
            product.is_active = False
            db.session.commit()
            logger.info("Product retired (has sale history): %s (%s)", product.name, product.code)
            return {"product_id": product_id, "retired": True, "deleted": False}

        db.session.query(StockMovement).filter(StockMovement.product_id == product.id).delete(
            synchronize_session=False
        )
        db.session.delete(product)
        db.session.commit()
        logger.info("Product deleted: %s (%s)", product.name, product.code)
        return {"product_id": product_id, "retired": False, "deleted": True}

    with translate_db_errors("Product was modified concurrently; retry the request"):
        return run_with_retry(_op)


def catalog_counts() -> dict:
    active, retired = (
        db.session.query(
            func.coalesce(func.sum(case((Product.is_active.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((Product.is_active.is_(False), 1), else_=0)), 0),
        ).one()
    )
    return {"active": int(active), "retired": int(retired)}
