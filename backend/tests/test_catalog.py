"""
Catalog service tests.

Verifies:
- Stock never goes negative (guarded decrement)
- Every stock change writes a movement
- Code uniqueness among active products
- Products with sale history are retired, not deleted
"""

import pytest

from conftest import make_product, refreshed
from posapp.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from posapp.extensions import db
from posapp.models import Product, StockMovement
from posapp.models.catalog import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_PURCHASE,
    MOVEMENT_RETURN,
    MOVEMENT_SALE,
    PRODUCT_STATUS_RETIRED,
)
from posapp.services import catalog_service
from posapp.services.checkout_service import checkout


def _movements(product_id):
    db.session.expire_all()
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id)
        .all()
    )


class TestStockMutations:

    def test_decrement(self, db_session, product_a):
        product = catalog_service.decrement_stock(product_a.id, 2)
        db_session.commit()

        assert product.stock_qty == 3
        assert refreshed(Product, product_a.id).stock_qty == 3
        [movement] = _movements(product_a.id)
        assert movement.movement_type == MOVEMENT_SALE
        assert (movement.previous_qty, movement.new_qty) == (5, 3)

    def test_decrement_is_left_to_the_caller_to_commit(self, db_session, product_a):
        catalog_service.decrement_stock(product_a.id, 2)
        db_session.rollback()

        assert refreshed(Product, product_a.id).stock_qty == 5
        assert _movements(product_a.id) == []

    def test_decrement_below_zero_fails_loudly(self, db_session, product_a):
        with pytest.raises(InsufficientStockError) as exc_info:
            catalog_service.decrement_stock(product_a.id, 6)

        assert exc_info.value.items[0]["available"] == 5
        db_session.rollback()
        assert refreshed(Product, product_a.id).stock_qty == 5

    def test_decrement_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            catalog_service.decrement_stock(424242, 1)

    @pytest.mark.parametrize("amount", [0, -2])
    def test_non_positive_amounts(self, db_session, product_a, amount):
        with pytest.raises(ValidationError):
            catalog_service.decrement_stock(product_a.id, amount)
        with pytest.raises(ValidationError):
            catalog_service.increment_stock(product_a.id, amount, "return")

    def test_increment_records_return(self, db_session, admin, product_a):
        product = catalog_service.increment_stock(product_a.id, 4, "Customer return", user_id=admin.id)

        assert product.stock_qty == 9
        [movement] = _movements(product_a.id)
        assert movement.movement_type == MOVEMENT_RETURN
        assert movement.reason == "Customer return"

    def test_increment_requires_reason(self, db_session, product_a):
        with pytest.raises(ValidationError):
            catalog_service.increment_stock(product_a.id, 1, "  ")

    def test_set_stock_records_direction(self, db_session, product_a):
        catalog_service.set_stock(product_a.id, 12, "Delivery")
        catalog_service.set_stock(product_a.id, 4, "Count correction")

        types = [(m.movement_type, m.quantity, m.previous_qty, m.new_qty) for m in _movements(product_a.id)]
        assert types == [
            (MOVEMENT_PURCHASE, 7, 5, 12),
            (MOVEMENT_ADJUSTMENT, 8, 12, 4),
        ]

    def test_set_stock_rejects_negative(self, db_session, product_a):
        with pytest.raises(ValidationError):
            catalog_service.set_stock(product_a.id, -1, "oops")


class TestProductLifecycle:

    def test_create_applies_defaults_and_initial_movement(self, db_session, admin):
        product = catalog_service.create_product(
            patch={"code": "NEW-1", "name": "New", "price_cents": 250, "stock_qty": 8},
            user_id=admin.id,
        )

        assert product.category == "General"
        assert product.stock_qty == 8
        [movement] = _movements(product.id)
        assert movement.movement_type == MOVEMENT_PURCHASE
        assert movement.reason == "Initial stock"

    def test_duplicate_active_code_conflicts(self, db_session, product_a):
        with pytest.raises(ConflictError):
            catalog_service.create_product(patch={"code": "A-001", "name": "Copy", "price_cents": 1})

    def test_update_to_taken_code_conflicts(self, db_session, product_a, product_b):
        with pytest.raises(ConflictError):
            catalog_service.update_product(product_b.id, {"code": "A-001"})

    def test_delete_without_history_removes_the_row(self, db_session, product_a):
        catalog_service.set_stock(product_a.id, 7, "Count")

        result = catalog_service.delete_product(product_a.id)

        assert result == {"product_id": product_a.id, "retired": False, "deleted": True}
        assert refreshed(Product, product_a.id) is None
        assert _movements(product_a.id) == []

    def test_delete_with_history_retires(self, db_session, cashier, product_a):
        checkout([{"product_id": product_a.id, "quantity": 1}], "CASH", cashier.id)

        result = catalog_service.delete_product(product_a.id)

        assert result["retired"] is True
        product = refreshed(Product, product_a.id)
        assert product is not None
        assert product.status == PRODUCT_STATUS_RETIRED
        with pytest.raises(NotFoundError):
            catalog_service.get_product(product_a.id)

    def test_retired_code_can_be_reused(self, db_session, cashier, product_a):
        checkout([{"product_id": product_a.id, "quantity": 1}], "CASH", cashier.id)
        catalog_service.delete_product(product_a.id)

        replacement = catalog_service.create_product(patch={"code": "A-001", "name": "Product A v2", "price_cents": 1100})

        assert catalog_service.get_product_by_code("A-001").id == replacement.id


class TestReads:

    def test_list_pagination_and_filters(self, app, db_session):
        for i in range(15):
            make_product(db_session, f"P-{i:02d}", f"Item {i:02d}", 100 * (i + 1), i, category="Snacks" if i % 2 else "Drinks")

        page = catalog_service.list_products(page=2, limit=10, sort_by="price_cents", sort_order="asc")
        assert [p["code"] for p in page["items"]] == [f"P-{i:02d}" for i in range(10, 15)]
        assert page["pagination"] == {
            "page": 2, "limit": 10, "total": 15, "total_pages": 2, "has_next": False, "has_prev": True,
        }

        snacks = catalog_service.list_products(category="Snacks", min_price_cents=500, limit=100)
        assert all(p["category"] == "Snacks" and p["price_cents"] >= 500 for p in snacks["items"])

    def test_limit_is_clamped(self, app, db_session, product_a):
        result = catalog_service.list_products(page=0, limit=100000)
        assert result["pagination"]["page"] == 1
        assert result["pagination"]["limit"] == app.config["PAGINATION_MAX_LIMIT"]

    def test_unknown_sort_field_falls_back(self, db_session, product_a):
        result = catalog_service.list_products(sort_by="password_hash")
        assert result["filters"]["sort_by"] == "created_at"

    def test_search(self, db_session, product_a, product_b):
        result = catalog_service.search_products("b-00")
        assert [p["id"] for p in result["items"]] == [product_b.id]

        with pytest.raises(ValidationError):
            catalog_service.search_products("   ")

    def test_low_stock(self, db_session, product_a, product_b):
        make_product(db_session, "FULL-1", "Full Shelf", 100, 50)

        result = catalog_service.list_low_stock()

        assert [p["id"] for p in result["items"]] == [product_b.id, product_a.id]
        assert all(p["is_low_stock"] for p in result["items"])
        assert result["threshold"] == 10
