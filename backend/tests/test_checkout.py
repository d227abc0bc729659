"""
Checkout tests.

Verifies:
- Worked examples (tax on a single line, oversell, empty cart)
- All-or-nothing: a failing line leaves every stock level and the sales tables untouched
- Stock conservation and price snapshots on success
- Discount/tax arithmetic and cash change
- Database failures map onto ConflictError / StorageError and roll back
- Sale-number collision handling
"""

import re
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from conftest import make_product, refreshed
from posapp.errors import (
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from posapp.extensions import db
from posapp.models import Product, Sale, SaleItem, StockMovement
from posapp.models.catalog import MOVEMENT_SALE
from posapp.services import catalog_service, checkout_service
from posapp.services.checkout_service import CartLine, checkout, compute_totals
from posapp.services.sale_number_service import format_sale_number
from posapp.time_utils import utc_today


SALE_NUMBER_PATTERN = re.compile(r"^SAL-\d{8}-\d{4}$")


def _stock(product_id):
    return refreshed(Product, product_id).stock_qty


def _sale_count():
    db.session.expire_all()
    return db.session.query(Sale).count(), db.session.query(SaleItem).count()


# =============================================================================
# WORKED EXAMPLES
# =============================================================================


class TestWorkedExamples:

    def test_three_units_with_ten_percent_tax(self, cashier, product_a):
        sale = checkout(
            [{"product_id": product_a.id, "quantity": 3}],
            "CASH",
            cashier.id,
            tax_pct=10,
            discount_pct=0,
        )

        assert sale.total_cents == 3000
        assert sale.tax_cents == 300
        assert sale.discount_cents == 0
        assert sale.final_amount_cents == 3300
        assert _stock(product_a.id) == 2

    def test_oversell_is_rejected_without_side_effects(self, cashier, product_a):
        with pytest.raises(InsufficientStockError) as exc_info:
            checkout([{"product_id": product_a.id, "quantity": 6}], "CASH", cashier.id)

        err = exc_info.value
        assert "requested: 6" in err.message
        assert "available: 5" in err.message
        assert err.items == [{
            "product_id": product_a.id,
            "product_name": "Product A",
            "requested": 6,
            "available": 5,
        }]
        assert _stock(product_a.id) == 5
        assert _sale_count() == (0, 0)

    def test_empty_cart_never_touches_the_database(self, app, cashier):
        statements = []

        def _record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        engine = db.engine
        event.listen(engine, "before_cursor_execute", _record)
        try:
            with pytest.raises(ValidationError):
                checkout([], "CASH", 1)
        finally:
            event.remove(engine, "before_cursor_execute", _record)

        assert statements == []


# =============================================================================
# SUCCESSFUL CHECKOUT
# =============================================================================


class TestSuccessfulCheckout:

    def test_sale_shape(self, cashier, product_a, product_b):
        sale = checkout(
            [
                {"product_id": product_a.id, "quantity": 2},
                {"product_id": product_b.id, "quantity": 1},
            ],
            "CARD",
            cashier.id,
            customer_name="  Jane Doe ",
            customer_phone="555-0100",
            notes="gift wrap",
        )

        data = sale.to_dict()
        assert SALE_NUMBER_PATTERN.match(data["sale_number"])
        assert data["sale_number"] == format_sale_number(utc_today(), 1)
        assert data["payment_method"] == "CARD"
        assert data["customer_name"] == "Jane Doe"
        assert data["customer_phone"] == "555-0100"
        assert data["user"]["username"] == "cashier"
        assert data["created_at"].endswith("Z")

        lines = [(i["product_id"], i["quantity"], i["unit_price_cents"], i["line_total_cents"]) for i in data["items"]]
        assert lines == [
            (product_a.id, 2, 1000, 2000),
            (product_b.id, 1, 300, 300),
        ]
        assert data["items"][0]["product"]["name"] == "Product A"
        assert data["total_cents"] == 2300

    def test_stock_is_conserved(self, cashier, product_a, product_b):
        before = {product_a.id: _stock(product_a.id), product_b.id: _stock(product_b.id)}

        checkout(
            [CartLine(product_a.id, 4), CartLine(product_b.id, 1)],
            "DIGITAL_WALLET",
            cashier.id,
        )

        assert _stock(product_a.id) == before[product_a.id] - 4
        assert _stock(product_b.id) == before[product_b.id] - 1

    def test_stock_movements_reference_the_sale(self, cashier, product_a):
        sale = checkout([{"product_id": product_a.id, "quantity": 3}], "CASH", cashier.id)

        movement = (
            db.session.query(StockMovement)
            .filter_by(product_id=product_a.id, movement_type=MOVEMENT_SALE)
            .one()
        )
        assert movement.reference == sale.sale_number
        assert movement.quantity == 3
        assert (movement.previous_qty, movement.new_qty) == (5, 2)
        assert movement.user_id == cashier.id

    def test_duplicate_product_lines_are_kept_as_separate_items(self, cashier, product_a):
        sale = checkout(
            [{"product_id": product_a.id, "quantity": 2}, {"product_id": product_a.id, "quantity": 2}],
            "CASH",
            cashier.id,
        )

        assert [item.quantity for item in sale.items] == [2, 2]
        assert _stock(product_a.id) == 1

    def test_string_ids_and_quantities_are_accepted(self, cashier, product_a):
        sale = checkout([{"product_id": str(product_a.id), "quantity": "2"}], "CASH", cashier.id)
        assert sale.items[0].quantity == 2

    def test_price_snapshot_survives_catalog_changes(self, cashier, product_a):
        sale = checkout([{"product_id": product_a.id, "quantity": 1}], "CASH", cashier.id, tax_pct=10)
        sale_id = sale.id

        catalog_service.update_product(product_a.id, {"price_cents": 9999})

        stored = refreshed(Sale, sale_id)
        assert stored.items[0].unit_price_cents == 1000
        assert stored.items[0].line_total_cents == 1000
        assert stored.final_amount_cents == 1100

    def test_client_price_hint_is_ignored(self, cashier, product_a, caplog):
        with caplog.at_level("WARNING", logger="posapp.services.checkout_service"):
            sale = checkout(
                [{"product_id": product_a.id, "quantity": 1, "unit_price_cents": 1}],
                "CASH",
                cashier.id,
            )

        assert sale.items[0].unit_price_cents == 1000
        assert "price hint ignored" in caplog.text

    def test_sale_numbers_increase_within_a_day(self, cashier, product_a):
        first = checkout([{"product_id": product_a.id, "quantity": 1}], "CASH", cashier.id)
        second = checkout([{"product_id": product_a.id, "quantity": 1}], "CASH", cashier.id)

        assert first.sale_number.endswith("-0001")
        assert second.sale_number.endswith("-0002")


# =============================================================================
# ALL-OR-NOTHING FAILURES
# =============================================================================


class TestAtomicity:

    def test_every_short_line_is_reported(self, cashier, product_a, product_b):
        with pytest.raises(InsufficientStockError) as exc_info:
            checkout(
                [
                    {"product_id": product_a.id, "quantity": 6},
                    {"product_id": product_b.id, "quantity": 2},
                ],
                "CASH",
                cashier.id,
            )

        reported = {item["product_id"]: (item["requested"], item["available"]) for item in exc_info.value.items}
        assert reported == {product_a.id: (6, 5), product_b.id: (2, 1)}
        assert exc_info.value.to_dict()["details"]["items"] == exc_info.value.items

    def test_one_bad_line_blocks_the_good_ones(self, cashier, product_a, product_b):
        with pytest.raises(InsufficientStockError):
            checkout(
                [
                    {"product_id": product_a.id, "quantity": 1},
                    {"product_id": product_b.id, "quantity": 5},
                ],
                "CASH",
                cashier.id,
            )

        assert _stock(product_a.id) == 5
        assert _stock(product_b.id) == 1
        assert _sale_count() == (0, 0)
        assert db.session.query(StockMovement).filter_by(movement_type=MOVEMENT_SALE).count() == 0

    def test_guarded_decrement_rolls_back_flushed_sale_rows(self, monkeypatch, cashier, product_a, product_b):
        # Let the cart through the up-front check so the overdraw is only
        # caught by the guarded UPDATE, after the sale rows were flushed.
        monkeypatch.setattr(checkout_service, "_check_stock", lambda requested, products: None)

        with pytest.raises(InsufficientStockError) as exc_info:
            checkout(
                [
                    {"product_id": product_a.id, "quantity": 2},
                    {"product_id": product_b.id, "quantity": 5},
                ],
                "CASH",
                cashier.id,
            )

        assert exc_info.value.items == [{
            "product_id": product_b.id,
            "product_name": "Product B",
            "requested": 5,
            "available": 1,
        }]
        assert _stock(product_a.id) == 5
        assert _stock(product_b.id) == 1
        assert _sale_count() == (0, 0)
        assert db.session.query(StockMovement).count() == 0

    def test_duplicate_lines_are_checked_together(self, cashier, product_a):
        with pytest.raises(InsufficientStockError) as exc_info:
            checkout(
                [{"product_id": product_a.id, "quantity": 3}, {"product_id": product_a.id, "quantity": 3}],
                "CASH",
                cashier.id,
            )

        assert exc_info.value.items[0]["requested"] == 6
        assert _stock(product_a.id) == 5

    def test_unknown_product(self, cashier, product_a):
        with pytest.raises(NotFoundError) as exc_info:
            checkout(
                [{"product_id": product_a.id, "quantity": 1}, {"product_id": 987654, "quantity": 1}],
                "CASH",
                cashier.id,
            )

        assert exc_info.value.details["product_ids"] == [987654]
        assert _stock(product_a.id) == 5
        assert _sale_count() == (0, 0)

    def test_retired_product_is_not_found(self, db_session, cashier):
        retired = make_product(db_session, "OLD-1", "Old Product", 500, 10, is_active=False)

        with pytest.raises(NotFoundError):
            checkout([{"product_id": retired.id, "quantity": 1}], "CASH", cashier.id)

        assert _stock(retired.id) == 10

    def test_inactive_user_is_rejected(self, db_session, cashier, product_a):
        cashier.is_active = False
        db_session.commit()

        with pytest.raises(AuthorizationError):
            checkout([{"product_id": product_a.id, "quantity": 1}], "CASH", cashier.id)

        assert _stock(product_a.id) == 5

    def test_cash_short_payment_writes_nothing(self, cashier, product_a):
        with pytest.raises(ValidationError) as exc_info:
            checkout(
                [{"product_id": product_a.id, "quantity": 3}],
                "CASH",
                cashier.id,
                tax_pct=10,
                amount_received_cents=3000,
            )

        assert exc_info.value.details["amount_due_cents"] == 3300
        assert _stock(product_a.id) == 5
        assert _sale_count() == (0, 0)


# =============================================================================
# REQUEST VALIDATION
# =============================================================================


class TestRequestValidation:

    @pytest.mark.parametrize("cart", [[], None, "abc", {"product_id": 1, "quantity": 1}])
    def test_cart_must_be_a_non_empty_list(self, cashier, cart):
        with pytest.raises(ValidationError):
            checkout(cart, "CASH", cashier.id)

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, "2.5", "1e3", True, None, 10000])
    def test_bad_quantities(self, cashier, product_a, quantity):
        with pytest.raises(ValidationError):
            checkout([{"product_id": product_a.id, "quantity": quantity}], "CASH", cashier.id)

    @pytest.mark.parametrize("product_id", [0, -3, "abc", None, True])
    def test_bad_product_ids(self, cashier, product_id):
        with pytest.raises(ValidationError):
            checkout([{"product_id": product_id, "quantity": 1}], "CASH", cashier.id)

    @pytest.mark.parametrize("method", ["BITCOIN", "cash", "", None])
    def test_unknown_payment_method(self, cashier, product_a, method):
        with pytest.raises(ValidationError):
            checkout([{"product_id": product_a.id, "quantity": 1}], method, cashier.id)

    @pytest.mark.parametrize("field", ["discount_pct", "tax_pct"])
    @pytest.mark.parametrize("value", [-1, 100.01, "ten", "NaN", "Infinity", True])
    def test_bad_percentages(self, cashier, product_a, field, value):
        with pytest.raises(ValidationError):
            checkout([{"product_id": product_a.id, "quantity": 1}], "CASH", cashier.id, **{field: value})

        assert _stock(product_a.id) == 5

    def test_overlong_customer_phone(self, cashier, product_a):
        with pytest.raises(ValidationError):
            checkout([{"product_id": product_a.id, "quantity": 1}], "CASH", cashier.id, customer_phone="9" * 40)


# =============================================================================
# ARITHMETIC
# =============================================================================


class TestArithmetic:

    @pytest.mark.parametrize(
        "discount_pct,tax_pct",
        [(0, 0), (10, 0), (0, 7.25), (12.5, 8.875), (33.33, 19), (100, 15), (0, 100), (5, "8.25")],
    )
    def test_final_amount_formula(self, db_session, cashier, discount_pct, tax_pct):
        product = make_product(db_session, "ARITH-1", "Arithmetic Product", 1999, 100)

        sale = checkout(
            [{"product_id": product.id, "quantity": 3}],
            "CARD",
            cashier.id,
            discount_pct=discount_pct,
            tax_pct=tax_pct,
        )

        total = 1999 * 3
        d = float(discount_pct)
        t = float(tax_pct)
        expected = total - (total * d / 100) + ((total - total * d / 100) * t / 100)

        assert sale.total_cents == total
        assert abs(sale.final_amount_cents - expected) <= 2
        assert sale.final_amount_cents == sale.total_cents - sale.discount_cents + sale.tax_cents

    def test_compute_totals_rounds_half_up(self):
        totals = compute_totals([105], Decimal("10"), Decimal("0"))
        # 10.5 cents rounds to 11
        assert totals.discount_cents == 11
        assert totals.final_amount_cents == 94

    def test_cash_change(self, cashier, product_a):
        sale = checkout(
            [{"product_id": product_a.id, "quantity": 3}],
            "CASH",
            cashier.id,
            tax_pct=10,
            amount_received_cents=5000,
        )

        assert sale.amount_received_cents == 5000
        assert sale.change_cents == 1700

    def test_amount_received_is_ignored_for_cards(self, cashier, product_a):
        sale = checkout(
            [{"product_id": product_a.id, "quantity": 1}],
            "CARD",
            cashier.id,
            amount_received_cents=1,
        )

        assert sale.amount_received_cents is None
        assert sale.change_cents is None


# =============================================================================
# DATABASE FAILURES
# =============================================================================


def fail_on_second_decrement(monkeypatch, error):
    """Let the first line's decrement through, then raise `error` on the next one."""
    real_decrement = catalog_service.decrement_stock
    calls = []

    def decrement(*args, **kwargs):
        calls.append(args)
        if len(calls) == 2:
            raise error
        return real_decrement(*args, **kwargs)

    monkeypatch.setattr(catalog_service, "decrement_stock", decrement)
    return calls


class TestDatabaseFailures:

    @pytest.mark.parametrize("error, expected", [
        (OperationalError("UPDATE products", {}, Exception("database is locked")), ConflictError),
        (StaleDataError("UPDATE statement on table 'products' expected to update 1 row(s); 0 were matched."), ConflictError),
        (OperationalError("UPDATE products", {}, Exception("server closed the connection"), connection_invalidated=True), StorageError),
        (IntegrityError("INSERT INTO stock_movements", {}, Exception("CHECK constraint failed")), StorageError),
        (SQLAlchemyError("disk I/O error"), StorageError),
    ])
    def test_errors_are_mapped_and_rolled_back(self, monkeypatch, cashier, product_a, product_b, error, expected):
        calls = fail_on_second_decrement(monkeypatch, error)

        with pytest.raises(expected) as exc_info:
            checkout(
                [
                    {"product_id": product_a.id, "quantity": 2},
                    {"product_id": product_b.id, "quantity": 1},
                ],
                "CASH",
                cashier.id,
            )

        assert type(exc_info.value) is expected
        assert exc_info.value.__cause__ is error
        assert len(calls) == 2
        assert _stock(product_a.id) == 5
        assert _stock(product_b.id) == 1
        assert _sale_count() == (0, 0)
        assert db.session.query(StockMovement).count() == 0

    def test_conflict_is_not_retried(self, monkeypatch, cashier, product_a, product_b):
        calls = fail_on_second_decrement(
            monkeypatch, OperationalError("UPDATE products", {}, Exception("database is locked")),
        )

        with pytest.raises(ConflictError) as exc_info:
            checkout(
                [
                    {"product_id": product_a.id, "quantity": 1},
                    {"product_id": product_b.id, "quantity": 1},
                ],
                "CASH",
                cashier.id,
            )

        assert len(calls) == 2
        assert "submit it again" in exc_info.value.message

    def test_storage_error_hides_driver_details(self, monkeypatch, cashier, product_a, product_b):
        fail_on_second_decrement(monkeypatch, SQLAlchemyError("disk I/O error at /var/lib/pos.db"))

        with pytest.raises(StorageError) as exc_info:
            checkout(
                [
                    {"product_id": product_a.id, "quantity": 1},
                    {"product_id": product_b.id, "quantity": 1},
                ],
                "CASH",
                cashier.id,
            )

        assert exc_info.value.to_dict() == {
            "error": "StorageError",
            "message": "Internal storage failure",
            "details": {},
        }


# =============================================================================
# SALE NUMBER COLLISIONS
# =============================================================================


class TestSaleNumberCollisions:

    def test_collision_is_retried_with_a_fresh_number(self, monkeypatch, cashier, product_a):
        first = checkout([{"product_id": product_a.id, "quantity": 1}], "CASH", cashier.id)
        taken = first.sale_number

        real_next = checkout_service.next_sale_number
        calls = []

        def stale_then_real(on_date):
            calls.append(on_date)
            if len(calls) == 1:
                return taken
            return real_next(on_date)

        monkeypatch.setattr(checkout_service, "next_sale_number", stale_then_real)

        second = checkout([{"product_id": product_a.id, "quantity": 2}], "CASH", cashier.id)

        assert len(calls) == 2
        assert second.sale_number != taken
        assert second.sale_number.endswith("-0002")
        assert _stock(product_a.id) == 2
        assert _sale_count() == (2, 2)

    def test_exhausted_retries_raise_conflict(self, monkeypatch, cashier, product_a):
        first = checkout([{"product_id": product_a.id, "quantity": 1}], "CASH", cashier.id)
        taken = first.sale_number
        calls = []

        def always_taken(on_date):
            calls.append(on_date)
            return taken

        monkeypatch.setattr(checkout_service, "next_sale_number", always_taken)

        with pytest.raises(ConflictError):
            checkout([{"product_id": product_a.id, "quantity": 2}], "CASH", cashier.id)

        assert len(calls) == 3
        assert _stock(product_a.id) == 4
        assert _sale_count() == (1, 1)
