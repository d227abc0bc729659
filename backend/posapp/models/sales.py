from __future__ import annotations

from ..extensions import db
from posapp.time_utils import to_utc_z

PAYMENT_CASH = "CASH"
PAYMENT_CARD = "CARD"
PAYMENT_DIGITAL_WALLET = "DIGITAL_WALLET"
PAYMENT_METHODS = (PAYMENT_CASH, PAYMENT_CARD, PAYMENT_DIGITAL_WALLET)

SALE_STATUS_COMPLETED = "COMPLETED"


class Sale(db.Model):
    """
    Completed checkout.

    Written exactly once by checkout_service together with its items; there
    is no update or delete path. All amounts are in cents and satisfy
    final_amount_cents == total_cents - discount_cents + tax_cents.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("sale_number", name="uq_sales_sale_number"),
        db.CheckConstraint(
            "final_amount_cents = total_cents - discount_cents + tax_cents",
            name="ck_sales_final_amount",
        ),
        db.CheckConstraint("total_cents >= 0", name="ck_sales_total_non_negative"),
        db.CheckConstraint("discount_cents >= 0", name="ck_sales_discount_non_negative"),
        db.CheckConstraint("tax_cents >= 0", name="ck_sales_tax_non_negative"),
        db.Index("ix_sales_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable, date-scoped number (e.g., "SAL-20260211-0007")
    sale_number = db.Column(db.String(32), nullable=False)

    total_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    final_amount_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(32), nullable=False, index=True)

    # Cash tender (optional)
    amount_received_cents = db.Column(db.Integer, nullable=True)
    change_cents = db.Column(db.Integer, nullable=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    user = db.relationship("User", backref=db.backref("sales", lazy=True))
    items = db.relationship(
        "SaleItem",
        back_populates="sale",
        order_by="SaleItem.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "sale_number": self.sale_number,
            "status": SALE_STATUS_COMPLETED,
            "total_cents": self.total_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "final_amount_cents": self.final_amount_cents,
            "payment_method": self.payment_method,
            "amount_received_cents": self.amount_received_cents,
            "change_cents": self.change_cents,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "notes": self.notes,
            "user_id": self.user_id,
            "user": self.user.to_summary() if self.user else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class SaleItem(db.Model):
    """
    One line of a sale.

    unit_price_cents is the product price captured at checkout. It is never
    re-read from Product, so later price changes do not touch past sales.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_sale_items_price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", back_populates="items")
    product = db.relationship("Product", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "product": self.product.to_summary() if self.product else None,
        }
