from __future__ import annotations

from ..extensions import db
from posapp.time_utils import to_utc_z

PRODUCT_STATUS_ACTIVE = "ACTIVE"
PRODUCT_STATUS_RETIRED = "RETIRED"

MOVEMENT_SALE = "SALE"
MOVEMENT_PURCHASE = "PURCHASE"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_RETURN = "RETURN"


class Product(db.Model):
    """
    Product master data.

    STOCK: stock_qty is the authoritative on-hand quantity. It is changed only
    through catalog_service (set/increment/decrement) and the checkout
    transaction, and every change appends a StockMovement row.

    LIFECYCLE: products with sale history are never physically deleted; they
    are retired (is_active=False). The product code is unique among active
    products only, so a retired code can be reused.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock_qty >= 0", name="ck_products_stock_non_negative"),
        db.CheckConstraint("price_cents >= 0", name="ck_products_price_non_negative"),
        db.Index(
            "uq_products_active_code",
            "code",
            unique=True,
            sqlite_where=db.text("is_active = 1"),
            postgresql_where=db.text("is_active"),
        ),
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # SKU
    code = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(100), nullable=True, index=True)
    image_url = db.Column(db.String(512), nullable=True)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    stock_qty = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def status(self) -> str:
        return PRODUCT_STATUS_ACTIVE if self.is_active else PRODUCT_STATUS_RETIRED

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} name={self.name!r} stock_qty={self.stock_qty}>"

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "price_cents": self.price_cents,
        }

    def to_dict(self, *, low_stock_threshold: int | None = None, default_category: str | None = None) -> dict:
        data = {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "category": self.category or default_category,
            "image_url": self.image_url,
            "price_cents": self.price_cents,
            "stock_qty": self.stock_qty,
            "is_active": self.is_active,
            "status": self.status,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if low_stock_threshold is not None:
            data["is_low_stock"] = self.stock_qty <= low_stock_threshold
        return data


class StockMovement(db.Model):
    """
    Append-only history of stock changes.

    Written in the same DB transaction as the stock change it describes.
    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)  # SALE, PURCHASE, ADJUSTMENT, RETURN
    quantity = db.Column(db.Integer, nullable=False)
    previous_qty = db.Column(db.Integer, nullable=False)
    new_qty = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    # Sale number for SALE movements, free text otherwise
    reference = db.Column(db.String(64), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("stock_movements", lazy="dynamic", passive_deletes=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "previous_qty": self.previous_qty,
            "new_qty": self.new_qty,
            "reason": self.reason,
            "reference": self.reference,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
