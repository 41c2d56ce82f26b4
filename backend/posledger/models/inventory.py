from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


BARCODE_TYPES = ("CODE128", "EAN13", "UPC")


def money(value) -> float | None:
    """Numeric columns come back as Decimal; the API speaks plain numbers."""
    if value is None:
        return None
    return float(value)


class Product(db.Model):
    """
    Product master data.

    MULTI-TENANT: Products are scoped to a seller via seller_id.

    UNIQUENESS (storage level, seller-scoped):
    - (seller_id, sku): every product has exactly one SKU
    - (seller_id, barcode): barcode is optional; NULLs never collide, so
      empty barcodes are normalized to NULL before every write

    Both constraints cover soft-deleted rows too. Restoring a product can
    therefore never collide with something created while it was deleted.

    STOCK:
    - Without variants, stock is whatever the caller set (or adjust_stock moved)
    - With variants, stock is always SUM(variant.stock); see inventory_service
    - stock is only ever decremented through a conditional UPDATE, never
      read-modify-write (see inventory_service.adjust_stock)
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("seller_id", "sku", name="uq_products_seller_sku"),
        db.UniqueConstraint("seller_id", "barcode", name="uq_products_seller_barcode"),
        db.CheckConstraint("stock >= 0", name="ck_products_stock_nonnegative"),
        db.Index("ix_products_seller_name", "seller_id", "name"),
        db.Index("ix_products_seller_deleted", "seller_id", "is_deleted"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=False)
    barcode = db.Column(db.String(128), nullable=True)
    barcode_type = db.Column(db.String(16), nullable=False, default="CODE128")
    category = db.Column(db.String(120), nullable=False)
    brand = db.Column(db.String(120), nullable=True)
    description = db.Column(db.Text, nullable=True)

    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    cost_price = db.Column(db.Numeric(12, 2), nullable=True, default=0)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=True, default=0)

    stock = db.Column(db.Integer, nullable=False, default=0)
    unit = db.Column(db.String(32), nullable=False, default="pcs")
    min_stock = db.Column(db.Integer, nullable=False, default=10)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Soft delete: excluded from every default read path
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    seller = db.relationship("Seller", backref=db.backref("products", lazy=True))
    variants = db.relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductVariant.id",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} seller_id={self.seller_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "name": self.name,
            "sku": self.sku,
            "barcode": self.barcode,
            "barcode_type": self.barcode_type,
            "category": self.category,
            "brand": self.brand,
            "description": self.description,
            "price": money(self.price),
            "cost_price": money(self.cost_price),
            "tax_rate": money(self.tax_rate),
            "stock": self.stock,
            "unit": self.unit,
            "min_stock": self.min_stock,
            "expiry_date": to_utc_z(self.expiry_date),
            "is_active": self.is_active,
            "variants": [v.to_dict() for v in self.variants],
            "is_deleted": self.is_deleted,
            "deleted_at": to_utc_z(self.deleted_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductVariant(db.Model):
    """
    Sellable sub-unit of a Product (size, colour, ...).

    Lifecycle is owned by the parent: variants are created, changed and
    removed only as part of a product write.

    seller_id is denormalized from the parent so that variant SKU/barcode
    uniqueness is a real storage constraint instead of a pre-write query
    alone. The query still runs first to give a clean error; the constraint
    catches two concurrent writers that both passed it.
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        db.UniqueConstraint("seller_id", "barcode", name="uq_variants_seller_barcode"),
        db.UniqueConstraint("seller_id", "sku", name="uq_variants_seller_sku"),
        db.CheckConstraint("stock >= 0", name="ck_variants_stock_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(
        db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=True)
    options = db.Column(db.JSON, nullable=False, default=list)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    sku = db.Column(db.String(64), nullable=True)
    barcode = db.Column(db.String(128), nullable=True)
    barcode_type = db.Column(db.String(16), nullable=False, default="CODE128")
    cost_price = db.Column(db.Numeric(12, 2), nullable=True, default=0)
    attributes = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", back_populates="variants")

    def __repr__(self) -> str:
        return f"<ProductVariant id={self.id} product_id={self.product_id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "options": list(self.options or []),
            "price": money(self.price),
            "stock": self.stock,
            "sku": self.sku,
            "barcode": self.barcode,
            "barcode_type": self.barcode_type,
            "cost_price": money(self.cost_price),
            "attributes": dict(self.attributes or {}),
        }


class StockMovement(db.Model):
    """
    Append-only record of every stock adjustment.

    Written in the same transaction as the conditional update it records,
    so a movement exists if and only if the stock actually moved.
    variant_id is a plain integer: the variant may be removed later while
    the movement stays.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_movements_seller_product_occurred", "seller_id", "product_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, nullable=True)

    # SALE, SALE_REVERSAL, MANUAL, IMPORT
    reason = db.Column(db.String(32), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    resulting_stock = db.Column(db.Integer, nullable=False)

    invoice_id = db.Column(db.Integer, nullable=True, index=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "reason": self.reason,
            "quantity_delta": self.quantity_delta,
            "resulting_stock": self.resulting_stock,
            "invoice_id": self.invoice_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
