from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow
from .inventory import money


INVOICE_TYPES = ("Retail", "Tax", "Estimate")


class Invoice(db.Model):
    """
    Sale record.

    Items and totals are immutable history once the invoice exists; only
    status, payments, balance, internal notes, the lock flag and soft-delete
    fields change afterwards (see invoice_service.INVOICE_MUTABLE_FIELDS).

    Stock bookkeeping flags:
    - stock_applied: the order's lines were debited from the catalog
    - stock_restored_at: when the debits were credited back (cancel/void/
      refund/delete); cleared when a deleted invoice is restored
    - needs_reconciliation: the invoice exists but at least one line debit
      failed (per_line fulfillment mode only)
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.Index("ix_invoices_seller_status_date", "seller_id", "status", "date"),
        db.Index("ix_invoices_seller_deleted", "seller_id", "is_deleted"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id"), nullable=False, index=True)

    customer_id = db.Column(db.Integer, nullable=True)
    customer_name = db.Column(db.String(255), nullable=False)
    date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    type = db.Column(db.String(16), nullable=False, default="Retail")

    # Totals are supplied by the caller and stored as given
    gross_total = db.Column(db.Numeric(12, 2), nullable=True)
    item_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    tax = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    additional_charges = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    round_off = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2), nullable=False)

    # Paid, Partially Paid, Unpaid, Refunded, Cancelled, Voided
    status = db.Column(db.String(20), nullable=False, default="Paid", index=True)
    payment_status = db.Column(db.String(20), nullable=False, default="Paid")
    payment_method = db.Column(db.String(32), nullable=False, default="Cash")
    balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    internal_notes = db.Column(db.Text, nullable=False, default="")
    is_locked = db.Column(db.Boolean, nullable=False, default=False)

    stock_applied = db.Column(db.Boolean, nullable=False, default=False)
    stock_restored_at = db.Column(db.DateTime(timezone=True), nullable=True)
    needs_reconciliation = db.Column(db.Boolean, nullable=False, default=False, index=True)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    seller = db.relationship("Seller", backref=db.backref("invoices", lazy=True))
    items = db.relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.id",
        lazy="selectin",
    )
    payments = db.relationship(
        "InvoicePayment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoicePayment.id",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} seller_id={self.seller_id} status={self.status!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "date": to_utc_z(self.date),
            "type": self.type,
            "items": [i.to_dict() for i in self.items],
            "gross_total": money(self.gross_total),
            "item_discount": money(self.item_discount),
            "subtotal": money(self.subtotal),
            "tax": money(self.tax),
            "discount": money(self.discount),
            "additional_charges": money(self.additional_charges),
            "round_off": money(self.round_off),
            "total": money(self.total),
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "balance": money(self.balance),
            "payments": [p.to_dict() for p in self.payments],
            "internal_notes": self.internal_notes,
            "is_locked": self.is_locked,
            "stock_applied": self.stock_applied,
            "stock_restored_at": to_utc_z(self.stock_restored_at),
            "needs_reconciliation": self.needs_reconciliation,
            "is_deleted": self.is_deleted,
            "deleted_at": to_utc_z(self.deleted_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InvoiceItem(db.Model):
    """
    Snapshot of a sold unit, captured at sale time.

    product_id / variant_id are historical pointers, not foreign keys: the
    product may be edited or deleted later and the line must not change.
    """
    __tablename__ = "invoice_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer, db.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )

    product_id = db.Column(db.Integer, nullable=False, index=True)
    variant_id = db.Column(db.Integer, nullable=True)
    name = db.Column(db.String(255), nullable=False)
    variant_name = db.Column(db.String(255), nullable=True)
    sku = db.Column(db.String(64), nullable=True)
    barcode = db.Column(db.String(128), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)

    # False when the line's debit never happened (Estimate, or a lost race)
    stock_applied = db.Column(db.Boolean, nullable=False, default=False)
    # True while the debit is credited back (cancelled or deleted invoice)
    stock_reversed = db.Column(db.Boolean, nullable=False, default=False)

    invoice = db.relationship("Invoice", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "name": self.name,
            "variant_name": self.variant_name,
            "sku": self.sku,
            "barcode": self.barcode,
            "quantity": self.quantity,
            "price": money(self.price),
            "total": money(self.total),
            "stock_applied": self.stock_applied,
            "stock_reversed": self.stock_reversed,
        }


class InvoicePayment(db.Model):
    """Payment received against an invoice. Supports split and partial payments."""
    __tablename__ = "invoice_payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer, db.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    method = db.Column(db.String(32), nullable=False, default="Cash")
    date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    note = db.Column(db.String(255), nullable=True)

    invoice = db.relationship("Invoice", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": money(self.amount),
            "method": self.method,
            "date": to_utc_z(self.date),
            "note": self.note,
        }
