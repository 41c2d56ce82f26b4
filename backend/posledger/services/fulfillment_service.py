# Overview: Order fulfillment; the only place a sale touches both invoices and stock.

from __future__ import annotations

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..exceptions import (
    InsufficientStockError,
    NotFoundError,
    PartialFulfillmentError,
    PosLedgerError,
    ValidationError,
)
from ..models import Invoice, InvoiceItem, Product
from ..time_utils import utcnow
from ..validation import validate_invoice_draft
from . import invoice_service
from .concurrency import run_with_retry
from .inventory_service import adjust_stock, get_available_stock
from .tenant_service import require_seller, scoped_query
"""
Fulfillment Invariants (authoritative)

Placing an order:
1. Resolve every cart line to its stock owner (variant if variant_id, else
   the product) and capture the line snapshot (name, variant name, sku,
   barcode, price) at this moment.
2. Check availability against a fresh read, aggregated per stock owner,
   before anything is written. Failures here leave no trace.
3. Persist the invoice, then debit every line with adjust_stock's
   conditional write. The conditional write is the only oversell guard.

FULFILLMENT MODES (ORDER_FULFILLMENT_MODE):
- atomic (default): invoice insert and all debits share one transaction. A
  line losing the race between step 2 and 3 rolls the whole order back and
  raises InsufficientStockError.
- per_line: the invoice commits first, then each line debits in its own
  transaction. Failed lines stay stock_applied=False, the invoice is flagged
  needs_reconciliation and PartialFulfillmentError is raised. The sale is
  kept; inventory is flagged instead. A line still failing on a database
  error after retries is reported the same way (kind DatabaseError).

Estimate invoices are quotes: they never move stock.

Reversing an order (Cancelled/Voided/Refunded status, soft delete):
- Credits walk the stored item snapshots, never the live product.
- Only lines with stock_applied are credited, each at most once
  (InvoiceItem.stock_reversed is the guard; a restore clears it).
- A credit whose product was deleted, whose variant was removed, or whose
  product gained variants after a product-level sale is a no-op logged as
  a warning, never a failure. The line stays unreversed.
"""

FULFILLMENT_MODES = ("atomic", "per_line")

# Statuses that hand the goods back to stock
RESTOCK_STATUSES = {"Cancelled", "Voided", "Refunded"}


def _fulfillment_mode() -> str:
    mode = current_app.config.get("ORDER_FULFILLMENT_MODE", "atomic")
    if mode not in FULFILLMENT_MODES:
        raise ValueError(f"Unknown ORDER_FULFILLMENT_MODE: {mode}")
    return mode


def _snapshot_line(seller_id: int, line: dict, index: int) -> dict:
    """Resolve a cart line to its stock owner and copy the data the invoice keeps."""
    product = scoped_query(Product, seller_id).filter(Product.id == line["product_id"]).first()
    if product is None:
        raise NotFoundError(f"items[{index}]: Product not found", details={"product_id": line["product_id"]})

    snapshot = {
        "product_id": product.id,
        "variant_id": None,
        "name": product.name,
        "variant_name": None,
        "sku": product.sku,
        "barcode": product.barcode,
        "quantity": line["quantity"],
        "price": line["price"],
    }

    if line["variant_id"] is None:
        if product.variants:
            raise ValidationError(f"items[{index}]: Product has variants; variant_id is required")
        return snapshot

    variant = next((v for v in product.variants if v.id == line["variant_id"]), None)
    if variant is None:
        raise NotFoundError(f"items[{index}]: Variant not found", details={"variant_id": line["variant_id"]})

    snapshot.update(
        variant_id=variant.id,
        variant_name=variant.name,
        sku=variant.sku or product.sku,
        barcode=variant.barcode or product.barcode,
    )
    return snapshot


def _check_availability(seller_id: int, lines: list[dict]) -> None:
    """Fresh stock read per owner; the same unit on two lines counts once."""
    required: dict[tuple, int] = {}
    for line in lines:
        key = (line["product_id"], line["variant_id"])
        required[key] = required.get(key, 0) + line["quantity"]

    for (product_id, variant_id), quantity in required.items():
        available = get_available_stock(seller_id, product_id, variant_id)
        if quantity > available:
            label = next(l["name"] for l in lines if l["product_id"] == product_id)
            raise InsufficientStockError(
                f"Insufficient stock for {label}: requested {quantity}, available {available}",
                details={
                    "product_id": product_id,
                    "variant_id": variant_id,
                    "requested_quantity": quantity,
                    "available": available,
                },
            )


def _debit_item(seller_id: int, invoice: Invoice, item) -> None:
    adjust_stock(
        seller_id,
        item.product_id,
        item.variant_id,
        -item.quantity,
        reason="SALE",
        invoice_id=invoice.id,
        commit=False,
    )
    item.stock_applied = True


def place_order(seller_id: int, payload: dict) -> Invoice:
    """
    Create an invoice from a cart and debit stock for every line.

    Raises:
        ValidationError / NotFoundError: bad cart, nothing written
        InsufficientStockError: not enough stock (atomic mode: also when a
            concurrent sale won the race; the order is rolled back)
        PartialFulfillmentError: per_line mode only, invoice kept and
            flagged for reconciliation
    """
    require_seller(seller_id)
    draft = validate_invoice_draft(payload)
    draft["items"] = [_snapshot_line(seller_id, line, i) for i, line in enumerate(draft["items"])]

    if draft.get("type") == "Estimate":
        invoice = invoice_service.create_invoice(seller_id, draft)
        current_app.logger.info("Estimate %s recorded for seller %s (no stock moved)", invoice.id, seller_id)
        return invoice

    _check_availability(seller_id, draft["items"])

    if _fulfillment_mode() == "per_line":
        return _place_per_line(seller_id, draft)
    return _place_atomic(seller_id, draft)


def _place_atomic(seller_id: int, draft: dict) -> Invoice:
    def _op() -> Invoice:
        try:
            invoice = invoice_service.create_invoice(seller_id, draft, commit=False)
            for item in invoice.items:
                _debit_item(seller_id, invoice, item)
            invoice.stock_applied = True
            db.session.commit()
        except PosLedgerError:
            db.session.rollback()
            raise
        return invoice

    invoice = run_with_retry(_op)
    current_app.logger.info(
        "Order placed: invoice %s for seller %s, %s line(s)", invoice.id, seller_id, len(invoice.items)
    )
    return invoice


def _place_per_line(seller_id: int, draft: dict) -> Invoice:
    invoice = run_with_retry(lambda: invoice_service.create_invoice(seller_id, draft))
    invoice_id = invoice.id

    # Plain copies; a rollback below expires the ORM objects
    lines = [
        {
            "index": index,
            "item_id": item.id,
            "product_id": item.product_id,
            "variant_id": item.variant_id,
            "quantity": item.quantity,
        }
        for index, item in enumerate(invoice.items)
    ]

    failed_lines = []
    for line in lines:
        def _debit_line(item_id=line["item_id"]) -> None:
            invoice = db.session.get(Invoice, invoice_id)
            _debit_item(seller_id, invoice, db.session.get(InvoiceItem, item_id))
            db.session.commit()

        try:
            run_with_retry(_debit_line)
        except (InsufficientStockError, NotFoundError, ValidationError) as exc:
            db.session.rollback()
            failed_lines.append({**line, "kind": exc.kind, "error": exc.message})
        except (OperationalError, StaleDataError) as exc:
            # Retries exhausted; the line is reported like any other failure
            db.session.rollback()
            failed_lines.append({**line, "kind": "DatabaseError", "error": str(getattr(exc, "orig", None) or exc)})

    invoice = db.session.get(Invoice, invoice_id)
    invoice.stock_applied = any(item.stock_applied for item in invoice.items)
    if failed_lines:
        invoice.needs_reconciliation = True
    db.session.commit()

    if failed_lines:
        current_app.logger.error(
            "Partial fulfillment: invoice %s for seller %s saved but %s line(s) not debited: %s",
            invoice_id, seller_id, len(failed_lines), failed_lines,
        )
        raise PartialFulfillmentError(
            f"Invoice {invoice_id} was saved but {len(failed_lines)} line(s) could not be debited",
            invoice_id=invoice_id,
            failed_lines=failed_lines,
        )

    current_app.logger.info(
        "Order placed: invoice %s for seller %s, %s line(s)", invoice_id, seller_id, len(invoice.items)
    )
    return invoice


def _restock_skip_reason(seller_id: int, product_id: int, variant_id: int | None) -> str | None:
    """Why a line's stock can no longer be credited, or None when it can."""
    product = scoped_query(Product, seller_id).filter(Product.id == product_id).first()
    if product is None:
        return f"product {product_id} no longer exists"
    if variant_id is None:
        # Sold as a plain product, variants were added afterwards
        if product.variants:
            return f"product {product_id} now has variants"
        return None
    if not any(v.id == variant_id for v in product.variants):
        return f"product {product_id} variant {variant_id} no longer exists"
    return None


def _flip_reversed(item: InvoiceItem, value: bool) -> bool:
    """
    Conditionally set item.stock_reversed. Returns False when the flag
    already had that value in the database (a concurrent cancel or restore
    got there first).
    """
    result = db.session.execute(
        update(InvoiceItem)
        .where(InvoiceItem.id == item.id, InvoiceItem.stock_reversed.is_(not value))
        .values(stock_reversed=value)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(item, ["stock_reversed"])
    return result.rowcount == 1


def _credit_items(seller_id: int, invoice: Invoice) -> int:
    """
    Credit back every line whose debit is in effect. No commit.

    Returns the number of lines credited. A line is credited at most once
    (stock_reversed) until a restore debits it again.
    """
    credited = 0
    for item in invoice.items:
        if not item.stock_applied or item.stock_reversed:
            continue
        reason = _restock_skip_reason(seller_id, item.product_id, item.variant_id)
        if reason is not None:
            current_app.logger.warning("Stock credit skipped for invoice %s: %s", invoice.id, reason)
            continue
        if not _flip_reversed(item, True):
            continue
        try:
            adjust_stock(
                seller_id,
                item.product_id,
                item.variant_id,
                item.quantity,
                reason="SALE_REVERSAL",
                invoice_id=invoice.id,
                commit=False,
            )
        except (NotFoundError, ValidationError) as exc:
            # Stock owner deleted or reshaped after the check above
            _flip_reversed(item, False)
            current_app.logger.warning("Stock credit skipped for invoice %s: %s", invoice.id, exc.message)
            continue
        credited += 1

    if invoice.stock_applied and invoice.stock_restored_at is None:
        invoice.stock_restored_at = utcnow()
    return credited


def update_invoice(seller_id: int, invoice_id: int, patch: dict) -> Invoice:
    """
    Edit an invoice; moving it to Cancelled, Voided or Refunded restocks it.
    """
    def _op() -> Invoice:
        try:
            invoice = invoice_service.update_invoice(seller_id, invoice_id, patch, commit=False)
            if invoice.status in RESTOCK_STATUSES:
                credited = _credit_items(seller_id, invoice)
                if credited:
                    current_app.logger.info(
                        "Invoice %s %s: %s line(s) restocked", invoice.id, invoice.status.lower(), credited
                    )
            db.session.commit()
        except PosLedgerError:
            db.session.rollback()
            raise
        return invoice

    return run_with_retry(_op)


def delete_invoice(seller_id: int, invoice_id: int) -> Invoice:
    """Soft-delete (cancel) an invoice and credit its stock back."""
    def _op() -> Invoice:
        try:
            invoice = invoice_service.soft_delete_invoice(seller_id, invoice_id, commit=False)
            credited = _credit_items(seller_id, invoice)
            db.session.commit()
        except PosLedgerError:
            db.session.rollback()
            raise
        current_app.logger.info("Invoice %s deleted: %s line(s) restocked", invoice.id, credited)
        return invoice

    return run_with_retry(_op)


def bulk_delete_invoices(seller_id: int, invoice_ids: list) -> dict:
    """Soft-delete several invoices in one transaction, crediting each once."""
    def _op() -> dict:
        try:
            invoices, missing = invoice_service.bulk_soft_delete(seller_id, invoice_ids, commit=False)
            for invoice in invoices:
                _credit_items(seller_id, invoice)
            db.session.commit()
        except PosLedgerError:
            db.session.rollback()
            raise
        return {"deleted": [i.id for i in invoices], "not_found": missing}

    result = run_with_retry(_op)
    current_app.logger.info("Bulk delete for seller %s: %s invoice(s)", seller_id, len(result["deleted"]))
    return result


def restore_invoice(seller_id: int, invoice_id: int) -> Invoice:
    """
    Undo a soft delete. Lines that were credited on delete are debited again
    with the same conditional write; if any can't be, nothing changes and
    InsufficientStockError is raised.

    An invoice that was cancelled before it was deleted comes back as-is:
    its stock stays credited.
    """
    def _op() -> Invoice:
        try:
            invoice = invoice_service.undelete_invoice(seller_id, invoice_id, commit=False)
            if invoice.status not in RESTOCK_STATUSES:
                for item in invoice.items:
                    if not item.stock_reversed or not _flip_reversed(item, False):
                        continue
                    adjust_stock(
                        seller_id,
                        item.product_id,
                        item.variant_id,
                        -item.quantity,
                        reason="SALE",
                        invoice_id=invoice.id,
                        note="Invoice restored",
                        commit=False,
                    )
                invoice.stock_restored_at = None
            db.session.commit()
        except PosLedgerError:
            db.session.rollback()
            raise
        return invoice

    invoice = run_with_retry(_op)
    current_app.logger.info("Invoice %s restored for seller %s", invoice.id, seller_id)
    return invoice
