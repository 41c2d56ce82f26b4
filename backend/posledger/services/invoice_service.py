# Overview: Invoice ledger; persists sale snapshots and manages payment/status lifecycle.

"""
Invoice Ledger Service

WHY: An invoice is the historical record of a sale. Once it exists its items
and totals never change; only the payment/status side of it moves.

DESIGN:
- No stock is touched here. Debits and credits belong to fulfillment_service,
  which calls into this module with commit=False and owns the transaction.
- Post-creation writes are limited to INVOICE_MUTABLE_FIELDS plus payments
  and the soft-delete/bookkeeping flags.
- Status changes go through STATUS_TRANSITIONS; terminal statuses have no
  way out.

MULTI-TENANT: every lookup goes through scoped_query; soft-deleted invoices
are hidden unless include_deleted=True.
"""

from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from ..exceptions import InvalidStatusTransitionError, NotFoundError, ValidationError
from ..models import Invoice, InvoiceItem, InvoicePayment
from ..time_utils import utcnow
from ..validation import validate_payment
from .tenant_service import require_seller, scoped_query


PAYMENT_STATUSES = ("Unpaid", "Partially Paid", "Paid")
TERMINAL_STATUSES = ("Refunded", "Cancelled", "Voided")
INVOICE_STATUSES = PAYMENT_STATUSES + TERMINAL_STATUSES

# Unpaid -> Partially Paid -> Paid; any open status -> a terminal one
STATUS_TRANSITIONS = {
    "Unpaid": {"Partially Paid", "Paid", *TERMINAL_STATUSES},
    "Partially Paid": {"Paid", *TERMINAL_STATUSES},
    "Paid": set(TERMINAL_STATUSES),
    "Refunded": set(),
    "Cancelled": set(),
    "Voided": set(),
}

INVOICE_MUTABLE_FIELDS = {"status", "balance", "internal_notes", "is_locked"}

# Anything a client might try to rewrite after the sale
IMMUTABLE_FIELDS = {
    "items", "customer_id", "customer_name", "date", "type", "gross_total",
    "item_discount", "subtotal", "tax", "discount", "additional_charges",
    "round_off", "total",
}


def check_status_transition(current: str, new: str) -> None:
    """Raise InvalidStatusTransitionError unless current -> new is allowed."""
    if new not in INVOICE_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(INVOICE_STATUSES)}")
    if new == current:
        return
    if new not in STATUS_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransitionError(
            f"Cannot change invoice status from {current} to {new}",
            details={"from": current, "to": new},
        )


def _payment_status_for(total: Decimal, paid: Decimal) -> str:
    if paid <= 0:
        return "Unpaid"
    if paid < total:
        return "Partially Paid"
    return "Paid"


def _sum_payments(invoice: Invoice) -> Decimal:
    return sum((Decimal(p.amount) for p in invoice.payments), Decimal("0"))


def create_invoice(seller_id: int, draft: dict, *, commit: bool = True) -> Invoice:
    """
    Persist an invoice from an already validated draft.

    draft["items"] are line snapshots (product_id, variant_id, name,
    variant_name, sku, barcode, quantity, price). Line totals are
    price * quantity; invoice totals are stored as supplied.

    When payments are supplied, balance and the payment status follow from
    them unless the caller set status explicitly.
    """
    require_seller(seller_id)

    draft = dict(draft)
    items = draft.pop("items")
    payments = draft.pop("payments", None) or []

    status = draft.get("status")
    if status is not None and status not in PAYMENT_STATUSES:
        raise ValidationError(f"A new invoice must be one of: {', '.join(PAYMENT_STATUSES)}")

    invoice = Invoice(seller_id=seller_id, **draft)

    for line in items:
        invoice.items.append(
            InvoiceItem(
                product_id=line["product_id"],
                variant_id=line.get("variant_id"),
                name=line["name"],
                variant_name=line.get("variant_name"),
                sku=line.get("sku"),
                barcode=line.get("barcode"),
                quantity=line["quantity"],
                price=line["price"],
                total=line["price"] * line["quantity"],
                stock_applied=False,
            )
        )

    for p in payments:
        invoice.payments.append(InvoicePayment(**p))

    if payments:
        total = Decimal(invoice.total)
        paid = sum((p["amount"] for p in payments), Decimal("0"))
        if draft.get("balance") is None:
            invoice.balance = max(total - paid, Decimal("0"))
        if status is None:
            invoice.status = _payment_status_for(total, paid)
    invoice.payment_status = invoice.status or "Paid"

    db.session.add(invoice)
    db.session.flush()
    if commit:
        db.session.commit()
    return invoice


def get_invoice(seller_id: int, invoice_id: int, *, include_deleted: bool = False) -> Invoice:
    invoice = (
        scoped_query(Invoice, seller_id, include_deleted=include_deleted)
        .filter(Invoice.id == invoice_id)
        .first()
    )
    if invoice is None:
        raise NotFoundError("Invoice not found")
    return invoice


def list_invoices(
    seller_id: int,
    *,
    include_deleted: bool = False,
    status: str | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Seller-scoped invoices, newest first.

    Returns:
        Dict with 'items', 'count', and pagination metadata if paginated.
    """
    query = scoped_query(Invoice, seller_id, include_deleted=include_deleted)
    if status:
        query = query.filter(Invoice.status == status)
    query = query.order_by(Invoice.date.desc(), Invoice.id.desc())

    if page is None:
        invoices = query.all()
        return {"items": [i.to_dict() for i in invoices], "count": len(invoices)}

    per_page = min(per_page or 20, 100)
    page = max(page, 1)
    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    invoices = query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [i.to_dict() for i in invoices],
        "count": len(invoices),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def update_invoice(seller_id: int, invoice_id: int, patch: dict, *, commit: bool = True) -> Invoice:
    """
    Apply a post-creation edit.

    Only status, balance, internal_notes and is_locked may change. A locked
    invoice accepts nothing but unlocking. Payments are added through
    record_payment.

    Raises:
        NotFoundError, ValidationError, InvalidStatusTransitionError
    """
    if not isinstance(patch, dict):
        raise ValidationError("Invalid JSON payload")

    invoice = get_invoice(seller_id, invoice_id)

    for key in patch:
        if key in IMMUTABLE_FIELDS:
            raise ValidationError(f"Field cannot change after the invoice is created: {key}")
        if key not in INVOICE_MUTABLE_FIELDS:
            raise ValidationError(f"Field not allowed: {key}")

    if invoice.is_locked and set(patch) - {"is_locked"}:
        raise ValidationError("Invoice is locked")

    if "status" in patch:
        new_status = patch["status"]
        if not isinstance(new_status, str):
            raise ValidationError("status must be a string")
        check_status_transition(invoice.status, new_status)
        invoice.status = new_status
        invoice.payment_status = new_status

    if "balance" in patch:
        try:
            balance = Decimal(str(patch["balance"]))
        except ArithmeticError:
            raise ValidationError("balance must be a number")
        if isinstance(patch["balance"], bool) or not balance.is_finite() or balance < 0:
            raise ValidationError("balance must be >= 0")
        invoice.balance = balance

    if "internal_notes" in patch:
        invoice.internal_notes = str(patch["internal_notes"] or "")

    if "is_locked" in patch:
        invoice.is_locked = bool(patch["is_locked"])

    if commit:
        db.session.commit()
    return invoice


def record_payment(seller_id: int, invoice_id: int, raw: dict, *, commit: bool = True) -> Invoice:
    """
    Append a payment and recompute balance and payment status.

    balance = total - sum(payments), never below zero. Status moves forward
    only (Unpaid -> Partially Paid -> Paid).
    """
    invoice = get_invoice(seller_id, invoice_id)
    if invoice.status in TERMINAL_STATUSES:
        raise InvalidStatusTransitionError(
            f"Cannot record a payment on a {invoice.status} invoice",
            details={"status": invoice.status},
        )

    payment = validate_payment(raw)
    invoice.payments.append(InvoicePayment(**payment))

    total = Decimal(invoice.total)
    paid = _sum_payments(invoice)
    invoice.balance = max(total - paid, Decimal("0"))

    new_status = _payment_status_for(total, paid)
    if new_status != invoice.status and new_status in STATUS_TRANSITIONS[invoice.status]:
        invoice.status = new_status
        invoice.payment_status = new_status

    if commit:
        db.session.commit()
    return invoice


def soft_delete_invoice(seller_id: int, invoice_id: int, *, commit: bool = True) -> Invoice:
    invoice = get_invoice(seller_id, invoice_id)
    invoice.is_deleted = True
    invoice.deleted_at = utcnow()
    if commit:
        db.session.commit()
    return invoice


def bulk_soft_delete(seller_id: int, invoice_ids: list, *, commit: bool = True) -> tuple[list[Invoice], list]:
    """
    Soft-delete every listed invoice the seller owns.

    Returns (deleted invoices, ids that were not found). Unknown ids don't
    abort the batch.
    """
    if not isinstance(invoice_ids, list) or not invoice_ids:
        raise ValidationError("ids must be a non-empty list")
    if any(isinstance(i, bool) or not isinstance(i, int) for i in invoice_ids):
        raise ValidationError("ids must be integers")

    wanted = list(dict.fromkeys(invoice_ids))
    invoices = (
        scoped_query(Invoice, seller_id)
        .filter(Invoice.id.in_(wanted))
        .order_by(Invoice.id.asc())
        .all()
    )
    found = {i.id for i in invoices}
    now = utcnow()
    for invoice in invoices:
        invoice.is_deleted = True
        invoice.deleted_at = now

    if commit:
        db.session.commit()
    return invoices, [i for i in wanted if i not in found]


def undelete_invoice(seller_id: int, invoice_id: int, *, commit: bool = True) -> Invoice:
    """Clear the soft-delete flags of a deleted invoice."""
    invoice = (
        scoped_query(Invoice, seller_id, include_deleted=True)
        .filter(Invoice.id == invoice_id, Invoice.is_deleted.is_(True))
        .first()
    )
    if invoice is None:
        raise NotFoundError("Deleted invoice not found")

    invoice.is_deleted = False
    invoice.deleted_at = None
    if commit:
        db.session.commit()
    return invoice


def list_invoices_needing_reconciliation(seller_id: int) -> list[Invoice]:
    """Invoices whose stock debits only partly happened (deleted ones included)."""
    return (
        scoped_query(Invoice, seller_id, include_deleted=True)
        .filter(Invoice.needs_reconciliation.is_(True))
        .order_by(Invoice.id.asc())
        .all()
    )


def mark_reconciled(seller_id: int, invoice_id: int) -> Invoice:
    """Clear the reconciliation flag once stock was corrected by hand."""
    invoice = get_invoice(seller_id, invoice_id, include_deleted=True)
    if not invoice.needs_reconciliation:
        raise ValidationError("Invoice is not flagged for reconciliation")
    invoice.needs_reconciliation = False
    db.session.commit()
    return invoice
