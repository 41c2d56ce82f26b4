# Overview: Flask API routes for invoices; placing, editing, cancelling and paying orders.

# backend/posledger/routes/invoices.py
"""
Invoice routes with multi-tenant support.

MULTI-TENANT: every invoice operation is scoped to g.seller_id (set by
@require_seller).

Creating an invoice places an order (stock is debited); deleting one cancels
it (stock is credited back). Both go through fulfillment_service. Plain
reads and payments go straight to invoice_service.
"""
from flask import Blueprint, request, g

from ..decorators import require_seller
from ..services import fulfillment_service, invoice_service

invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


@invoices_bp.get("")
@require_seller
def list_invoices_route():
    """
    Query params:
    - include_deleted: bool
    - status: str - exact status
    - page / per_page: optional pagination
    """
    include_deleted = request.args.get("include_deleted", "").strip().lower() in ("1", "true", "yes")
    return invoice_service.list_invoices(
        g.seller_id,
        include_deleted=include_deleted,
        status=request.args.get("status"),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )


@invoices_bp.post("")
@require_seller
def create_invoice_route():
    """
    Place an order.

    Returns 201 with the invoice. A per_line partial failure answers 409 with
    the saved invoice id and the lines that were not debited.
    """
    payload = request.get_json(silent=True) or {}
    invoice = fulfillment_service.place_order(g.seller_id, payload)
    return invoice.to_dict(), 201


@invoices_bp.get("/reconciliation")
@require_seller
def reconciliation_route():
    """Invoices whose stock debits only partly went through."""
    invoices = invoice_service.list_invoices_needing_reconciliation(g.seller_id)
    return {"items": [i.to_dict() for i in invoices], "count": len(invoices)}


@invoices_bp.post("/<int:invoice_id>/reconciled")
@require_seller
def mark_reconciled_route(invoice_id: int):
    invoice = invoice_service.mark_reconciled(g.seller_id, invoice_id)
    return invoice.to_dict()


@invoices_bp.get("/<int:invoice_id>")
@require_seller
def get_invoice_route(invoice_id: int):
    invoice = invoice_service.get_invoice(g.seller_id, invoice_id)
    return invoice.to_dict()


@invoices_bp.put("/<int:invoice_id>")
@require_seller
def update_invoice_route(invoice_id: int):
    """Only status, balance, internal_notes and is_locked can change."""
    payload = request.get_json(silent=True) or {}
    invoice = fulfillment_service.update_invoice(g.seller_id, invoice_id, payload)
    return invoice.to_dict()


@invoices_bp.delete("/<int:invoice_id>")
@require_seller
def delete_invoice_route(invoice_id: int):
    """Soft delete; debited stock is credited back."""
    fulfillment_service.delete_invoice(g.seller_id, invoice_id)
    return {"ok": True}, 200


@invoices_bp.post("/bulk-delete")
@require_seller
def bulk_delete_invoices_route():
    payload = request.get_json(silent=True) or {}
    return fulfillment_service.bulk_delete_invoices(g.seller_id, payload.get("ids"))


@invoices_bp.post("/<int:invoice_id>/restore")
@require_seller
def restore_invoice_route(invoice_id: int):
    invoice = fulfillment_service.restore_invoice(g.seller_id, invoice_id)
    return invoice.to_dict()


@invoices_bp.post("/<int:invoice_id>/payments")
@require_seller
def record_payment_route(invoice_id: int):
    """Body: {"amount": number, "method": str, "note": str | null, "date": iso | null}"""
    payload = request.get_json(silent=True) or {}
    invoice = invoice_service.record_payment(g.seller_id, invoice_id, payload)
    return invoice.to_dict(), 201
