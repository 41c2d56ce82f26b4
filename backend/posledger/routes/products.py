# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/posledger/routes/products.py
"""
Product catalog routes with multi-tenant support.

MULTI-TENANT: All product operations are scoped to the caller's seller.
The seller_id is taken from g.seller_id (set by @require_seller).

Errors raised by the services (ValidationError, Duplicate*, NotFoundError,
InsufficientStockError) are turned into JSON by the handler registered in
create_app, so routes only deal with the success path.
"""
from flask import Blueprint, request, g

from ..decorators import require_seller
from ..exceptions import ValidationError
from ..services import products_service
from ..services.import_service import import_products
from ..services.inventory_service import adjust_stock
from ..services.ledger_service import list_stock_movements

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _flag(name: str) -> bool:
    return request.args.get(name, "").strip().lower() in ("1", "true", "yes")


@products_bp.get("")
@require_seller
def list_products():
    """
    List products with optional filters and pagination.

    Query params:
    - include_deleted: bool - also return soft-deleted products
    - category: str - exact category
    - search: str - matches name, SKU or barcode
    - low_stock: bool - only products at or below min_stock
    - page: int (optional) - page number (1-indexed). If omitted, returns all items.
    - per_page: int (optional) - items per page (default 20, max 100)
    """
    return products_service.list_products(
        g.seller_id,
        include_deleted=_flag("include_deleted"),
        category=request.args.get("category"),
        search=request.args.get("search"),
        low_stock=_flag("low_stock"),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )


@products_bp.post("")
@require_seller
def create_product_route():
    """Create a product (with optional variants) in the caller's catalog."""
    payload = request.get_json(silent=True) or {}
    product = products_service.create_product(g.seller_id, payload)
    return product.to_dict(), 201


@products_bp.get("/<int:product_id>")
@require_seller
def get_product_route(product_id: int):
    product = products_service.get_product(g.seller_id, product_id, include_deleted=_flag("include_deleted"))
    return product.to_dict()


@products_bp.put("/<int:product_id>")
@require_seller
def update_product_route(product_id: int):
    """Partial update; fields absent from the body stay unchanged."""
    payload = request.get_json(silent=True) or {}
    product = products_service.update_product(g.seller_id, product_id, payload)
    return product.to_dict()


@products_bp.delete("/<int:product_id>")
@require_seller
def delete_product_route(product_id: int):
    """Soft delete. The product can be brought back with /restore."""
    products_service.soft_delete_product(g.seller_id, product_id)
    return {"ok": True}, 200


@products_bp.post("/bulk-delete")
@require_seller
def bulk_delete_products_route():
    payload = request.get_json(silent=True) or {}
    return products_service.bulk_soft_delete_products(g.seller_id, payload.get("ids"))


@products_bp.post("/<int:product_id>/restore")
@require_seller
def restore_product_route(product_id: int):
    product = products_service.restore_product(g.seller_id, product_id)
    return product.to_dict()


@products_bp.get("/barcode/<barcode>")
@require_seller
def product_by_barcode_route(barcode: str):
    product = products_service.find_by_barcode(g.seller_id, barcode)
    if product is None:
        return {"error": "Product not found", "kind": "NotFound"}, 404
    return product.to_dict()


@products_bp.get("/barcode/<barcode>/variant")
@require_seller
def product_by_variant_barcode_route(barcode: str):
    """Scan lookup on variant barcodes; answers with product, variant and its index."""
    match = products_service.find_by_variant_barcode(g.seller_id, barcode)
    if match is None:
        return {"error": "Variant not found", "kind": "NotFound"}, 404
    return match.to_dict()


@products_bp.post("/<int:product_id>/stock")
@require_seller
def adjust_stock_route(product_id: int):
    """
    Manual stock adjustment.

    Body: {"delta": int, "variant_id": int | null, "note": str | null}
    """
    payload = request.get_json(silent=True) or {}
    delta = payload.get("delta")
    variant_id = payload.get("variant_id")
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("delta must be an integer")
    if variant_id is not None and (isinstance(variant_id, bool) or not isinstance(variant_id, int)):
        raise ValidationError("variant_id must be an integer")

    new_stock = adjust_stock(
        g.seller_id,
        product_id,
        variant_id,
        delta,
        reason="MANUAL",
        note=payload.get("note"),
    )
    product = products_service.get_product(g.seller_id, product_id)
    return {
        "product_id": product_id,
        "variant_id": variant_id,
        "stock": new_stock,
        "product": product.to_dict(),
    }


@products_bp.get("/<int:product_id>/stats")
@require_seller
def product_stats_route(product_id: int):
    return products_service.get_product_stats(g.seller_id, product_id)


@products_bp.get("/<int:product_id>/movements")
@require_seller
def product_movements_route(product_id: int):
    products_service.get_product(g.seller_id, product_id, include_deleted=True)
    limit = request.args.get("limit", default=100, type=int)
    movements = list_stock_movements(g.seller_id, product_id=product_id, limit=limit)
    return {"items": [m.to_dict() for m in movements], "count": len(movements)}


@products_bp.post("/import")
@require_seller
def import_products_route():
    """
    Bulk import from spreadsheet rows.

    Body: {"rows": [{"Name": ..., "MRP": ..., "Qty": ...}, ...]}
    """
    payload = request.get_json(silent=True) or {}
    result = import_products(g.seller_id, payload.get("rows"))
    status = 201 if result["created"] else 200
    return result, status
