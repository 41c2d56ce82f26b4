# Overview: Bulk product import from spreadsheet-style rows.

from __future__ import annotations

import re
import uuid
from typing import Any

from flask import current_app

from ..extensions import db
from ..exceptions import PosLedgerError, ValidationError
from .ledger_service import append_stock_movement
from .products_service import create_product
from .tenant_service import require_seller


# Header aliases, first match wins. Headers are compared lowercased with
# everything but letters and digits dropped ("Product_Name" == "product name").
NAME_KEYS = ("name", "product name", "item", "item name", "title")
CATEGORY_KEYS = ("category", "group", "type")
BRAND_KEYS = ("brand", "company", "make")
PRICE_KEYS = ("price", "mrp", "rate", "amount", "selling price", "sp", "unit price")
COST_KEYS = ("cost price", "cp", "buying price", "purchase price", "cost")
STOCK_KEYS = ("stock", "qty", "quantity", "count", "inventory", "balance", "units")
SKU_KEYS = ("sku", "item code")
BARCODE_KEYS = ("barcode", "code", "upc", "ean")
UNIT_KEYS = ("unit", "uom", "measure")
DESCRIPTION_KEYS = ("description", "desc", "details", "specification")

MAX_IMPORT_ROWS = 5000

_NOT_MONEY = re.compile(r"[^0-9.\-]")
_NOT_HEADER = re.compile(r"[^a-z0-9]")


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def parse_money(value: Any) -> float:
    """
    Lenient money parsing: "₹ 1,200.50" -> 1200.5. Anything unreadable is 0.
    """
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        return value
    cleaned = _NOT_MONEY.sub("", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return 0


def _to_stock(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(float(str(value).strip().replace(",", "")))
    except ValueError:
        return 0


def _header_key(value: Any) -> str:
    return _NOT_HEADER.sub("", str(value).lower())


def _pick(row: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in map(_header_key, keys):
        if key in row and row[key] not in (None, ""):
            return row[key]
    return None


def normalize_import_row(raw_row: dict[str, Any]) -> dict[str, Any] | None:
    """
    Map a loosely keyed row to a product payload.

    Returns None for rows without a name (blank spreadsheet lines).
    """
    row = {_header_key(k): v for k, v in raw_row.items()}

    name = _to_text(_pick(row, NAME_KEYS))
    if not name:
        return None

    barcode = _to_text(_pick(row, BARCODE_KEYS))
    sku = _to_text(_pick(row, SKU_KEYS)) or barcode or f"GEN-{uuid.uuid4().hex[:10].upper()}"

    return {
        "name": name,
        "sku": sku,
        "barcode": barcode,
        "category": _to_text(_pick(row, CATEGORY_KEYS)) or "Uncategorized",
        "brand": _to_text(_pick(row, BRAND_KEYS)),
        "price": parse_money(_pick(row, PRICE_KEYS)),
        "cost_price": parse_money(_pick(row, COST_KEYS)),
        "stock": _to_stock(_pick(row, STOCK_KEYS)),
        "unit": _to_text(_pick(row, UNIT_KEYS)) or "pcs",
        "description": _to_text(_pick(row, DESCRIPTION_KEYS)),
    }


def import_products(seller_id: int, rows: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Create one product per row. A failing row is reported and skipped; it
    never aborts the rest of the batch.

    Returns:
        {"created": [product dicts], "failed": [{"row", "error", "kind"}],
         "skipped": [row numbers without a name]}
    Row numbers are 1-based, matching the spreadsheet view.
    """
    require_seller(seller_id)

    if not isinstance(rows, list):
        raise ValidationError("rows must be a list")
    if len(rows) > MAX_IMPORT_ROWS:
        raise ValidationError(f"Too many rows (max {MAX_IMPORT_ROWS})")

    created: list[dict[str, Any]] = []
    failed: list[dict[str, Any]] = []
    skipped: list[int] = []

    for index, raw in enumerate(rows, start=1):
        if not isinstance(raw, dict):
            failed.append({"row": index, "error": "Row must be an object", "kind": ValidationError.kind})
            continue

        payload = normalize_import_row(raw)
        if payload is None:
            skipped.append(index)
            continue

        try:
            product = create_product(seller_id, payload)
        except PosLedgerError as exc:
            db.session.rollback()
            failed.append({"row": index, "error": exc.message, "kind": exc.kind})
            continue

        if product.stock:
            append_stock_movement(
                seller_id=seller_id,
                product_id=product.id,
                variant_id=None,
                quantity_delta=product.stock,
                resulting_stock=product.stock,
                reason="IMPORT",
                note="Opening stock",
            )
            db.session.commit()
        created.append(product.to_dict())

    current_app.logger.info(
        "Import for seller %s: %s created, %s failed, %s skipped",
        seller_id, len(created), len(failed), len(skipped),
    )
    return {"created": created, "failed": failed, "skipped": skipped}
