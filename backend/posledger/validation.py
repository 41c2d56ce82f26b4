from __future__ import annotations
from datetime import datetime
from decimal import Decimal, InvalidOperation
from .time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String, Text, DateTime, JSON
from sqlalchemy.orm import DeclarativeMeta

from .exceptions import ValidationError
from .models import Product, ProductVariant, Invoice
from .models.inventory import BARCODE_TYPES
from .models.sales import INVOICE_TYPES


# Maximum price: 9,999,999,999.99 fits Numeric(12, 2)
MAX_MONEY = Decimal("9999999999.99")

# Codes whose empty value means "absent"; NULLs never collide in the
# seller-scoped unique constraints, empty strings would.
CODE_FIELDS = {"sku", "barcode"}


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for create
    - extra_fields: non-column keys the caller may send (validated elsewhere)
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore
    extra_fields: set[str] | None = None


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "sku", "barcode", "barcode_type", "category", "brand", "description",
        "price", "cost_price", "tax_rate", "stock", "unit", "min_stock", "expiry_date",
        "is_active",
    },
    required_on_create={"name", "sku", "category", "price"},
    extra_fields={"variants"},
)

VARIANT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "options", "price", "stock", "sku", "barcode", "barcode_type",
        "cost_price", "attributes",
    },
    required_on_create={"price", "stock"},
    extra_fields={"id"},
)

INVOICE_POLICY = ModelValidationPolicy(
    writable_fields={
        "customer_id", "customer_name", "date", "type", "gross_total", "item_discount",
        "subtotal", "tax", "discount", "additional_charges", "round_off", "total",
        "status", "payment_method", "balance", "internal_notes",
    },
    required_on_create={"customer_name", "subtotal", "total"},
    extra_fields={"items", "payments"},
)


def normalize_code(value: Any) -> str | None:
    """Strip a SKU/barcode; empty or whitespace-only means absent."""
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers: accept ints, digit strings and integral floats (5.0)
    if isinstance(coltype, Integer):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if not value.is_integer():
                raise ValidationError(f"{col.key} must be an integer, not a decimal")
            return int(value)
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            # Reject scientific notation (e.g., "1e15", "1E10")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        raise ValidationError(f"{col.key} must be an integer")

    # Money / rates
    if isinstance(coltype, Numeric):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a number")
        if isinstance(value, (int, float, Decimal)):
            amount = Decimal(str(value))
        elif isinstance(value, str) and value.strip():
            try:
                amount = Decimal(value.strip())
            except InvalidOperation:
                raise ValidationError(f"{col.key} must be a number")
        else:
            raise ValidationError(f"{col.key} must be a number")
        if not amount.is_finite():
            raise ValidationError(f"{col.key} must be a finite number")
        return amount

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        # fallback: truthiness
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                return None
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        if isinstance(value, (dict, list)):
            raise ValidationError(f"{col.key} must be a string")
        return str(value).strip()

    # JSON columns are shape-checked by the caller
    if isinstance(coltype, JSON):
        return value

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields + extra_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict. Extra (non-column) fields are passed
    through untouched for the caller to validate.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys; a code field
    that normalizes to absent is dropped, meaning "unchanged")
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    extra = policy.extra_fields or set()
    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k in extra:
            continue
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        if k in extra:
            patch[k] = raw
            continue
        col = cols[k]

        if k in CODE_FIELDS:
            raw = normalize_code(raw)
            if raw is None and not col.nullable:
                # Required code left empty: absent on update, missing on create
                if partial:
                    continue
                raise ValidationError(f"{k} is required")

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if patch.get(f) is None)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    return patch


def _check_money(patch: dict, field: str) -> None:
    value = patch.get(field)
    if value is None:
        return
    if value < 0:
        raise ValidationError(f"{field} must be >= 0")
    if value > MAX_MONEY:
        raise ValidationError(f"{field} cannot exceed {MAX_MONEY}")


def _check_non_negative_int(patch: dict, field: str) -> None:
    value = patch.get(field)
    if value is not None and value < 0:
        raise ValidationError(f"{field} must be >= 0")


def _check_barcode_type(patch: dict) -> None:
    value = patch.get("barcode_type")
    if value is not None and value not in BARCODE_TYPES:
        raise ValidationError(f"barcode_type must be one of: {', '.join(BARCODE_TYPES)}")


def enforce_rules_product(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    for field in ("price", "cost_price"):
        _check_money(patch, field)
    for field in ("stock", "min_stock"):
        _check_non_negative_int(patch, field)
    _check_barcode_type(patch)

    tax_rate = patch.get("tax_rate")
    if tax_rate is not None and not (0 <= tax_rate <= 100):
        raise ValidationError("tax_rate must be between 0 and 100")


def validate_variants(raw: Any) -> list[dict]:
    """
    Validate the variants array of a product payload.

    Every variant is validated as a create (price and stock required) even
    on product update, since the array replaces the stored one as a whole.
    An "id" key ties the entry to an existing variant of the same product.
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("variants must be a list")

    cleaned = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"variants[{i}] must be an object")
        try:
            v = validate_payload(model=ProductVariant, payload=item, policy=VARIANT_POLICY, partial=False)
        except ValidationError as e:
            raise ValidationError(f"variants[{i}]: {e.message}")

        variant_id = v.pop("id", None)
        if variant_id is not None:
            if isinstance(variant_id, bool) or not isinstance(variant_id, int):
                raise ValidationError(f"variants[{i}].id must be an integer")
            v["id"] = variant_id

        options = v.get("options")
        if options is None:
            v["options"] = []
        elif not isinstance(options, list) or not all(isinstance(o, str) for o in options):
            raise ValidationError(f"variants[{i}].options must be a list of strings")

        attributes = v.get("attributes")
        if attributes is None:
            v["attributes"] = {}
        elif not isinstance(attributes, dict) or not all(
            isinstance(k, str) and isinstance(val, str) for k, val in attributes.items()
        ):
            raise ValidationError(f"variants[{i}].attributes must map strings to strings")

        try:
            _check_money(v, "price")
            _check_money(v, "cost_price")
            _check_non_negative_int(v, "stock")
            _check_barcode_type(v)
        except ValidationError as e:
            raise ValidationError(f"variants[{i}]: {e.message}")

        cleaned.append(v)
    return cleaned


def validate_product_payload(payload: dict, *, partial: bool) -> dict:
    """Full product validation: columns, business rules, variants."""
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=partial)
    enforce_rules_product(patch)
    if "variants" in patch:
        # null means "leave variants as they are"
        if patch["variants"] is None:
            del patch["variants"]
        else:
            patch["variants"] = validate_variants(patch["variants"])
    if not partial and not patch.get("variants") and patch.get("stock") is None:
        raise ValidationError("Missing required fields: stock")
    return patch


def validate_cart_line(raw: Any, index: int) -> dict:
    """One cart line: product_id, optional variant_id, quantity > 0, price >= 0."""
    if not isinstance(raw, dict):
        raise ValidationError(f"items[{index}] must be an object")

    line = {}
    for key in ("product_id", "variant_id", "quantity"):
        value = raw.get(key)
        if value is None:
            if key == "variant_id":
                line[key] = None
                continue
            raise ValidationError(f"items[{index}].{key} is required")
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"items[{index}].{key} must be an integer")
        line[key] = value

    if line["quantity"] <= 0:
        raise ValidationError(f"items[{index}].quantity must be > 0")

    price = raw.get("price")
    if price is None or isinstance(price, bool):
        raise ValidationError(f"items[{index}].price is required")
    try:
        price = Decimal(str(price))
    except InvalidOperation:
        raise ValidationError(f"items[{index}].price must be a number")
    if not price.is_finite() or price < 0:
        raise ValidationError(f"items[{index}].price must be >= 0")
    line["price"] = price
    return line


def validate_payment(raw: Any, index: int = 0) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError(f"payments[{index}] must be an object")
    amount = raw.get("amount")
    if amount is None or isinstance(amount, bool):
        raise ValidationError(f"payments[{index}].amount is required")
    try:
        amount = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError(f"payments[{index}].amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"payments[{index}].amount must be > 0")

    payment = {
        "amount": amount,
        "method": str(raw.get("method") or "Cash").strip(),
        "note": raw.get("note"),
    }
    if raw.get("date"):
        try:
            payment["date"] = parse_iso_datetime(str(raw["date"]))
        except ValueError:
            raise ValidationError(f"payments[{index}].date must be an ISO-8601 datetime")
    return payment


def validate_invoice_draft(payload: dict) -> dict:
    """
    Validate an order/invoice draft.

    Totals are not recomputed: they come already computed by the caller and
    are stored as given. Only line totals are derived (price * quantity).
    """
    draft = validate_payload(model=Invoice, payload=payload, policy=INVOICE_POLICY, partial=False)

    items = draft.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    draft["items"] = [validate_cart_line(raw, i) for i, raw in enumerate(items)]

    payments = draft.get("payments") or []
    if not isinstance(payments, list):
        raise ValidationError("payments must be a list")
    draft["payments"] = [validate_payment(raw, i) for i, raw in enumerate(payments)]

    if draft.get("type") is not None and draft["type"] not in INVOICE_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(INVOICE_TYPES)}")

    for field in ("subtotal", "total", "tax", "discount", "gross_total", "item_discount", "additional_charges"):
        value = draft.get(field)
        if value is not None and value < 0:
            raise ValidationError(f"{field} must be >= 0")
    return draft
