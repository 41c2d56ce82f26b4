# Overview: Catalog operations for products and variants; uniqueness, soft delete and scan lookups.

"""
Catalog Service with Multi-Tenant Support

MULTI-TENANT: All product operations are seller-scoped.
- Every read goes through tenant_service.scoped_query (soft-deleted rows
  hidden unless include_deleted=True)
- Uniqueness of SKU and barcode is per seller, never global

WRITE ORDER (create):
1. required-field and type validation
2. SKU uniqueness
3. product barcode uniqueness (only when present)
4. variant SKU/barcode uniqueness across all the seller's variants
5. stock resolution (explicit, or derived from variants)
6. persist; a uniqueness race that slipped past 2-4 is caught by the
   storage constraint and reported as the same Duplicate* error
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..exceptions import (
    DuplicateBarcodeError,
    DuplicateSkuError,
    DuplicateVariantBarcodeError,
    NotFoundError,
    ValidationError,
)
from ..models import Invoice, InvoiceItem, Product, ProductVariant
from ..time_utils import to_utc_z, utcnow
from ..validation import normalize_code, validate_product_payload
from .inventory_service import DerivedFromVariants, resolve_stock, stock_source_for
from .tenant_service import require_seller, scoped_query

VARIANT_MUTABLE_FIELDS = {
    "name", "options", "price", "stock", "sku", "barcode", "barcode_type",
    "cost_price", "attributes",
}


@dataclass
class VariantMatch:
    """Result of a variant barcode scan."""
    product: Product
    variant: ProductVariant
    variant_index: int

    def to_dict(self) -> dict:
        return {
            "product_id": self.product.id,
            "product_name": self.product.name,
            "category": self.product.category,
            "brand": self.product.brand,
            "unit": self.product.unit,
            "tax_rate": float(self.product.tax_rate) if self.product.tax_rate is not None else None,
            "variant": self.variant.to_dict(),
            "variant_index": self.variant_index,
        }


def _translate_integrity_error(exc: IntegrityError):
    """Map a unique-constraint failure to the matching domain error."""
    msg = str(exc.orig)
    if "uq_variants_seller_barcode" in msg or "product_variants.seller_id, product_variants.barcode" in msg:
        return DuplicateVariantBarcodeError("Variant barcode already exists")
    if "uq_variants_seller_sku" in msg or "product_variants.seller_id, product_variants.sku" in msg:
        return DuplicateSkuError("Variant SKU already exists")
    if "uq_products_seller_barcode" in msg or "products.seller_id, products.barcode" in msg:
        return DuplicateBarcodeError("Product with this Barcode already exists")
    if "uq_products_seller_sku" in msg or "products.seller_id, products.sku" in msg:
        return DuplicateSkuError("Product with this SKU already exists")
    return None


def _commit_catalog_write() -> None:
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        translated = _translate_integrity_error(exc)
        if translated is None:
            raise
        current_app.logger.warning("Uniqueness race caught by constraint: %s", translated.message)
        raise translated from exc


def _check_sku_available(seller_id: int, sku: str, exclude_id: int | None = None) -> None:
    # Deleted products still hold their SKU (the constraint covers them)
    query = scoped_query(Product, seller_id, include_deleted=True).filter(Product.sku == sku)
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    existing = query.first()
    if existing:
        message = "Product with this SKU already exists"
        if existing.is_deleted:
            message += " (deleted; restore it instead)"
        raise DuplicateSkuError(message, details={"sku": sku, "product_id": existing.id})


def _check_barcode_available(seller_id: int, barcode: str, exclude_id: int | None = None) -> None:
    query = scoped_query(Product, seller_id, include_deleted=True).filter(Product.barcode == barcode)
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    existing = query.first()
    if existing:
        raise DuplicateBarcodeError(
            "Product with this Barcode already exists",
            details={"barcode": barcode, "product_id": existing.id},
        )


def _check_variant_codes_available(
    seller_id: int,
    variants: list[dict],
    exclude_product_id: int | None = None,
) -> None:
    """
    Variant barcodes and SKUs are unique across every variant of the seller.

    Also rejects the same code twice inside one payload, which the storage
    constraint would only report as an opaque failure at flush time.
    """
    seen_barcodes: set[str] = set()
    seen_skus: set[str] = set()

    for v in variants:
        barcode = v.get("barcode")
        if barcode:
            if barcode in seen_barcodes:
                raise DuplicateVariantBarcodeError(f"Variant barcode '{barcode}' is used twice")
            seen_barcodes.add(barcode)

            query = db.session.query(ProductVariant.id).filter(
                ProductVariant.seller_id == seller_id,
                ProductVariant.barcode == barcode,
            )
            if exclude_product_id is not None:
                query = query.filter(ProductVariant.product_id != exclude_product_id)
            if query.first():
                raise DuplicateVariantBarcodeError(
                    f"Variant barcode '{barcode}' already exists",
                    details={"barcode": barcode},
                )

        sku = v.get("sku")
        if sku:
            if sku in seen_skus:
                raise DuplicateSkuError(f"Variant SKU '{sku}' is used twice")
            seen_skus.add(sku)

            query = db.session.query(ProductVariant.id).filter(
                ProductVariant.seller_id == seller_id,
                ProductVariant.sku == sku,
            )
            if exclude_product_id is not None:
                query = query.filter(ProductVariant.product_id != exclude_product_id)
            if query.first():
                raise DuplicateSkuError(f"Variant SKU '{sku}' already exists", details={"sku": sku})


def _new_variant(seller_id: int, data: dict) -> ProductVariant:
    fields = {k: v for k, v in data.items() if k in VARIANT_MUTABLE_FIELDS}
    return ProductVariant(seller_id=seller_id, **fields)


def _replace_variants(product: Product, incoming: list[dict]) -> None:
    """
    Replace the product's variants with the incoming list.

    Entries whose "id" matches an existing variant update it in place, so
    invoices that point at that variant keep resolving. Everything else is
    inserted; existing variants not mentioned are removed.
    """
    existing = {v.id: v for v in product.variants}
    keep_ids = {v.get("id") for v in incoming if v.get("id") in existing}

    removed = [v for v in product.variants if v.id not in keep_ids]
    for v in removed:
        product.variants.remove(v)
    if removed:
        # Free codes held by removed rows before anything reuses them
        db.session.flush()

    result = []
    for data in incoming:
        variant_id = data.get("id")
        if variant_id in keep_ids:
            variant = existing[variant_id]
            for k, v in data.items():
                if k in VARIANT_MUTABLE_FIELDS:
                    setattr(variant, k, v)
        else:
            variant = _new_variant(product.seller_id, data)
        result.append(variant)
    product.variants = result


def list_products(
    seller_id: int,
    *,
    include_deleted: bool = False,
    category: str | None = None,
    search: str | None = None,
    low_stock: bool = False,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Seller-scoped product listing with optional filters and pagination.

    Args:
        seller_id: Seller (tenant) ID
        include_deleted: Also return soft-deleted products
        category: Exact category match
        search: Case-insensitive match on name, SKU or barcode
        low_stock: Only products with stock <= min_stock
        page: Page number (1-indexed). If None, returns all items.
        per_page: Items per page (default 20, max 100)

    Returns:
        Dict with 'items', 'count', and pagination metadata if paginated.
    """
    base_query = scoped_query(Product, seller_id, include_deleted=include_deleted)

    if category:
        base_query = base_query.filter(Product.category == category)
    if search:
        pattern = f"%{search.strip().lower()}%"
        base_query = base_query.filter(
            or_(
                func.lower(Product.name).like(pattern),
                func.lower(Product.sku).like(pattern),
                func.lower(Product.barcode).like(pattern),
            )
        )
    if low_stock:
        base_query = base_query.filter(Product.stock <= Product.min_stock)

    base_query = base_query.order_by(Product.created_at.desc(), Product.id.desc())

    # If no pagination requested, return all items
    if page is None:
        products = base_query.all()
        return {
            "items": [p.to_dict() for p in products],
            "count": len(products),
        }

    per_page = min(per_page or 20, 100)  # Default 20, max 100
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    products = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def count_products(seller_id: int, *, include_deleted: bool = False) -> int:
    return scoped_query(Product, seller_id, include_deleted=include_deleted).count()


def get_product(seller_id: int, product_id: int, *, include_deleted: bool = False) -> Product:
    """
    Load one product of the seller.

    Raises NotFoundError when it doesn't exist, is soft-deleted (unless
    include_deleted) or belongs to another seller.
    """
    product = (
        scoped_query(Product, seller_id, include_deleted=include_deleted)
        .filter(Product.id == product_id)
        .first()
    )
    if product is None:
        raise NotFoundError("Product not found")
    return product


def create_product(seller_id: int, payload: dict) -> Product:
    """
    Create a product (and its variants) for a seller.

    Raises:
        ValidationError: malformed or missing input
        DuplicateSkuError / DuplicateBarcodeError / DuplicateVariantBarcodeError
        NotFoundError: unknown or inactive seller
    """
    require_seller(seller_id)

    draft = validate_product_payload(payload, partial=False)

    _check_sku_available(seller_id, draft["sku"])
    if draft.get("barcode"):
        _check_barcode_available(seller_id, draft["barcode"])

    variants = draft.pop("variants", None) or []
    _check_variant_codes_available(seller_id, variants)

    source = stock_source_for(variants, draft.get("stock"))
    draft["stock"] = resolve_stock(source, variants)

    if draft.get("min_stock") is None:
        draft["min_stock"] = current_app.config.get("LOW_STOCK_DEFAULT", 10)

    product = Product(seller_id=seller_id, **draft)
    product.variants = [_new_variant(seller_id, v) for v in variants]

    db.session.add(product)
    _commit_catalog_write()
    return product


def update_product(seller_id: int, product_id: int, payload: dict) -> Product:
    """
    Partial update: fields absent from the payload stay unchanged.

    Stock:
    - payload carries variants -> variants replaced, stock = variant sum
    - product keeps existing variants -> stock = variant sum, explicit stock ignored
    - no variants -> explicit stock honored when present

    Raises:
        NotFoundError, ValidationError, DuplicateSkuError,
        DuplicateBarcodeError, DuplicateVariantBarcodeError
    """
    product = get_product(seller_id, product_id)

    patch = validate_product_payload(payload, partial=True)
    variants = patch.pop("variants", None)
    explicit_stock = patch.pop("stock", None)

    if "sku" in patch and patch["sku"] != product.sku:
        _check_sku_available(seller_id, patch["sku"], exclude_id=product.id)

    if patch.get("barcode") and patch["barcode"] != product.barcode:
        _check_barcode_available(seller_id, patch["barcode"], exclude_id=product.id)

    if variants is not None:
        _check_variant_codes_available(seller_id, variants, exclude_product_id=product.id)

    for k, v in patch.items():
        setattr(product, k, v)

    if variants is not None:
        _replace_variants(product, variants)

    if product.variants:
        product.stock = resolve_stock(DerivedFromVariants(), product.variants)
    elif explicit_stock is not None:
        product.stock = explicit_stock

    _commit_catalog_write()
    return product


def soft_delete_product(seller_id: int, product_id: int) -> Product:
    """
    Soft-delete a product: hidden from every default read, codes stay reserved.
    """
    product = get_product(seller_id, product_id)
    product.is_deleted = True
    product.deleted_at = utcnow()
    db.session.commit()
    return product


def bulk_soft_delete_products(seller_id: int, product_ids: list) -> dict:
    """Soft-delete the listed products the seller owns; unknown ids are reported, not fatal."""
    if not isinstance(product_ids, list) or not product_ids:
        raise ValidationError("ids must be a non-empty list")
    if any(isinstance(i, bool) or not isinstance(i, int) for i in product_ids):
        raise ValidationError("ids must be integers")

    wanted = list(dict.fromkeys(product_ids))
    products = scoped_query(Product, seller_id).filter(Product.id.in_(wanted)).all()
    now = utcnow()
    for product in products:
        product.is_deleted = True
        product.deleted_at = now
    db.session.commit()

    found = {p.id for p in products}
    return {
        "deleted": sorted(found),
        "not_found": [i for i in wanted if i not in found],
    }


def restore_product(seller_id: int, product_id: int) -> Product:
    """Bring a soft-deleted product back with all its fields intact."""
    product = (
        scoped_query(Product, seller_id, include_deleted=True)
        .filter(Product.id == product_id, Product.is_deleted.is_(True))
        .first()
    )
    if product is None:
        raise NotFoundError("Deleted product not found")

    product.is_deleted = False
    product.deleted_at = None
    db.session.commit()
    return product


def find_by_barcode(seller_id: int, barcode: str) -> Product | None:
    """Scan lookup on the product-level barcode."""
    code = normalize_code(barcode)
    if code is None:
        return None
    return scoped_query(Product, seller_id).filter(Product.barcode == code).first()


def find_by_variant_barcode(seller_id: int, barcode: str) -> VariantMatch | None:
    """Scan lookup on variant barcodes; returns the product, variant and its index."""
    code = normalize_code(barcode)
    if code is None:
        return None

    product = (
        scoped_query(Product, seller_id)
        .join(ProductVariant, ProductVariant.product_id == Product.id)
        .filter(ProductVariant.barcode == code)
        .first()
    )
    if product is None:
        return None

    for index, variant in enumerate(product.variants):
        if variant.barcode == code:
            return VariantMatch(product=product, variant=variant, variant_index=index)
    return None


def get_product_stats(seller_id: int, product_id: int, *, days: int = 30) -> dict:
    """
    Sales history of one product from invoice snapshots.

    Only non-deleted, non-Estimate invoices count.
    """
    get_product(seller_id, product_id)

    base = (
        db.session.query(InvoiceItem)
        .join(Invoice, Invoice.id == InvoiceItem.invoice_id)
        .filter(
            Invoice.seller_id == seller_id,
            Invoice.is_deleted.is_(False),
            Invoice.type != "Estimate",
            InvoiceItem.product_id == product_id,
        )
    )

    total_sold = base.with_entities(func.coalesce(func.sum(InvoiceItem.quantity), 0)).scalar()
    last_sold = base.with_entities(func.max(Invoice.date)).scalar()

    since = utcnow() - timedelta(days=days)
    recent = (
        base.filter(Invoice.date >= since)
        .with_entities(func.coalesce(func.sum(InvoiceItem.quantity), 0))
        .scalar()
    )

    return {
        "product_id": product_id,
        "last_sold": to_utc_z(last_sold),
        "total_sold": int(total_sold or 0),
        "monthly_sales": int(recent or 0),
    }
