# Overview: Stock levels for products and variants; the only place stock is mutated.

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from sqlalchemy import exists, func, select, update

from ..extensions import db
from ..exceptions import InsufficientStockError, NotFoundError, ValidationError
from ..models import Product, ProductVariant
from .ledger_service import append_stock_movement
from .tenant_service import scoped_query
"""
Stock Invariants (authoritative)

Stock model:
- A product without variants owns its stock directly.
- A product with variants owns no stock of its own: product.stock is always
  SUM(variant.stock). It is recomputed on every product write and moved in
  the same transaction as every variant adjustment.

Mutation rule:
- Stock is changed only through adjust_stock (plus whole-value writes made by
  product create/update). adjust_stock is a single conditional UPDATE:
      SET stock = stock + :delta WHERE ... AND stock + :delta >= 0
  Two concurrent debits of the same unit can never both succeed past zero;
  the database decides, not a lock held here.
- "Read stock, compute, write stock" sequences are not allowed anywhere.

Visibility:
- Soft-deleted products (and their variants) can't be adjusted; they look
  exactly like missing ones (NotFoundError).
"""


@dataclass(frozen=True)
class ExplicitStock:
    """Stock set directly by the caller (products without variants)."""
    quantity: int


@dataclass(frozen=True)
class DerivedFromVariants:
    """Stock is the sum of the variants' stock."""


StockSource = Union[ExplicitStock, DerivedFromVariants]


def stock_source_for(variants: list, explicit: int | None) -> StockSource:
    """Decide where a product's stock comes from for this write."""
    if variants:
        return DerivedFromVariants()
    return ExplicitStock(int(explicit or 0))


def resolve_stock(source: StockSource, variants: list) -> int:
    if isinstance(source, DerivedFromVariants):
        return sum(int(_variant_stock(v) or 0) for v in variants)
    return source.quantity


def _variant_stock(variant) -> int | None:
    if isinstance(variant, dict):
        return variant.get("stock")
    return variant.stock


def _expire_cached_stock(model, pk: int) -> None:
    """Core UPDATEs bypass the identity map; drop any cached stock value."""
    obj = db.session.identity_map.get(db.session.identity_key(model, pk))
    if obj is not None:
        db.session.expire(obj, ["stock"])


def get_available_stock(seller_id: int, product_id: int, variant_id: int | None = None) -> int:
    """
    Fresh stock read for one sellable unit, straight from the database.

    Raises NotFoundError for a missing/deleted product or variant.
    """
    product_stock = db.session.execute(
        select(Product.stock).where(
            Product.id == product_id,
            Product.seller_id == seller_id,
            Product.is_deleted.is_(False),
        )
    ).scalar_one_or_none()
    if product_stock is None:
        raise NotFoundError("Product not found")

    if variant_id is None:
        return int(product_stock)

    variant_stock = db.session.execute(
        select(ProductVariant.stock).where(
            ProductVariant.id == variant_id,
            ProductVariant.product_id == product_id,
        )
    ).scalar_one_or_none()
    if variant_stock is None:
        raise NotFoundError("Variant not found")
    return int(variant_stock)


def _diagnose_failed_adjustment(seller_id: int, product_id: int, variant_id: int | None, delta: int):
    """
    Explain why a conditional update matched no row. Read-only: the update
    itself already decided, this only picks the error to raise.
    """
    product = scoped_query(Product, seller_id).filter(Product.id == product_id).first()
    if product is None:
        return NotFoundError("Product not found")

    if variant_id is None:
        if product.variants:
            return ValidationError("Product has variants; variant_id is required")
        available = product.stock
        name = product.name
    else:
        variant = next((v for v in product.variants if v.id == variant_id), None)
        if variant is None:
            return NotFoundError("Variant not found")
        available = variant.stock
        name = f"{product.name} ({variant.name})" if variant.name else product.name

    return InsufficientStockError(
        f"Insufficient stock for {name}: requested {-delta}, available {available}",
        details={
            "product_id": product_id,
            "variant_id": variant_id,
            "requested_quantity": -delta,
            "available": available,
        },
    )


def _apply_product_delta(seller_id: int, product_id: int, delta: int) -> int:
    products = Product.__table__
    has_variants = exists().where(ProductVariant.__table__.c.product_id == products.c.id)
    result = db.session.execute(
        update(products)
        .where(
            products.c.id == product_id,
            products.c.seller_id == seller_id,
            products.c.is_deleted.is_(False),
            ~has_variants,
            products.c.stock + delta >= 0,
        )
        .values(stock=products.c.stock + delta)
    )
    return result.rowcount


def _apply_variant_delta(seller_id: int, product_id: int, variant_id: int, delta: int) -> int:
    variants = ProductVariant.__table__
    products = Product.__table__
    live_parent = select(products.c.id).where(
        products.c.id == product_id,
        products.c.seller_id == seller_id,
        products.c.is_deleted.is_(False),
    )
    result = db.session.execute(
        update(variants)
        .where(
            variants.c.id == variant_id,
            variants.c.product_id == product_id,
            variants.c.seller_id == seller_id,
            variants.c.product_id.in_(live_parent),
            variants.c.stock + delta >= 0,
        )
        .values(stock=variants.c.stock + delta)
    )
    if result.rowcount != 1:
        return result.rowcount

    # Keep the derived total in step; it can't go negative while the sum holds
    db.session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=products.c.stock + delta)
    )
    return 1


def adjust_stock(
    seller_id: int,
    product_id: int,
    variant_id: int | None,
    delta: int,
    *,
    reason: str = "MANUAL",
    invoice_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> int:
    """
    Apply a stock delta atomically and return the owner's new stock.

    The owner is the variant when variant_id is given, the product otherwise.
    Debits that would drive stock below zero match no row and raise
    InsufficientStockError with stock untouched.

    commit=False leaves the transaction open for callers that group several
    adjustments (and the invoice insert) into one unit.

    Raises:
        ValidationError: delta is 0, or a product with variants was adjusted
            without variant_id
        NotFoundError: product/variant missing, deleted or owned by another seller
        InsufficientStockError: resulting stock would be negative
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError("delta must be a non-zero integer")

    if variant_id is None:
        matched = _apply_product_delta(seller_id, product_id, delta)
    else:
        matched = _apply_variant_delta(seller_id, product_id, variant_id, delta)

    _expire_cached_stock(Product, product_id)
    if variant_id is not None:
        _expire_cached_stock(ProductVariant, variant_id)

    if matched != 1:
        raise _diagnose_failed_adjustment(seller_id, product_id, variant_id, delta)

    new_stock = get_available_stock(seller_id, product_id, variant_id)

    append_stock_movement(
        seller_id=seller_id,
        product_id=product_id,
        variant_id=variant_id,
        quantity_delta=delta,
        resulting_stock=new_stock,
        reason=reason,
        invoice_id=invoice_id,
        note=note,
    )

    if commit:
        db.session.commit()
    return new_stock


def find_stock_drift(seller_id: int | None = None) -> list[dict]:
    """
    Products with variants whose stored stock differs from the variant sum.

    Includes soft-deleted products: they come back intact on restore.
    """
    variant_sum = (
        select(func.coalesce(func.sum(ProductVariant.stock), 0))
        .where(ProductVariant.product_id == Product.id)
        .scalar_subquery()
    )
    query = (
        db.session.query(Product.id, Product.seller_id, Product.sku, Product.stock, variant_sum.label("variant_sum"))
        .filter(exists().where(ProductVariant.product_id == Product.id))
        .filter(Product.stock != variant_sum)
    )
    if seller_id is not None:
        query = query.filter(Product.seller_id == seller_id)

    return [
        {
            "product_id": row.id,
            "seller_id": row.seller_id,
            "sku": row.sku,
            "stock": row.stock,
            "variant_sum": int(row.variant_sum),
        }
        for row in query.order_by(Product.id.asc()).all()
    ]


def fix_stock_drift(seller_id: int | None = None) -> int:
    """
    Reset drifted products to their variant sum in one statement.

    Returns the number of products fixed.
    """
    drift = find_stock_drift(seller_id)
    if not drift:
        return 0

    products = Product.__table__
    variants = ProductVariant.__table__
    variant_sum = (
        select(func.coalesce(func.sum(variants.c.stock), 0))
        .where(variants.c.product_id == products.c.id)
        .scalar_subquery()
    )
    ids = [d["product_id"] for d in drift]
    db.session.execute(
        update(products).where(products.c.id.in_(ids)).values(stock=variant_sum)
    )
    for pk in ids:
        _expire_cached_stock(Product, pk)
    db.session.commit()
    return len(ids)
