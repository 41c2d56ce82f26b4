# Overview: Append-only stock movement ledger.

from __future__ import annotations

from ..extensions import db
from ..models import StockMovement
from .tenant_service import scoped_query
"""
Stock Movement Ledger Invariants (authoritative)

- Append-only: movements are never updated or deleted.
- One movement per successful stock adjustment, written in the same DB
  transaction as the conditional update it records.
- resulting_stock is the stock of the adjusted owner (variant when the
  movement has a variant_id, product otherwise) right after the update.
"""

MOVEMENT_REASONS = {"SALE", "SALE_REVERSAL", "MANUAL", "IMPORT"}


def append_stock_movement(
    *,
    seller_id: int,
    product_id: int,
    variant_id: int | None,
    quantity_delta: int,
    resulting_stock: int,
    reason: str,
    invoice_id: int | None = None,
    note: str | None = None,
) -> StockMovement:
    """
    Append a stock movement. No commit: the caller owns the transaction.
    """
    if reason not in MOVEMENT_REASONS:
        raise ValueError(f"Unknown movement reason: {reason}")

    movement = StockMovement(
        seller_id=seller_id,
        product_id=product_id,
        variant_id=variant_id,
        quantity_delta=quantity_delta,
        resulting_stock=resulting_stock,
        reason=reason,
        invoice_id=invoice_id,
        note=note,
    )
    db.session.add(movement)
    db.session.flush()  # ensures movement.id is assigned without committing
    return movement


def list_stock_movements(
    seller_id: int,
    *,
    product_id: int | None = None,
    invoice_id: int | None = None,
    limit: int = 100,
) -> list[StockMovement]:
    """Newest first, optionally narrowed to one product or one invoice."""
    query = scoped_query(StockMovement, seller_id)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if invoice_id is not None:
        query = query.filter(StockMovement.invoice_id == invoice_id)
    return query.order_by(StockMovement.id.desc()).limit(min(limit, 500)).all()
