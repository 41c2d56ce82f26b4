"""
Multi-Tenant Service: Seller Validation and Scoping Helpers

WHY: Centralize tenant scoping for reuse across services and routes.
Every catalog/invoice operation runs for exactly one seller, and nothing
owned by another seller is ever visible to it.

SECURITY INVARIANTS:
1. Every request reaching a service has an active seller id (g.seller_id)
2. Every query on seller-owned data filters by that seller id
3. Soft-deleted rows are excluded unless the caller passes include_deleted=True
4. Missing, deleted and foreign rows are indistinguishable to the caller

USAGE:
    from posledger.services.tenant_service import scoped_query

    product = scoped_query(Product, seller_id).filter_by(id=product_id).first()
    everything = scoped_query(Product, seller_id, include_deleted=True).all()
"""

from flask import g
from ..extensions import db
from ..exceptions import NotFoundError
from ..models import Seller


def get_current_seller_id() -> int:
    """
    Get current tenant's seller_id from Flask g context.

    Raises NotFoundError if no seller context was established; this should
    never happen after @require_seller.
    """
    seller_id = getattr(g, "seller_id", None)
    if seller_id is None:
        raise NotFoundError("Seller not found")
    return seller_id


def require_seller(seller_id: int) -> Seller:
    """
    Validate that a seller exists and is active.

    Raises:
        NotFoundError if the seller doesn't exist or is inactive
    """
    seller = db.session.query(Seller).filter_by(id=seller_id).first()
    if not seller or not seller.is_active:
        raise NotFoundError("Seller not found")
    return seller


def scoped_query(model, seller_id: int | None = None, *, include_deleted: bool = False):
    """
    Base query for a seller-owned model.

    The soft-delete filter is the default read path: it applies unless the
    caller opts out explicitly. Models without is_deleted are only scoped
    by seller.

    Usage:
        scoped_query(Invoice, seller_id).filter_by(id=invoice_id).first()
    """
    if seller_id is None:
        seller_id = get_current_seller_id()

    query = db.session.query(model).filter(model.seller_id == seller_id)
    if not include_deleted and hasattr(model, "is_deleted"):
        query = query.filter(model.is_deleted.is_(False))
    return query
