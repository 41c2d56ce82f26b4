# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .exceptions import NotFoundError
from .services import tenant_service


SELLER_HEADER = "X-Seller-Id"


def require_seller(f):
    """
    Establish the seller (tenant) context for a request.

    MULTI-TENANT: Sets g.seller_id from the X-Seller-Id header, which the
    upstream auth layer fills in after authenticating the caller. Nothing is
    authenticated here; the id is only checked to name an active seller.

    Returns 401 if the header is missing or malformed, 404 if it names no
    active seller (same answer as any other foreign record).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(SELLER_HEADER, "").strip()
        if not raw.isdigit():
            return jsonify({"error": "Seller context required", "kind": "Unauthorized"}), 401

        seller_id = int(raw)
        try:
            tenant_service.require_seller(seller_id)
        except NotFoundError as e:
            return jsonify(e.to_dict()), e.status_code

        g.seller_id = seller_id
        return f(*args, **kwargs)

    return decorated_function
