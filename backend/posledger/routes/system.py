# backend/posledger/routes/system.py
"""
System health endpoint.

Checks database connectivity and reports catalog/invoice table reachability
for deployment debugging.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Seller, Product, Invoice
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        seller_count = db.session.query(Seller).count()
        product_count = db.session.query(Product).count()
        invoice_count = db.session.query(Invoice).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "sellers": seller_count,
                "products": product_count,
                "invoices": invoice_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_reconciliation_health() -> dict:
    """
    Count invoices waiting for manual stock reconciliation.

    Flagged invoices make the service degraded, not unhealthy: sales keep
    working, somebody just has to look at the stock.
    """
    try:
        flagged = db.session.query(Invoice).filter(Invoice.needs_reconciliation.is_(True)).count()
    except Exception:
        current_app.logger.exception("Reconciliation health check failed")
        db.session.rollback()
        return {"status": "unhealthy", "error": "Database error"}

    if flagged:
        return {
            "status": "degraded",
            "warning": f"{flagged} invoice(s) need stock reconciliation",
            "details": {"invoices_needing_reconciliation": flagged},
        }
    return {"status": "healthy", "details": {"invoices_needing_reconciliation": 0}}


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    reconciliation_health = check_reconciliation_health()

    all_checks = [database_health, reconciliation_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "fulfillment_mode": current_app.config.get("ORDER_FULFILLMENT_MODE"),
        "checks": {
            "database": database_health,
            "reconciliation": reconciliation_health,
        }
    }

    return response, http_status
