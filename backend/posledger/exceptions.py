"""
Error kinds raised by the catalog, invoice ledger and fulfillment services.

Every error carries a human-readable message, the HTTP status the route layer
should answer with, and an optional details dict. Routes never build error
payloads by hand; the handler registered in create_app calls to_dict().
"""


class PosLedgerError(Exception):
    """Base exception for all domain errors."""
    kind = "Error"

    def __init__(self, message="An internal error occurred", status_code=500, details=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self):
        rv = {"error": self.message, "kind": self.kind}
        if self.details:
            rv["details"] = self.details
        return rv


class ValidationError(PosLedgerError):
    """Malformed or missing input. Always raised before any write."""
    kind = "ValidationError"

    def __init__(self, message, details=None):
        super().__init__(message, 400, details)


class InvalidStatusTransitionError(ValidationError):
    """Invoice status change not allowed by the status machine."""


class ConflictError(PosLedgerError):
    """Uniqueness violation inside a seller's catalog."""
    kind = "Conflict"

    def __init__(self, message, details=None):
        super().__init__(message, 400, details)


class DuplicateSkuError(ConflictError):
    kind = "DuplicateSku"


class DuplicateBarcodeError(ConflictError):
    kind = "DuplicateBarcode"


class DuplicateVariantBarcodeError(ConflictError):
    kind = "DuplicateVariantBarcode"


class NotFoundError(PosLedgerError):
    """
    Entity absent, soft-deleted, or owned by another seller.

    The three cases share one message so callers can't probe for other
    sellers' records.
    """
    kind = "NotFound"

    def __init__(self, message="Resource not found", details=None):
        super().__init__(message, 404, details)


class InsufficientStockError(PosLedgerError):
    """A debit would drive stock below zero."""
    kind = "InsufficientStock"

    def __init__(self, message="Insufficient stock", details=None):
        super().__init__(message, 400, details)


class PartialFulfillmentError(PosLedgerError):
    """
    The invoice was persisted but one or more stock decrements failed.

    details carries invoice_id and the failed lines. The invoice is flagged
    needs_reconciliation so it shows up in the reconciliation listing.
    """
    kind = "PartialFulfillmentInconsistency"

    def __init__(self, message, invoice_id, failed_lines):
        super().__init__(
            message,
            409,
            {"invoice_id": invoice_id, "failed_lines": failed_lines},
        )
        self.invoice_id = invoice_id
        self.failed_lines = failed_lines
