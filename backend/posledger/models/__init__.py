from .tenancy import Seller
from .inventory import Product, ProductVariant, StockMovement
from .sales import Invoice, InvoiceItem, InvoicePayment

__all__ = [
    'Seller',
    'Product', 'ProductVariant', 'StockMovement',
    'Invoice', 'InvoiceItem', 'InvoicePayment',
]
