from .catalog import Product, StockMovement
from .sales import Sale, SaleItem
from .auth import User, SessionToken

__all__ = [
    'Product', 'StockMovement',
    'Sale', 'SaleItem',
    'User', 'SessionToken',
]
