from .orders import Order, LineItem, Product
from .events import EditionEvent, AppendOnlyViolation

__all__ = [
    'Order', 'LineItem', 'Product',
    'EditionEvent', 'AppendOnlyViolation',
]
