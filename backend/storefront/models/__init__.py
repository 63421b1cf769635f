from .customers import Customer, CustomerProfile, Address
from .catalog import Category, Supplier, Product, ProductImage, ProductSupplier, Tag, Review, product_tags
from .inventory import InventoryLot, InventoryReservation
from .orders import Order, OrderItem, Payment, Return, ReturnLine
from .activity import ActivityLog

__all__ = [
    'Customer', 'CustomerProfile', 'Address',
    'Category', 'Supplier', 'Product', 'ProductImage', 'ProductSupplier', 'Tag', 'Review', 'product_tags',
    'InventoryLot', 'InventoryReservation',
    'Order', 'OrderItem', 'Payment', 'Return', 'ReturnLine',
    'ActivityLog',
]
