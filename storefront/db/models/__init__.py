"""
Database Models
"""
from storefront.db.models.user import User, ShippingMethod
from storefront.db.models.product import Product
from storefront.db.models.order import Order, OrderItem, OrderStatus, ShippingStatus
from storefront.db.models.shipment_history import ShipmentHistoryEntry, ShipmentSource
from storefront.db.models.webhook_record import WebhookRecord, WebhookStatus
from storefront.db.models.webhook_replay import WebhookReplayEntry

__all__ = [
    "User",
    "ShippingMethod",
    "Product",
    "Order",
    "OrderItem",
    "OrderStatus",
    "ShippingStatus",
    "ShipmentHistoryEntry",
    "ShipmentSource",
    "WebhookRecord",
    "WebhookStatus",
    "WebhookReplayEntry",
]
