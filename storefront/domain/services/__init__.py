"""
Domain Services
"""
from storefront.domain.services.marketplace_client import MarketplaceClient, StaticTokenStore
from storefront.domain.services.stock_service import StockService
from storefront.domain.services.shipment_service import ShipmentReconciler
from storefront.domain.services.merchant_order_service import MerchantOrderService
from storefront.domain.services.payment_service import PaymentService
from storefront.domain.services.marketplace_order_service import MarketplaceOrderService
from storefront.domain.services.webhook_service import WebhookService

__all__ = [
    "MarketplaceClient",
    "StaticTokenStore",
    "StockService",
    "ShipmentReconciler",
    "MerchantOrderService",
    "PaymentService",
    "MarketplaceOrderService",
    "WebhookService",
]
