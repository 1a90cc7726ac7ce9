"""
Per-request service wiring.

The settings object and the shared marketplace client are created once in the
application lifespan and read from ``app.state``; services are built per
request around the request's database session.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings
from storefront.db.database import get_db
from storefront.domain.services.marketplace_client import MarketplaceClient
from storefront.domain.services.merchant_order_service import MerchantOrderService
from storefront.domain.services.payment_service import PaymentService
from storefront.domain.services.shipment_service import ShipmentReconciler
from storefront.domain.services.webhook_service import WebhookService


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_marketplace_client(request: Request) -> MarketplaceClient:
    return request.app.state.marketplace_client


def get_request_id(request: Request) -> str:
    """Correlation id set by CorrelationIdMiddleware"""
    return getattr(request.state, "correlation_id", None) or "-"


async def get_webhook_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    client: MarketplaceClient = Depends(get_marketplace_client),
) -> WebhookService:
    return WebhookService(db, settings, client)


async def get_payment_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    client: MarketplaceClient = Depends(get_marketplace_client),
) -> PaymentService:
    return PaymentService(db, client, rollback_policy=settings.stock_rollback_policy())


async def get_merchant_order_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    client: MarketplaceClient = Depends(get_marketplace_client),
) -> MerchantOrderService:
    return MerchantOrderService(db, client, poll_policy=settings.merchant_order_poll_policy())


async def get_shipment_reconciler(
    db: AsyncSession = Depends(get_db),
    client: MarketplaceClient = Depends(get_marketplace_client),
) -> ShipmentReconciler:
    return ShipmentReconciler(db, client)
