"""
Marketplace Order Service - ``orders`` topic notifications

Keeps the local copy of a Mercado Libre order in step with the marketplace:
known orders get their status refreshed, unknown ones are imported for the
seller the notification belongs to.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import ErrorCode, OrderMaterializationError
from storefront.core.logging import get_logger
from storefront.db.models.order import Order, OrderItem, OrderStatus
from storefront.db.models.product import Product
from storefront.domain.services.marketplace_client import MarketplaceClient
from storefront.domain.services.stock_service import StockService

logger = get_logger(__name__)

ML_ORDER_STATUS_TO_LOCAL: dict[str, OrderStatus] = {
    "pending": OrderStatus.PENDING,
    "paid": OrderStatus.PAID,
    "confirmed": OrderStatus.PAID,
    "partially_paid": OrderStatus.PAID,
    "payment_required": OrderStatus.PENDING,
    "payment_in_process": OrderStatus.PENDING,
    "in_mediation": OrderStatus.PENDING,
    "cancelled": OrderStatus.CANCELLED,
    "refunded": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
    "invalid": OrderStatus.REJECTED,
}


def map_marketplace_order_status(status: str | None) -> OrderStatus:
    if not status:
        return OrderStatus.PENDING
    return ML_ORDER_STATUS_TO_LOCAL.get(status, OrderStatus.PENDING)


def _money(value: Any) -> Decimal:
    try:
        return Decimal(str(value if value is not None else 0))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def map_shipping_address(shipping: dict[str, Any] | None) -> dict[str, Any] | None:
    address = (shipping or {}).get("receiver_address")
    if not address:
        return None
    name = f"{address.get('receiver_name') or ''} {address.get('receiver_lastname') or ''}".strip()
    return {
        "name": name,
        "address_line": address.get("address_line") or "",
        "city": (address.get("city") or {}).get("name") or "",
        "state": (address.get("state") or {}).get("name") or "",
        "zip_code": address.get("zip_code") or address.get("postal_code") or "",
        "phone": address.get("receiver_phone") or "",
    }


class MarketplaceOrderService:
    """Imports and refreshes marketplace orders"""

    def __init__(self, db: AsyncSession, client: MarketplaceClient):
        self.db = db
        self.client = client
        self.stock_service = StockService(db)

    async def sync_order(self, ml_order_id: str, local_user_id: int | None) -> tuple[Order, bool]:
        """
        Fetch the marketplace order and upsert it locally.

        Returns (order, created). Stock for the order is taken once, through
        the ``stock_deducted`` claim, floored at zero since the sale already
        happened on the marketplace.
        """
        ml_order = await self.client.get_order(ml_order_id, local_user_id)
        ml_order_id = str(ml_order.get("id") or ml_order_id)
        ml_status = ml_order.get("status")
        shipping = ml_order.get("shipping") or {}
        shipment_id = shipping.get("id")

        try:
            result = await self.db.execute(
                select(Order).where(Order.ml_order_id == ml_order_id).with_for_update()
            )
            order = result.scalars().first()
            created = order is None

            if created:
                if local_user_id is None:
                    raise OrderMaterializationError(
                        "Could not resolve a local user for the marketplace order",
                        error_code=ErrorCode.ORDER_INVALID_METADATA,
                        details={"ml_order_id": ml_order_id},
                    )
                order = Order(user_id=local_user_id, ml_order_id=ml_order_id, stock_deducted=False)
                self.db.add(order)

            order.status = map_marketplace_order_status(ml_status)
            order.ml_status = ml_status
            order.total = _money(ml_order.get("total_amount"))
            order.shipping_cost = _money((shipping.get("shipping_option") or {}).get("cost"))
            address = map_shipping_address(shipping)
            if address:
                order.shipping_address = address
            if shipment_id is not None and not order.ml_shipment_id:
                order.ml_shipment_id = str(shipment_id)

            await self.db.flush()

            if created:
                await self._add_items(order, ml_order)

            stock_restored = False
            if order.status == OrderStatus.PAID:
                await self.stock_service.deduct_for_order(order.id, commit=False, clamp_at_zero=True)
            elif order.status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
                stock_restored = await self.stock_service.restore_for_order(order.id, commit=False)

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Marketplace order synced",
            extra_data={
                "ml_order_id": ml_order_id,
                "order_id": order.id,
                "created": created,
                "status": order.status.value,
                "stock_restored": stock_restored,
            },
        )
        return order, created

    async def _add_items(self, order: Order, ml_order: dict[str, Any]) -> None:
        for line in ml_order.get("order_items") or []:
            ml_item_id = str((line.get("item") or {}).get("id") or "")
            product_result = await self.db.execute(
                select(Product).where(Product.ml_item_id == ml_item_id)
            )
            product = product_result.scalars().first()
            quantity = int(line.get("quantity") or 0)
            if product is None or quantity <= 0:
                logger.warning(
                    "Skipping marketplace order line",
                    extra_data={
                        "ml_item_id": ml_item_id,
                        "ml_order_id": order.ml_order_id,
                        "quantity": quantity,
                        "product_found": product is not None,
                    },
                )
                continue

            self.db.add(OrderItem(
                order_id=order.id,
                product_id=product.id,
                quantity=quantity,
                price=_money(line.get("unit_price")),
            ))
        await self.db.flush()

    async def touch_product(self, ml_item_id: str) -> Product | None:
        """
        ``items`` topic: record that the listing changed on the marketplace.

        Item notifications carry only the resource path, so this stamps
        ``ml_last_sync_at`` and leaves ``ml_sync_status`` to whoever syncs
        the listing itself.
        """
        try:
            result = await self.db.execute(select(Product).where(Product.ml_item_id == ml_item_id))
            product = result.scalars().first()
            if product is None:
                await self.db.rollback()
                return None

            product.ml_last_sync_at = datetime.now(timezone.utc)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Product sync timestamp updated from webhook",
            extra_data={"product_id": product.id, "ml_item_id": ml_item_id},
        )
        return product
