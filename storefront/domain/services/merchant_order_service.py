"""
Merchant Order Poller

Right after a payment is captured the provider's merchant order often does
not list its shipment yet. The poller retries until one shows up, then falls
back to a single plain fetch and records the order as "shipment pending"
instead of failing the webhook.
"""
import asyncio
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import ShipmentNotReadyError
from storefront.core.logging import get_logger
from storefront.core.retry import RetryPolicy, retry_with_policy
from storefront.db.models.order import Order, ShippingStatus
from storefront.domain.order_metadata import (
    MerchantOrderSection,
    ShipmentSection,
    merge_order_metadata,
    utc_timestamp,
)
from storefront.domain.services.marketplace_client import MarketplaceClient

logger = get_logger(__name__)

ME2_SHIPPING_MODE = "me2"

MERCHANT_ORDER_SHIPMENT_STATUS: dict[str, ShippingStatus] = {
    "pending": ShippingStatus.PENDING,
    "handling": ShippingStatus.PROCESSING,
    "ready_to_ship": ShippingStatus.PROCESSING,
    "shipped": ShippingStatus.SHIPPED,
    "delivered": ShippingStatus.DELIVERED,
    "cancelled": ShippingStatus.CANCELLED,
    "returned": ShippingStatus.RETURNED,
}

_DIGITS = re.compile(r"\d+")


def parse_local_order_id(external_reference: Any) -> int | None:
    """
    Local order id from a merchant order's ``external_reference``.

    An all-digit reference is used as is; otherwise the first run of digits
    wins (``"order-42"`` -> 42). Returns None when there is no positive id.
    """
    if external_reference is None:
        return None
    trimmed = str(external_reference).strip()
    if not trimmed:
        return None

    if _DIGITS.fullmatch(trimmed):
        value = int(trimmed)
    else:
        match = _DIGITS.search(trimmed)
        if not match:
            return None
        value = int(match.group())
    return value if value > 0 else None


def select_shipment(merchant_order: dict[str, Any]) -> dict[str, Any] | None:
    """Prefer the ME2 shipment, else the first one listed"""
    shipments = [s for s in (merchant_order.get("shipments") or []) if isinstance(s, dict)]
    for shipment in shipments:
        if shipment.get("shipping_mode") == ME2_SHIPPING_MODE:
            return shipment
    return shipments[0] if shipments else None


def selected_shipment_id(merchant_order: dict[str, Any]) -> str | None:
    shipment = select_shipment(merchant_order)
    if shipment is None or shipment.get("id") is None:
        return None
    return str(shipment["id"])


def map_merchant_order_shipment_status(status: str | None) -> ShippingStatus:
    """Unknown statuses count as processing: a shipment exists, so it is under way"""
    return MERCHANT_ORDER_SHIPMENT_STATUS.get(status or "", ShippingStatus.PROCESSING)


def _is_shipment_not_ready(error: Exception) -> bool:
    return isinstance(error, ShipmentNotReadyError)


@dataclass
class MerchantOrderResult:
    success: bool
    order_id: int | None = None
    shipment_id: str | None = None
    shipment_pending: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.order_id is not None:
            data["order_id"] = self.order_id
        if self.shipment_id is not None:
            data["shipment_id"] = self.shipment_id
        if self.shipment_pending:
            data["shipment_pending"] = True
        if self.error:
            data["error"] = self.error
        return data


class MerchantOrderService:
    """Links payment provider merchant orders to local orders and shipments"""

    def __init__(
        self,
        db: AsyncSession,
        client: MarketplaceClient,
        poll_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.client = client
        self.poll_policy = poll_policy or RetryPolicy(
            max_retries=4, initial_delay=0.75, max_delay=8.0
        )
        self._sleep = sleep

    async def fetch_merchant_order_until_has_shipment(self, merchant_order_id: str) -> dict[str, Any]:
        """Raises ShipmentNotReadyError once the poll budget is spent"""

        async def _fetch() -> dict[str, Any]:
            merchant_order = await self.client.get_merchant_order(merchant_order_id)
            if selected_shipment_id(merchant_order) is None:
                raise ShipmentNotReadyError(merchant_order_id)
            return merchant_order

        return await retry_with_policy(
            _fetch,
            self.poll_policy,
            _is_shipment_not_ready,
            sleep=self._sleep,
            operation_name="merchant_order_poll",
        )

    async def process_merchant_order_webhook(
        self,
        merchant_order_id: str,
        request_id: str | None = None,
    ) -> MerchantOrderResult:
        """Never raises; every failure comes back in the result"""
        merchant_order_id = str(merchant_order_id)
        try:
            return await self._process(merchant_order_id, request_id)
        except Exception as e:
            logger.error(
                "Failed to process merchant order",
                extra_data={
                    "request_id": request_id,
                    "merchant_order_id": merchant_order_id,
                    "error": str(e),
                },
                exc_info=True,
            )
            return MerchantOrderResult(success=False, error=str(e))

    async def _process(self, merchant_order_id: str, request_id: str | None) -> MerchantOrderResult:
        try:
            merchant_order = await self.fetch_merchant_order_until_has_shipment(merchant_order_id)
        except ShipmentNotReadyError:
            merchant_order = await self.client.get_merchant_order(merchant_order_id)

        order_id = parse_local_order_id(merchant_order.get("external_reference"))
        if order_id is None:
            logger.warning(
                "Could not map external_reference to a local order",
                extra_data={
                    "request_id": request_id,
                    "merchant_order_id": merchant_order_id,
                    "external_reference": merchant_order.get("external_reference"),
                },
            )
            return MerchantOrderResult(
                success=False,
                error="Could not map external_reference to a local order",
            )

        shipment = select_shipment(merchant_order)
        shipment_id = selected_shipment_id(merchant_order)
        snapshot = MerchantOrderSection(
            id=merchant_order_id,
            preference_id=merchant_order.get("preference_id"),
            status=merchant_order.get("status"),
            order_status=merchant_order.get("order_status"),
            updated_at=utc_timestamp(),
        )

        try:
            result = await self.db.execute(
                select(Order).where(Order.id == order_id).with_for_update()
            )
            order = result.scalar_one_or_none()
            if not order:
                await self.db.rollback()
                return MerchantOrderResult(success=False, error=f"Order {order_id} not found")

            # Already linked: a redelivered older notification must not clobber it
            if order.ml_shipment_id:
                order.order_metadata = merge_order_metadata(
                    order.order_metadata, mp_merchant_order=snapshot
                )
                await self.db.commit()
                return MerchantOrderResult(
                    success=True, order_id=order_id, shipment_id=order.ml_shipment_id
                )

            if shipment_id is None:
                order.order_metadata = merge_order_metadata(
                    order.order_metadata, mp_merchant_order=snapshot, shipment_pending=True
                )
                await self.db.commit()
                logger.info(
                    "Merchant order has no shipment yet",
                    extra_data={
                        "request_id": request_id,
                        "merchant_order_id": merchant_order_id,
                        "order_id": order_id,
                        "shipments_count": len(merchant_order.get("shipments") or []),
                    },
                )
                return MerchantOrderResult(success=True, order_id=order_id, shipment_pending=True)

            shipment_status = shipment.get("status")
            order.ml_shipment_id = shipment_id
            order.ml_shipment_status = shipment_status
            order.shipping_status = map_merchant_order_shipment_status(shipment_status)
            order.order_metadata = merge_order_metadata(
                order.order_metadata,
                mp_merchant_order=snapshot,
                ml_shipment=ShipmentSection(id=shipment_id, status=shipment_status),
                shipment_pending=None,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Shipment linked from merchant order",
            extra_data={
                "request_id": request_id,
                "merchant_order_id": merchant_order_id,
                "order_id": order_id,
                "shipment_id": shipment_id,
                "shipment_status": shipment_status,
            },
        )
        return MerchantOrderResult(success=True, order_id=order_id, shipment_id=shipment_id)
