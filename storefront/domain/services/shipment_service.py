"""
Shipment Reconciler - merges marketplace shipment state into local orders

Every reconciliation (webhook or manual) appends a history row, even when
nothing changed; the order row only ever holds the latest state.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import ErrorCode, NotFoundException
from storefront.core.logging import get_logger
from storefront.db.models.order import Order, ShippingStatus
from storefront.db.models.shipment_history import ShipmentHistoryEntry, ShipmentSource
from storefront.domain.services.marketplace_client import MarketplaceClient

logger = get_logger(__name__)


ML_STATUS_TO_LOCAL: dict[str, ShippingStatus] = {
    "pending": ShippingStatus.PENDING,
    "handling": ShippingStatus.PROCESSING,
    "ready_to_ship": ShippingStatus.PROCESSING,
    "ready_to_print": ShippingStatus.PROCESSING,
    "printed": ShippingStatus.PROCESSING,
    "shipped": ShippingStatus.SHIPPED,
    "in_transit": ShippingStatus.SHIPPED,
    "delivered": ShippingStatus.DELIVERED,
    "confirmed_delivery": ShippingStatus.DELIVERED,
    "not_delivered": ShippingStatus.FAILED,
    "bad_address": ShippingStatus.FAILED,
    "refused": ShippingStatus.FAILED,
    "bad_package": ShippingStatus.FAILED,
    "bad_quantity": ShippingStatus.FAILED,
    "bad_content": ShippingStatus.FAILED,
    "bad_label": ShippingStatus.FAILED,
    "bad_measurements": ShippingStatus.FAILED,
    "carrier_error": ShippingStatus.FAILED,
    "transportation_problem": ShippingStatus.FAILED,
    "bad_documentation": ShippingStatus.FAILED,
    "bad_packaging": ShippingStatus.FAILED,
    "cancelled": ShippingStatus.CANCELLED,
    "returned": ShippingStatus.RETURNED,
    "return_requested": ShippingStatus.RETURNED,
    "return_in_progress": ShippingStatus.RETURNED,
    "return_completed": ShippingStatus.RETURNED,
    "return_declined": ShippingStatus.RETURNED,
    "return_rejected": ShippingStatus.RETURNED,
    "return_cancelled": ShippingStatus.RETURNED,
    # Delays and holds: still on its way as far as the customer is concerned
    "stalled": ShippingStatus.PENDING,
    "contested": ShippingStatus.PENDING,
    "customs_hold": ShippingStatus.PENDING,
    "carrier_delay": ShippingStatus.PENDING,
    "customs_retention": ShippingStatus.PENDING,
    "customs_transit": ShippingStatus.PENDING,
    "warehouse_processing_delay": ShippingStatus.PENDING,
    "carrier_pickup_delay": ShippingStatus.PENDING,
}

STATUS_CHANGE_MESSAGES: dict[ShippingStatus, str] = {
    ShippingStatus.PENDING: "Shipment pending processing",
    ShippingStatus.PROCESSING: "Shipment being prepared",
    ShippingStatus.SHIPPED: "Shipment on its way",
    ShippingStatus.DELIVERED: "Shipment delivered",
    ShippingStatus.FAILED: "Shipment failed, needs attention",
    ShippingStatus.CANCELLED: "Shipment cancelled",
    ShippingStatus.RETURNED: "Shipment returned",
}

AGENCY_KEYWORDS = ("agencia", "sucursal", "correo argentino")
DEFAULT_AGENCY_NAME = "Agencia Mercado Libre"


def map_shipment_status(status: str | None) -> ShippingStatus:
    """Marketplace shipment status to the local enum; unknown or empty is pending"""
    if not status:
        return ShippingStatus.PENDING
    return ML_STATUS_TO_LOCAL.get(str(status).strip().lower(), ShippingStatus.PENDING)


def is_agency_address(address_line: str | None) -> bool:
    line = (address_line or "").lower()
    return any(keyword in line for keyword in AGENCY_KEYWORDS)


def extract_pickup_agency(shipment: dict[str, Any]) -> dict[str, Any] | None:
    """
    Best-effort pickup point from a drop-off shipment.

    The marketplace exposes no structured pickup point in this resource, so
    the agency is inferred from the receiver address line. The name is the
    text before the first comma.
    """
    address = shipment.get("receiver_address") or {}
    if not address or shipment.get("logistic_type") != "drop_off":
        return None

    address_line = address.get("address_line") or ""
    if not is_agency_address(address_line):
        return None

    name = address_line.split(",")[0].strip() or DEFAULT_AGENCY_NAME
    carrier_info = shipment.get("carrier_info") or {}
    return {
        "id": address.get("id"),
        "name": name,
        "address": {
            "street_name": address.get("street_name"),
            "street_number": address.get("street_number"),
            "address_line": address.get("address_line"),
            "comment": address.get("comment"),
        },
        "phone": carrier_info.get("phone"),
        "hours": None,
    }


def _parse_marketplace_datetime(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def notify_status_change(order_id: int, new_status: ShippingStatus, tracking: dict[str, Any]) -> None:
    """Status change hook; customer notifications are not sent from here"""
    logger.info(
        "Shipment status changed",
        extra_data={
            "order_id": order_id,
            "new_status": new_status.value,
            "message": STATUS_CHANGE_MESSAGES.get(new_status, f"Shipment status is now {new_status.value}"),
            "tracking_number": tracking.get("tracking_number"),
            "tracking_url": tracking.get("tracking_url"),
        },
    )


@dataclass
class ReconcileResult:
    success: bool
    shipment_id: str
    order_id: int | None = None
    old_status: ShippingStatus | None = None
    new_status: ShippingStatus | None = None
    message: str | None = None


class ShipmentReconciler:
    """Applies marketplace and manual shipment updates to orders"""

    def __init__(self, db: AsyncSession, client: MarketplaceClient):
        self.db = db
        self.client = client

    async def reconcile(
        self,
        shipment_id: str,
        source: str = ShipmentSource.MERCADOLIBRE,
        user_id: int | None = None,
    ) -> ReconcileResult:
        """
        Fetch the shipment and merge it into the order that references it.

        A shipment with no local order is a success: test shipments and
        orders created elsewhere are expected.
        """
        shipment_id = str(shipment_id)
        shipment = await self.client.get_shipment(shipment_id, user_id)

        try:
            result = await self.db.execute(
                select(Order)
                .where(Order.ml_shipment_id == shipment_id)
                .with_for_update()
            )
            order = result.scalars().first()
            if not order:
                await self.db.rollback()
                logger.warning(
                    "No local order for shipment",
                    extra_data={"shipment_id": shipment_id},
                )
                return ReconcileResult(
                    success=True,
                    shipment_id=shipment_id,
                    message="Shipment processed without a local order",
                )

            old_status = order.shipping_status
            new_status = map_shipment_status(shipment.get("status"))

            order.shipping_status = new_status
            order.tracking_number = shipment.get("tracking_number")
            order.tracking_url = shipment.get("tracking_url")
            order.ml_shipment_status = shipment.get("status")
            order.ml_shipment_substatus = shipment.get("substatus")

            if not order.shipping_agency:
                agency = extract_pickup_agency(shipment)
                if agency:
                    order.shipping_agency = agency

            self.db.add(ShipmentHistoryEntry(
                order_id=order.id,
                shipment_id=str(shipment.get("id") or shipment_id),
                status=shipment.get("status"),
                substatus=shipment.get("substatus"),
                tracking_number=shipment.get("tracking_number"),
                tracking_url=shipment.get("tracking_url"),
                source=source,
                date_created=_parse_marketplace_datetime(shipment.get("date_created")),
            ))

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if old_status != new_status:
            notify_status_change(order.id, new_status, shipment)

        logger.info(
            "Order shipment reconciled",
            extra_data={
                "order_id": order.id,
                "shipment_id": shipment_id,
                "old_status": old_status.value if old_status else None,
                "new_status": new_status.value,
                "source": source,
            },
        )
        return ReconcileResult(
            success=True,
            shipment_id=shipment_id,
            order_id=order.id,
            old_status=old_status,
            new_status=new_status,
        )

    async def apply_manual_update(
        self,
        order_id: int,
        status: ShippingStatus,
        substatus: str | None = None,
        tracking_number: str | None = None,
        tracking_url: str | None = None,
        comment: str | None = None,
    ) -> ReconcileResult:
        """Operator override; goes through the same history ledger tagged ``admin``"""
        try:
            result = await self.db.execute(
                select(Order).where(Order.id == order_id).with_for_update()
            )
            order = result.scalar_one_or_none()
            if not order:
                raise NotFoundException("Order", order_id, error_code=ErrorCode.ORDER_NOT_FOUND)

            old_status = order.shipping_status
            order.shipping_status = status
            if substatus is not None:
                order.ml_shipment_substatus = substatus
            if tracking_number is not None:
                order.tracking_number = tracking_number
            if tracking_url is not None:
                order.tracking_url = tracking_url

            self.db.add(ShipmentHistoryEntry(
                order_id=order.id,
                shipment_id=order.ml_shipment_id,
                status=status.value,
                substatus=substatus,
                tracking_number=order.tracking_number,
                tracking_url=order.tracking_url,
                source=ShipmentSource.ADMIN,
                comment=comment or "Manual update by administrator",
                date_created=datetime.now(timezone.utc),
            ))

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if old_status != status:
            notify_status_change(
                order.id,
                status,
                {"tracking_number": order.tracking_number, "tracking_url": order.tracking_url},
            )

        logger.info(
            "Shipment updated manually",
            extra_data={
                "order_id": order.id,
                "old_status": old_status.value if old_status else None,
                "new_status": status.value,
            },
        )
        return ReconcileResult(
            success=True,
            shipment_id=order.ml_shipment_id or "",
            order_id=order.id,
            old_status=old_status,
            new_status=status,
        )

    async def get_history(self, order_id: int) -> list[ShipmentHistoryEntry]:
        """History rows for an order, oldest first"""
        result = await self.db.execute(
            select(ShipmentHistoryEntry)
            .where(ShipmentHistoryEntry.order_id == order_id)
            .order_by(ShipmentHistoryEntry.created_at, ShipmentHistoryEntry.id)
        )
        return list(result.scalars().all())
