"""
Payment Service - payment provider notifications applied to orders

Approved payments either confirm a checkout order or materialize a new order
from the checkout metadata stashed on the payment. Cancelled and rejected
payments mark the order and give its stock back.

Idempotency:
1. ``orders.payment_id`` is unique: a payment maps to at most one order
2. Stock moves only through the ``stock_deducted`` / ``stock_restored`` claims
"""
import asyncio
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import OrderMaterializationError
from storefront.core.logging import get_logger, log_async_operation, webhook_log_context
from storefront.core.retry import RetryPolicy
from storefront.db.models.order import Order, OrderItem, OrderStatus
from storefront.db.models.user import ShippingMethod, User
from storefront.domain.order_metadata import PaymentSection, merge_order_metadata, utc_timestamp
from storefront.domain.services.marketplace_client import MarketplaceClient
from storefront.domain.services.merchant_order_service import parse_local_order_id
from storefront.domain.services.stock_service import StockService

logger = get_logger(__name__)

APPROVED = "approved"

# Payment statuses that undo an order; all of them give stock back
CANCELLING_STATUSES: dict[str, OrderStatus] = {
    "cancelled": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
    "refunded": OrderStatus.CANCELLED,
    "charged_back": OrderStatus.FAILED,
}

CENTS = Decimal("0.01")


@dataclass
class PaymentResult:
    success: bool
    payment_id: str | None = None
    status: str | None = None
    order_id: int | None = None
    already_processed: bool = False
    stock_restored: bool | None = None
    message: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        for key in ("payment_id", "status", "order_id", "stock_restored", "message", "error"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.already_processed:
            data["already_processed"] = True
        return data


@dataclass
class CheckoutItem:
    product_id: int
    price: Decimal
    quantity: int


@dataclass
class CheckoutMetadata:
    user_id: int
    items: list[CheckoutItem]
    shipping_cost: Decimal
    shipping_address: dict[str, Any] | None = None
    shipping_method_id: int | None = None

    @property
    def total(self) -> Decimal:
        subtotal = sum((item.price * item.quantity for item in self.items), Decimal("0"))
        return (subtotal + self.shipping_cost).quantize(CENTS)


# ── metadata parsing (fail fast, one descriptive error per problem) ──

def _invalid(message: str, payment_id: str | None, field: str | None = None) -> OrderMaterializationError:
    details = {"field": field} if field else None
    return OrderMaterializationError(message, payment_id=payment_id, details=details)


def _pick(metadata: dict[str, Any], camel: str, snake: str) -> Any:
    """Checkout writes camelCase; the provider echoes metadata back in snake_case"""
    value = metadata.get(camel)
    return metadata.get(snake) if value is None else value


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def _decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None


def _json_value(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def parse_checkout_metadata(metadata: Any, payment_id: str | None = None) -> CheckoutMetadata:
    """
    Validate the checkout metadata carried by a payment.

    Does not touch the database; user and shipping method existence are
    checked by the caller.
    """
    if not isinstance(metadata, dict) or not metadata:
        raise _invalid("Payment metadata is missing", payment_id, "metadata")

    raw_user_id = _pick(metadata, "userId", "user_id")
    raw_items = metadata.get("items")
    if raw_user_id in (None, "") or raw_items in (None, ""):
        raise _invalid("Missing userId or items in payment metadata", payment_id, "metadata")

    user_id = _positive_int(raw_user_id)
    if user_id is None:
        raise _invalid(f"Invalid userId: {raw_user_id!r}", payment_id, "userId")

    try:
        parsed_items = _json_value(raw_items)
    except ValueError:
        raise _invalid("items is not valid JSON", payment_id, "items")
    if not isinstance(parsed_items, list) or not parsed_items:
        raise _invalid("items must be a non-empty array", payment_id, "items")

    items: list[CheckoutItem] = []
    for index, raw in enumerate(parsed_items):
        if not isinstance(raw, dict):
            raise _invalid(f"items[{index}] is not an object", payment_id, "items")
        product_id = _positive_int(raw.get("id"))
        if product_id is None:
            raise _invalid(f"items[{index}] has an invalid id", payment_id, "items")
        price = _decimal(raw.get("price"))
        if price is None or price < 0:
            raise _invalid(f"items[{index}] has an invalid price", payment_id, "items")
        quantity = _positive_int(raw.get("quantity"))
        if quantity is None:
            raise _invalid(f"items[{index}] has an invalid quantity", payment_id, "items")
        items.append(CheckoutItem(product_id=product_id, price=price, quantity=quantity))

    shipping_address = None
    raw_address = _pick(metadata, "shippingAddress", "shipping_address")
    if raw_address not in (None, ""):
        try:
            shipping_address = _json_value(raw_address)
        except ValueError:
            raise _invalid("shippingAddress is not valid JSON", payment_id, "shippingAddress")
        if not isinstance(shipping_address, dict):
            raise _invalid("shippingAddress must be an object", payment_id, "shippingAddress")

    shipping_method_id = None
    raw_method = _pick(metadata, "shippingMethodId", "shipping_method_id")
    if raw_method not in (None, ""):
        shipping_method_id = _positive_int(raw_method)
        if shipping_method_id is None:
            raise _invalid(f"Invalid shippingMethodId: {raw_method!r}", payment_id, "shippingMethodId")

    shipping_cost = Decimal("0")
    raw_cost = _pick(metadata, "shippingCost", "shipping_cost")
    if raw_cost not in (None, ""):
        shipping_cost = _decimal(raw_cost)
        if shipping_cost is None or shipping_cost < 0:
            raise _invalid(f"Invalid shippingCost: {raw_cost!r}", payment_id, "shippingCost")

    return CheckoutMetadata(
        user_id=user_id,
        items=items,
        shipping_cost=shipping_cost,
        shipping_address=shipping_address,
        shipping_method_id=shipping_method_id,
    )


class PaymentService:
    """Applies payment state transitions to local orders"""

    def __init__(
        self,
        db: AsyncSession,
        client: MarketplaceClient | None = None,
        rollback_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.client = client
        self.stock_service = StockService(db, rollback_policy=rollback_policy, sleep=sleep)

    async def _get_order_by_payment_id(self, payment_id: str) -> Order | None:
        result = await self.db.execute(select(Order).where(Order.payment_id == payment_id))
        return result.scalar_one_or_none()

    async def _find_checkout_order(self, external_reference: Any) -> Order | None:
        """Checkout order by its stored reference, else by the id embedded in it"""
        if external_reference in (None, ""):
            return None
        reference = str(external_reference).strip()
        conditions = [Order.external_reference == reference]
        local_id = parse_local_order_id(reference)
        if local_id is not None:
            conditions.append(Order.id == local_id)

        result = await self.db.execute(
            select(Order).where(or_(*conditions)).order_by(Order.id).with_for_update()
        )
        candidates = list(result.scalars().all())
        for order in candidates:
            if order.external_reference == reference:
                return order
        return candidates[0] if candidates else None

    @log_async_operation("payment_approved_materialization")
    async def handle_payment_approved(self, payment: dict[str, Any]) -> tuple[Order, bool]:
        """
        Create a paid order from the payment's checkout metadata.

        Returns (order, created). A payment that already has an order returns
        that order with created=False. Validation failures, a missing product
        or insufficient stock raise OrderMaterializationError and leave no
        order, no items and no stock change behind.
        """
        payment_id = str(payment.get("id") or "").strip()
        if not payment_id:
            raise _invalid("Payment id is missing", None, "id")

        existing = await self._get_order_by_payment_id(payment_id)
        if existing:
            logger.info(
                "Payment already materialized",
                extra_data={"payment_id": payment_id, "order_id": existing.id},
            )
            return existing, False

        checkout = parse_checkout_metadata(payment.get("metadata"), payment_id)

        user = await self.db.execute(select(User.id).where(User.id == checkout.user_id))
        if user.scalar_one_or_none() is None:
            raise _invalid(f"User {checkout.user_id} not found", payment_id, "userId")

        if checkout.shipping_method_id is not None:
            method = await self.db.execute(
                select(ShippingMethod.id).where(ShippingMethod.id == checkout.shipping_method_id)
            )
            if method.scalar_one_or_none() is None:
                raise _invalid(
                    f"Shipping method {checkout.shipping_method_id} not found",
                    payment_id,
                    "shippingMethodId",
                )

        try:
            order = Order(
                user_id=checkout.user_id,
                status=OrderStatus.PAID,
                total=checkout.total,
                shipping_cost=checkout.shipping_cost.quantize(CENTS),
                shipping_method_id=checkout.shipping_method_id,
                shipping_address=checkout.shipping_address,
                payment_id=payment_id,
                external_reference=(
                    str(payment["external_reference"]) if payment.get("external_reference") else None
                ),
                order_metadata=merge_order_metadata(
                    None,
                    payment=PaymentSection(
                        id=payment_id,
                        status=payment.get("status") or APPROVED,
                        status_detail=payment.get("status_detail"),
                        updated_at=utc_timestamp(),
                    ),
                ),
                # Stock is taken below, in this same transaction
                stock_deducted=True,
            )
            self.db.add(order)
            await self.db.flush()

            for item in checkout.items:
                await self.stock_service.decrement_product(item.product_id, item.quantity)
                self.db.add(OrderItem(
                    order_id=order.id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    price=item.price,
                ))

            await self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same payment won the unique payment_id
            await self.db.rollback()
            existing = await self._get_order_by_payment_id(payment_id)
            if existing is None:
                raise
            return existing, False
        except OrderMaterializationError as e:
            await self.db.rollback()
            e.details.setdefault("payment_id", payment_id)
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Order materialized from payment",
            extra_data={
                "payment_id": payment_id,
                "order_id": order.id,
                "user_id": checkout.user_id,
                "total": str(order.total),
                "items": len(checkout.items),
            },
        )
        return order, True

    async def confirm_checkout_order(self, order: Order, payment: dict[str, Any]) -> Order:
        """Mark a checkout order paid and take its stock unless checkout already did"""
        payment_id = str(payment["id"])
        try:
            order.status = OrderStatus.PAID
            order.payment_id = payment_id
            order.order_metadata = merge_order_metadata(
                order.order_metadata,
                payment=PaymentSection(
                    id=payment_id,
                    status=payment.get("status") or APPROVED,
                    status_detail=payment.get("status_detail"),
                    updated_at=utc_timestamp(),
                ),
            )
            await self.stock_service.deduct_for_order(order.id, commit=False)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Checkout order confirmed by payment",
            extra_data={"payment_id": payment_id, "order_id": order.id},
        )
        return order

    async def cancel_order_for_payment(
        self,
        payment: dict[str, Any],
        request_id: str | None = None,
    ) -> PaymentResult:
        payment_id = str(payment["id"])
        status = payment.get("status")
        new_status = CANCELLING_STATUSES[status]

        order = await self._get_order_by_payment_id(payment_id)
        if order is None:
            order = await self._find_checkout_order(payment.get("external_reference"))
            if order is not None and order.payment_id not in (None, payment_id):
                # Another payment attempt already settled this checkout order
                logger.warning(
                    "Cancelled payment belongs to a superseded attempt",
                    extra_data={
                        "payment_id": payment_id,
                        "order_id": order.id,
                        "order_payment_id": order.payment_id,
                        "status": status,
                        "request_id": request_id,
                    },
                )
                order_id = order.id
                await self.db.rollback()
                return PaymentResult(
                    success=True,
                    payment_id=payment_id,
                    status=status,
                    order_id=order_id,
                    message="Order is settled by another payment",
                )
        if order is None:
            logger.warning(
                "No local order for cancelled payment",
                extra_data={"payment_id": payment_id, "status": status, "request_id": request_id},
            )
            return PaymentResult(
                success=True,
                payment_id=payment_id,
                status=status,
                message="No local order for this payment",
            )

        try:
            order.status = new_status
            order.order_metadata = merge_order_metadata(
                order.order_metadata,
                payment=PaymentSection(
                    id=payment_id,
                    status=status,
                    status_detail=payment.get("status_detail"),
                    updated_at=utc_timestamp(),
                ),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        # A skipped restore rolls the session back and expires the instance
        order_id = order.id
        restored = await self.stock_service.restore_with_retry(order_id, request_id)
        logger.info(
            "Order cancelled by payment",
            extra_data={
                "payment_id": payment_id,
                "order_id": order_id,
                "status": status,
                "stock_restored": restored,
                "request_id": request_id,
            },
        )
        return PaymentResult(
            success=True,
            payment_id=payment_id,
            status=status,
            order_id=order_id,
            stock_restored=restored,
        )

    async def handle_payment_notification(
        self,
        action: str | None,
        data: dict[str, Any] | None,
        request_id: str | None = None,
    ) -> PaymentResult:
        """
        Entry point for payment webhooks. Never raises: business and upstream
        failures come back as ``success=False`` with the error message.
        """
        data = data or {}
        payment_id = str(data.get("id") or "").strip()

        if action and not (action == "payment" or action.startswith("payment.")):
            return PaymentResult(success=True, payment_id=payment_id or None, message=f"Ignored action {action}")
        if not payment_id:
            return PaymentResult(success=False, error="Missing data.id")

        with webhook_log_context(payment_id=payment_id, request_id=request_id):
            try:
                # Only data.id is covered by the signature; everything else comes
                # from the provider whenever a client is available.
                if self.client is not None:
                    payment = dict(await self.client.get_payment(payment_id))
                else:
                    payment = dict(data)
                    if not payment.get("status"):
                        return PaymentResult(
                            success=False, payment_id=payment_id, error="Payment status is missing"
                        )
                payment["id"] = payment_id

                status = payment.get("status")
                logger.info(
                    "Processing payment notification",
                    extra_data={"payment_id": payment_id, "status": status, "request_id": request_id},
                )

                if status == APPROVED:
                    return await self._apply_approved(payment)
                if status in CANCELLING_STATUSES:
                    return await self.cancel_order_for_payment(payment, request_id)

                return PaymentResult(
                    success=True,
                    payment_id=payment_id,
                    status=status,
                    message="Status does not change the order",
                )
            except Exception as e:
                logger.error(
                    "Payment notification failed",
                    extra_data={
                        "payment_id": payment_id,
                        "request_id": request_id,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                    exc_info=not isinstance(e, OrderMaterializationError),
                )
                return PaymentResult(success=False, payment_id=payment_id, error=str(e))

    async def _apply_approved(self, payment: dict[str, Any]) -> PaymentResult:
        payment_id = payment["id"]

        existing = await self._get_order_by_payment_id(payment_id)
        if existing:
            return PaymentResult(
                success=True,
                payment_id=payment_id,
                status=APPROVED,
                order_id=existing.id,
                already_processed=True,
            )

        checkout_order = await self._find_checkout_order(payment.get("external_reference"))
        if checkout_order is not None and checkout_order.payment_id in (None, payment_id):
            order = await self.confirm_checkout_order(checkout_order, payment)
            return PaymentResult(success=True, payment_id=payment_id, status=APPROVED, order_id=order.id)

        order, created = await self.handle_payment_approved(payment)
        return PaymentResult(
            success=True,
            payment_id=payment_id,
            status=APPROVED,
            order_id=order.id,
            already_processed=not created,
        )
