"""
Stock Service - Deduction on payment and restoration on cancellation

Both directions are guarded by a per-order flag claimed with a conditional
UPDATE, so a redelivered webhook (or two concurrent deliveries) can move
stock for an order at most once in each direction. The claim and the product
updates share one transaction: a failure part-way leaves neither behind.
"""
import asyncio
from typing import Awaitable, Callable

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import InsufficientStockError, ProductNotFoundError
from storefront.core.logging import get_logger
from storefront.core.retry import RetryPolicy, retry_any_error, retry_with_policy
from storefront.db.models.order import Order, OrderItem
from storefront.db.models.product import Product

logger = get_logger(__name__)


class StockService:
    """Stock movements tied to an order's lifecycle"""

    def __init__(
        self,
        db: AsyncSession,
        rollback_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.rollback_policy = rollback_policy or RetryPolicy(
            max_retries=2, initial_delay=2.0, max_delay=8.0
        )
        self._sleep = sleep

    async def _order_items(self, order_id: int) -> list[OrderItem]:
        result = await self.db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )
        return list(result.scalars().all())

    async def decrement_product(self, product_id: int, quantity: int) -> None:
        """
        Atomic ``stock = stock - quantity`` guarded by ``stock >= quantity``.

        Does not commit; raises inside the caller's transaction.
        """
        result = await self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
        )
        if result.rowcount == 1:
            return

        current = await self.db.execute(select(Product.stock).where(Product.id == product_id))
        available = current.scalar_one_or_none()
        if available is None:
            raise ProductNotFoundError(product_id)
        raise InsufficientStockError(product_id, available, quantity)

    async def decrement_product_clamped(self, product_id: int, quantity: int) -> None:
        """
        Decrement without the stock guard, flooring at zero.

        For sales that already happened elsewhere (marketplace orders): the
        local count has to follow even when it was out of date.
        """
        current = await self.db.execute(select(Product.stock).where(Product.id == product_id))
        available = current.scalar_one_or_none()
        if available is None:
            raise ProductNotFoundError(product_id)
        if available < quantity:
            logger.warning(
                "Marketplace sale exceeds local stock",
                extra_data={"product_id": product_id, "available": available, "requested": quantity},
            )

        await self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=case((Product.stock > quantity, Product.stock - quantity), else_=0))
        )

    async def increment_product(self, product_id: int, quantity: int) -> None:
        result = await self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
        )
        if result.rowcount != 1:
            raise ProductNotFoundError(product_id)

    async def deduct_for_order(
        self,
        order_id: int,
        *,
        commit: bool = True,
        clamp_at_zero: bool = False,
    ) -> bool:
        """
        Claim ``stock_deducted`` and decrement every line of the order.

        Returns False when stock was already deducted. With ``commit=False``
        the caller owns the transaction (and its rollback).
        """
        decrement = self.decrement_product_clamped if clamp_at_zero else self.decrement_product
        try:
            claim = await self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.stock_deducted == False)  # noqa: E712
                .values(stock_deducted=True)
            )
            if claim.rowcount != 1:
                logger.info(
                    "Stock already deducted for order",
                    extra_data={"order_id": order_id},
                )
                return False

            for item in await self._order_items(order_id):
                await decrement(item.product_id, item.quantity)

            if commit:
                await self.db.commit()
            return True
        except Exception:
            if commit:
                await self.db.rollback()
            raise

    async def restore_for_order(self, order_id: int, *, commit: bool = True) -> bool:
        """
        Claim ``stock_restored`` and give every line's quantity back.

        Only orders whose stock was deducted can be restored. Returns False
        when there is nothing to do (never deducted, or already restored).
        With ``commit=False`` the caller owns the transaction.
        """
        try:
            claim = await self.db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.stock_deducted == True,  # noqa: E712
                    Order.stock_restored == False,  # noqa: E712
                )
                .values(stock_restored=True)
            )
            if claim.rowcount != 1:
                if commit:
                    await self.db.rollback()
                logger.info(
                    "Stock restoration skipped",
                    extra_data={"order_id": order_id, "reason": "not deducted or already restored"},
                )
                return False

            items = await self._order_items(order_id)
            for item in items:
                await self.increment_product(item.product_id, item.quantity)

            if commit:
                await self.db.commit()
            logger.info(
                "Stock restored for order",
                extra_data={
                    "order_id": order_id,
                    "items": [
                        {"product_id": item.product_id, "quantity": item.quantity}
                        for item in items
                    ],
                },
            )
            return True
        except Exception:
            if commit:
                await self.db.rollback()
            raise

    async def restore_with_retry(self, order_id: int, request_id: str | None = None) -> bool:
        """
        Restore stock with bounded retries; True when this call restored it.

        Never raises: the cancellation webhook has already been accepted, so on
        exhaustion the failure is logged at critical level for an operator and
        False is returned.
        """
        try:
            return await retry_with_policy(
                lambda: self.restore_for_order(order_id),
                self.rollback_policy,
                retry_any_error,
                sleep=self._sleep,
                operation_name="stock_restore",
            )
        except Exception as e:
            logger.critical(
                "Stock restoration failed after retries, manual intervention required",
                extra_data={
                    "order_id": order_id,
                    "request_id": request_id,
                    "attempts": self.rollback_policy.max_retries + 1,
                    "error": str(e),
                },
                exc_info=True,
            )
            return False
