"""
Tests for StockService: deduction and restoration claims, atomicity of a
partial failure and retry without double increments.
"""
import logging

import pytest
from sqlalchemy import select

from storefront.core.exceptions import InsufficientStockError, ProductNotFoundError
from storefront.core.retry import RetryPolicy
from storefront.db.models import Order, OrderStatus, Product
from storefront.domain.services.stock_service import StockService
from tests.conftest import no_sleep


def _service(db_session, max_retries: int = 2) -> StockService:
    return StockService(
        db_session,
        rollback_policy=RetryPolicy(max_retries=max_retries, initial_delay=0, max_delay=0),
        sleep=no_sleep,
    )


async def _stock(db_session, product_id: int) -> int:
    result = await db_session.execute(select(Product.stock).where(Product.id == product_id))
    return result.scalar_one()


class TestDeduction:

    @pytest.mark.unit
    async def test_deduct_once(self, db_session, product_factory, order_factory) -> None:
        product = await product_factory(stock=5)
        order = await order_factory(items=[(product, 2)])
        service = _service(db_session)

        assert await service.deduct_for_order(order.id) is True
        assert await service.deduct_for_order(order.id) is False
        assert await _stock(db_session, product.id) == 3

    @pytest.mark.unit
    async def test_insufficient_stock_rolls_back_everything(
        self, db_session, product_factory, order_factory, reload
    ) -> None:
        first = await product_factory(name="A", stock=5)
        second = await product_factory(name="B", stock=1)
        order = await order_factory(items=[(first, 2), (second, 3)])
        order_id, first_id, second_id = order.id, first.id, second.id

        with pytest.raises(InsufficientStockError):
            await _service(db_session).deduct_for_order(order_id)

        assert await _stock(db_session, first_id) == 5
        assert await _stock(db_session, second_id) == 1
        assert (await reload(Order, order_id)).stock_deducted is False

    @pytest.mark.unit
    async def test_clamped_decrement_floors_at_zero(self, db_session, product_factory) -> None:
        product = await product_factory(stock=1)
        service = _service(db_session)

        await service.decrement_product_clamped(product.id, 4)
        await db_session.commit()

        assert await _stock(db_session, product.id) == 0

    @pytest.mark.unit
    async def test_missing_product(self, db_session) -> None:
        with pytest.raises(ProductNotFoundError):
            await _service(db_session).decrement_product(999, 1)


class TestRestoration:

    @pytest.mark.unit
    async def test_restore_requires_deduction(self, db_session, product_factory, order_factory) -> None:
        product = await product_factory(stock=5)
        order = await order_factory(items=[(product, 2)])
        order_id, product_id = order.id, product.id

        assert await _service(db_session).restore_for_order(order_id) is False
        assert await _stock(db_session, product_id) == 5

    @pytest.mark.unit
    async def test_restore_is_applied_once(self, db_session, product_factory, order_factory) -> None:
        product = await product_factory(stock=3)
        order = await order_factory(
            status=OrderStatus.CANCELLED, items=[(product, 2)], stock_deducted=True
        )
        order_id, product_id = order.id, product.id
        service = _service(db_session)

        assert await service.restore_for_order(order_id) is True
        assert await service.restore_for_order(order_id) is False
        assert await service.restore_with_retry(order_id) is False
        assert await _stock(db_session, product_id) == 5

    @pytest.mark.unit
    async def test_restore_inside_caller_transaction(
        self, db_session, product_factory, order_factory, reload
    ) -> None:
        product = await product_factory(stock=3)
        order = await order_factory(
            status=OrderStatus.CANCELLED, items=[(product, 2)], stock_deducted=True
        )
        order_id, product_id = order.id, product.id

        assert await _service(db_session).restore_for_order(order_id, commit=False) is True
        await db_session.rollback()

        assert await _stock(db_session, product_id) == 3
        assert (await reload(Order, order_id)).stock_restored is False

    @pytest.mark.unit
    async def test_partial_failure_is_retried_without_double_increment(
        self, db_session, product_factory, order_factory, reload
    ) -> None:
        first = await product_factory(name="A", stock=3)
        second = await product_factory(name="B", stock=7)
        order = await order_factory(
            status=OrderStatus.CANCELLED,
            items=[(first, 2), (second, 1)],
            stock_deducted=True,
        )
        order_id, first_id, second_id = order.id, first.id, second.id
        service = _service(db_session)

        original_increment = service.increment_product
        calls = {"count": 0}

        async def flaky_increment(product_id: int, quantity: int) -> None:
            calls["count"] += 1
            # first attempt: product A succeeds, product B fails
            if calls["count"] == 2:
                raise RuntimeError("connection dropped")
            await original_increment(product_id, quantity)

        service.increment_product = flaky_increment

        assert await service.restore_with_retry(order_id, "req-1") is True
        assert await _stock(db_session, first_id) == 5
        assert await _stock(db_session, second_id) == 8
        assert (await reload(Order, order_id)).stock_restored is True

    @pytest.mark.unit
    async def test_exhausted_retries_log_critical_and_return_false(
        self, db_session, product_factory, order_factory, reload, caplog
    ) -> None:
        product = await product_factory(stock=1)
        order = await order_factory(
            status=OrderStatus.CANCELLED, items=[(product, 1)], stock_deducted=True
        )
        order_id, product_id = order.id, product.id
        service = _service(db_session, max_retries=2)
        attempts = {"count": 0}

        async def always_fails(product_id: int, quantity: int) -> None:
            attempts["count"] += 1
            raise RuntimeError("database unavailable")

        service.increment_product = always_fails

        with caplog.at_level(logging.CRITICAL):
            assert await service.restore_with_retry(order_id, "req-2") is False

        assert attempts["count"] == 3
        assert any("manual intervention" in r.getMessage() for r in caplog.records)
        assert await _stock(db_session, product_id) == 1
        assert (await reload(Order, order_id)).stock_restored is False
