"""
Tests for PaymentService: order materialization from checkout metadata,
idempotency, atomic stock, checkout confirmation and cancellations.
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from storefront.core.exceptions import (
    InsufficientStockError,
    OrderMaterializationError,
    ProductNotFoundError,
)
from storefront.core.retry import RetryPolicy
from storefront.db.models import Order, OrderItem, OrderStatus, Product, User
from storefront.domain.services.payment_service import PaymentService, parse_checkout_metadata
from tests.conftest import no_sleep


def _service(db_session, fake_client=None) -> PaymentService:
    return PaymentService(
        db_session,
        fake_client,
        rollback_policy=RetryPolicy(max_retries=2, initial_delay=0, max_delay=0),
        sleep=no_sleep,
    )


def _payment(payment_id: str = "PAY-1", **metadata_overrides) -> dict:
    metadata = {
        "userId": "7",
        "items": '[{"id":1,"price":"100.00","quantity":2}]',
        "shippingCost": "10",
    }
    metadata.update(metadata_overrides)
    return {"id": payment_id, "status": "approved", "metadata": metadata}


async def _count(db_session, model) -> int:
    result = await db_session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


async def _stock(db_session, product_id: int) -> int:
    result = await db_session.execute(select(Product.stock).where(Product.id == product_id))
    return result.scalar_one()


@pytest.fixture
async def buyer(db_session) -> User:
    user = User(id=7, name="Buyer", email="buyer@example.com")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def product(db_session) -> Product:
    product = Product(id=1, name="Yerba 1kg", price=Decimal("100.00"), stock=5)
    db_session.add(product)
    await db_session.commit()
    return product


# ============================================================================
# Metadata parsing
# ============================================================================


class TestParseCheckoutMetadata:

    @pytest.mark.unit
    def test_camel_case_metadata(self) -> None:
        checkout = parse_checkout_metadata(_payment()["metadata"], "PAY-1")
        assert checkout.user_id == 7
        assert checkout.items[0].quantity == 2
        assert checkout.total == Decimal("210.00")

    @pytest.mark.unit
    def test_snake_case_metadata(self) -> None:
        checkout = parse_checkout_metadata({
            "user_id": 7,
            "items": [{"id": 1, "price": 50, "quantity": 1}],
            "shipping_cost": "0",
            "shipping_address": '{"city": "Rosario"}',
        })
        assert checkout.total == Decimal("50.00")
        assert checkout.shipping_address == {"city": "Rosario"}

    @pytest.mark.unit
    @pytest.mark.parametrize("metadata,field", [
        (None, "metadata"),
        ({"userId": "7"}, "metadata"),
        ({"userId": "abc", "items": "[]"}, "userId"),
        ({"userId": "7", "items": "not json"}, "items"),
        ({"userId": "7", "items": "[]"}, "items"),
        ({"userId": "7", "items": '[{"id":1,"price":"x","quantity":1}]'}, "items"),
        ({"userId": "7", "items": '[{"id":1,"price":"1","quantity":0}]'}, "items"),
        ({"userId": "7", "items": '[{"id":1,"price":"1","quantity":1}]', "shippingCost": "-1"}, "shippingCost"),
        ({"userId": "7", "items": '[{"id":1,"price":"1","quantity":1}]', "shippingAddress": "[1]"}, "shippingAddress"),
    ])
    def test_invalid_metadata(self, metadata, field) -> None:
        with pytest.raises(OrderMaterializationError) as exc_info:
            parse_checkout_metadata(metadata, "PAY-1")
        assert exc_info.value.details["field"] == field
        assert exc_info.value.details["payment_id"] == "PAY-1"


# ============================================================================
# Materialization
# ============================================================================


class TestHandlePaymentApproved:

    @pytest.mark.unit
    async def test_creates_paid_order_with_server_side_total(self, db_session, buyer, product) -> None:
        order, created = await _service(db_session).handle_payment_approved(_payment())

        assert created is True
        assert order.total == Decimal("210.00")
        assert order.status == OrderStatus.PAID
        assert order.stock_deducted is True
        assert order.order_metadata["payment"]["status"] == "approved"
        assert await _stock(db_session, 1) == 3
        assert await _count(db_session, OrderItem) == 1

    @pytest.mark.unit
    async def test_redelivery_is_idempotent(self, db_session, buyer, product) -> None:
        service = _service(db_session)
        first, created_first = await service.handle_payment_approved(_payment())
        first_id = first.id
        second, created_second = await service.handle_payment_approved(_payment())

        assert created_first is True
        assert created_second is False
        assert second.id == first_id
        assert await _count(db_session, Order) == 1
        assert await _stock(db_session, 1) == 3

    @pytest.mark.unit
    async def test_insufficient_stock_leaves_nothing_behind(self, db_session, buyer, product) -> None:
        db_session.add(Product(id=2, name="Bombilla", price=Decimal("20.00"), stock=1))
        await db_session.commit()
        payment = _payment(items='[{"id":1,"price":"100.00","quantity":2},{"id":2,"price":"20.00","quantity":3}]')

        with pytest.raises(InsufficientStockError):
            await _service(db_session).handle_payment_approved(payment)

        assert await _count(db_session, Order) == 0
        assert await _count(db_session, OrderItem) == 0
        assert await _stock(db_session, 1) == 5
        assert await _stock(db_session, 2) == 1

    @pytest.mark.unit
    async def test_unknown_product(self, db_session, buyer) -> None:
        with pytest.raises(ProductNotFoundError):
            await _service(db_session).handle_payment_approved(_payment())
        assert await _count(db_session, Order) == 0

    @pytest.mark.unit
    async def test_unknown_user(self, db_session, product) -> None:
        with pytest.raises(OrderMaterializationError, match="User 7 not found"):
            await _service(db_session).handle_payment_approved(_payment())

    @pytest.mark.unit
    async def test_unknown_shipping_method(self, db_session, buyer, product) -> None:
        with pytest.raises(OrderMaterializationError) as exc_info:
            await _service(db_session).handle_payment_approved(_payment(shippingMethodId="99"))
        assert exc_info.value.details["field"] == "shippingMethodId"


# ============================================================================
# Notifications
# ============================================================================


class TestPaymentNotification:

    @pytest.mark.unit
    async def test_approved_with_status_in_body(self, db_session, buyer, product) -> None:
        data = _payment()
        result = await _service(db_session).handle_payment_notification("payment.created", data, "req")

        assert result.success
        assert result.order_id is not None
        assert not result.already_processed

    @pytest.mark.unit
    async def test_status_fetched_when_missing(self, db_session, fake_client, buyer, product) -> None:
        fake_client.get_payment.return_value = _payment("PAY-9")

        result = await _service(db_session, fake_client).handle_payment_notification(
            "payment.updated", {"id": "PAY-9"}, "req"
        )

        fake_client.get_payment.assert_awaited_once_with("PAY-9")
        assert result.success
        assert result.status == "approved"

    @pytest.mark.unit
    async def test_unsigned_body_fields_are_ignored_when_provider_is_available(
        self, db_session, fake_client, buyer, product
    ) -> None:
        fake_client.get_payment.return_value = _payment("PAY-9")
        tampered = _payment("PAY-9", items='[{"id":1,"price":"1.00","quantity":2}]', userId="8")

        result = await _service(db_session, fake_client).handle_payment_notification(
            "payment.updated", tampered, "req"
        )

        fake_client.get_payment.assert_awaited_once_with("PAY-9")
        assert result.success
        order = await db_session.get(Order, result.order_id)
        assert order.total == Decimal("210.00")
        assert order.user_id == 7

    @pytest.mark.unit
    async def test_provider_status_wins_over_body_status(self, db_session, fake_client) -> None:
        fake_client.get_payment.return_value = {"id": "PAY-4", "status": "in_process"}

        result = await _service(db_session, fake_client).handle_payment_notification(
            "payment.updated", {"id": "PAY-4", "status": "approved"}, "req"
        )

        assert result.success
        assert result.status == "in_process"
        assert result.order_id is None

    @pytest.mark.unit
    async def test_redelivered_notification_reports_already_processed(
        self, db_session, buyer, product
    ) -> None:
        service = _service(db_session)
        await service.handle_payment_notification("payment.updated", _payment(), "req")
        result = await service.handle_payment_notification("payment.updated", _payment(), "req")

        assert result.success
        assert result.already_processed is True
        assert await _stock(db_session, 1) == 3

    @pytest.mark.unit
    async def test_approved_confirms_checkout_order(
        self, db_session, buyer, product, order_factory, reload
    ) -> None:
        order = await order_factory(
            user=buyer, items=[(product, 2)], total=Decimal("200.00"), external_reference="order-55"
        )
        order_id = order.id
        payment = {"id": "PAY-55", "status": "approved", "external_reference": "order-55"}

        result = await _service(db_session).handle_payment_notification("payment.updated", payment, "req")

        assert result.success
        assert result.order_id == order_id
        stored = await reload(Order, order_id)
        assert stored.status == OrderStatus.PAID
        assert stored.payment_id == "PAY-55"
        assert stored.stock_deducted is True
        assert await _stock(db_session, 1) == 3
        assert await _count(db_session, Order) == 1

    @pytest.mark.unit
    async def test_business_failure_is_returned(self, db_session, buyer) -> None:
        result = await _service(db_session).handle_payment_notification("payment.updated", _payment(), "req")

        assert not result.success
        assert "Product 1 not found" in result.error

    @pytest.mark.unit
    async def test_missing_id(self, db_session) -> None:
        result = await _service(db_session).handle_payment_notification("payment.updated", {}, "req")
        assert result.to_dict() == {"success": False, "error": "Missing data.id"}

    @pytest.mark.unit
    async def test_other_actions_are_ignored(self, db_session) -> None:
        result = await _service(db_session).handle_payment_notification("plan.created", {"id": "1"})
        assert result.success
        assert result.message == "Ignored action plan.created"

    @pytest.mark.unit
    async def test_pending_status_is_acknowledged(self, db_session) -> None:
        result = await _service(db_session).handle_payment_notification(
            "payment.updated", {"id": "P", "status": "in_process"}
        )
        assert result.success
        assert result.message == "Status does not change the order"


class TestCancellation:

    @pytest.mark.unit
    @pytest.mark.parametrize("status,expected", [
        ("cancelled", OrderStatus.CANCELLED),
        ("rejected", OrderStatus.REJECTED),
        ("refunded", OrderStatus.CANCELLED),
    ])
    async def test_cancellation_restores_stock_once(
        self, db_session, buyer, product, reload, status, expected
    ) -> None:
        service = _service(db_session)
        order, _ = await service.handle_payment_approved(_payment())
        order_id = order.id
        assert await _stock(db_session, 1) == 3

        cancel = {"id": "PAY-1", "status": status}
        first = await service.handle_payment_notification("payment.updated", cancel, "req")
        second = await service.handle_payment_notification("payment.updated", cancel, "req")

        assert first.stock_restored is True
        assert second.stock_restored is False
        assert await _stock(db_session, 1) == 5
        stored = await reload(Order, order_id)
        assert stored.status == expected
        assert stored.stock_restored is True
        assert stored.order_metadata["payment"]["status"] == status

    @pytest.mark.unit
    async def test_cancellation_without_order(self, db_session) -> None:
        result = await _service(db_session).handle_payment_notification(
            "payment.updated", {"id": "GHOST", "status": "cancelled"}
        )
        assert result.success
        assert result.message == "No local order for this payment"

    @pytest.mark.unit
    async def test_late_rejection_of_superseded_attempt_keeps_paid_order(
        self, db_session, buyer, product, order_factory, reload
    ) -> None:
        order = await order_factory(user=buyer, items=[(product, 2)], external_reference="77")
        order_id = order.id
        service = _service(db_session)

        approved = await service.handle_payment_notification(
            "payment.updated", {"id": "PAY-2", "status": "approved", "external_reference": "77"}
        )
        rejected = await service.handle_payment_notification(
            "payment.updated", {"id": "PAY-1", "status": "rejected", "external_reference": "77"}
        )

        assert approved.order_id == order_id
        assert rejected.success
        assert rejected.stock_restored is None
        assert rejected.message == "Order is settled by another payment"
        stored = await reload(Order, order_id)
        assert stored.status == OrderStatus.PAID
        assert stored.payment_id == "PAY-2"
        assert stored.stock_restored is False
        assert await _stock(db_session, 1) == 3

    @pytest.mark.unit
    async def test_cancelled_checkout_order_without_deduction_keeps_stock(
        self, db_session, buyer, product, order_factory, reload
    ) -> None:
        order = await order_factory(user=buyer, items=[(product, 2)], external_reference="77")
        order_id = order.id

        result = await _service(db_session).handle_payment_notification(
            "payment.updated", {"id": "PAY-77", "status": "rejected", "external_reference": "77"}
        )

        assert result.success
        assert result.stock_restored is False
        assert await _stock(db_session, 1) == 5
        assert (await reload(Order, order_id)).status == OrderStatus.REJECTED
