"""
Tests for the merchant order poller: convergence, fallback to
"shipment pending" and shipment linkage.
"""
import pytest

from storefront.core.exceptions import ShipmentNotReadyError
from storefront.core.retry import RetryPolicy
from storefront.db.models import Order, ShippingStatus
from storefront.domain.services.merchant_order_service import (
    MerchantOrderService,
    map_merchant_order_shipment_status,
    parse_local_order_id,
    select_shipment,
)
from tests.conftest import no_sleep


def _merchant_order(order_id: int, shipments: list[dict] | None = None) -> dict:
    return {
        "id": 8001,
        "external_reference": str(order_id),
        "preference_id": "pref-1",
        "status": "closed",
        "order_status": "paid",
        "shipments": shipments or [],
    }


def _service(db_session, fake_client, max_retries: int = 4) -> MerchantOrderService:
    return MerchantOrderService(
        db_session,
        fake_client,
        poll_policy=RetryPolicy(max_retries=max_retries, initial_delay=0, max_delay=0),
        sleep=no_sleep,
    )


class TestHelpers:

    @pytest.mark.unit
    @pytest.mark.parametrize("reference,expected", [
        ("42", 42),
        (" 42 ", 42),
        ("order-42", 42),
        ("abc-7-x-9", 7),
        (17, 17),
        ("0", None),
        ("no digits", None),
        ("", None),
        (None, None),
    ])
    def test_parse_local_order_id(self, reference, expected) -> None:
        assert parse_local_order_id(reference) == expected

    @pytest.mark.unit
    def test_select_shipment_prefers_me2(self) -> None:
        merchant_order = {"shipments": [
            {"id": 1, "shipping_mode": "custom"},
            {"id": 2, "shipping_mode": "me2"},
        ]}
        assert select_shipment(merchant_order)["id"] == 2

    @pytest.mark.unit
    def test_select_shipment_falls_back_to_first(self) -> None:
        assert select_shipment({"shipments": [{"id": 5}, {"id": 6}]})["id"] == 5
        assert select_shipment({"shipments": []}) is None

    @pytest.mark.unit
    def test_unknown_merchant_order_status_is_processing(self) -> None:
        assert map_merchant_order_shipment_status("mystery") == ShippingStatus.PROCESSING
        assert map_merchant_order_shipment_status("delivered") == ShippingStatus.DELIVERED


class TestPolling:

    @pytest.mark.unit
    async def test_converges_after_n_empty_responses(self, db_session, fake_client) -> None:
        empty = _merchant_order(1)
        ready = _merchant_order(1, [{"id": 700, "shipping_mode": "me2", "status": "ready_to_ship"}])
        fake_client.get_merchant_order.side_effect = [empty, empty, ready]

        result = await _service(db_session, fake_client).fetch_merchant_order_until_has_shipment("8001")

        assert result is ready
        assert fake_client.get_merchant_order.await_count == 3

    @pytest.mark.unit
    async def test_gives_up_after_poll_budget(self, db_session, fake_client) -> None:
        fake_client.get_merchant_order.return_value = _merchant_order(1)

        with pytest.raises(ShipmentNotReadyError):
            await _service(db_session, fake_client, max_retries=4).fetch_merchant_order_until_has_shipment("8001")

        assert fake_client.get_merchant_order.await_count == 5


class TestProcessMerchantOrderWebhook:

    @pytest.mark.unit
    async def test_links_shipment(self, db_session, fake_client, order_factory, reload) -> None:
        order = await order_factory(order_metadata={"checkout": {"source": "web"}})
        order_id = order.id
        fake_client.get_merchant_order.side_effect = [
            _merchant_order(order_id),
            _merchant_order(order_id, [{"id": 700, "shipping_mode": "me2", "status": "shipped"}]),
        ]

        result = await _service(db_session, fake_client).process_merchant_order_webhook("8001", "req-1")

        assert result.to_dict() == {"success": True, "order_id": order_id, "shipment_id": "700"}
        stored = await reload(Order, order_id)
        assert stored.ml_shipment_id == "700"
        assert stored.ml_shipment_status == "shipped"
        assert stored.shipping_status == ShippingStatus.SHIPPED
        assert stored.order_metadata["ml_shipment"] == {"id": "700", "status": "shipped"}
        assert stored.order_metadata["mp_merchant_order"]["preference_id"] == "pref-1"
        assert stored.order_metadata["checkout"] == {"source": "web"}

    @pytest.mark.unit
    async def test_never_ready_marks_shipment_pending(
        self, db_session, fake_client, order_factory, reload
    ) -> None:
        order = await order_factory()
        order_id = order.id
        fake_client.get_merchant_order.return_value = _merchant_order(order_id)

        result = await _service(db_session, fake_client).process_merchant_order_webhook("8001")

        assert result.success
        assert result.shipment_pending is True
        stored = await reload(Order, order_id)
        assert stored.ml_shipment_id is None
        assert stored.order_metadata["shipment_pending"] is True
        # poll budget plus the final plain fetch
        assert fake_client.get_merchant_order.await_count == 6

    @pytest.mark.unit
    async def test_pending_flag_cleared_once_linked(
        self, db_session, fake_client, order_factory, reload
    ) -> None:
        order = await order_factory(order_metadata={"shipment_pending": True})
        order_id = order.id
        fake_client.get_merchant_order.return_value = _merchant_order(
            order_id, [{"id": 701, "status": "handling"}]
        )

        await _service(db_session, fake_client).process_merchant_order_webhook("8001")

        stored = await reload(Order, order_id)
        assert "shipment_pending" not in stored.order_metadata
        assert stored.shipping_status == ShippingStatus.PROCESSING

    @pytest.mark.unit
    async def test_linked_shipment_is_not_replaced(
        self, db_session, fake_client, order_factory, reload
    ) -> None:
        order = await order_factory(ml_shipment_id="600")
        order_id = order.id
        fake_client.get_merchant_order.return_value = _merchant_order(
            order_id, [{"id": 999, "shipping_mode": "me2", "status": "pending"}]
        )

        result = await _service(db_session, fake_client).process_merchant_order_webhook("8001")

        assert result.shipment_id == "600"
        assert (await reload(Order, order_id)).ml_shipment_id == "600"

    @pytest.mark.unit
    async def test_unmappable_reference(self, db_session, fake_client) -> None:
        merchant_order = _merchant_order(1, [{"id": 1}])
        merchant_order["external_reference"] = "no-id-here"
        fake_client.get_merchant_order.return_value = merchant_order

        result = await _service(db_session, fake_client).process_merchant_order_webhook("8001")

        assert not result.success
        assert "external_reference" in result.error

    @pytest.mark.unit
    async def test_upstream_failure_is_returned_not_raised(self, db_session, fake_client) -> None:
        fake_client.get_merchant_order.side_effect = RuntimeError("provider down")

        result = await _service(db_session, fake_client).process_merchant_order_webhook("8001")

        assert result.to_dict() == {"success": False, "error": "provider down"}
