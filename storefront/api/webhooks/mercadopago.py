"""
Payment provider (Mercado Pago) webhook endpoint.

Two kinds of notification share the URL:

- merchant orders (``topic=merchant_order`` or ``type=topic_merchant_order_wh``),
  which link a paid order to its shipment;
- payments, which must carry ``x-signature``/``x-request-id`` and pass the
  freshness and HMAC checks before anything touches the database.
"""
from typing import Any

from fastapi import APIRouter, Depends, Request

from storefront.api.dependencies.services import (
    get_app_settings,
    get_merchant_order_service,
    get_payment_service,
    get_request_id,
)
from storefront.api.webhooks.mercadolibre import parse_webhook_body
from storefront.core.config import Settings
from storefront.core.exceptions import AppException, ErrorCode, WebhookAuthenticationError
from storefront.core.logging import get_logger
from storefront.core.signatures import (
    is_timestamp_fresh,
    parse_signature_header,
    verify_payment_signature,
)
from storefront.domain.services.merchant_order_service import MerchantOrderService
from storefront.domain.services.payment_service import PaymentService
from storefront.domain.services.webhook_service import resource_id_from

logger = get_logger(__name__)

router = APIRouter()

MERCHANT_ORDER_TOPICS = {"merchant_order", "topic_merchant_order_wh"}


def merchant_order_id_from(payload: dict[str, Any], query: dict[str, str]) -> str | None:
    """Merchant order id for merchant-order notifications, None for anything else"""
    topic = payload.get("topic") or payload.get("type") or query.get("topic") or query.get("type")
    if topic not in MERCHANT_ORDER_TOPICS:
        return None

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    candidates = (
        resource_id_from(str(payload.get("resource") or "")),
        data.get("id"),
        payload.get("id"),
        query.get("id"),
        query.get("data.id"),
    )
    for candidate in candidates:
        if candidate not in (None, ""):
            return str(candidate)
    return None


def _verify_payment_request(request: Request, body: bytes, settings: Settings, request_id: str) -> None:
    x_signature = request.headers.get("x-signature")
    x_request_id = request.headers.get("x-request-id")
    if not x_signature or not x_request_id:
        logger.warning(
            "Payment webhook missing signature headers",
            extra_data={
                "request_id": request_id,
                "has_signature": bool(x_signature),
                "has_request_id": bool(x_request_id),
            },
        )
        raise WebhookAuthenticationError("Missing x-signature or x-request-id header")

    ts, _ = parse_signature_header(x_signature)
    # Legacy sha256=<hex> headers carry no ts; they are judged by the verifier alone
    needs_fresh_ts = ts is not None or not settings.MP_ALLOW_LEGACY_SIGNATURE
    if needs_fresh_ts and not is_timestamp_fresh(
        ts, tolerance_seconds=settings.WEBHOOK_SIGNATURE_TOLERANCE_SECONDS
    ):
        logger.warning(
            "Payment webhook timestamp outside tolerance",
            extra_data={"request_id": request_id, "ts": ts},
        )
        raise WebhookAuthenticationError("Stale or missing signature timestamp")

    result = verify_payment_signature(
        body,
        x_signature,
        x_request_id,
        settings.MP_WEBHOOK_SECRET,
        allow_legacy=settings.MP_ALLOW_LEGACY_SIGNATURE,
    )
    if not result.is_valid:
        logger.warning(
            "Payment webhook signature rejected",
            extra_data={
                "request_id": request_id,
                "x_request_id": x_request_id,
                "error": result.error,
            },
        )
        raise WebhookAuthenticationError(result.error or "Invalid signature")


@router.post(
    "/webhooks",
    summary="Payment provider notifications",
    responses={
        200: {"description": "Notification handled; see success/error"},
        400: {"description": "Malformed body"},
        401: {"description": "Missing headers, stale timestamp or invalid signature"},
    },
    tags=["Webhooks"],
)
async def payment_provider_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    payment_service: PaymentService = Depends(get_payment_service),
    merchant_order_service: MerchantOrderService = Depends(get_merchant_order_service),
    request_id: str = Depends(get_request_id),
) -> dict:
    body = await request.body()
    query = dict(request.query_params)

    # Merchant-order pings may arrive with an empty body and the id in the query
    payload = parse_webhook_body(body) if body.strip() else {}

    merchant_order_id = merchant_order_id_from(payload, query)
    if merchant_order_id is not None:
        logger.info(
            "Merchant order notification received",
            extra_data={"request_id": request_id, "merchant_order_id": merchant_order_id},
        )
        result = await merchant_order_service.process_merchant_order_webhook(
            merchant_order_id, request_id
        )
        return result.to_dict()

    _verify_payment_request(request, body, settings, request_id)
    if not payload:
        raise AppException(
            "Empty payment notification",
            error_code=ErrorCode.WEBHOOK_INVALID_PAYLOAD,
            status_code=400,
        )

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    action = payload.get("action") or payload.get("type")
    payment_result = await payment_service.handle_payment_notification(action, data, request_id)
    return payment_result.to_dict()
