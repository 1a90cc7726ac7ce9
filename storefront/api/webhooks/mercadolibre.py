"""
Marketplace (Mercado Libre) webhook endpoints.

The marketplace retries any non-2xx response, so only transport problems
(unparsable body, foreign application, bad signature) are answered with an
error status. Handler failures are stored on the webhook record and reported
in a 200 body.
"""
import json
from typing import Any

from fastapi import APIRouter, Depends, Request

from storefront.api.dependencies.services import (
    get_app_settings,
    get_request_id,
    get_webhook_service,
)
from storefront.core.config import Settings
from storefront.core.exceptions import AppException, ErrorCode, WebhookAuthenticationError
from storefront.core.logging import get_logger
from storefront.core.signatures import verify_body_signature
from storefront.domain.services.webhook_service import WebhookService

logger = get_logger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "x-signature"
DELIVERY_ID_HEADER = "x-request-id"


def parse_webhook_body(body: bytes) -> dict[str, Any]:
    """JSON object from the raw body, or a 400"""
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise AppException(
            "Malformed JSON body",
            error_code=ErrorCode.WEBHOOK_INVALID_PAYLOAD,
            status_code=400,
            details={"reason": str(e)},
        ) from e
    if not isinstance(payload, dict):
        raise AppException(
            "Webhook body must be a JSON object",
            error_code=ErrorCode.WEBHOOK_INVALID_PAYLOAD,
            status_code=400,
        )
    return payload


def _check_signature(request: Request, body: bytes, settings: Settings, request_id: str) -> None:
    if not settings.ML_WEBHOOK_SECRET:
        return
    if not verify_body_signature(body, request.headers.get(SIGNATURE_HEADER), settings.ML_WEBHOOK_SECRET):
        logger.warning(
            "Marketplace webhook signature rejected",
            extra_data={"request_id": request_id, "has_header": SIGNATURE_HEADER in request.headers},
        )
        raise WebhookAuthenticationError("Invalid signature")


@router.post(
    "/webhooks",
    summary="Marketplace notifications",
    responses={
        200: {"description": "Notification stored; see processed/error"},
        400: {"description": "Malformed body"},
        401: {"description": "Unknown application or invalid signature"},
    },
    tags=["Webhooks"],
)
async def marketplace_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    service: WebhookService = Depends(get_webhook_service),
    request_id: str = Depends(get_request_id),
) -> dict:
    body = await request.body()
    _check_signature(request, body, settings, request_id)
    payload = parse_webhook_body(body)

    result = await service.ingest(payload, request_id, request.headers.get(DELIVERY_ID_HEADER))
    return result.to_dict()


@router.post(
    "/webhooks/shipments",
    summary="Marketplace shipment notifications",
    responses={
        200: {"description": "Notification stored; see processed/error"},
        400: {"description": "Malformed body or topic other than shipments"},
        401: {"description": "Unknown application or invalid signature"},
    },
    tags=["Webhooks"],
)
async def marketplace_shipment_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    service: WebhookService = Depends(get_webhook_service),
    request_id: str = Depends(get_request_id),
) -> dict:
    body = await request.body()
    _check_signature(request, body, settings, request_id)
    payload = parse_webhook_body(body)

    topic = payload.get("topic")
    if topic != "shipments":
        raise AppException(
            f"Unexpected topic for shipments endpoint: {topic!r}",
            error_code=ErrorCode.WEBHOOK_INVALID_PAYLOAD,
            status_code=400,
            details={"topic": topic},
        )

    result = await service.ingest(payload, request_id, request.headers.get(DELIVERY_ID_HEADER))
    return result.to_dict()
