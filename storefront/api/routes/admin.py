"""
Admin endpoints for webhook operations and manual shipment updates.

1. List stored marketplace webhooks (filter by status/topic)
2. Reprocess a stored webhook through the normal dispatch path
3. Manual shipment status override and shipment history
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from storefront.api.dependencies.admin_auth import require_admin_api_key
from storefront.api.dependencies.services import (
    get_request_id,
    get_shipment_reconciler,
    get_webhook_service,
)
from storefront.core.logging import get_logger
from storefront.db.models.order import ShippingStatus
from storefront.db.models.webhook_record import WebhookStatus
from storefront.domain.services.shipment_service import ShipmentReconciler
from storefront.domain.services.webhook_service import WebhookService

logger = get_logger(__name__)

router = APIRouter()

_VALID_WEBHOOK_STATUSES = {
    WebhookStatus.RECEIVED,
    WebhookStatus.SUCCESS,
    WebhookStatus.FAILED,
    WebhookStatus.DEAD_LETTER,
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class WebhookRecordResponse(BaseModel):
    id: int
    webhook_id: str
    topic: str
    resource: str
    resource_id: str | None
    source_user_id: str | None
    user_id: int | None
    status: str
    processed: bool
    retry_count: int
    error_message: str | None
    request_id: str | None
    created_at: datetime | None
    processed_at: datetime | None

    class Config:
        from_attributes = True


class ReprocessResponse(BaseModel):
    success: bool
    webhook_id: str
    processed: bool
    error: str | None = None


class ShipmentUpdateRequest(BaseModel):
    """Manual shipment override"""
    status: str = Field(description="Local shipping status, e.g. shipped or delivered")
    substatus: str | None = None
    tracking_number: str | None = Field(default=None, max_length=100)
    tracking_url: str | None = Field(default=None, max_length=500)
    comment: str | None = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        valid = {s.value for s in ShippingStatus}
        if v not in valid:
            raise ValueError(f"status must be one of: {', '.join(sorted(valid))}")
        return v


class ShipmentUpdateResponse(BaseModel):
    success: bool
    order_id: int
    old_status: str | None
    new_status: str


class ShipmentHistoryResponse(BaseModel):
    id: int
    shipment_id: str | None
    status: str | None
    substatus: str | None
    tracking_number: str | None
    tracking_url: str | None
    source: str
    comment: str | None
    date_created: datetime | None
    created_at: datetime | None

    class Config:
        from_attributes = True


# ─── 1. Webhooks ─────────────────────────────────────────────────────────────

@router.get(
    "/webhooks",
    response_model=list[WebhookRecordResponse],
    summary="List stored marketplace webhooks",
    responses={
        200: {"description": "Webhook records, newest first"},
        400: {"description": "Unknown status filter"},
        401: {"description": "Missing API key"},
        403: {"description": "Wrong API key"},
    },
)
async def list_webhooks(
    _: None = Depends(require_admin_api_key),
    service: WebhookService = Depends(get_webhook_service),
    webhook_status: Optional[str] = Query(
        default=None,
        alias="status",
        description="received, success, failed or dead_letter",
    ),
    topic: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[WebhookRecordResponse]:
    if webhook_status and webhook_status not in _VALID_WEBHOOK_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid status. Options: {', '.join(sorted(_VALID_WEBHOOK_STATUSES))}",
        )
    records = await service.list_records(webhook_status, topic, limit, offset)
    return [WebhookRecordResponse.model_validate(record) for record in records]


@router.post(
    "/webhooks/{record_id}/reprocess",
    response_model=ReprocessResponse,
    summary="Reprocess a stored webhook",
    responses={
        200: {"description": "Reprocessing finished; see processed/error"},
        401: {"description": "Missing API key"},
        403: {"description": "Wrong API key"},
        404: {"description": "Webhook not found"},
    },
)
async def reprocess_webhook(
    record_id: int,
    _: None = Depends(require_admin_api_key),
    service: WebhookService = Depends(get_webhook_service),
    request_id: str = Depends(get_request_id),
) -> ReprocessResponse:
    result = await service.reprocess(record_id, request_id)
    logger.info(
        "Admin webhook reprocess",
        extra_data={
            "record_id": record_id,
            "webhook_id": result.webhook_id,
            "processed": result.processed,
        },
    )
    return ReprocessResponse(**result.to_dict())


# ─── 2. Shipments ────────────────────────────────────────────────────────────

@router.put(
    "/shipments/{order_id}",
    response_model=ShipmentUpdateResponse,
    summary="Manual shipment status update",
    responses={
        200: {"description": "Order updated and history entry added"},
        400: {"description": "Invalid body"},
        401: {"description": "Missing API key"},
        403: {"description": "Wrong API key"},
        404: {"description": "Order not found"},
    },
)
async def update_shipment(
    order_id: int,
    body: ShipmentUpdateRequest,
    _: None = Depends(require_admin_api_key),
    reconciler: ShipmentReconciler = Depends(get_shipment_reconciler),
) -> ShipmentUpdateResponse:
    result = await reconciler.apply_manual_update(
        order_id,
        ShippingStatus(body.status),
        substatus=body.substatus,
        tracking_number=body.tracking_number,
        tracking_url=body.tracking_url,
        comment=body.comment,
    )
    return ShipmentUpdateResponse(
        success=result.success,
        order_id=order_id,
        old_status=result.old_status.value if result.old_status else None,
        new_status=result.new_status.value,
    )


@router.get(
    "/shipments/{order_id}",
    response_model=list[ShipmentHistoryResponse],
    summary="Shipment history for an order",
    responses={
        200: {"description": "History entries, oldest first"},
        401: {"description": "Missing API key"},
        403: {"description": "Wrong API key"},
    },
)
async def get_shipment_history(
    order_id: int,
    _: None = Depends(require_admin_api_key),
    reconciler: ShipmentReconciler = Depends(get_shipment_reconciler),
) -> list[ShipmentHistoryResponse]:
    entries = await reconciler.get_history(order_id)
    return [ShipmentHistoryResponse.model_validate(entry) for entry in entries]
