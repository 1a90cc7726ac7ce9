"""
Typed view over ``orders.metadata``.

The column is free-form JSON shared by several writers (checkout, payment
webhooks, the merchant order poller). The sections this service writes are
typed here; anything else already stored is carried through untouched.
"""
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict


class MerchantOrderSection(BaseModel):
    """Snapshot of the payment provider's merchant order"""
    model_config = ConfigDict(extra="allow")

    id: str | int
    preference_id: str | None = None
    status: str | None = None
    order_status: str | None = None
    updated_at: str | None = None


class ShipmentSection(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int
    status: str | None = None


class PaymentSection(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int
    status: str | None = None
    status_detail: str | None = None
    updated_at: str | None = None


class OrderMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    mp_merchant_order: MerchantOrderSection | None = None
    ml_shipment: ShipmentSection | None = None
    # Merchant order seen without a shipment yet; cleared once one is linked
    shipment_pending: bool | None = None
    payment: PaymentSection | None = None


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def merge_order_metadata(existing: dict[str, Any] | None, **sections: Any) -> dict[str, Any]:
    """
    Shallow-merge ``sections`` over ``existing`` and return a new dict.

    A section passed as ``None`` removes that key. Always returns a fresh
    object so SQLAlchemy sees the JSON column as changed.
    """
    merged = dict(existing or {})
    for key, value in sections.items():
        if value is None:
            merged.pop(key, None)
            continue
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json", exclude_none=True)
        merged[key] = value

    return OrderMetadata.model_validate(merged).model_dump(mode="json", exclude_none=True)
