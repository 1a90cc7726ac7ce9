"""
Shipment History Model - append-only ledger of shipment status transitions
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text

from storefront.db.database import Base


class ShipmentSource:
    MERCADOLIBRE = "mercadolibre"
    ADMIN = "admin"


class ShipmentHistoryEntry(Base):
    """
    One row per reconciliation or manual update, never updated or deleted.

    Redelivered webhooks add rows with the same status; readers order by
    ``created_at`` to rebuild the timeline.
    """

    __tablename__ = "shipment_history"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    shipment_id = Column(String(50), nullable=True)
    status = Column(String(50), nullable=True)
    substatus = Column(String(50), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    tracking_url = Column(String(500), nullable=True)
    source = Column(String(20), nullable=False, default=ShipmentSource.MERCADOLIBRE)
    comment = Column(Text, nullable=True)
    # When the marketplace created the shipment (falls back to now)
    date_created = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_shipment_history_order_created", "order_id", "created_at"),
    )
