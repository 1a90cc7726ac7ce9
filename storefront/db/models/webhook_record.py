"""
Webhook Record Model - durable copy of every inbound marketplace notification.

Created before processing and updated once processing finishes, whatever the
outcome. Records are never deleted; an operator can list failed ones and
reprocess them through the same dispatch path.
"""
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from storefront.db.database import Base


class WebhookStatus:
    RECEIVED = "received"
    SUCCESS = "success"
    FAILED = "failed"
    # retry_count reached WEBHOOK_MAX_RETRIES; only an operator reprocess touches it again
    DEAD_LETTER = "dead_letter"


class WebhookRecord(Base):
    """Marketplace notification as received, plus its processing outcome"""

    __tablename__ = "mercadolibre_webhooks"

    id = Column(Integer, primary_key=True, index=True)
    # Local correlation id generated on receipt
    webhook_id = Column(String(36), unique=True, nullable=False)
    topic = Column(String(50), nullable=False)
    resource = Column(String(255), nullable=False)
    resource_id = Column(String(100), nullable=True, index=True)
    source_user_id = Column(String(50), nullable=True)
    user_id = Column(Integer, nullable=True)
    application_id = Column(String(50), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, nullable=False)
    request_id = Column(String(100), nullable=True)

    status = Column(String(20), nullable=False, default=WebhookStatus.RECEIVED)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_mercadolibre_webhooks_status_created", "status", "created_at"),
    )
