"""
Webhook Replay Entry Model - delivery ids seen recently.

A marketplace delivery that repeats an ``x-request-id`` inside the TTL is
acknowledged without being stored or processed again. Expired rows are
purged on the next claim.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, String

from storefront.db.database import Base


class WebhookReplayEntry(Base):
    """One row per delivery id, kept until ``expires_at``"""

    __tablename__ = "webhook_replay_cache"

    request_id = Column(String(200), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_webhook_replay_cache_expires", "expires_at"),
    )
