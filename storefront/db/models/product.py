"""
Product Model - stock and marketplace sync fields
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, Numeric, String

from storefront.db.database import Base


class Product(Base):
    """Sellable product. ``stock`` is only mutated inside order transactions."""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)

    # Mercado Libre listing
    ml_item_id = Column(String(50), nullable=True, index=True)
    ml_sync_status = Column(String(20), nullable=True)  # synced / error / paused
    ml_last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
