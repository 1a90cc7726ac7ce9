"""
User and Shipping Method Models

Only the columns the webhook handlers read: user existence checks during
order materialization, and the marketplace user id used to map a
notification's ``user_id`` back to a local account.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String

from storefront.db.database import Base


class User(Base):
    """Customer or seller account"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=True)
    name = Column(String(255), nullable=True)
    # Mercado Libre user id, when the account is linked
    ml_user_id = Column(String(50), unique=True, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class ShippingMethod(Base):
    """Selectable shipping option referenced from checkout metadata"""

    __tablename__ = "shipping_methods"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
