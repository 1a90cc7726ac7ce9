"""
Order Model - Local orders and their marketplace/payment linkage
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)

from storefront.db.database import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    RETURNED = "returned"
    FAILED = "failed"


class ShippingStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    """
    A local order.

    Created either by checkout (found later by ``external_reference``) or by
    the payment webhook from the payment's metadata. ``payment_id`` is unique,
    so a redelivered approval can never create a second order.
    """

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    shipping_method_id = Column(Integer, ForeignKey("shipping_methods.id"), nullable=True)
    shipping_address = Column(JSON, nullable=True)
    shipping_status = Column(SQLEnum(ShippingStatus), nullable=True)

    # Payment provider
    payment_id = Column(String(50), unique=True, nullable=True)
    external_reference = Column(String(100), nullable=True, index=True)

    # Marketplace order and shipment
    ml_order_id = Column(String(50), nullable=True, index=True)
    ml_status = Column(String(50), nullable=True)
    ml_shipment_id = Column(String(50), nullable=True, index=True)
    ml_shipment_status = Column(String(50), nullable=True)
    ml_shipment_substatus = Column(String(50), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    tracking_url = Column(String(500), nullable=True)
    shipping_agency = Column(JSON, nullable=True)

    # Free-form sections, see storefront.domain.order_metadata
    order_metadata = Column("metadata", JSON, nullable=True)

    # Flipped only through conditional UPDATEs in StockService
    stock_deducted = Column(Boolean, nullable=False, default=False)
    stock_restored = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class OrderItem(Base):
    """Order line; ``price`` is the unit price at purchase time"""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
