"""Database models for Payment Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from storefront.database import Base


def _uuid() -> str:
    return str(uuid4())


class PaymentStatus(str, Enum):
    """Payment status. Everything but PENDING is terminal."""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class PaymentType(str, Enum):
    """Which gateway a payment goes through."""
    MIDTRANS = "midtrans"
    PLISIO = "plisio"


class ReservationStatus(str, Enum):
    """Reservation ledger status."""
    ACTIVE = "active"
    COMMITTED = "committed"
    RELEASED = "released"


class User(Base):
    """Customer (owned by the auth layer)."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    username = Column(String(100), nullable=False)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class UserAddress(Base):
    """Shipping address."""

    __tablename__ = "user_addresses"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    recipient_name = Column(String(100), nullable=True)
    phone = Column(String(30), nullable=True)
    address_line = Column(Text, nullable=False)
    city = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=True)


class Product(Base):
    """
    Catalog product with inventory counters.

    Available stock is ``stock - reserved_stock`` and is never stored.
    """

    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    price = Column(Float, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    reserved_stock = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("reserved_stock >= 0", name="ck_products_reserved_non_negative"),
        CheckConstraint("reserved_stock <= stock", name="ck_products_reserved_within_stock"),
    )

    @property
    def available_stock(self) -> int:
        return self.stock - self.reserved_stock


class StockReservation(Base):
    """Inventory hold for one order, resolved exactly once."""

    __tablename__ = "stock_reservations"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(64), nullable=False, unique=True, index=True)
    items = Column(JSON, nullable=False)  # [{"product_id": str, "quantity": int}]
    status = Column(String(20), nullable=False, default=ReservationStatus.ACTIVE.value)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_stock_reservations_status_created", "status", "created_at"),
    )


class Payment(Base):
    """Payment for one order."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    job_id = Column(String(36), nullable=True, index=True)

    # First item, kept for single-item lookups
    product_id = Column(String(36), nullable=False)
    is_multi_item = Column(Boolean, nullable=False, default=False)

    amount = Column(Float, nullable=False)
    shipping_cost = Column(Float, nullable=False, default=0)
    admin_fee = Column(Float, nullable=False, default=0)
    total_amount = Column(Float, nullable=False)

    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    payment_method = Column(String(50), nullable=False)
    payment_type = Column(String(20), nullable=False)
    bank = Column(String(30), nullable=True)
    currency = Column(String(10), nullable=True)
    notes = Column(Text, nullable=True)

    # Gateway correlation
    gateway_transaction_id = Column(String(100), nullable=True, index=True)
    transaction_status = Column(String(50), nullable=True)
    fraud_status = Column(String(30), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    gateway_actions = Column(JSON, nullable=True)
    va_number = Column(String(50), nullable=True)
    bank_type = Column(String(30), nullable=True)
    payment_code = Column(String(50), nullable=True)
    redirect_url = Column(Text, nullable=True)
    expiry_time = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    paid_at = Column(DateTime, nullable=True)

    items = relationship(
        "PaymentItem",
        order_by="PaymentItem.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_payments_user_status_created", "user_id", "status", "created_at"),
    )


class PaymentItem(Base):
    """One ordered line of a payment."""

    __tablename__ = "payment_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    payment_id = Column(String(36), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    position = Column(Integer, nullable=False, default=0)


class Shipment(Base):
    """Shipping quote attached to a payment."""

    __tablename__ = "shipments"

    id = Column(String(36), primary_key=True, default=_uuid)
    payment_id = Column(String(36), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, unique=True)
    address_id = Column(String(36), nullable=False)
    courier = Column(String(30), nullable=False)
    service = Column(String(50), nullable=False)
    description = Column(String(100), nullable=True)
    origin = Column(String(50), nullable=True)
    destination = Column(String(50), nullable=True)
    weight = Column(Integer, nullable=False)
    cost = Column(Float, nullable=False)
    etd = Column(String(30), nullable=True)
    note = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Shipped(Base):
    """Fulfilment tracking record, created once per successful order."""

    __tablename__ = "shipped"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(64), nullable=False, unique=True, index=True)
    payment_id = Column(String(36), nullable=False)
    user_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="PROCESSING")
    tracking_number = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
