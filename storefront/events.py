"""Domain events emitted when a payment reaches a terminal state."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types published on the storefront exchange."""

    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_EXPIRED = "payment.expired"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: str  # order_id of the payment
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: str  # job id that created the payment, or the order id
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentResolvedEvent(BaseEvent):
    """Common payload for all terminal payment transitions."""
    order_id: str
    user_id: str
    customer_email: Optional[str] = None
    payment_type: str
    total_amount: float
    source: str  # callback, poll, worker, cancel, sweeper
    items: list[Dict[str, Any]] = Field(default_factory=list)  # [{"product_id": str, "quantity": int}]


class PaymentSucceededEvent(PaymentResolvedEvent):
    """Payment settled; stock has been permanently decremented."""
    event_type: EventType = EventType.PAYMENT_SUCCEEDED
    paid_at: Optional[datetime] = None


class PaymentFailedEvent(PaymentResolvedEvent):
    """Payment denied or errored; reservation released."""
    event_type: EventType = EventType.PAYMENT_FAILED
    reason: Optional[str] = None


class PaymentCancelledEvent(PaymentResolvedEvent):
    """Payment cancelled by the customer or the provider."""
    event_type: EventType = EventType.PAYMENT_CANCELLED


class PaymentExpiredEvent(PaymentResolvedEvent):
    """Payment window elapsed without settlement."""
    event_type: EventType = EventType.PAYMENT_EXPIRED


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.PAYMENT_SUCCEEDED: PaymentSucceededEvent,
    EventType.PAYMENT_FAILED: PaymentFailedEvent,
    EventType.PAYMENT_CANCELLED: PaymentCancelledEvent,
    EventType.PAYMENT_EXPIRED: PaymentExpiredEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
