"""Payment domain errors."""
from typing import Optional

from storefront.job_queue import PermanentJobError


class PaymentError(Exception):
    """Base class for payment domain errors."""


class EntityNotFound(PermanentJobError, PaymentError):
    """A referenced user, address, product or payment does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class InsufficientStock(PaymentError):
    """Requested quantity exceeds available stock."""

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}"
        )


class ReservationResolved(PermanentJobError, PaymentError):
    """The order's reservation was already committed or released."""

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Reservation for order {order_id} is already {status}")


class PaymentNotCancellable(PaymentError):
    """Payment is missing, belongs to someone else, or is no longer PENDING."""


class SignatureMismatch(PaymentError):
    """Gateway callback failed signature verification."""


class GatewayError(PaymentError):
    """Gateway call failed (network, 4xx/5xx, or an error payload)."""

    def __init__(self, gateway: str, message: str, status_code: Optional[int] = None):
        self.gateway = gateway
        self.status_code = status_code
        super().__init__(f"{gateway}: {message}")
