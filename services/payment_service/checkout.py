"""Checkout submission: validate, hold stock, enqueue the payment job."""
import logging
import secrets
import string
import time
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from storefront.cache import ProductCacheInvalidator
from storefront.job_queue import JobOptions, JobQueue, QueueUnavailable

from . import ledger
from .ledger import ReservationLine
from .models import PaymentType

logger = logging.getLogger(__name__)

CREATE_MIDTRANS_PAYMENT = "create-midtrans-payment"
CREATE_PLISIO_PAYMENT = "create-plisio-payment"

JOB_KINDS = {
    PaymentType.MIDTRANS: CREATE_MIDTRANS_PAYMENT,
    PaymentType.PLISIO: CREATE_PLISIO_PAYMENT,
}

PAYMENT_METHODS = {"bank_transfer", "credit_card", "gopay", "qris", "echannel", "cstore", "crypto"}


class CheckoutItem(BaseModel):
    """One product line of a multi-item checkout."""
    product_id: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    price: Optional[float] = Field(default=None, ge=0)


class CheckoutRequest(BaseModel):
    """Checkout parameters sent by the client."""
    product_id: Optional[str] = None
    items: Optional[List[CheckoutItem]] = None
    address_id: str = Field(min_length=1)
    origin: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    weight: int = Field(gt=0)
    courier: str = Field(min_length=1)
    service: str = Field(min_length=1)
    product_price: float = Field(ge=0)
    shipping_cost: float = Field(ge=0)
    admin_fee: float = Field(ge=0)
    total_amount: float = Field(gt=0)
    payment_method: str = "bank_transfer"
    bank: Optional[str] = None
    currency: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("payment_method")
    @classmethod
    def known_payment_method(cls, value: str) -> str:
        if value not in PAYMENT_METHODS:
            raise ValueError(f"Unsupported payment method: {value}")
        return value

    @model_validator(mode="after")
    def has_products(self) -> "CheckoutRequest":
        if not self.product_id and not self.items:
            raise ValueError("Either product_id or items is required")
        return self

    @property
    def payment_type(self) -> PaymentType:
        return PaymentType.PLISIO if self.payment_method == "crypto" else PaymentType.MIDTRANS

    @property
    def is_multi_item(self) -> bool:
        return bool(self.items)

    def job_items(self) -> List[CheckoutItem]:
        """Single-item checkout is a one-line order of quantity 1."""
        if self.items:
            return list(self.items)
        return [CheckoutItem(product_id=self.product_id, quantity=1, price=self.product_price)]


class PaymentJobPayload(BaseModel):
    """Payload of ``create-*-payment`` jobs."""
    order_id: str
    user_id: str
    address_id: str
    items: List[CheckoutItem] = Field(min_length=1)
    is_multi_item: bool = False
    origin: str
    destination: str
    weight: int
    courier: str
    service: str
    product_price: float
    shipping_cost: float
    admin_fee: float
    total_amount: float
    payment_method: str
    bank: Optional[str] = None
    currency: Optional[str] = None
    notes: Optional[str] = None

    def reservation_lines(self) -> List[ReservationLine]:
        return [ReservationLine(product_id=item.product_id, quantity=item.quantity) for item in self.items]

    @property
    def product_ids(self) -> List[str]:
        return [item.product_id for item in self.items]


class CheckoutAccepted(BaseModel):
    """Returned as soon as the job is queued."""
    job_id: str
    order_id: str
    status: str = "waiting"


_ALPHABET = string.ascii_lowercase + string.digits


def new_order_id(payment_type: PaymentType) -> str:
    """Provider-correlatable order id."""
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    if payment_type == PaymentType.PLISIO:
        return f"PROD_{millis}_{suffix}"
    return f"Order_{millis}_{suffix}"


class CheckoutService:
    """Turns a validated checkout into a reservation plus a queued payment job."""

    def __init__(
        self,
        session_factory,
        queue: JobQueue,
        invalidator: ProductCacheInvalidator,
        job_options: Optional[JobOptions] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.invalidator = invalidator
        self.job_options = job_options or JobOptions(priority=1)

    async def submit(self, user_id: str, request: CheckoutRequest) -> CheckoutAccepted:
        """
        Hold stock and enqueue the payment job.

        Insufficient stock is rejected here, before any job exists. If the
        queue rejects the job the hold is given back.

        Raises:
            InsufficientStock: a product cannot cover the requested quantity
            EntityNotFound: a product does not exist
            QueueUnavailable: the job could not be queued
        """
        payment_type = request.payment_type
        order_id = new_order_id(payment_type)
        payload = PaymentJobPayload(
            order_id=order_id,
            user_id=user_id,
            items=request.job_items(),
            is_multi_item=request.is_multi_item,
            **request.model_dump(exclude={"product_id", "items"}),
        )

        async with self.session_factory() as session:
            await ledger.reserve(session, order_id, payload.reservation_lines())
            await session.commit()

        try:
            job_id = await self.queue.submit(JOB_KINDS[payment_type], payload, self.job_options)
        except QueueUnavailable:
            logger.error(f"Queue unavailable, releasing reservation for order {order_id}")
            async with self.session_factory() as session:
                await ledger.release(session, order_id)
                await session.commit()
            await self.invalidator.invalidate_many(payload.product_ids)
            raise

        await self.invalidator.invalidate_many(payload.product_ids)
        logger.info(f"Checkout accepted for user {user_id}: order {order_id}, job {job_id}")
        return CheckoutAccepted(job_id=job_id, order_id=order_id)
