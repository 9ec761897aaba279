"""
Status reconciler.

Every path that learns a payment's gateway status (worker charge, webhook,
client poll, user cancel, retry exhaustion, stale sweep) goes through
``transition``. The status move is a guarded ``UPDATE ... WHERE status =
'PENDING'``; only the caller that wins it applies the side effects, all in
the same transaction:

* SUCCESS: reservation committed (stock and reserved stock drop), ``paid_at``
  set, fulfilment record created
* FAILED / CANCELLED / EXPIRED: reservation released
* a domain event written to the outbox

Product caches are invalidated after commit.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.cache import ProductCacheInvalidator
from storefront.events import (
    PaymentCancelledEvent,
    PaymentExpiredEvent,
    PaymentFailedEvent,
    PaymentSucceededEvent,
)
from storefront.outbox import save_event_to_outbox

from . import ledger
from .errors import EntityNotFound, PaymentNotCancellable, SignatureMismatch
from .gateways import GatewayResult, MidtransGateway, PlisioGateway
from .models import Payment, PaymentStatus, PaymentType, Shipped, User
from .status import map_gateway_status

logger = logging.getLogger(__name__)

_EVENTS = {
    PaymentStatus.SUCCESS: PaymentSucceededEvent,
    PaymentStatus.FAILED: PaymentFailedEvent,
    PaymentStatus.CANCELLED: PaymentCancelledEvent,
    PaymentStatus.EXPIRED: PaymentExpiredEvent,
}


def apply_gateway_metadata(payment: Payment, result: GatewayResult):
    """Copy provider fields onto the payment. Never touches ``status``."""
    if result.transaction_id:
        payment.gateway_transaction_id = result.transaction_id
    if result.native_status:
        payment.transaction_status = result.native_status
    if result.fraud_status:
        payment.fraud_status = result.fraud_status
    if result.raw:
        payment.gateway_response = result.raw
    if result.actions is not None:
        payment.gateway_actions = result.actions
    if result.va_number:
        payment.va_number = result.va_number
        payment.bank_type = result.bank_type
    if result.payment_code:
        payment.payment_code = result.payment_code
    if result.redirect_url:
        payment.redirect_url = result.redirect_url
    if result.expiry_time:
        payment.expiry_time = result.expiry_time
    payment.updated_at = datetime.utcnow()


class StatusReconciler:
    """Applies authoritative gateway status to payments, idempotently."""

    def __init__(
        self,
        session_factory,
        midtrans: MidtransGateway,
        plisio: PlisioGateway,
        invalidator: ProductCacheInvalidator,
    ):
        self.session_factory = session_factory
        self.gateways = {
            PaymentType.MIDTRANS: midtrans,
            PaymentType.PLISIO: plisio,
        }
        self.invalidator = invalidator

    async def get_payment(self, order_id: str, user_id: Optional[str] = None) -> Payment:
        async with self.session_factory() as session:
            payment = await self._load(session, order_id)
        if payment is None or (user_id is not None and payment.user_id != user_id):
            raise EntityNotFound("Payment", order_id)
        return payment

    async def latest_pending(self, user_id: str) -> Optional[Payment]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.user_id == user_id, Payment.status == PaymentStatus.PENDING.value)
                .order_by(Payment.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def _load(self, session: AsyncSession, order_id: str) -> Optional[Payment]:
        result = await session.execute(select(Payment).where(Payment.order_id == order_id))
        return result.scalar_one_or_none()

    async def transition(
        self,
        order_id: str,
        new_status: PaymentStatus,
        source: str,
        result: Optional[GatewayResult] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Record gateway metadata and move a PENDING payment to ``new_status``.

        Returns True only for the call that moved the status. Terminal
        payments and PENDING -> PENDING updates only refresh metadata.
        """
        touched = []
        moved = False

        async with self.session_factory() as session:
            payment = await self._load(session, order_id)
            if payment is None:
                raise EntityNotFound("Payment", order_id)

            if result is not None:
                apply_gateway_metadata(payment, result)
                await session.flush()

            if new_status.is_terminal:
                update_result = await session.execute(
                    update(Payment)
                    .execution_options(synchronize_session=False)
                    .where(Payment.order_id == order_id, Payment.status == PaymentStatus.PENDING.value)
                    .values(status=new_status.value, updated_at=datetime.utcnow())
                )
                moved = update_result.rowcount == 1

            if moved:
                touched = await self._apply_side_effects(session, payment, new_status, source, result, reason)

            await session.commit()

        if moved:
            logger.info(f"Payment {order_id} moved to {new_status.value} (source={source})")
            await self.invalidator.invalidate_many(touched)
        elif new_status.is_terminal:
            logger.info(f"Payment {order_id} already resolved, {new_status.value} from {source} ignored")
        return moved

    async def _apply_side_effects(
        self,
        session: AsyncSession,
        payment: Payment,
        new_status: PaymentStatus,
        source: str,
        result: Optional[GatewayResult],
        reason: Optional[str],
    ) -> list[str]:
        event_fields: Dict[str, Any] = {}

        if new_status == PaymentStatus.SUCCESS:
            touched = await ledger.commit(session, payment.order_id)
            if payment.paid_at is None:
                payment.paid_at = (result.paid_at if result else None) or datetime.utcnow()
            await self._ensure_shipped(session, payment)
            event_fields["paid_at"] = payment.paid_at
        else:
            touched = await ledger.release(session, payment.order_id)
            if new_status == PaymentStatus.FAILED:
                event_fields["reason"] = reason or (result.native_status if result else None)

        user = await session.get(User, payment.user_id)
        event = _EVENTS[new_status](
            aggregate_id=payment.order_id,
            correlation_id=payment.job_id or payment.order_id,
            order_id=payment.order_id,
            user_id=payment.user_id,
            customer_email=user.email if user else None,
            payment_type=payment.payment_type,
            total_amount=payment.total_amount,
            source=source,
            items=[{"product_id": item.product_id, "quantity": item.quantity} for item in payment.items],
            **event_fields,
        )
        await save_event_to_outbox(session, event)
        return touched

    async def _ensure_shipped(self, session: AsyncSession, payment: Payment):
        existing = await session.execute(select(Shipped.id).where(Shipped.order_id == payment.order_id))
        if existing.scalar_one_or_none() is not None:
            return
        session.add(Shipped(order_id=payment.order_id, payment_id=payment.id, user_id=payment.user_id))
        logger.info(f"Created fulfilment record for order {payment.order_id}")

    # Entry points

    async def record_charge(self, order_id: str, payment_type: PaymentType, result: GatewayResult) -> bool:
        """Store the charge response; an already-terminal initial status resolves the payment."""
        status = map_gateway_status(payment_type, result.native_status)
        return await self.transition(order_id, status, source="worker", result=result)

    async def refresh_from_gateway(self, order_id: str, user_id: Optional[str] = None) -> Payment:
        """Poll the gateway for a PENDING payment and apply what it reports."""
        payment = await self.get_payment(order_id, user_id)
        if PaymentStatus(payment.status).is_terminal or not payment.gateway_transaction_id:
            return payment

        payment_type = PaymentType(payment.payment_type)
        result = await self.gateways[payment_type].get_status(order_id, payment.gateway_transaction_id)
        status = map_gateway_status(payment_type, result.native_status)
        await self.transition(order_id, status, source="poll", result=result)
        return await self.get_payment(order_id)

    async def handle_notification(self, payment_type: PaymentType, body: Mapping[str, Any]) -> PaymentStatus:
        """
        Apply a provider webhook after verifying its signature.

        Raises:
            SignatureMismatch: signature missing or wrong; nothing is changed
            EntityNotFound: the notification names an unknown order
        """
        body = dict(body)
        if payment_type == PaymentType.MIDTRANS:
            gateway: MidtransGateway = self.gateways[PaymentType.MIDTRANS]
            verified = gateway.verify_notification(body)
            result = gateway.parse(body) if verified else None
        else:
            gateway: PlisioGateway = self.gateways[PaymentType.PLISIO]
            verified = gateway.verify_callback(body)
            result = gateway.parse_callback(body) if verified else None

        order_id = body.get("order_id") or body.get("order_number")
        if not verified:
            logger.warning(f"Rejected {payment_type.value} notification for order {order_id}: bad signature")
            raise SignatureMismatch(f"Invalid signature for order {order_id}")

        if not result.order_id:
            raise EntityNotFound("Payment", "<missing order id>")

        status = map_gateway_status(payment_type, result.native_status)
        await self.transition(result.order_id, status, source="callback", result=result)
        logger.info(f"Processed {payment_type.value} notification for {result.order_id} ({result.native_status})")
        return status

    async def cancel(self, order_id: str, user_id: str) -> Payment:
        """User cancellation of their own PENDING payment."""
        try:
            payment = await self.get_payment(order_id, user_id)
        except EntityNotFound as e:
            raise PaymentNotCancellable(f"Payment {order_id} not found or not cancellable") from e

        if payment.status != PaymentStatus.PENDING.value:
            raise PaymentNotCancellable(f"Payment {order_id} is {payment.status}")
        if not await self.transition(order_id, PaymentStatus.CANCELLED, source="cancel"):
            raise PaymentNotCancellable(f"Payment {order_id} was resolved concurrently")
        return await self.get_payment(order_id)

    async def abandon(self, order_id: str, reason: str):
        """
        Clean up after a payment job ran out of attempts.

        A PENDING payment that never reached the gateway is failed. With no
        payment at all, the submission-time hold is released.
        """
        async with self.session_factory() as session:
            payment = await self._load(session, order_id)
            if payment is None:
                touched = await ledger.release(session, order_id)
                await session.commit()
                if touched:
                    logger.info(f"Released reservation for abandoned order {order_id}")
                    await self.invalidator.invalidate_many(touched)
                return

        if payment.status == PaymentStatus.PENDING.value and not payment.gateway_transaction_id:
            await self.transition(order_id, PaymentStatus.FAILED, source="worker", reason=reason)
        else:
            logger.info(f"Abandoned order {order_id} is {payment.status} with gateway correlation, left to reconciliation")

    async def expire(self, order_id: str, reason: str) -> bool:
        return await self.transition(order_id, PaymentStatus.EXPIRED, source="sweeper", reason=reason)
