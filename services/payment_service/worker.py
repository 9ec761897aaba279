"""
Payment worker.

Runs ``create-midtrans-payment`` and ``create-plisio-payment`` jobs. The
order id travels in the job payload, so a retried attempt finds what earlier
attempts left behind and carries on from there:

* no payment yet: hold stock (if not already held), create the PENDING
  payment, its items and the shipping quote in one transaction
* payment without a gateway transaction id: charge
* payment with a gateway transaction id, or already resolved: report it
  without charging again
"""
import logging
from typing import Any, Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.cache import ProductCacheInvalidator
from storefront.job_queue import JobContext, JobDefinition

from . import ledger
from .checkout import CREATE_MIDTRANS_PAYMENT, CREATE_PLISIO_PAYMENT, PaymentJobPayload
from .errors import EntityNotFound
from .gateways import ChargeLine, ChargeRequest, MidtransGateway, PlisioGateway
from .models import Payment, PaymentItem, PaymentStatus, PaymentType, Product, Shipment, User, UserAddress
from .reconciler import StatusReconciler

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_EMAIL = "user@example.com"


class PaymentWorker:
    """Handlers for payment-creation jobs."""

    def __init__(
        self,
        session_factory,
        reconciler: StatusReconciler,
        invalidator: ProductCacheInvalidator,
        midtrans: MidtransGateway,
        plisio: PlisioGateway,
    ):
        self.session_factory = session_factory
        self.reconciler = reconciler
        self.invalidator = invalidator
        self.gateways = {
            PaymentType.MIDTRANS: midtrans,
            PaymentType.PLISIO: plisio,
        }

    def definitions(self) -> List[JobDefinition]:
        return [
            JobDefinition(CREATE_MIDTRANS_PAYMENT, PaymentJobPayload, self.create_midtrans_payment, self.on_exhausted),
            JobDefinition(CREATE_PLISIO_PAYMENT, PaymentJobPayload, self.create_plisio_payment, self.on_exhausted),
        ]

    async def create_midtrans_payment(self, ctx: JobContext, payload: PaymentJobPayload) -> Dict[str, Any]:
        return await self.process(ctx, payload, PaymentType.MIDTRANS)

    async def create_plisio_payment(self, ctx: JobContext, payload: PaymentJobPayload) -> Dict[str, Any]:
        return await self.process(ctx, payload, PaymentType.PLISIO)

    async def on_exhausted(self, ctx: JobContext, payload: PaymentJobPayload, error: BaseException):
        logger.error(f"Payment job {ctx.job_id} for order {payload.order_id} exhausted: {error}")
        await self.reconciler.abandon(payload.order_id, reason=str(error) or error.__class__.__name__)

    async def process(self, ctx: JobContext, payload: PaymentJobPayload, payment_type: PaymentType) -> Dict[str, Any]:
        order_id = payload.order_id
        await ctx.update_progress(10)

        async with self.session_factory() as session:
            user, address, products = await self._load_entities(session, payload)
            await ctx.update_progress(30)

            payment = await self._find_payment(session, order_id)
            created = payment is None
            if created:
                payment = await self._create_payment(session, ctx, payload, payment_type, products)
                await session.commit()
                logger.info(f"Created PENDING payment for order {order_id} (job {ctx.job_id})")

        await ctx.update_progress(50)
        if created:
            await self.invalidator.invalidate_many(payload.product_ids)

        if payment.status != PaymentStatus.PENDING.value:
            logger.info(f"Order {order_id} already {payment.status}, nothing to charge")
            return self._result(payment)
        if payment.gateway_transaction_id:
            logger.info(f"Order {order_id} already charged (txn={payment.gateway_transaction_id})")
            return self._result(payment)

        await ctx.update_progress(70)
        request = self._charge_request(payload, payment_type, user, products)
        result = await self.gateways[payment_type].charge(request)

        await ctx.update_progress(90)
        await self.reconciler.record_charge(order_id, payment_type, result)

        payment = await self.reconciler.get_payment(order_id)
        await ctx.update_progress(100)
        return self._result(payment)

    async def _load_entities(
        self, session: AsyncSession, payload: PaymentJobPayload
    ) -> Tuple[User, UserAddress, Dict[str, Product]]:
        user = await session.get(User, payload.user_id)
        if user is None:
            raise EntityNotFound("User", payload.user_id)

        address = await session.get(UserAddress, payload.address_id)
        if address is None or address.user_id != user.id:
            raise EntityNotFound("Address", payload.address_id)

        result = await session.execute(select(Product).where(Product.id.in_(payload.product_ids)))
        products = {product.id: product for product in result.scalars()}
        for product_id in payload.product_ids:
            if product_id not in products:
                raise EntityNotFound("Product", product_id)
        return user, address, products

    async def _find_payment(self, session: AsyncSession, order_id: str):
        result = await session.execute(select(Payment).where(Payment.order_id == order_id))
        return result.scalar_one_or_none()

    async def _create_payment(
        self,
        session: AsyncSession,
        ctx: JobContext,
        payload: PaymentJobPayload,
        payment_type: PaymentType,
        products: Dict[str, Product],
    ) -> Payment:
        # Holds normally exist from submission; this covers orders whose hold was never taken.
        await ledger.reserve(session, payload.order_id, payload.reservation_lines())

        payment = Payment(
            order_id=payload.order_id,
            user_id=payload.user_id,
            job_id=ctx.job_id,
            product_id=payload.items[0].product_id,
            is_multi_item=payload.is_multi_item,
            amount=payload.product_price,
            shipping_cost=payload.shipping_cost,
            admin_fee=payload.admin_fee,
            total_amount=payload.total_amount,
            status=PaymentStatus.PENDING.value,
            payment_method=payload.payment_method,
            payment_type=payment_type.value,
            bank=payload.bank,
            currency=payload.currency,
            notes=payload.notes,
        )
        payment.items = [
            PaymentItem(
                product_id=item.product_id,
                quantity=item.quantity,
                price=item.price if item.price is not None else products[item.product_id].price,
                position=position,
            )
            for position, item in enumerate(payload.items)
        ]
        session.add(payment)
        await session.flush()

        session.add(
            Shipment(
                payment_id=payment.id,
                address_id=payload.address_id,
                courier=payload.courier,
                service=payload.service,
                description=f"{payload.courier.upper()} {payload.service}",
                origin=payload.origin,
                destination=payload.destination,
                weight=payload.weight,
                cost=payload.shipping_cost,
                etd="2-3 hari",
                note="Product shipping",
            )
        )
        await session.flush()
        return payment

    def _charge_request(
        self,
        payload: PaymentJobPayload,
        payment_type: PaymentType,
        user: User,
        products: Dict[str, Product],
    ) -> ChargeRequest:
        lines = [
            ChargeLine(
                id=item.product_id,
                name=products[item.product_id].name,
                price=item.price if item.price is not None else products[item.product_id].price,
                quantity=item.quantity,
            )
            for item in payload.items
        ]
        lines.append(
            ChargeLine(
                id=f"shipping_{payload.courier}_{payload.service}",
                name=f"Shipping {payload.courier.upper()} {payload.service}",
                price=payload.shipping_cost,
                category="shipping",
            )
        )
        lines.append(ChargeLine(id="admin_fee", name="Admin Fee", price=payload.admin_fee, category="fee"))

        names = ", ".join(products[pid].name for pid in dict.fromkeys(payload.product_ids))
        return ChargeRequest(
            order_id=payload.order_id,
            gross_amount=payload.total_amount,
            customer_name=user.username,
            customer_email=user.email or DEFAULT_CUSTOMER_EMAIL,
            payment_method=payload.payment_method,
            lines=lines,
            bank=payload.bank,
            currency=payload.currency,
            description=f"Purchase {names} for {user.username}",
            return_product_id=payload.items[0].product_id,
        )

    @staticmethod
    def _result(payment: Payment) -> Dict[str, Any]:
        return {
            "order_id": payment.order_id,
            "payment_id": payment.id,
            "status": payment.status,
            "payment_type": payment.payment_type,
            "payment_method": payment.payment_method,
            "total_amount": payment.total_amount,
            "gateway": {
                "transaction_id": payment.gateway_transaction_id,
                "transaction_status": payment.transaction_status,
                "redirect_url": payment.redirect_url,
                "va_number": payment.va_number,
                "bank_type": payment.bank_type,
                "payment_code": payment.payment_code,
                "actions": payment.gateway_actions,
                "expiry_time": payment.expiry_time.isoformat() if payment.expiry_time else None,
            },
        }
