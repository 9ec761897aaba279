"""Checkout submission: stock holds at submission time and queue hand-off."""
import asyncio

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from storefront.job_queue import JobState, QueueUnavailable
from services.payment_service import ledger
from services.payment_service.checkout import (
    CREATE_MIDTRANS_PAYMENT,
    CREATE_PLISIO_PAYMENT,
    CheckoutRequest,
    new_order_id,
)
from services.payment_service.errors import EntityNotFound, InsufficientStock
from services.payment_service.models import Payment, PaymentType, ReservationStatus, StockReservation
from tests.conftest import checkout_body, product_counters, wait_for_state


async def reservation_count(runtime) -> int:
    async with runtime.database.session_factory() as session:
        return await session.scalar(select(func.count()).select_from(StockReservation))


def test_request_needs_a_product():
    with pytest.raises(ValidationError):
        CheckoutRequest(**checkout_body(product_id=None))


def test_request_rejects_unknown_payment_method():
    with pytest.raises(ValidationError):
        CheckoutRequest(**checkout_body(payment_method="cash"))


def test_single_product_becomes_one_line():
    request = CheckoutRequest(**checkout_body())
    assert request.payment_type is PaymentType.MIDTRANS
    assert not request.is_multi_item
    [item] = request.job_items()
    assert (item.product_id, item.quantity, item.price) == ("prod-a", 1, 100000)


def test_order_ids_are_prefixed_per_gateway():
    assert new_order_id(PaymentType.MIDTRANS).startswith("Order_")
    assert new_order_id(PaymentType.PLISIO).startswith("PROD_")
    assert new_order_id(PaymentType.MIDTRANS) != new_order_id(PaymentType.MIDTRANS)


async def test_checkout_holds_stock_and_queues_job(seed):
    accepted = await seed.checkout.submit("user-1", CheckoutRequest(**checkout_body()))

    assert accepted.status == "waiting"
    assert accepted.order_id.startswith("Order_")
    status = await wait_for_state(seed.queue, accepted.job_id, {JobState.COMPLETED})
    assert status.kind == CREATE_MIDTRANS_PAYMENT
    assert status.result["order_id"] == accepted.order_id
    assert await product_counters(seed, "prod-a") == (5, 1)


async def test_crypto_checkout_uses_plisio_job(seed):
    accepted = await seed.checkout.submit("user-1", CheckoutRequest(**checkout_body(payment_method="crypto")))

    status = await wait_for_state(seed.queue, accepted.job_id, {JobState.COMPLETED})
    assert status.kind == CREATE_PLISIO_PAYMENT
    assert accepted.order_id.startswith("PROD_")


async def test_insufficient_stock_is_rejected_before_queueing(seed, transport):
    body = checkout_body(product_id=None, items=[{"product_id": "prod-c", "quantity": 2}])

    with pytest.raises(InsufficientStock) as exc_info:
        await seed.checkout.submit("user-1", CheckoutRequest(**body))

    assert exc_info.value.product_id == "prod-c"
    assert exc_info.value.available == 1
    assert transport.published == []
    assert (await seed.queue.counts())["total"] == 0
    assert await reservation_count(seed) == 0
    assert await product_counters(seed, "prod-c") == (1, 0)


async def test_unknown_product_is_rejected(seed):
    with pytest.raises(EntityNotFound):
        await seed.checkout.submit("user-1", CheckoutRequest(**checkout_body(product_id="prod-zzz")))
    assert (await seed.queue.counts())["total"] == 0


async def test_concurrent_checkouts_cannot_oversell(seed):
    body = checkout_body(product_id=None, items=[{"product_id": "prod-a", "quantity": 3}])

    outcomes = await asyncio.gather(
        seed.checkout.submit("user-1", CheckoutRequest(**body)),
        seed.checkout.submit("user-2", CheckoutRequest(**dict(body, address_id="addr-2"))),
        return_exceptions=True,
    )

    accepted = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, Exception)]
    assert len(accepted) == 1
    assert len(rejected) == 1 and isinstance(rejected[0], InsufficientStock)
    assert await product_counters(seed, "prod-a") == (5, 3)


async def test_queue_outage_gives_the_hold_back(seed, transport, fake_redis):
    fake_redis.store["product:detail:prod-a"] = '{"available_stock": 5}'
    transport.fail_publish = True

    with pytest.raises(QueueUnavailable):
        await seed.checkout.submit("user-1", CheckoutRequest(**checkout_body()))

    assert await product_counters(seed, "prod-a") == (5, 0)
    assert (await seed.queue.counts())["total"] == 0
    async with seed.database.session_factory() as session:
        [reservation] = (await session.execute(select(StockReservation))).scalars().all()
        assert reservation.status == ReservationStatus.RELEASED.value
        assert await session.scalar(select(func.count()).select_from(Payment)) == 0
    assert "product:detail:prod-a" not in fake_redis.store


async def test_multi_item_checkout_merges_duplicate_lines(seed):
    body = checkout_body(
        product_id=None,
        items=[
            {"product_id": "prod-b", "quantity": 2},
            {"product_id": "prod-a", "quantity": 1},
            {"product_id": "prod-b", "quantity": 1},
        ],
    )

    accepted = await seed.checkout.submit("user-1", CheckoutRequest(**body))
    await wait_for_state(seed.queue, accepted.job_id, {JobState.COMPLETED})

    assert await product_counters(seed, "prod-a") == (5, 1)
    assert await product_counters(seed, "prod-b") == (10, 3)
    async with seed.database.session_factory() as session:
        reservation = await ledger.get_reservation(session, accepted.order_id)
        assert reservation.items == [
            {"product_id": "prod-a", "quantity": 1},
            {"product_id": "prod-b", "quantity": 3},
        ]
        payment = (await session.execute(select(Payment).where(Payment.order_id == accepted.order_id))).scalar_one()
        assert payment.is_multi_item
        assert [(item.product_id, item.quantity) for item in payment.items] == [
            ("prod-b", 2), ("prod-a", 1), ("prod-b", 1),
        ]
