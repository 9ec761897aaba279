"""Outbox relay of payment events."""
from sqlalchemy import select

from storefront.events import PaymentCancelledEvent, PaymentSucceededEvent
from storefront.outbox import OutboxMessage, OutboxPublisher, OutboxStatus, save_event_to_outbox


class RecordingBroker:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.events = []

    async def publish_event(self, event):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("channel closed")
        self.events.append(event)


def succeeded(order_id: str) -> PaymentSucceededEvent:
    return PaymentSucceededEvent(
        aggregate_id=order_id,
        correlation_id="job-1",
        order_id=order_id,
        user_id="user-1",
        payment_type="midtrans",
        total_amount=150000,
        source="callback",
        items=[{"product_id": "prod-a", "quantity": 1}],
    )


async def stage(database, *events):
    async with database.session_factory() as session:
        for event in events:
            await save_event_to_outbox(session, event)
        await session.commit()


async def statuses(database):
    async with database.session_factory() as session:
        result = await session.execute(select(OutboxMessage.aggregate_id, OutboxMessage.status))
        return dict(result.all())


async def test_uncommitted_events_are_not_staged(database):
    async with database.session_factory() as session:
        await save_event_to_outbox(session, succeeded("Order_1"))
        await session.rollback()

    assert await statuses(database) == {}


async def test_relay_publishes_in_order(database):
    cancelled = PaymentCancelledEvent(
        aggregate_id="Order_2",
        correlation_id="Order_2",
        order_id="Order_2",
        user_id="user-1",
        payment_type="plisio",
        total_amount=90000,
        source="cancel",
    )
    await stage(database, succeeded("Order_1"), cancelled)
    broker = RecordingBroker()
    publisher = OutboxPublisher(database.session_factory, broker)

    assert await publisher.publish_pending_messages() == 2
    assert await publisher.publish_pending_messages() == 0

    assert [type(event) for event in broker.events] == [PaymentSucceededEvent, PaymentCancelledEvent]
    assert broker.events[0].items == [{"product_id": "prod-a", "quantity": 1}]
    assert await statuses(database) == {"Order_1": "published", "Order_2": "published"}


async def test_broker_errors_are_retried_then_parked(database):
    await stage(database, succeeded("Order_1"))
    broker = RecordingBroker(failures=3)
    publisher = OutboxPublisher(database.session_factory, broker, max_attempts=2)

    assert await publisher.publish_pending_messages() == 0
    assert (await statuses(database))["Order_1"] == OutboxStatus.PENDING.value
    assert await publisher.publish_pending_messages() == 0
    assert (await statuses(database))["Order_1"] == OutboxStatus.FAILED.value
    assert await publisher.publish_pending_messages() == 0

    assert await publisher.backlog() == {"pending": 0, "published": 0, "failed": 1}

    assert await publisher.requeue_failed() == 1
    assert await publisher.publish_pending_messages() == 0  # third failure
    assert await publisher.publish_pending_messages() == 1
    assert await publisher.backlog() == {"pending": 0, "published": 1, "failed": 0}
