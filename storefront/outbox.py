"""
Transactional outbox for payment events.

A terminal payment transition stores its event in ``outbox`` inside the
transaction that moves the payment, so an event row exists exactly when the
transition committed. ``OutboxPublisher`` relays those rows to RabbitMQ in
creation order; rows the broker keeps rejecting end up ``failed`` and can be
put back with ``requeue_failed``.
"""
import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Base
from .events import BaseEvent, deserialize_event

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxMessage(Base):
    """One serialized domain event awaiting relay."""

    __tablename__ = "outbox"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    event_id = Column(String(36), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    aggregate_id = Column(String(64), nullable=False)  # order id
    event_data = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=OutboxStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    published_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_outbox_status_created", "status", "created_at"),
        Index("ix_outbox_aggregate_id", "aggregate_id"),
    )


async def save_event_to_outbox(session: AsyncSession, event: BaseEvent):
    """Stage ``event`` in the caller's transaction; nothing is sent until it commits."""
    session.add(
        OutboxMessage(
            event_id=str(event.event_id),
            event_type=event.event_type.value,
            aggregate_id=event.aggregate_id,
            event_data=event.model_dump_json(),
            status=OutboxStatus.PENDING.value,
        )
    )
    logger.debug(f"Staged {event.event_type.value} for {event.aggregate_id} in outbox")


class OutboxPublisher:
    """Relays staged events to the message broker on a timer."""

    def __init__(
        self,
        session_factory,
        message_broker,
        poll_interval: float = 1.0,
        batch_size: int = 100,
        max_attempts: int = 3,
    ):
        """
        Args:
            session_factory: Async session factory
            message_broker: Anything with an async ``publish_event(event)``
            poll_interval: Seconds between relay passes
            batch_size: Rows relayed per pass
            max_attempts: Publish attempts before a row is marked failed
        """
        self.session_factory = session_factory
        self.message_broker = message_broker
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self._running:
            logger.warning("Outbox publisher already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Outbox publisher started (every {self.poll_interval}s)")

    async def stop(self):
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Outbox publisher stopped")

    async def _run(self):
        while self._running:
            try:
                await self.publish_pending_messages()
            except Exception as e:
                logger.error(f"Outbox relay pass failed: {str(e)}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def publish_pending_messages(self) -> int:
        """Relay one batch of pending events; returns how many reached the broker."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.PENDING.value)
                .order_by(OutboxMessage.created_at)
                .limit(self.batch_size)
            )
            messages = result.scalars().all()
            if not messages:
                return 0

            published = 0
            for message in messages:
                try:
                    await self.message_broker.publish_event(deserialize_event(json.loads(message.event_data)))
                except Exception as e:
                    message.attempts += 1
                    message.last_error = str(e) or e.__class__.__name__
                    if message.attempts >= self.max_attempts:
                        message.status = OutboxStatus.FAILED.value
                        logger.error(
                            f"Giving up on {message.event_type} for {message.aggregate_id} "
                            f"after {message.attempts} attempt(s): {message.last_error}"
                        )
                    else:
                        logger.warning(f"Could not relay event {message.event_id}: {message.last_error}")
                    continue

                message.status = OutboxStatus.PUBLISHED.value
                message.published_at = datetime.utcnow()
                published += 1

            await session.commit()

        logger.info(f"Relayed {published}/{len(messages)} outbox event(s)")
        return published

    async def requeue_failed(self, limit: int = 100) -> int:
        """Give failed rows a fresh set of attempts."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage.id)
                .where(OutboxMessage.status == OutboxStatus.FAILED.value)
                .order_by(OutboxMessage.created_at)
                .limit(limit)
            )
            ids = result.scalars().all()
            if ids:
                await session.execute(
                    update(OutboxMessage)
                    .execution_options(synchronize_session=False)
                    .where(OutboxMessage.id.in_(ids))
                    .values(status=OutboxStatus.PENDING.value, attempts=0, last_error=None)
                )
                await session.commit()

        logger.info(f"Requeued {len(ids)} failed outbox event(s)")
        return len(ids)

    async def backlog(self) -> dict:
        """Row counts per outbox status."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage.status, func.count(OutboxMessage.id)).group_by(OutboxMessage.status)
            )
            counts = {status.value: 0 for status in OutboxStatus}
            counts.update(dict(result.all()))
            return counts
