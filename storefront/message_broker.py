"""Message broker abstraction for RabbitMQ.

Carries two kinds of traffic: job deliveries for the job queue (one durable
priority queue per job queue, with TTL'd holding queues for delayed and
retried jobs) and domain events on a topic exchange.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)
from tenacity import retry, stop_after_attempt, wait_exponential

from .events import BaseEvent, EventType, deserialize_event

logger = logging.getLogger(__name__)

MAX_JOB_PRIORITY = 10
EVENTS_EXCHANGE = "storefront_events"
DEAD_LETTER_EXCHANGE = "storefront_events_dlx"
# Idle time after which an unused holding queue is dropped
DELAY_QUEUE_IDLE_MS = 60_000


class MessageBroker:
    """RabbitMQ message broker for job delivery and event publishing."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None
        self._consumers: Dict[str, Tuple[AbstractChannel, AbstractQueue, str]] = {}

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=10)
    )
    async def connect(self):
        """Establish connection to RabbitMQ."""
        logger.info("Connecting to RabbitMQ...")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()

        self.exchange = await self.channel.declare_exchange(
            EVENTS_EXCHANGE,
            ExchangeType.TOPIC,
            durable=True
        )

        await self.channel.declare_exchange(
            DEAD_LETTER_EXCHANGE,
            ExchangeType.TOPIC,
            durable=True
        )

        logger.info("Connected to RabbitMQ successfully")

    async def disconnect(self):
        """Close connection to RabbitMQ."""
        for queue_name in list(self._consumers):
            await self.stop_consuming(queue_name)
        if self.connection:
            await self.connection.close()
            logger.info("Disconnected from RabbitMQ")

    # Job transport

    async def _declare_job_queue(self, channel: AbstractChannel, queue_name: str) -> AbstractQueue:
        return await channel.declare_queue(
            queue_name,
            durable=True,
            arguments={"x-max-priority": MAX_JOB_PRIORITY},
        )

    async def _declare_delay_queue(self, queue_name: str, delay_ms: int) -> str:
        """
        Holding queue whose messages dead-letter back into the job queue after ``delay_ms``.

        Declared on every delayed publish: publishing alone does not reset the
        ``x-expires`` idle timer, redeclaring does.
        """
        name = f"{queue_name}.delay.{delay_ms}"
        await self.channel.declare_queue(
            name,
            durable=True,
            arguments={
                "x-message-ttl": delay_ms,
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": queue_name,
                "x-expires": delay_ms + DELAY_QUEUE_IDLE_MS,
            },
        )
        return name

    async def publish_job(
        self,
        queue_name: str,
        job_id: str,
        priority: int = 0,
        delay_ms: int = 0,
    ):
        """
        Publish a job id for delivery to the consumers of ``queue_name``.

        Raises whatever the broker raises when it cannot accept the message;
        the job queue turns that into QueueUnavailable.
        """
        if not self.channel:
            raise RuntimeError("Message broker not connected")

        await self._declare_job_queue(self.channel, queue_name)

        message = Message(
            body=json.dumps({"job_id": job_id}).encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            priority=max(0, min(priority, MAX_JOB_PRIORITY)),
            headers={"job_id": job_id},
        )

        routing_key = queue_name
        if delay_ms > 0:
            routing_key = await self._declare_delay_queue(queue_name, delay_ms)

        await self.channel.default_exchange.publish(message, routing_key=routing_key)
        logger.debug(f"Published job {job_id} to {routing_key} (priority={priority})")

    async def consume_jobs(
        self,
        queue_name: str,
        callback: Callable[[str, bool], Awaitable[None]],
        prefetch: int,
    ):
        """
        Start consuming job ids from ``queue_name``.

        The callback receives ``(job_id, redelivered)``. A message is acked
        once the callback returns and requeued if it raises, so delivery is
        at-least-once.
        """
        if not self.connection:
            raise RuntimeError("Message broker not connected")

        channel = await self.connection.channel()
        await channel.set_qos(prefetch_count=prefetch)
        queue = await self._declare_job_queue(channel, queue_name)

        async def process_message(message: AbstractIncomingMessage):
            async with message.process(requeue=True):
                payload = json.loads(message.body.decode())
                await callback(payload["job_id"], bool(message.redelivered))

        consumer_tag = await queue.consume(process_message)
        self._consumers[queue_name] = (channel, queue, consumer_tag)
        logger.info(f"Consuming jobs from {queue_name} (prefetch={prefetch})")

    async def stop_consuming(self, queue_name: str):
        """Cancel the consumer for ``queue_name`` if one is running."""
        consumer = self._consumers.pop(queue_name, None)
        if not consumer:
            return
        channel, queue, consumer_tag = consumer
        await queue.cancel(consumer_tag)
        await channel.close()
        logger.info(f"Stopped consuming jobs from {queue_name}")

    # Domain events

    async def publish_event(self, event: BaseEvent):
        """Publish a domain event, routed by its event type."""
        if not self.exchange:
            raise RuntimeError("Message broker not connected")

        await self.exchange.publish(
            Message(
                body=event.model_dump_json().encode(),
                delivery_mode=DeliveryMode.PERSISTENT,
                content_type="application/json",
                message_id=str(event.event_id),
                correlation_id=event.correlation_id,
                headers={"event_type": event.event_type.value, "version": event.version},
            ),
            routing_key=event.event_type.value,
        )
        logger.info(f"Published {event.event_type.value} for {event.aggregate_id} (id={event.event_id})")

    async def subscribe_to_event(
        self,
        event_type: EventType,
        queue_name: str,
        handler: Callable[[BaseEvent], Awaitable[Any]],
        max_retries: int = 3,
    ):
        """
        Run ``handler`` for every ``event_type`` event.

        A failing handler gets the event again after an exponential pause,
        up to ``max_retries`` times; after that the event is dead-lettered to
        ``dlq.<event type>``.
        """
        if not self.channel:
            raise RuntimeError("Message broker not connected")

        queue = await self.channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE,
                "x-dead-letter-routing-key": f"dlq.{event_type.value}",
                "x-queue-type": "quorum",
            },
        )
        await queue.bind(self.exchange, routing_key=event_type.value)

        async def process_message(message: AbstractIncomingMessage):
            async with message.process(requeue=False):
                retries = int((message.headers or {}).get("x-retry-count", 0))
                try:
                    await handler(deserialize_event(json.loads(message.body.decode())))
                except Exception as e:
                    if retries >= max_retries:
                        logger.error(f"Dead-lettering event {message.message_id} after {retries} retries: {str(e)}")
                        raise
                    logger.warning(f"Handler for {event_type.value} failed, retry {retries + 1}/{max_retries}: {str(e)}")
                    await asyncio.sleep(min(2 ** (retries + 1), 60))
                    await self._republish(message, event_type, retries + 1)

        await queue.consume(process_message)
        logger.info(f"Subscribed {queue_name} to {event_type.value}")

    async def _republish(self, message: AbstractIncomingMessage, event_type: EventType, retries: int):
        headers = dict(message.headers or {})
        headers["x-retry-count"] = retries
        await self.exchange.publish(
            Message(
                body=message.body,
                delivery_mode=DeliveryMode.PERSISTENT,
                content_type=message.content_type,
                message_id=message.message_id,
                correlation_id=message.correlation_id,
                headers=headers,
            ),
            routing_key=event_type.value,
        )
