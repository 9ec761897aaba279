"""Process wiring for the notification service."""
import logging
from typing import Optional

from storefront.config import Settings
from storefront.database import Database
from storefront.events import EventType, PaymentResolvedEvent
from storefront.job_queue import Backoff, JobOptions, JobQueue, JobTransport, RateLimit
from storefront.message_broker import MessageBroker

from .emailer import Emailer
from .otp import OtpJobs

logger = logging.getLogger(__name__)

PAYMENT_EMAILS = {
    EventType.PAYMENT_SUCCEEDED: (
        "Payment Confirmed",
        "Your payment of {amount} for order {order_id} has been received. "
        "Your order is being prepared for shipment.",
    ),
    EventType.PAYMENT_FAILED: (
        "Payment Failed",
        "Your payment for order {order_id} could not be completed. "
        "The reserved items have been released. Please try again.",
    ),
    EventType.PAYMENT_CANCELLED: (
        "Payment Cancelled",
        "Your payment for order {order_id} has been cancelled.",
    ),
    EventType.PAYMENT_EXPIRED: (
        "Payment Expired",
        "The payment window for order {order_id} has closed. "
        "The reserved items have been released.",
    ),
}


class NotificationRuntime:
    """Owns the OTP queue and the payment event subscriptions."""

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        message_broker: Optional[MessageBroker] = None,
        transport: Optional[JobTransport] = None,
        emailer: Optional[Emailer] = None,
    ):
        self.settings = settings
        self.database = database or Database(settings.database_url, echo=settings.database_echo)
        if message_broker is None and transport is None:
            message_broker = MessageBroker(settings.rabbitmq_url)
        self.message_broker = message_broker
        self.transport = transport or message_broker
        self.emailer = emailer or Emailer.from_settings(settings)

        self.otp_jobs = OtpJobs(self.emailer)
        self.queue = JobQueue(
            settings.otp_queue_name,
            self.database.session_factory,
            self.transport,
            self.otp_jobs.definitions(),
            concurrency=settings.otp_concurrency,
            rate_limit=RateLimit(settings.otp_rate_limit_max, settings.otp_rate_limit_seconds),
            keep_completed=settings.otp_keep_completed,
            keep_failed=settings.otp_keep_failed,
            default_options=JobOptions(
                attempts=settings.otp_attempts,
                backoff=Backoff(type="exponential", delay_ms=settings.otp_backoff_ms),
            ),
        )

    async def start(self):
        await self.database.create_tables()
        if self.message_broker is not None:
            await self.message_broker.connect()
            await self.subscribe_to_events()
        await self.queue.start()

    async def stop(self):
        await self.queue.stop()
        if self.message_broker is not None:
            await self.message_broker.disconnect()
        await self.database.close()

    async def handle_payment_event(self, event: PaymentResolvedEvent):
        """Email the customer about a resolved payment."""
        subject, template = PAYMENT_EMAILS[event.event_type]
        body = template.format(amount=f"Rp {event.total_amount:,.0f}", order_id=event.order_id)
        await self.emailer.send(self.emailer.pick_recipient(event.customer_email), subject, body)

    async def subscribe_to_events(self):
        for event_type in PAYMENT_EMAILS:
            await self.message_broker.subscribe_to_event(
                event_type,
                f"notification_service_{event_type.value.replace('.', '_')}",
                self.handle_payment_event,
            )
        logger.info("Subscribed to payment events")
