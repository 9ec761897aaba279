"""Process wiring for the payment service."""
import logging
from datetime import timedelta
from typing import Optional

import httpx

from storefront.cache import Cache, ProductCacheInvalidator
from storefront.config import Settings
from storefront.database import Database
from storefront.job_queue import Backoff, JobOptions, JobQueue, JobTransport
from storefront.message_broker import MessageBroker
from storefront.outbox import OutboxPublisher

from .checkout import CheckoutService
from .gateways import MidtransGateway, PlisioGateway
from .reconciler import StatusReconciler
from .sweeper import StalePaymentSweeper
from .worker import PaymentWorker

logger = logging.getLogger(__name__)


class PaymentRuntime:
    """
    Owns every long-lived object of the payment service.

    Collaborators can be injected; anything not given is built from settings.
    Without a message broker, jobs need an explicit ``transport`` and domain
    events stay in the outbox.
    """

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        message_broker: Optional[MessageBroker] = None,
        transport: Optional[JobTransport] = None,
        cache: Optional[Cache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        background_tasks: bool = True,
    ):
        self.settings = settings
        self.background_tasks = background_tasks

        self.database = database or Database(settings.database_url, echo=settings.database_echo)
        if message_broker is None and transport is None:
            message_broker = MessageBroker(settings.rabbitmq_url)
        self.message_broker = message_broker
        self.transport = transport or message_broker

        self.cache = cache or Cache(
            settings.redis_url,
            default_ttl=settings.cache_ttl_seconds,
            enabled=settings.cache_enabled,
        )
        self.invalidator = ProductCacheInvalidator(self.cache)

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
        self.midtrans = MidtransGateway(
            self.http_client,
            server_key=settings.midtrans_server_key,
            base_url=settings.midtrans_base_url,
            frontend_url=settings.frontend_url,
        )
        self.plisio = PlisioGateway(
            self.http_client,
            api_key=settings.plisio_api_key,
            secret_key=settings.plisio_secret_key,
            base_url=settings.plisio_base_url,
            backend_url=settings.backend_url,
            frontend_url=settings.frontend_url,
            default_currency=settings.plisio_default_currency,
            expire_min=settings.plisio_invoice_expire_min,
            usd_rate=settings.idr_to_usd_rate,
        )

        session_factory = self.database.session_factory
        self.reconciler = StatusReconciler(session_factory, self.midtrans, self.plisio, self.invalidator)
        self.worker = PaymentWorker(session_factory, self.reconciler, self.invalidator, self.midtrans, self.plisio)

        job_options = JobOptions(
            priority=1,
            attempts=settings.payment_attempts,
            backoff=Backoff(type="exponential", delay_ms=settings.payment_backoff_ms),
        )
        self.queue = JobQueue(
            settings.payment_queue_name,
            session_factory,
            self.transport,
            self.worker.definitions(),
            concurrency=settings.payment_concurrency,
            keep_completed=settings.payment_keep_completed,
            keep_failed=settings.payment_keep_failed,
            default_options=job_options,
        )
        self.checkout = CheckoutService(session_factory, self.queue, self.invalidator, job_options)
        self.sweeper = StalePaymentSweeper(
            session_factory,
            self.reconciler,
            self.queue,
            interval=settings.sweeper_interval_seconds,
            pending_timeout=timedelta(minutes=settings.pending_timeout_minutes),
            reservation_timeout=timedelta(minutes=settings.reservation_timeout_minutes),
        )
        self.outbox_publisher = (
            OutboxPublisher(session_factory=session_factory, message_broker=message_broker)
            if message_broker is not None
            else None
        )

    async def start(self):
        logger.info("Starting payment runtime...")
        await self.database.create_tables()
        await self.cache.connect()
        if self.message_broker is not None:
            await self.message_broker.connect()

        await self.queue.start()
        if self.background_tasks:
            if self.outbox_publisher:
                await self.outbox_publisher.start()
            await self.sweeper.start()
        logger.info("Payment runtime started")

    async def stop(self):
        logger.info("Stopping payment runtime...")
        await self.sweeper.stop()
        if self.outbox_publisher:
            await self.outbox_publisher.stop()
        await self.queue.stop()

        if self.message_broker is not None:
            await self.message_broker.disconnect()
        await self.cache.close()
        if self._owns_http_client:
            await self.http_client.aclose()
        await self.database.close()
        logger.info("Payment runtime stopped")
