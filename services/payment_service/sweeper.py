"""Periodic clean-up of payments and holds that nothing else will resolve."""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Set

from sqlalchemy import select

from storefront.job_queue import Job, JobQueue, JobState

from .errors import GatewayError
from .models import Payment, PaymentStatus, ReservationStatus, StockReservation
from .reconciler import StatusReconciler

logger = logging.getLogger(__name__)


class StalePaymentSweeper:
    """
    Resolves stuck state on a timer.

    * PENDING payments that never got a gateway transaction id and whose job
      is no longer running are expired.
    * PENDING payments past their gateway expiry are re-checked with the gateway.
    * Holds with no payment and no running job are released.
    """

    def __init__(
        self,
        session_factory,
        reconciler: StatusReconciler,
        queue: JobQueue,
        interval: int = 300,
        pending_timeout: timedelta = timedelta(minutes=30),
        reservation_timeout: timedelta = timedelta(minutes=120),
        batch_size: int = 100,
    ):
        self.session_factory = session_factory
        self.reconciler = reconciler
        self.queue = queue
        self.interval = interval
        self.pending_timeout = pending_timeout
        self.reservation_timeout = reservation_timeout
        self.batch_size = batch_size
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self._running:
            logger.warning("Stale payment sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Stale payment sweeper started (every {self.interval}s)")

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

        logger.info("Stale payment sweeper stopped")

    async def _run(self):
        while self._running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error in stale payment sweeper: {str(e)}", exc_info=True)

            await asyncio.sleep(self.interval)

    async def sweep(self) -> Dict[str, int]:
        """Run one pass; returns how many payments or holds each step resolved."""
        live_orders = await self._live_orders()
        stats = {
            "expired": await self._expire_uncharged(live_orders),
            "refreshed": await self._refresh_overdue(),
            "released": await self._release_orphaned(live_orders),
        }
        if any(stats.values()):
            logger.info(f"Sweep finished: {stats}")
        return stats

    async def _live_orders(self) -> Set[str]:
        """Order ids of payment jobs still waiting or running."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Job.payload).where(
                    Job.queue == self.queue.name,
                    Job.state.in_([JobState.WAITING.value, JobState.ACTIVE.value]),
                )
            )
            return {payload.get("order_id") for payload in result.scalars() if payload}

    async def _expire_uncharged(self, live_orders: Set[str]) -> int:
        cutoff = datetime.utcnow() - self.pending_timeout
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment.order_id)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.gateway_transaction_id.is_(None),
                    Payment.created_at < cutoff,
                )
                .order_by(Payment.created_at)
                .limit(self.batch_size)
            )
            order_ids = result.scalars().all()

        expired = 0
        for order_id in order_ids:
            if order_id in live_orders:
                continue
            if await self.reconciler.expire(order_id, reason="no gateway transaction before timeout"):
                expired += 1
        return expired

    async def _refresh_overdue(self) -> int:
        now = datetime.utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment.order_id)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.gateway_transaction_id.is_not(None),
                    Payment.expiry_time < now,
                )
                .order_by(Payment.expiry_time)
                .limit(self.batch_size)
            )
            order_ids = result.scalars().all()

        refreshed = 0
        for order_id in order_ids:
            try:
                payment = await self.reconciler.refresh_from_gateway(order_id)
            except GatewayError as e:
                logger.warning(f"Could not refresh overdue payment {order_id}: {str(e)}")
                continue
            if payment.status != PaymentStatus.PENDING.value:
                refreshed += 1
        return refreshed

    async def _release_orphaned(self, live_orders: Set[str]) -> int:
        cutoff = datetime.utcnow() - self.reservation_timeout
        async with self.session_factory() as session:
            result = await session.execute(
                select(StockReservation.order_id)
                .outerjoin(Payment, Payment.order_id == StockReservation.order_id)
                .where(
                    StockReservation.status == ReservationStatus.ACTIVE.value,
                    StockReservation.created_at < cutoff,
                    Payment.id.is_(None),
                )
                .order_by(StockReservation.created_at)
                .limit(self.batch_size)
            )
            order_ids = result.scalars().all()

        released = 0
        for order_id in order_ids:
            if order_id in live_orders:
                continue
            await self.reconciler.abandon(order_id, reason="reservation orphaned")
            released += 1
        return released
