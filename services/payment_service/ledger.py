"""
Reservation ledger.

Inventory holds are tracked per order in ``stock_reservations``. Product
counters only move through single atomic UPDATE statements, and every
``active -> committed|released`` move is a guarded UPDATE, so whichever
caller wins the guard is the only one that touches the counters.

All functions run inside the caller's transaction; the caller commits.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import EntityNotFound, InsufficientStock, ReservationResolved
from .models import Product, ReservationStatus, StockReservation

logger = logging.getLogger(__name__)


class ReservationLine(BaseModel):
    """Quantity of one product held for an order."""
    product_id: str
    quantity: int = Field(ge=1)


def merge_lines(lines: Iterable[ReservationLine]) -> List[ReservationLine]:
    """Sum quantities per product, ordered by product id so row locks are taken in a stable order."""
    totals = {}
    for line in lines:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
    return [ReservationLine(product_id=pid, quantity=qty) for pid, qty in sorted(totals.items())]


def decode_items(items) -> List[ReservationLine]:
    return [ReservationLine.model_validate(item) for item in items or []]


async def get_reservation(session: AsyncSession, order_id: str) -> Optional[StockReservation]:
    result = await session.execute(
        select(StockReservation).where(StockReservation.order_id == order_id)
    )
    return result.scalar_one_or_none()


async def reserve(session: AsyncSession, order_id: str, lines: Iterable[ReservationLine]) -> bool:
    """
    Hold stock for an order.

    Returns True when the hold was created and False when an active hold
    already exists for the order. A partial hold is left to the caller's
    rollback.

    Raises:
        EntityNotFound: a product does not exist
        InsufficientStock: a product has less available stock than requested
        ReservationResolved: the order's hold was already committed or released
    """
    existing = await get_reservation(session, order_id)
    if existing is not None:
        if existing.status == ReservationStatus.ACTIVE.value:
            return False
        raise ReservationResolved(order_id, existing.status)

    merged = merge_lines(lines)
    if not merged:
        raise ValueError("Cannot reserve an empty order")

    for line in merged:
        result = await session.execute(
            update(Product)
            .execution_options(synchronize_session=False)
            .where(
                Product.id == line.product_id,
                Product.stock - Product.reserved_stock >= line.quantity,
            )
            .values(reserved_stock=Product.reserved_stock + line.quantity)
        )
        if result.rowcount != 1:
            counters = await session.execute(
                select(Product.stock, Product.reserved_stock).where(Product.id == line.product_id)
            )
            row = counters.first()
            if row is None:
                raise EntityNotFound("Product", line.product_id)
            raise InsufficientStock(line.product_id, line.quantity, row.stock - row.reserved_stock)

    session.add(
        StockReservation(
            order_id=order_id,
            items=[line.model_dump() for line in merged],
            status=ReservationStatus.ACTIVE.value,
        )
    )
    await session.flush()

    logger.info(
        f"Reserved stock for order {order_id}: "
        + ", ".join(f"{line.product_id} x{line.quantity}" for line in merged)
    )
    return True


async def _resolve(session: AsyncSession, order_id: str, status: ReservationStatus) -> Optional[List[ReservationLine]]:
    result = await session.execute(
        update(StockReservation)
        .execution_options(synchronize_session=False)
        .where(
            StockReservation.order_id == order_id,
            StockReservation.status == ReservationStatus.ACTIVE.value,
        )
        .values(status=status.value, resolved_at=datetime.utcnow())
    )
    if result.rowcount != 1:
        return None

    items = await session.execute(
        select(StockReservation.items).where(StockReservation.order_id == order_id)
    )
    return decode_items(items.scalar_one())


async def release(session: AsyncSession, order_id: str) -> List[str]:
    """
    Give an order's held stock back. Only ``reserved_stock`` moves.

    Returns the affected product ids; empty when there was nothing active to release.
    """
    lines = await _resolve(session, order_id, ReservationStatus.RELEASED)
    if lines is None:
        logger.debug(f"No active reservation to release for order {order_id}")
        return []

    for line in lines:
        await session.execute(
            update(Product)
            .execution_options(synchronize_session=False)
            .where(Product.id == line.product_id)
            .values(reserved_stock=Product.reserved_stock - line.quantity)
        )

    logger.info(f"Released reservation for order {order_id}")
    return [line.product_id for line in lines]


async def commit(session: AsyncSession, order_id: str) -> List[str]:
    """
    Turn an order's hold into a sale: ``stock`` and ``reserved_stock`` both drop.

    Returns the affected product ids; empty when there was nothing active to commit.
    """
    lines = await _resolve(session, order_id, ReservationStatus.COMMITTED)
    if lines is None:
        logger.debug(f"No active reservation to commit for order {order_id}")
        return []

    for line in lines:
        await session.execute(
            update(Product)
            .execution_options(synchronize_session=False)
            .where(Product.id == line.product_id)
            .values(
                stock=Product.stock - line.quantity,
                reserved_stock=Product.reserved_stock - line.quantity,
            )
        )

    logger.info(f"Committed reservation for order {order_id}")
    return [line.product_id for line in lines]
