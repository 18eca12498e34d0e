"""
Order reaper - cancels orders that will never complete on their own.

Phase 1 (abandoned): pending / payment_failed orders older than the abandonment
deadline are cancelled with reason "abandoned".
Phase 2 (no-show): ready orders not picked up within the pickup deadline are
cancelled with reason "no_show" and no_show=True.

Every cancellation goes through the order lock with a re-read, so a payment
landing mid-sweep wins or loses cleanly. No cursor is kept: an interrupted
sweep is simply redone by the next tick.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, func

from src.config import get_settings
from src.models.order import Order
from src.services.audit import REAPER_ACTOR
from src.services.order_ledger import apply_transition, locked_order
from src.services.order_state import (
    AWAITING_PAYMENT_STATUSES,
    OrderStatus,
    compute_reaper_transition,
    view_of,
)
from src.utils.alerting import AlertType, send_alert
from src.utils.timezone import utc_now

logger = logging.getLogger(__name__)

WORKER_NAME = "order_reaper"


async def run_order_reaper(stop_event: Optional[asyncio.Event] = None) -> None:
    """Main reaper loop. Runs until stop_event is set."""
    from src.workers.scheduler import run_periodic

    settings = get_settings()
    await run_periodic(WORKER_NAME, reap_once, settings.reaper_interval_seconds, stop_event)


def abandonment_cutoff(now: datetime) -> datetime:
    return now - timedelta(minutes=get_settings().abandonment_deadline_minutes)


def pickup_cutoff(now: datetime) -> datetime:
    return now - timedelta(hours=get_settings().pickup_deadline_hours)


async def reap_once(now: Optional[datetime] = None) -> dict:
    """One sweep over both phases, draining each in batches. Returns counts."""
    now = now or utc_now()
    stats = {"abandoned": 0, "no_show": 0, "skipped": 0, "errors": 0}

    for no_show in (False, True):
        await _reap_phase(now, no_show, stats)

    reaped = stats["abandoned"] + stats["no_show"]
    if reaped or stats["errors"]:
        logger.info(
            "Reaper sweep: %d abandoned, %d no-show, %d skipped, %d errors",
            stats["abandoned"], stats["no_show"], stats["skipped"], stats["errors"],
        )
    if reaped:
        await send_alert(
            AlertType.ABANDONED_ORDERS_REAPED,
            f"Reaper cancelled {stats['abandoned']} abandoned and {stats['no_show']} no-show order(s)",
            severity="warning",
        )
    return stats


def _overdue_query(now: datetime, no_show: bool):
    if no_show:
        return select(Order.id).where(
            Order.status == OrderStatus.READY.value,
            Order.ready_at.is_not(None),
            Order.ready_at <= pickup_cutoff(now),
        ).order_by(Order.ready_at, Order.id)
    return select(Order.id).where(
        Order.status.in_(sorted(AWAITING_PAYMENT_STATUSES)),
        Order.created_at <= abandonment_cutoff(now),
    ).order_by(Order.created_at, Order.id)


async def _reap_phase(now: datetime, no_show: bool, stats: dict) -> None:
    """Re-query until a short batch. Orders already tried this sweep are not retried."""
    from src.database import async_session_factory

    batch_size = max(get_settings().reaper_batch_size, 1)
    attempted: set = set()

    while True:
        query = _overdue_query(now, no_show)
        if attempted:
            query = query.where(Order.id.not_in(attempted))
        async with async_session_factory() as db:
            order_ids = (await db.execute(query.limit(batch_size))).scalars().all()

        for order_id in order_ids:
            attempted.add(order_id)
            await _reap_order(order_id, now, no_show=no_show, stats=stats)

        if len(order_ids) < batch_size:
            return


async def _reap_order(order_id, now: datetime, no_show: bool, stats: dict) -> None:
    """Cancel one order under its lock. Errors are counted and logged, never raised."""
    from src.database import async_session_factory

    try:
        async with async_session_factory() as db:
            async with locked_order(db, order_id) as order:
                transition = compute_reaper_transition(
                    view_of(order),
                    now=now,
                    reason="no_show" if no_show else "abandoned",
                    no_show=no_show,
                )
                entry = apply_transition(db, order, transition, REAPER_ACTOR)
                await db.commit()
    except Exception as e:
        stats["errors"] += 1
        logger.error(
            "Reaper failed for order %s: %s",
            str(order_id)[:8], str(e),
            exc_info=True,
            extra={"order_id": str(order_id)},
        )
        return

    if entry is None:
        stats["skipped"] += 1
        return
    stats["no_show" if no_show else "abandoned"] += 1
    logger.info(
        "Order %s cancelled by reaper (%s)",
        order.order_number, "no_show" if no_show else "abandoned",
        extra={"order_id": str(order_id), "performed_by": REAPER_ACTOR},
    )


async def count_overdue(db, now: Optional[datetime] = None) -> dict:
    """Orders currently past a reaper deadline (awaiting the next sweep)."""
    now = now or utc_now()
    abandoned = await db.execute(
        select(func.count()).select_from(Order).where(
            Order.status.in_(sorted(AWAITING_PAYMENT_STATUSES)),
            Order.created_at <= abandonment_cutoff(now),
        )
    )
    no_show = await db.execute(
        select(func.count()).select_from(Order).where(
            Order.status == OrderStatus.READY.value,
            Order.ready_at.is_not(None),
            Order.ready_at <= pickup_cutoff(now),
        )
    )
    return {
        "abandoned_overdue": abandoned.scalar_one() or 0,
        "no_show_overdue": no_show.scalar_one() or 0,
    }
