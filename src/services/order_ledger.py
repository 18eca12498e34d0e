"""
Order ledger - the only write path for orders.

Every writer (dispatcher, reaper, operator endpoints) follows the same shape:

    async with locked_order(db, order_id) as order:
        transition = compute_...(view_of(order), ...)
        apply_transition(db, order, transition, performed_by)
        await db.commit()

locked_order() takes the Redis order lock and re-reads the row FOR UPDATE,
so the decision is always made on the current committed state.
"""
import hmac
import logging
import secrets
import string
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.audit_entry import AuditEntry
from src.models.order import Order
from src.services.audit import record_audit, snapshot
from src.services.order_state import (
    AuditAction,
    InvalidTransitionError,
    OrderStatus,
    Transition,
    TransitionOutcome,
    compute_manual_transition,
    is_valid_transition,
    view_of,
)
from src.utils.locks import order_lock
from src.utils.timezone import utc_now

logger = logging.getLogger(__name__)

CORRELATION_FIELDS = ("checkout_id", "payment_intent_id", "gateway_payment_id")
ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


class OrderNotFoundError(Exception):
    """No order matches the given id or gateway correlation id."""
    pass


class ArrivalCodeMismatchError(Exception):
    """Pickup attempted with an arrival code that does not match the order."""
    pass


def generate_order_number() -> str:
    return "ORD-" + "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))


def generate_arrival_code() -> str:
    return "".join(secrets.choice(string.digits) for _ in range(6))


async def create_order(
    db: AsyncSession,
    total: Decimal,
    checkout_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    performed_by: Optional[str] = None,
) -> Order:
    """Create a pending order with its `created` audit entry. Caller commits."""
    if bool(checkout_id) == bool(payment_intent_id):
        raise ValueError("Exactly one of checkout_id or payment_intent_id is required")
    if total is None or Decimal(total) < 0:
        raise ValueError("Order total must be a non-negative amount")

    order = Order(
        order_number=generate_order_number(),
        status=OrderStatus.PENDING.value,
        total=Decimal(total),
        checkout_id=checkout_id,
        payment_intent_id=payment_intent_id,
        arrival_code=generate_arrival_code(),
        no_show=False,
        refund_required=False,
        created_at=utc_now(),
    )
    db.add(order)
    await db.flush()

    record_audit(
        db,
        order.id,
        AuditAction.CREATED.value,
        performed_by,
        new_value=snapshot(order, ("status", "total", "checkout_id", "payment_intent_id")),
        notes=f"Order {order.order_number} created",
    )
    logger.info(
        "Order created: %s id=%s total=%s",
        order.order_number, str(order.id)[:8], order.total,
        extra={"order_id": str(order.id)},
    )
    return order


async def find_order_by_correlation(
    db: AsyncSession,
    field: str,
    value: str,
) -> Optional[Order]:
    if field not in CORRELATION_FIELDS:
        raise ValueError(f"Unknown correlation field: {field}")
    column = getattr(Order, field)
    result = await db.execute(
        select(Order.id).where(column == value).order_by(Order.created_at).limit(1)
    )
    order_id = result.scalar_one_or_none()
    if order_id is None:
        return None
    return await db.get(Order, order_id)


@asynccontextmanager
async def locked_order(db: AsyncSession, order_id):
    """
    Hold the per-order lock and yield a freshly read, row-locked Order.
    The caller must commit (or roll back) before leaving the block.
    """
    from src.config import get_settings
    settings = get_settings()

    async with order_lock(
        order_id,
        ttl=settings.order_lock_ttl_seconds,
        wait=settings.order_lock_wait_seconds,
    ):
        result = await db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        yield order


def apply_transition(
    db: AsyncSession,
    order: Order,
    transition: Transition,
    performed_by: Optional[str],
):
    """
    Write a computed transition onto the order and stage its audit entry.
    Returns the AuditEntry, or None for a no-op.
    """
    if transition.outcome == TransitionOutcome.NOOP:
        logger.info(
            "No-op for order %s: %s",
            str(order.id)[:8], transition.notes,
            extra={"order_id": str(order.id), "performed_by": performed_by},
        )
        return None

    changes = dict(transition.changes)
    target = changes.get("status")
    if target and not is_valid_transition(order.status, target):
        raise InvalidTransitionError(order.status, target)
    new_payment_id = changes.get("gateway_payment_id")
    if order.gateway_payment_id and new_payment_id and new_payment_id != order.gateway_payment_id:
        raise ValueError(f"gateway_payment_id already recorded for order {str(order.id)[:8]}")

    previous = snapshot(order, changes.keys())
    if transition.outcome == TransitionOutcome.ANOMALY:
        previous.setdefault("status", order.status)

    for name, value in changes.items():
        setattr(order, name, value)
    order.updated_at = utc_now()

    return record_audit(
        db,
        order.id,
        transition.action,
        performed_by,
        previous_value=previous,
        new_value=changes,
        notes=transition.notes,
        is_anomaly=transition.outcome == TransitionOutcome.ANOMALY,
    )


async def transition_order(
    db: AsyncSession,
    order_id,
    target: str,
    performed_by: str,
    reason: Optional[str] = None,
    no_show: bool = False,
    refund_amount: Optional[Decimal] = None,
    arrival_code: Optional[str] = None,
) -> tuple[Order, Optional[AuditEntry]]:
    """
    Operator-driven transition under the order lock. Commits on success.
    Raises InvalidTransitionError, ArrivalCodeMismatchError, OrderNotFoundError or LockTimeoutError.
    """
    async with locked_order(db, order_id) as order:
        if target == OrderStatus.PICKED_UP.value and order.status != OrderStatus.PICKED_UP.value:
            if not arrival_code or not hmac.compare_digest(
                str(arrival_code).strip().encode("utf-8"), order.arrival_code.encode("utf-8")
            ):
                raise ArrivalCodeMismatchError(f"Arrival code does not match order {order.order_number}")

        transition = compute_manual_transition(
            view_of(order),
            target,
            now=utc_now(),
            reason=reason,
            no_show=no_show,
            refund_amount=refund_amount,
        )
        entry = apply_transition(db, order, transition, performed_by)
        await db.commit()

    if entry is not None:
        logger.info(
            "Order %s moved to %s by %s",
            order.order_number, target, performed_by,
            extra={"order_id": str(order.id), "performed_by": performed_by},
        )
    return order, entry


async def get_order(db: AsyncSession, order_id) -> Order:
    order = await db.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")
    return order
