"""
Webhook dispatcher - turns pending gateway events into order transitions.

Each tick:
1. Re-queue failed events whose backoff has elapsed
2. Pick the oldest pending events
3. Group by order correlation id; groups run concurrently, each group in arrival order
4. Per event, one transaction: claim row (SKIP LOCKED) → resolve order →
   order lock + re-read → pure transition → order + audit + event status → commit
5. On error: roll back, then record the failure (retry with backoff or park)
"""
import asyncio
import logging
from collections import Counter
from typing import Optional

from src.config import get_settings
from src.schemas.webhook_payloads import (
    MalformedPayloadError,
    extract_correlation,
    extract_details,
)
from src.services.audit import webhook_actor
from src.services.event_store import (
    NonRetryableEventError,
    claim_event,
    mark_processed,
    record_failure,
    requeue_due_failures,
    select_pending,
)
from src.services.order_ledger import (
    OrderNotFoundError,
    apply_transition,
    find_order_by_correlation,
    locked_order,
)
from src.services.order_state import (
    EventKind,
    TransitionOutcome,
    classify_event,
    compute_event_transition,
    view_of,
)
from src.utils.alerting import AlertType, send_alert
from src.utils.logging import set_correlation_id
from src.utils.timezone import utc_now

logger = logging.getLogger(__name__)

WORKER_NAME = "webhook_dispatcher"


async def run_webhook_dispatcher(stop_event: Optional[asyncio.Event] = None) -> None:
    """Main dispatcher loop. Runs until stop_event is set."""
    from src.workers.scheduler import run_periodic

    settings = get_settings()
    await run_periodic(
        WORKER_NAME,
        dispatch_once,
        settings.dispatcher_poll_interval_seconds,
        stop_event,
    )


async def dispatch_once() -> Counter:
    """Run one dispatcher tick. Returns outcome counts."""
    from src.database import async_session_factory

    settings = get_settings()
    outcomes: Counter = Counter()

    async with async_session_factory() as db:
        requeued = await requeue_due_failures(db)
        pending = await select_pending(db, settings.dispatcher_batch_size)
        await db.commit()

    if requeued:
        logger.info("Re-queued %d failed webhook events", requeued)
    if not pending:
        return outcomes

    # dicts keep insertion order, so each group stays in arrival order
    groups: dict[str, list] = {}
    for event_id, key in pending:
        groups.setdefault(key or f"event:{event_id}", []).append(event_id)

    semaphore = asyncio.Semaphore(max(settings.dispatcher_concurrency, 1))

    async def _run_group(event_ids: list) -> None:
        async with semaphore:
            for event_id in event_ids:
                outcomes[await process_event(event_id)] += 1

    results = await asyncio.gather(
        *(_run_group(ids) for ids in groups.values()),
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, Exception):
            logger.error("Dispatcher group failed: %s", str(result), exc_info=result)
            outcomes["error"] += 1

    logger.info(
        "Dispatcher tick: %d events in %d groups %s",
        len(pending), len(groups), dict(outcomes),
    )
    return outcomes


async def process_event(event_id) -> str:
    """
    Process one event end to end.
    Returns processed | noop | anomaly | retry | parked | skipped.
    """
    from src.database import async_session_factory

    settings = get_settings()

    try:
        async with async_session_factory() as db:
            event = await claim_event(db, event_id)
            if event is None:
                return "skipped"

            if event.correlation_id:
                set_correlation_id(event.correlation_id)
            provider_event_id = event.provider_event_id
            event_type = event.event_type

            transition, order = await _apply_event(db, event, settings.payment_failure_policy)
    except NonRetryableEventError as e:
        return await _record_failure(event_id, str(e), retryable=False)
    except Exception as e:
        logger.warning(
            "Webhook event %s processing failed: %s",
            str(event_id)[:8], str(e),
            extra={"event_id": str(event_id)},
        )
        return await _record_failure(event_id, f"{type(e).__name__}: {e}", retryable=True)

    if transition.outcome == TransitionOutcome.ANOMALY:
        await send_alert(
            AlertType.PAYMENT_ANOMALY,
            f"{event_type} for order {order.order_number} while {order.status}: {transition.notes}",
            extra={"order_id": str(order.id), "provider_event_id": provider_event_id},
            dedup_key=str(order.id),
        )
        return "anomaly"
    if transition.outcome == TransitionOutcome.NOOP:
        return "noop"

    logger.info(
        "Webhook event %s applied: order %s → %s",
        provider_event_id, order.order_number, transition.target_status or order.status,
        extra={"provider_event_id": provider_event_id, "order_id": str(order.id), "event_type": event_type},
    )
    return "processed"


async def _apply_event(db, event, failure_policy: str):
    """Resolve, lock, decide, write, commit. Raises on any failure (caller rolls back)."""
    kind = classify_event(event.event_type)
    if kind == EventKind.UNKNOWN:
        raise NonRetryableEventError(f"Unhandled event type: {event.event_type}")

    try:
        correlation = extract_correlation(event.payload)
        details = extract_details(event.payload)
    except (MalformedPayloadError, AttributeError, TypeError) as e:
        raise NonRetryableEventError(f"Malformed payload: {e}") from e
    if correlation is None:
        raise NonRetryableEventError("Payload carries no checkout, payment intent or payment id")

    field, value = correlation
    order = await find_order_by_correlation(db, field, value)
    if order is None:
        raise OrderNotFoundError(f"No order with {field}={value}")

    async with locked_order(db, order.id) as locked:
        transition = compute_event_transition(
            view_of(locked),
            kind,
            details,
            now=utc_now(),
            failure_policy=failure_policy,
        )
        apply_transition(db, locked, transition, webhook_actor(event.provider_event_id))
        mark_processed(event)
        await db.commit()

    return transition, locked


async def _record_failure(event_id, error: str, retryable: bool) -> str:
    """Fresh transaction: bump attempts, schedule or park, alert when parked."""
    from src.database import async_session_factory

    settings = get_settings()
    async with async_session_factory() as db:
        event = await record_failure(
            db, event_id, error,
            retryable=retryable,
            delays_minutes=settings.webhook_retry_delays_minutes,
        )
        await db.commit()

    if event is None:
        return "skipped"
    if event.is_parked:
        await send_alert(
            AlertType.WEBHOOK_EVENT_PARKED,
            f"Webhook event {event.provider_event_id} ({event.event_type}) parked "
            f"after {event.attempt_count} attempt(s): {error[:200]}",
            extra={"event_id": str(event.id)},
            dedup_key=event.provider_event_id,
        )
        return "parked"
    return "retry"
