"""
Webhook event store - durable, deduplicated log of gateway notifications.

Insert is INSERT .. ON CONFLICT DO NOTHING on provider_event_id, so a
redelivery is rejected by the database itself and never overwrites the
stored row.

Retry bookkeeping lives on the row (attempt_count, max_attempts,
next_attempt_at) so a restart resumes exactly where the last attempt left off.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.webhook_event import WebhookEvent
from src.utils.timezone import utc_now, ensure_utc

logger = logging.getLogger(__name__)

# Default backoff schedule (minutes), overridden by settings
RETRY_DELAYS_MINUTES = [1, 5, 15, 60, 240]
MAX_ATTEMPTS = 5


class NonRetryableEventError(Exception):
    """The event can never succeed as stored (unknown type, malformed payload)."""
    pass


class EventNotReplayableError(Exception):
    """Replay requested for an event that is not parked."""
    pass


def compute_next_attempt_at(
    attempt_count: int,
    max_attempts: int,
    delays_minutes: Sequence[int] = RETRY_DELAYS_MINUTES,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """When the next attempt is due after `attempt_count` failures, or None once exhausted."""
    if attempt_count >= max_attempts:
        return None
    delays = list(delays_minutes) or RETRY_DELAYS_MINUTES
    delay_idx = min(max(attempt_count - 1, 0), len(delays) - 1)
    return (now or utc_now()) + timedelta(minutes=delays[delay_idx])


def _insert_for(db: AsyncSession):
    if db.get_bind().dialect.name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        from sqlalchemy.dialects.postgresql import insert
    return insert


async def record_event(
    db: AsyncSession,
    provider_event_id: str,
    event_type: str,
    payload: dict,
    livemode: bool = False,
    provider: str = "paymongo",
    max_attempts: int = MAX_ATTEMPTS,
    correlation_id: Optional[str] = None,
) -> tuple[WebhookEvent, bool]:
    """
    Insert a pending event. Returns (event, created).
    created is False for a duplicate delivery; the returned row is the existing one, untouched.
    """
    insert = _insert_for(db)
    stmt = (
        insert(WebhookEvent)
        .values(
            id=uuid.uuid4(),
            provider=provider,
            provider_event_id=provider_event_id,
            event_type=event_type,
            livemode=livemode,
            payload=payload,
            status="pending",
            attempt_count=0,
            max_attempts=max_attempts,
            received_at=utc_now(),
            correlation_id=correlation_id,
        )
        .on_conflict_do_nothing(index_elements=["provider_event_id"])
        .returning(WebhookEvent.id)
    )
    result = await db.execute(stmt)
    inserted_id = result.scalar_one_or_none()

    if inserted_id is None:
        existing = await get_by_provider_event_id(db, provider_event_id)
        logger.info(
            "Duplicate delivery ignored: %s (existing status=%s)",
            provider_event_id, existing.status if existing else "unknown",
            extra={"provider_event_id": provider_event_id, "event_type": event_type},
        )
        return existing, False

    event = await db.get(WebhookEvent, inserted_id)
    logger.info(
        "Webhook event recorded: %s type=%s id=%s",
        provider_event_id, event_type, str(inserted_id)[:8],
        extra={"provider_event_id": provider_event_id, "event_type": event_type},
    )
    return event, True


async def get_by_provider_event_id(db: AsyncSession, provider_event_id: str) -> Optional[WebhookEvent]:
    result = await db.execute(
        select(WebhookEvent).where(WebhookEvent.provider_event_id == provider_event_id)
    )
    return result.scalar_one_or_none()


async def requeue_due_failures(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Move failed events whose backoff has elapsed back to pending. Caller commits."""
    now = now or utc_now()
    result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.status == "failed",
            WebhookEvent.next_attempt_at.is_not(None),
            WebhookEvent.next_attempt_at <= now,
            WebhookEvent.attempt_count < WebhookEvent.max_attempts,
        )
        .values(status="pending", next_attempt_at=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def select_pending(db: AsyncSession, limit: int) -> list[tuple[uuid.UUID, Optional[str]]]:
    """(event id, order correlation key) for the oldest pending events."""
    result = await db.execute(
        select(WebhookEvent.id, WebhookEvent.payload)
        .where(WebhookEvent.status == "pending")
        .order_by(WebhookEvent.received_at, WebhookEvent.id)
        .limit(limit)
    )
    from src.schemas.webhook_payloads import correlation_key

    pending = []
    for row in result.all():
        # An unreadable payload runs in its own group; processing parks it
        try:
            key = correlation_key(row.payload)
        except Exception as e:
            logger.warning(
                "Webhook event %s payload not correlatable: %s",
                str(row.id)[:8], str(e),
                extra={"event_id": str(row.id)},
            )
            key = None
        pending.append((row.id, key))
    return pending


async def claim_event(db: AsyncSession, event_id) -> Optional[WebhookEvent]:
    """
    Lock a pending event row for this transaction.
    Returns None if another dispatcher holds it or it is no longer pending.
    """
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.id == event_id, WebhookEvent.status == "pending")
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def mark_processed(event: WebhookEvent, now: Optional[datetime] = None) -> None:
    event.status = "processed"
    event.processed_at = now or utc_now()
    event.error_message = None
    event.next_attempt_at = None


async def record_failure(
    db: AsyncSession,
    event_id,
    error: str,
    retryable: bool = True,
    delays_minutes: Sequence[int] = RETRY_DELAYS_MINUTES,
) -> Optional[WebhookEvent]:
    """
    Mark an event failed, bump its attempt counter, and schedule the next attempt or park it.
    Caller commits. Returns None if the event is no longer pending.
    """
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    event = result.scalar_one_or_none()
    if event is None or event.status != "pending":
        return None

    event.attempt_count = (event.attempt_count or 0) + 1
    event.status = "failed"
    event.error_message = error[:2000]
    event.next_attempt_at = (
        compute_next_attempt_at(event.attempt_count, event.max_attempts, delays_minutes)
        if retryable else None
    )

    if event.next_attempt_at is None:
        logger.error(
            "Webhook event %s parked after %d/%d attempts: %s",
            event.provider_event_id, event.attempt_count, event.max_attempts, error[:200],
            extra={"provider_event_id": event.provider_event_id, "attempt": event.attempt_count},
        )
    else:
        logger.warning(
            "Webhook event %s failed (attempt %d/%d), retry at %s: %s",
            event.provider_event_id, event.attempt_count, event.max_attempts,
            event.next_attempt_at.isoformat(), error[:200],
            extra={"provider_event_id": event.provider_event_id, "attempt": event.attempt_count},
        )
    return event


async def replay_event(db: AsyncSession, event_id) -> WebhookEvent:
    """Give a parked event exactly one more attempt. Caller commits."""
    result = await db.execute(
        select(WebhookEvent).where(WebhookEvent.id == event_id).with_for_update()
    )
    event = result.scalar_one_or_none()
    if event is None:
        raise LookupError(f"Webhook event {event_id} not found")
    if not event.is_parked:
        raise EventNotReplayableError(
            f"Webhook event {event.provider_event_id} is {event.status}"
            + (" with a retry scheduled" if event.status == "failed" else "")
        )

    event.status = "pending"
    event.max_attempts = event.attempt_count + 1
    event.next_attempt_at = None
    logger.info(
        "Webhook event %s replayed (attempt %d)",
        event.provider_event_id, event.max_attempts,
        extra={"provider_event_id": event.provider_event_id},
    )
    return event


async def list_events(
    db: AsyncSession,
    status: Optional[str] = None,
    parked_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[WebhookEvent]:
    query = select(WebhookEvent)
    if parked_only:
        query = query.where(WebhookEvent.status == "failed", WebhookEvent.next_attempt_at.is_(None))
    elif status:
        query = query.where(WebhookEvent.status == status)
    result = await db.execute(
        query.order_by(WebhookEvent.received_at.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


async def queue_stats(db: AsyncSession) -> dict:
    """Counts by status, parked count and age of the oldest pending event."""
    result = await db.execute(
        select(WebhookEvent.status, func.count()).group_by(WebhookEvent.status)
    )
    counts = {status: count for status, count in result.all()}

    parked_result = await db.execute(
        select(func.count()).select_from(WebhookEvent).where(
            WebhookEvent.status == "failed", WebhookEvent.next_attempt_at.is_(None)
        )
    )
    oldest_result = await db.execute(
        select(func.min(WebhookEvent.received_at)).where(WebhookEvent.status == "pending")
    )
    oldest = ensure_utc(oldest_result.scalar_one_or_none())

    return {
        "pending": counts.get("pending", 0),
        "processed": counts.get("processed", 0),
        "failed": counts.get("failed", 0),
        "parked": parked_result.scalar_one() or 0,
        "oldest_pending_age_seconds": (
            int((utc_now() - oldest).total_seconds()) if oldest else None
        ),
    }
