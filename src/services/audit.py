"""
Audit trail - append-only log of every order mutation.

record_audit() only adds the row to the caller's session; it never commits.
The entry therefore lands in the same transaction as the order update it
describes, or not at all.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.audit_entry import AuditEntry

logger = logging.getLogger(__name__)

REAPER_ACTOR = "reaper"
WEBHOOK_ACTOR_PREFIX = "webhook:"


def webhook_actor(provider_event_id: str) -> str:
    return f"{WEBHOOK_ACTOR_PREFIX}{provider_event_id}"


def jsonable(value):
    """Convert a column value into something JSONB accepts."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def snapshot(obj, fields) -> dict:
    """Current values of `fields` on obj, JSON-safe."""
    return {name: jsonable(getattr(obj, name)) for name in fields}


def record_audit(
    db: AsyncSession,
    order_id,
    action: str,
    performed_by: Optional[str],
    previous_value: Optional[dict] = None,
    new_value: Optional[dict] = None,
    notes: Optional[str] = None,
    is_anomaly: bool = False,
) -> AuditEntry:
    """Stage an audit entry on the session. The caller owns the transaction."""
    entry = AuditEntry(
        order_id=order_id,
        action=action,
        previous_value={k: jsonable(v) for k, v in (previous_value or {}).items()} or None,
        new_value={k: jsonable(v) for k, v in (new_value or {}).items()} or None,
        performed_by=performed_by,
        notes=notes,
        is_anomaly=is_anomaly,
    )
    db.add(entry)

    log = logger.warning if is_anomaly else logger.info
    log(
        "Audit %s order=%s by=%s%s",
        action, str(order_id)[:8], performed_by or "-",
        " (anomaly)" if is_anomaly else "",
        extra={"order_id": str(order_id), "performed_by": performed_by},
    )
    return entry


async def list_entries(db: AsyncSession, order_id) -> list[AuditEntry]:
    result = await db.execute(
        select(AuditEntry)
        .where(AuditEntry.order_id == order_id)
        .order_by(AuditEntry.created_at, AuditEntry.id)
    )
    return list(result.scalars().all())


async def status_history(db: AsyncSession, order_id) -> list[str]:
    """Sequence of status values recorded in the trail, oldest first."""
    history = []
    for entry in await list_entries(db, order_id):
        status = (entry.new_value or {}).get("status")
        if status and (not history or history[-1] != status):
            history.append(status)
    return history


async def list_anomalies(db: AsyncSession, limit: int = 50) -> list[AuditEntry]:
    result = await db.execute(
        select(AuditEntry)
        .where(AuditEntry.is_anomaly.is_(True))
        .order_by(AuditEntry.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
