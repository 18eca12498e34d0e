"""
Operator endpoints - parked event review and replay, order inspection and
manual lifecycle transitions, pipeline stats.
All endpoints require an operator JWT Bearer token; its `sub` is recorded as performed_by.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.models.order import Order
from src.models.webhook_event import WebhookEvent
from src.schemas.api_responses import (
    AuditEntryResponse,
    OrderCreateRequest,
    OrderCreatedResponse,
    OrderDetailResponse,
    OrderTransitionRequest,
    OrderTransitionResponse,
    PipelineStatsResponse,
    WebhookEventDetail,
    WebhookEventListResponse,
    WebhookEventSummary,
)
from src.services.audit import list_anomalies, list_entries
from src.services.event_store import (
    EventNotReplayableError,
    list_events,
    queue_stats,
    replay_event,
)
from src.services.order_ledger import (
    ArrivalCodeMismatchError,
    OrderNotFoundError,
    create_order,
    get_order,
    transition_order,
)
from src.services.order_state import InvalidTransitionError
from src.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/admin", tags=["operator"])
bearer_scheme = HTTPBearer()

EVENT_STATUSES = ("pending", "processed", "failed")


# === AUTH DEPENDENCIES ===

async def get_current_operator(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> str:
    """Dependency to verify the operator JWT and return the operator id."""
    import jwt as pyjwt
    from src.config import get_settings
    settings = get_settings()

    if not settings.operator_jwt_secret:
        logger.error("OPERATOR_JWT_SECRET not set - rejecting operator request")
        raise HTTPException(status_code=401, detail="Operator authentication not configured")

    try:
        payload = pyjwt.decode(
            credentials.credentials,
            settings.operator_jwt_secret,
            algorithms=["HS256"],
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    operator_id = payload.get("sub")
    if not operator_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return str(operator_id)


# === SERIALIZERS ===

def _event_summary(event: WebhookEvent) -> WebhookEventSummary:
    return WebhookEventSummary(
        id=str(event.id),
        provider=event.provider,
        provider_event_id=event.provider_event_id,
        event_type=event.event_type,
        livemode=bool(event.livemode),
        status=event.status,
        parked=event.is_parked,
        attempt_count=event.attempt_count or 0,
        max_attempts=event.max_attempts or 0,
        next_attempt_at=event.next_attempt_at,
        error_message=event.error_message,
        received_at=event.received_at,
        processed_at=event.processed_at,
    )


def _audit_response(entry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=str(entry.id),
        action=entry.action,
        previous_value=entry.previous_value,
        new_value=entry.new_value,
        performed_by=entry.performed_by,
        notes=entry.notes,
        is_anomaly=bool(entry.is_anomaly),
        created_at=entry.created_at,
    )


# === WEBHOOK EVENTS ===

@router.get("/events", response_model=WebhookEventListResponse)
async def get_events(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_current_operator),
):
    """List webhook events, newest first, optionally filtered by status."""
    if status and status not in EVENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(EVENT_STATUSES)}")
    events = await list_events(db, status=status, limit=limit, offset=offset)
    return WebhookEventListResponse(events=[_event_summary(e) for e in events], count=len(events))


@router.get("/events/parked", response_model=WebhookEventListResponse)
async def get_parked_events(
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_current_operator),
):
    """Failed events past the retry ceiling, waiting for an operator."""
    events = await list_events(db, parked_only=True, limit=limit)
    return WebhookEventListResponse(events=[_event_summary(e) for e in events], count=len(events))


@router.get("/events/{event_id}", response_model=WebhookEventDetail)
async def get_event(
    event_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_current_operator),
):
    event = await db.get(WebhookEvent, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    return WebhookEventDetail(**_event_summary(event).model_dump(), payload=event.payload or {})


@router.post("/events/{event_id}/replay", response_model=WebhookEventSummary)
async def replay_parked_event(
    event_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_current_operator),
):
    """Reset a parked event to pending for exactly one more dispatcher attempt."""
    try:
        event = await replay_event(db, event_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    except EventNotReplayableError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await db.commit()
    logger.info(
        "Operator %s replayed webhook event %s",
        operator, event.provider_event_id,
        extra={"performed_by": operator, "provider_event_id": event.provider_event_id},
    )
    return _event_summary(event)


# === ORDERS ===

@router.post("/orders", response_model=OrderCreatedResponse, status_code=201)
async def post_order(
    body: OrderCreateRequest,
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_current_operator),
):
    """Create a pending order bound to a checkout session or payment intent."""
    try:
        order = await create_order(
            db,
            total=body.total,
            checkout_id=body.checkout_id,
            payment_intent_id=body.payment_intent_id,
            performed_by=operator,
        )
        await db.commit()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OrderCreatedResponse(
        id=str(order.id),
        order_number=order.order_number,
        status=order.status,
        arrival_code=order.arrival_code,
    )


@router.get("/orders/{order_id}", response_model=OrderDetailResponse)
async def get_order_detail(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_current_operator),
):
    """Order with its full audit trail, oldest entry first."""
    try:
        order = await get_order(db, order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")

    entries = await list_entries(db, order.id)
    return OrderDetailResponse(
        id=str(order.id),
        order_number=order.order_number,
        status=order.status,
        total=order.total,
        refund_amount=order.refund_amount,
        checkout_id=order.checkout_id,
        payment_intent_id=order.payment_intent_id,
        gateway_payment_id=order.gateway_payment_id,
        confirmed_at=order.confirmed_at,
        preparation_started_at=order.preparation_started_at,
        ready_at=order.ready_at,
        picked_up_at=order.picked_up_at,
        cancelled_at=order.cancelled_at,
        refunded_at=order.refunded_at,
        cancellation_reason=order.cancellation_reason,
        no_show=bool(order.no_show),
        refund_required=bool(order.refund_required),
        created_at=order.created_at,
        updated_at=order.updated_at,
        audit_trail=[_audit_response(e) for e in entries],
    )


@router.post("/orders/{order_id}/transition", response_model=OrderTransitionResponse)
async def post_order_transition(
    order_id: uuid.UUID,
    body: OrderTransitionRequest,
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_current_operator),
):
    """Manual lifecycle transition under the order lock, audited as the operator."""
    try:
        order, entry = await transition_order(
            db,
            order_id,
            body.status,
            performed_by=operator,
            reason=body.reason,
            no_show=body.no_show,
            refund_amount=body.refund_amount,
            arrival_code=body.arrival_code,
        )
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ArrivalCodeMismatchError:
        raise HTTPException(status_code=403, detail="Arrival code does not match")
    except LockTimeoutError:
        raise HTTPException(status_code=409, detail="Order is being updated, retry shortly")

    return OrderTransitionResponse(
        id=str(order.id),
        order_number=order.order_number,
        status=order.status,
        changed=entry is not None,
    )


@router.get("/anomalies", response_model=list[AuditEntryResponse])
async def get_anomalies(
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_current_operator),
):
    """Audit entries flagged as anomalies (payment/refund conflicting with order state)."""
    return [_audit_response(e) for e in await list_anomalies(db, limit=limit)]


# === STATS ===

@router.get("/stats", response_model=PipelineStatsResponse)
async def get_pipeline_stats(
    db: AsyncSession = Depends(get_db),
    operator: str = Depends(get_current_operator),
):
    """Queue depth, order status counts, reaper backlog and open refunds."""
    from src.workers.order_reaper import count_overdue

    status_result = await db.execute(
        select(Order.status, func.count()).group_by(Order.status)
    )
    refund_result = await db.execute(
        select(func.count()).select_from(Order).where(Order.refund_required.is_(True))
    )
    return PipelineStatsResponse(
        events=await queue_stats(db),
        orders_by_status={status: count for status, count in status_result.all()},
        reaper=await count_overdue(db),
        refund_required=refund_result.scalar_one() or 0,
        timestamp=datetime.now(timezone.utc),
    )
