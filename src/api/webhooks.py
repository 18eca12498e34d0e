"""
Gateway webhook intake.

Security layers (in order):
1. Signature validation (constant-time HMAC) - 401, nothing stored
2. Envelope parsing - 400, nothing stored
3. Idempotent insert keyed by provider_event_id - duplicates acknowledged with 200

Processing is never done here; the dispatcher picks the event up.
"""
import json
import logging

from fastapi import APIRouter, Request, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import get_db
from src.schemas.api_responses import WebhookAckResponse
from src.schemas.webhook_payloads import MalformedPayloadError, parse_envelope
from src.services.event_store import record_event
from src.utils.alerting import AlertType, send_alert
from src.utils.logging import get_correlation_id
from src.utils.webhook_signatures import compute_payload_hash, validate_gateway_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


async def _validate_signature(request: Request, body: bytes) -> None:
    """Raise 401 if the gateway signature does not verify."""
    if validate_gateway_signature(request.headers, body):
        return
    client_ip = request.client.host if request.client else "unknown"
    logger.warning(
        "Invalid webhook signature: ip=%s payload_hash=%s",
        client_ip, compute_payload_hash(body)[:16],
    )
    await send_alert(
        AlertType.WEBHOOK_SIGNATURE_INVALID,
        f"Rejected gateway webhook with invalid signature from {client_ip}",
        severity="warning",
    )
    raise HTTPException(status_code=401, detail="Invalid webhook signature")


@router.post("/gateway", response_model=WebhookAckResponse)
async def gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Receive a payment gateway notification and store it for processing."""
    body = await request.body()
    await _validate_signature(request, body)

    try:
        raw = json.loads(body)
        envelope = parse_envelope(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, MalformedPayloadError) as e:
        logger.warning("Malformed webhook body rejected: %s", str(e)[:200])
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    settings = get_settings()
    if envelope.livemode != (settings.app_env == "production"):
        logger.warning(
            "Webhook %s livemode=%s does not match environment %s",
            envelope.provider_event_id, envelope.livemode, settings.app_env,
        )

    event, created = await record_event(
        db,
        provider_event_id=envelope.provider_event_id,
        event_type=envelope.event_type,
        payload=raw,
        livemode=envelope.livemode,
        provider=settings.gateway_provider,
        max_attempts=settings.webhook_max_attempts,
        correlation_id=get_correlation_id(),
    )
    await db.commit()

    return WebhookAckResponse(
        status="received" if created else "duplicate",
        duplicate=not created,
        event_id=str(event.id) if event else None,
    )
