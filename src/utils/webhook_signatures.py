"""
Webhook signature validation - verify gateway notifications are authentic.

Supported schemes:
- PayMongo: "Paymongo-Signature: t=<timestamp>,te=<test_sig>,li=<live_sig>",
  HMAC-SHA256 over "<timestamp>.<raw body>"
- Generic HMAC-SHA256: "X-Webhook-Signature: sha256=<hex>" over the raw body

All comparisons are constant-time.
"""
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

PAYMONGO_SIGNATURE_HEADER = "Paymongo-Signature"
GENERIC_SIGNATURE_HEADER = "X-Webhook-Signature"


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: str = "sha256=",
) -> bool:
    """
    Validate generic HMAC-SHA256 webhook signature.
    Handles signatures with optional prefix (e.g., "sha256=...").
    Returns True if valid, False if invalid.
    """
    if not secret or not signature:
        return False

    sig = signature
    if sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    try:
        expected = hmac.new(
            secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, sig.lower())
    except Exception as e:
        logger.error("HMAC-SHA256 validation error: %s", str(e))
        return False


def parse_paymongo_signature(header: str) -> dict:
    """Split "t=..,te=..,li=.." into its parts. Unknown or malformed parts are ignored."""
    parts = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep and key:
            parts[key] = value
    return parts


def validate_paymongo_signature(
    secret: str,
    header: str,
    body: bytes,
    livemode: bool,
) -> bool:
    """
    Validate a PayMongo-style signature header.
    The live signature (li) is checked in live mode, the test signature (te) otherwise.
    """
    if not secret or not header:
        return False

    parts = parse_paymongo_signature(header)
    timestamp = parts.get("t")
    signature = parts.get("li") if livemode else parts.get("te")
    if not timestamp or not signature:
        return False

    try:
        signed_payload = timestamp.encode("utf-8") + b"." + body
        expected = hmac.new(
            secret.encode("utf-8"),
            signed_payload,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature.lower())
    except Exception as e:
        logger.error("PayMongo signature validation error: %s", str(e))
        return False


def sign_paymongo_payload(secret: str, body: bytes, timestamp: int, livemode: bool = False) -> str:
    """Build a PayMongo-style signature header (used by tooling and tests)."""
    digest = hmac.new(
        secret.encode("utf-8"),
        str(timestamp).encode("utf-8") + b"." + body,
        hashlib.sha256,
    ).hexdigest()
    if livemode:
        return f"t={timestamp},te=,li={digest}"
    return f"t={timestamp},te={digest},li="


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for audit logging."""
    return hashlib.sha256(body).hexdigest()


def validate_gateway_signature(
    headers,
    body: bytes,
    secret: Optional[str] = None,
) -> bool:
    """
    Validate an inbound gateway webhook.
    Returns True if valid, or if no secret is configured and unsigned webhooks
    are explicitly allowed outside production.
    """
    from src.config import get_settings
    settings = get_settings()
    secret = secret if secret is not None else settings.gateway_webhook_secret

    if not secret:
        if settings.app_env != "production" and settings.allow_unsigned_webhooks:
            logger.warning(
                "GATEWAY_WEBHOOK_SECRET not set - accepting webhook without signature "
                "verification (ALLOW_UNSIGNED_WEBHOOKS=true)."
            )
            return True
        logger.error("GATEWAY_WEBHOOK_SECRET not set - rejecting webhook")
        return False

    paymongo_header = headers.get(PAYMONGO_SIGNATURE_HEADER, "")
    if paymongo_header:
        livemode = settings.app_env == "production"
        return validate_paymongo_signature(secret, paymongo_header, body, livemode)

    generic_header = headers.get(GENERIC_SIGNATURE_HEADER, "")
    if generic_header:
        return validate_hmac_sha256(secret, generic_header, body)

    logger.warning("Webhook carried no signature header")
    return False
