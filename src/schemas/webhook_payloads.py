"""
Gateway webhook payload schemas.

Two envelope shapes are accepted:

Flat:
    {"provider_event_id": "evt_1", "event_type": "payment.paid", "livemode": false,
     "data": {"checkout_id": "chk_1", "payment_id": "pay_1", "amount": 15000}}

PayMongo nested:
    {"data": {"id": "evt_1", "type": "event", "attributes": {
        "type": "payment.paid", "livemode": false,
        "data": {"id": "pay_1", "type": "payment", "attributes": {
            "amount": 15000, "payment_intent_id": "pi_1", "metadata": {...}}}}}}

Amounts are in minor units (centavos) on the wire.
"""
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from src.services.order_state import EventDetails


class MalformedPayloadError(ValueError):
    """The body is not a recognisable gateway envelope."""
    pass


class PaymentResource(BaseModel):
    """Flat `data` block."""
    checkout_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[int] = Field(default=None, ge=0)
    reason: Optional[str] = None
    status: Optional[str] = None
    metadata: Optional[dict] = None


class GatewayEnvelope(BaseModel):
    """Normalized view of an inbound notification."""
    provider_event_id: str = Field(min_length=1, max_length=100)
    event_type: str = Field(min_length=1, max_length=100)
    livemode: bool = False
    data: dict = Field(default_factory=dict)


def parse_envelope(body: Any) -> GatewayEnvelope:
    """Accept either envelope shape. Raises MalformedPayloadError."""
    if not isinstance(body, dict):
        raise MalformedPayloadError("Webhook body must be a JSON object")

    try:
        if "provider_event_id" in body or "event_type" in body:
            envelope = GatewayEnvelope(**body)
            PaymentResource(**envelope.data)
            return envelope

        event = body.get("data")
        if not isinstance(event, dict):
            raise MalformedPayloadError("Missing event data")
        attributes = event.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise MalformedPayloadError("Event attributes must be an object")
        resource = attributes.get("data") or {}
        if not isinstance(resource, dict):
            raise MalformedPayloadError("Event resource must be an object")
        resource_attributes = resource.get("attributes") or {}
        if not isinstance(resource_attributes, dict):
            raise MalformedPayloadError("Resource attributes must be an object")
        if not isinstance(resource_attributes.get("metadata") or {}, dict):
            raise MalformedPayloadError("Resource metadata must be an object")
        return GatewayEnvelope(
            provider_event_id=event.get("id") or "",
            event_type=attributes.get("type") or "",
            livemode=bool(attributes.get("livemode", False)),
            data=resource,
        )
    except ValidationError as e:
        raise MalformedPayloadError(str(e)) from e


def _object(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _resource(payload: Any) -> tuple[dict, dict]:
    """(resource, resource attributes) from a stored payload of either shape."""
    payload = _object(payload)
    if "provider_event_id" in payload or "event_type" in payload:
        data = _object(payload.get("data"))
        return data, data
    resource = _object(_object(_object(payload.get("data")).get("attributes")).get("data"))
    return resource, _object(resource.get("attributes"))


def extract_correlation(payload: Any) -> Optional[tuple[str, str]]:
    """
    (field, value) identifying the order: checkout_id or payment_intent_id,
    falling back to the gateway payment id (refunds only carry that).
    """
    resource, attrs = _resource(payload)
    metadata = _object(attrs.get("metadata"))
    resource_type = resource.get("type")

    if resource_type == "checkout_session" and resource.get("id"):
        return "checkout_id", str(resource["id"])
    if resource_type == "payment_intent" and resource.get("id"):
        return "payment_intent_id", str(resource["id"])

    for field in ("checkout_id", "payment_intent_id"):
        value = attrs.get(field) or metadata.get(field)
        if value:
            return field, str(value)

    payment_id = attrs.get("payment_id")
    if not payment_id and resource_type == "payment":
        payment_id = resource.get("id")
    if payment_id:
        return "gateway_payment_id", str(payment_id)
    return None


def correlation_key(payload: Any) -> Optional[str]:
    correlation = extract_correlation(payload)
    if correlation is None:
        return None
    return f"{correlation[0]}:{correlation[1]}"


def extract_details(payload: Any) -> EventDetails:
    """Fields the transition rules read. Raises MalformedPayloadError on a bad amount."""
    resource, attrs = _resource(payload)
    resource_type = resource.get("type")

    payment_id = attrs.get("payment_id")
    if resource_type == "payment" and resource.get("id"):
        payment_id = resource["id"]
    if not payment_id:
        payments = attrs.get("payments")
        if isinstance(payments, list) and payments and isinstance(payments[0], dict):
            payment_id = payments[0].get("id")

    amount = attrs.get("amount")
    if amount is not None:
        if isinstance(amount, bool):
            raise MalformedPayloadError(f"Invalid amount: {amount!r}")
        try:
            amount = (Decimal(str(amount)) / 100).quantize(Decimal("0.01"))
        except ArithmeticError as e:
            raise MalformedPayloadError(f"Invalid amount: {amount!r}") from e
        if amount < 0:
            raise MalformedPayloadError(f"Negative amount: {attrs.get('amount')!r}")

    reason = (
        attrs.get("reason")
        or attrs.get("failed_message")
        or _object(attrs.get("last_payment_error")).get("failed_message")
    )
    return EventDetails(
        gateway_payment_id=str(payment_id) if payment_id else None,
        amount=amount,
        reason=str(reason) if reason else None,
        resource_status=attrs.get("status"),
    )
