"""
API request/response schemas for the webhook intake and operator endpoints.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from pydantic import BaseModel, Field


class WebhookAckResponse(BaseModel):
    status: str  # received, duplicate
    duplicate: bool = False
    event_id: Optional[str] = None


class WebhookEventSummary(BaseModel):
    id: str
    provider: str
    provider_event_id: str
    event_type: str
    livemode: bool = False
    status: str
    parked: bool = False
    attempt_count: int = 0
    max_attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None


class WebhookEventDetail(WebhookEventSummary):
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookEventListResponse(BaseModel):
    events: list[WebhookEventSummary]
    count: int


class AuditEntryResponse(BaseModel):
    id: str
    action: str
    previous_value: Optional[dict[str, Any]] = None
    new_value: Optional[dict[str, Any]] = None
    performed_by: Optional[str] = None
    notes: Optional[str] = None
    is_anomaly: bool = False
    created_at: datetime


class OrderDetailResponse(BaseModel):
    id: str
    order_number: str
    status: str
    total: Decimal
    refund_amount: Optional[Decimal] = None
    checkout_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    preparation_started_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    no_show: bool = False
    refund_required: bool = False
    created_at: datetime
    updated_at: datetime
    audit_trail: list[AuditEntryResponse] = Field(default_factory=list)


class OrderCreateRequest(BaseModel):
    total: Decimal = Field(ge=0, decimal_places=2)
    checkout_id: Optional[str] = Field(default=None, max_length=100)
    payment_intent_id: Optional[str] = Field(default=None, max_length=100)


class OrderCreatedResponse(BaseModel):
    id: str
    order_number: str
    status: str
    arrival_code: str


class OrderTransitionRequest(BaseModel):
    status: str  # preparing, ready, picked_up, cancelled, pending, refunded
    reason: Optional[str] = Field(default=None, max_length=500)
    no_show: bool = False
    refund_amount: Optional[Decimal] = Field(default=None, ge=0)
    arrival_code: Optional[str] = Field(default=None, max_length=12)


class OrderTransitionResponse(BaseModel):
    id: str
    order_number: str
    status: str
    changed: bool


class PipelineStatsResponse(BaseModel):
    events: dict[str, Any]
    orders_by_status: dict[str, int]
    reaper: dict[str, int]
    refund_required: int
    timestamp: datetime
