"""
Webhook event store - every gateway notification is recorded before processing.
provider_event_id is the deduplication key: a redelivery can never create a
second row. Rows are never deleted (replay, debugging, compliance).

Status flow: pending -> processed | failed. A failed row with next_attempt_at
set is re-queued by the dispatcher; a failed row without it is parked until an
operator replays it.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, Boolean, Integer, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from src.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(String(30), nullable=False, default="paymongo", server_default="paymongo")
    provider_event_id = Column(String(100), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    livemode = Column(Boolean, nullable=False, default=False, server_default="false")
    payload = Column(JSONB, nullable=False)
    status = Column(
        String(20), nullable=False, default="pending", server_default="pending"
    )  # pending, processed, failed
    error_message = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0, server_default="0")
    max_attempts = Column(Integer, nullable=False, default=5, server_default="5")
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    correlation_id = Column(String(64), nullable=True, index=True)

    __table_args__ = (
        UniqueConstraint("provider_event_id", name="uq_webhook_events_provider_event_id"),
        Index("ix_webhook_events_status_received", "status", "received_at"),
        Index("ix_webhook_events_retry", "status", "next_attempt_at"),
    )

    @property
    def is_parked(self) -> bool:
        return self.status == "failed" and self.next_attempt_at is None

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.provider_event_id} {self.event_type} ({self.status})>"
