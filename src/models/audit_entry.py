"""
Order audit trail - append-only record of every order mutation.
Written in the same transaction as the order update. Never updated or deleted.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from src.database import Base


class AuditEntry(Base):
    __tablename__ = "order_audit_entries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False
    )

    action: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # created, status_changed, payment_updated, item_added, item_removed, cancelled, refunded

    # Snapshots of the changed fields only
    previous_value: Mapped[Optional[dict]] = mapped_column(JSONB)
    new_value: Mapped[Optional[dict]] = mapped_column(JSONB)

    # User id, "webhook:<provider_event_id>", or "reaper"
    performed_by: Mapped[Optional[str]] = mapped_column(String(150))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_anomaly: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    order: Mapped["Order"] = relationship(back_populates="audit_entries", viewonly=True)

    __table_args__ = (
        Index("ix_audit_entries_order_id_created_at", "order_id", "created_at"),
        Index("ix_audit_entries_anomaly", "is_anomaly"),
    )

    def __repr__(self) -> str:
        return f"<AuditEntry {self.action} order={str(self.order_id)[:8]}>"
