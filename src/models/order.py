"""
Order model - the order/payment aggregate.
Payment fields live on the same row so every transition is atomic across both.
Lifecycle: pending → confirmed → preparing → ready → picked_up.
Escape paths: payment_failed, cancelled. refunded is reachable from picked_up or cancelled.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from sqlalchemy import String, Text, Boolean, Numeric, DateTime, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from src.database import Base


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)

    status: Mapped[str] = mapped_column(
        String(30), default="pending", nullable=False
    )  # pending, payment_failed, confirmed, preparing, ready, picked_up, cancelled, refunded

    # Money
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))

    # Gateway correlation - exactly one of checkout_id / payment_intent_id per workflow
    checkout_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)  # immutable once set

    # Lifecycle timestamps
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    preparation_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ready_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    no_show: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    arrival_code: Mapped[str] = mapped_column(String(12), nullable=False)

    # Raised when a gateway event conflicts with the order's state (money taken, order not live)
    refund_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    audit_entries: Mapped[list["AuditEntry"]] = relationship(
        back_populates="order", order_by="AuditEntry.created_at", viewonly=True
    )

    __table_args__ = (
        CheckConstraint(
            "(checkout_id IS NULL) <> (payment_intent_id IS NULL)",
            name="ck_orders_single_correlation",
        ),
        Index("ix_orders_status_created_at", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Order {self.order_number} ({self.status})>"
