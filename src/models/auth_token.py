"""
Issued authentication artifacts (refresh tokens, password reset links, OTPs).
Only the hash is stored. Expired and revoked rows are purged by the token hygiene worker.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class AuthToken(Base):
    __tablename__ = "auth_tokens"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default="refresh"
    )  # refresh, password_reset, otp
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_auth_tokens_expires_at", "expires_at"),
        Index("ix_auth_tokens_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<AuthToken {self.kind} user={self.user_id}>"
