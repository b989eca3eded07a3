from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..utils.timeutils import utcnow
from .session import Base

WEBHOOK_EVENTS_TABLE = "mindbody_webhook_events"
API_TOKENS_TABLE = "mindbody_api_tokens"


class EventStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    """One row per provider event id; repeated deliveries collapse onto it."""

    __tablename__ = WEBHOOK_EVENTS_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str] = mapped_column(String(128))
    site_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_data: Mapped[Any] = mapped_column(JSON)
    headers: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    event_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # Original event time from Mindbody
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    signature: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_mindbody_webhook_events_event_id"),
        Index("ix_mindbody_webhook_events_processed_created_at", "processed", "created_at"),
        Index("ix_mindbody_webhook_events_event_type_processed", "event_type", "processed"),
        Index("ix_mindbody_webhook_events_site_id_event_type", "site_id", "event_type"),
    )

    def has_exceeded_max_retries(self, max_retries: int = 3) -> bool:
        return self.retry_count >= max_retries

    def status(self, max_retries: int = 3) -> EventStatus:
        """Derived lifecycle state; FAILED is terminal (retry budget spent)."""
        if self.processed:
            return EventStatus.PROCESSED
        if self.has_exceeded_max_retries(max_retries):
            return EventStatus.FAILED
        if self.error is not None:
            return EventStatus.RETRYING
        return EventStatus.PENDING

    def age_in_minutes(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return int((now - self.created_at).total_seconds() // 60)

    def summary(self, max_retries: int = 3) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "site_id": self.site_id,
            "status": self.status(max_retries).value,
            "processed": self.processed,
            "retry_count": self.retry_count,
            "has_error": self.error is not None,
            "error": self.error,
            "age_minutes": self.age_in_minutes(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ApiToken(Base):
    """Issued bearer token; several historical rows may exist per username."""

    __tablename__ = API_TOKENS_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), index=True)
    access_token: Mapped[str] = mapped_column(Text)
    token_type: Mapped[str] = mapped_column(String(32), default="Bearer")
    expires_in: Mapped[int] = mapped_column(Integer)
    issued_at: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_mindbody_api_tokens_username_expires_at_revoked", "username", "expires_at", "revoked"),
    )
