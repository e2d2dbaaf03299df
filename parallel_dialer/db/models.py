"""Database models."""
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CallAttempt(Base):
    """One outbound call placed on a dialer line."""

    __tablename__ = "call_attempts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    call_sid = Column(String, unique=True, index=True, nullable=True)
    line_id = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    contact_id = Column(Integer, nullable=True)
    contact_name = Column(String, nullable=True)

    amd_enabled = Column(Boolean, default=False, nullable=False)
    amd_timeout = Column(Integer, default=30, nullable=False)
    amd_sensitivity = Column(String, default="standard", nullable=False)
    answered_by = Column(String, nullable=True)  # raw provider value
    amd_result = Column(String, nullable=True)  # human, machine, fax, unknown
    machine_detection_duration = Column(Integer, nullable=True)

    # initiated, queued, ringing, in-progress, completed, busy, failed, no-answer, canceled
    status = Column(String, default="initiated", nullable=False, index=True)
    disposition = Column(String, nullable=True)
    dial_status = Column(String, nullable=True)
    duration = Column(Integer, default=0, nullable=False)
    error_code = Column(String, nullable=True)
    extra = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    ended_at = Column(DateTime, nullable=True)


class DialerMarker(Base):
    """Per-user dialer state entry (primary/secondary markers, conference)."""

    __tablename__ = "dialer_markers"
    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_dialer_markers_user_key"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    key = Column(String, nullable=False)
    call_sid = Column(String, nullable=True)
    value = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)


class WebhookEvent(Base):
    """Ledger of provider callbacks, used for de-duplication and failure inspection."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_key = Column(String, unique=True, index=True, nullable=False)
    kind = Column(String, nullable=False)
    user_id = Column(Integer, index=True, nullable=True)
    call_sid = Column(String, nullable=True)
    status = Column(String, default="received", nullable=False)  # received, processed, failed
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)
