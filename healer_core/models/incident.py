from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..database.base import Base, TimestampMixin, UUIDMixin
from ..utils import utcnow

_CASCADE = "all, delete-orphan"


class IncidentRecord(Base, UUIDMixin, TimestampMixin):
    """
    Incident Model.
    Owns its timeline and ledger rows; deleting an incident cascades to all of them.
    """
    __tablename__ = "incidents"

    site_id: Mapped[str] = mapped_column(String(64), index=True)
    server_id: Mapped[str] = mapped_column(String(64), index=True)
    site_url: Mapped[str] = mapped_column(String(2048))
    document_root: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    state: Mapped[str] = mapped_column(String(32), default="NEW", index=True)
    trigger_type: Mapped[str] = mapped_column(String(16), default="manual")
    priority: Mapped[str] = mapped_column(String(16), default="medium")
    fix_attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_fix_attempts: Mapped[int] = mapped_column(Integer, default=15)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    escalation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Per-incident ordering for every appended row
    ledger_sequence: Mapped[int] = mapped_column(Integer, default=0)
    last_stamp: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    events: Mapped[List["IncidentEventRecord"]] = relationship(back_populates="incident", cascade=_CASCADE)
    commands: Mapped[List["CommandRecord"]] = relationship(back_populates="incident", cascade=_CASCADE)
    evidence: Mapped[List["EvidenceRecord"]] = relationship(back_populates="incident", cascade=_CASCADE)
    backups: Mapped[List["BackupRecord"]] = relationship(back_populates="incident", cascade=_CASCADE)
    file_changes: Mapped[List["FileChangeRecord"]] = relationship(back_populates="incident", cascade=_CASCADE)
    verifications: Mapped[List["VerificationRecord"]] = relationship(back_populates="incident", cascade=_CASCADE)


class IncidentEventRecord(Base):
    __tablename__ = "incident_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    incident_id: Mapped[str] = mapped_column(ForeignKey("incidents.id", ondelete="CASCADE"), index=True)
    sequence: Mapped[int] = mapped_column(Integer)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    phase: Mapped[str] = mapped_column(String(32))
    step: Mapped[str] = mapped_column(String(512))
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    incident: Mapped["IncidentRecord"] = relationship(back_populates="events")
