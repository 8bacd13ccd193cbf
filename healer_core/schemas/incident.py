from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..utils import utcnow


class IncidentState(str, Enum):
    NEW = "NEW"
    DISCOVERY = "DISCOVERY"
    BASELINE = "BASELINE"
    BACKUP = "BACKUP"
    OBSERVABILITY = "OBSERVABILITY"
    FIX_ATTEMPT = "FIX_ATTEMPT"
    VERIFY = "VERIFY"
    FIXED = "FIXED"
    ROLLBACK = "ROLLBACK"
    ESCALATED = "ESCALATED"


TERMINAL_STATES = frozenset({IncidentState.FIXED, IncidentState.ESCALATED})


class TriggerType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventType:
    STATE_TRANSITION = "state_transition"
    PHASE_STARTED = "phase_started"
    PHASE_FAILED = "phase_failed"
    STEP = "step"
    FIX_ATTEMPT = "fix_attempt"
    PAUSED = "paused"
    RESUMED = "resumed"


class Incident(BaseModel):
    """
    Incident Model.
    One remediation case for one site, already joined with the site and
    server identifiers the engine needs.
    """
    model_config = ConfigDict(from_attributes=True, use_enum_values=False)

    id: str = Field(default_factory=lambda: str(uuid4()))
    site_id: str
    server_id: str
    site_url: str
    document_root: Optional[str] = None
    state: IncidentState = IncidentState.NEW
    trigger_type: TriggerType = TriggerType.MANUAL
    priority: Priority = Priority.MEDIUM
    fix_attempts: int = Field(default=0, ge=0)
    max_fix_attempts: int = Field(default=15, ge=1, le=15)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    escalation_reason: Optional[str] = None

    @model_validator(mode="after")
    def _attempts_within_cap(self):
        if self.fix_attempts > self.max_fix_attempts:
            raise ValueError("fix_attempts cannot exceed max_fix_attempts")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class IncidentEvent(BaseModel):
    """Append-only timeline entry. Timestamp and sequence are assigned on append."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    incident_id: str
    event_type: str
    phase: IncidentState
    step: str
    data: Dict[str, Any] = Field(default_factory=dict)
    duration: Optional[float] = None
    sequence: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
