from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..utils import utcnow


class ArtifactType(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    DATABASE = "database"
    CONFIG = "config"


class ChangeType(str, Enum):
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"
    CREATED = "created"


class CommandExecution(BaseModel):
    """One remote command run. Command text and output are stored redacted."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    incident_id: Optional[str] = None
    server_id: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    sequence: int = 0
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Evidence(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    incident_id: str
    key: Optional[str] = None  # idempotency key, unique per incident when set
    evidence_type: str
    phase: Optional[str] = None
    content_hash: str
    content: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    sequence: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class BackupArtifact(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    incident_id: str
    artifact_type: ArtifactType
    original_path: str
    stored_path: str
    checksum: str
    size: int = Field(ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    sequence: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class FileChange(BaseModel):
    """Filesystem mutation made by a fix. Checksum is of the post-change content."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    incident_id: str
    path: str
    change_type: ChangeType
    checksum: Optional[str] = None  # None when the path no longer exists
    fix_attempt: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    sequence: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class VerificationResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    incident_id: Optional[str] = None
    passed: bool
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)
    fix_attempt: Optional[int] = None
    sequence: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class RollbackStep(BaseModel):
    change: FileChange
    backup: BackupArtifact
