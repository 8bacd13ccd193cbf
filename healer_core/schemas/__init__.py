from .environment import (
    CacheLayer,
    ControlPanelInfo,
    DatabaseInfo,
    EnvironmentSnapshot,
    OSInfo,
    PHPInfo,
    WebServerInfo,
    WordPressInfo,
)
from .incident import (
    TERMINAL_STATES,
    EventType,
    Incident,
    IncidentEvent,
    IncidentState,
    Priority,
    TriggerType,
)
from .ledger import (
    ArtifactType,
    BackupArtifact,
    ChangeType,
    CommandExecution,
    Evidence,
    FileChange,
    RollbackStep,
    VerificationResult,
)
from .server import ServerConnectionInfo

__all__ = [
    "ArtifactType",
    "BackupArtifact",
    "CacheLayer",
    "ChangeType",
    "CommandExecution",
    "ControlPanelInfo",
    "DatabaseInfo",
    "EnvironmentSnapshot",
    "EventType",
    "Evidence",
    "FileChange",
    "Incident",
    "IncidentEvent",
    "IncidentState",
    "OSInfo",
    "PHPInfo",
    "Priority",
    "RollbackStep",
    "ServerConnectionInfo",
    "TERMINAL_STATES",
    "TriggerType",
    "VerificationResult",
    "WebServerInfo",
    "WordPressInfo",
]
