from .incident import IncidentEventRecord, IncidentRecord
from .ledger import (
    BackupRecord,
    CommandRecord,
    EvidenceRecord,
    FileChangeRecord,
    VerificationRecord,
)
from .server import ManagedServer

__all__ = [
    "BackupRecord",
    "CommandRecord",
    "EvidenceRecord",
    "FileChangeRecord",
    "IncidentEventRecord",
    "IncidentRecord",
    "ManagedServer",
    "VerificationRecord",
]
