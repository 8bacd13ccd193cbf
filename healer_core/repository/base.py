from typing import Any, Dict, List, Optional, Protocol

from ..schemas.incident import Incident, IncidentEvent, IncidentState
from ..schemas.ledger import (
    BackupArtifact,
    CommandExecution,
    Evidence,
    FileChange,
    VerificationResult,
)

# Incident columns the orchestrator may change alongside state
MUTABLE_FIELDS = frozenset({"fix_attempts", "resolved_at", "escalated_at", "escalation_reason"})


class Repository(Protocol):
    """
    Durable record store contract.
    Append operations assign the row's timestamp and a per-incident sequence
    number; timestamps never go backwards within one incident.
    """

    async def create_incident(self, incident: Incident) -> Incident:
        ...

    async def load_incident(self, incident_id: str) -> Incident:
        ...

    async def save_incident_state(
        self,
        incident_id: str,
        expected_state: IncidentState,
        state: IncidentState,
        fields: Dict[str, Any],
        event: IncidentEvent,
    ) -> tuple[Incident, IncidentEvent]:
        """Compare-and-set the state and append the transition event atomically."""
        ...

    async def append_event(self, event: IncidentEvent) -> IncidentEvent:
        ...

    async def append_command(self, execution: CommandExecution) -> CommandExecution:
        ...

    async def append_evidence(self, evidence: Evidence) -> Evidence:
        ...

    async def append_backup(self, backup: BackupArtifact) -> BackupArtifact:
        ...

    async def append_file_change(self, change: FileChange) -> FileChange:
        ...

    async def append_verification(self, result: VerificationResult) -> VerificationResult:
        ...

    async def list_timeline(
        self,
        incident_id: str,
        event_type: Optional[str] = None,
        phase: Optional[IncidentState] = None,
        after_sequence: Optional[int] = None,
    ) -> List[IncidentEvent]:
        ...

    async def list_commands(self, incident_id: str) -> List[CommandExecution]:
        ...

    async def list_evidence(self, incident_id: str, key: Optional[str] = None) -> List[Evidence]:
        ...

    async def list_backups(self, incident_id: str) -> List[BackupArtifact]:
        ...

    async def list_file_changes(self, incident_id: str) -> List[FileChange]:
        ...

    async def list_verifications(self, incident_id: str) -> List[VerificationResult]:
        ...

    async def list_active_incidents(self, limit: int = 100) -> List[Incident]:
        ...
