from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..exceptions import IncidentNotFound, PersistenceError
from ..schemas.incident import TERMINAL_STATES, Incident, IncidentEvent, IncidentState
from ..schemas.ledger import (
    BackupArtifact,
    CommandExecution,
    Evidence,
    FileChange,
    VerificationResult,
)
from ..utils import utcnow
from .base import MUTABLE_FIELDS


class InMemoryRepository:
    """
    Process-local repository.
    Every method completes without awaiting, so each call is atomic with
    respect to other coroutines on the loop.
    """

    def __init__(self):
        self._incidents: Dict[str, Incident] = {}
        self._stamps: Dict[str, tuple[int, Any]] = {}
        self._events: Dict[str, List[IncidentEvent]] = {}
        self._commands: Dict[str, List[CommandExecution]] = {}
        self._evidence: Dict[str, List[Evidence]] = {}
        self._backups: Dict[str, List[BackupArtifact]] = {}
        self._changes: Dict[str, List[FileChange]] = {}
        self._verifications: Dict[str, List[VerificationResult]] = {}

    def _require(self, incident_id: str) -> Incident:
        try:
            return self._incidents[incident_id]
        except KeyError:
            raise IncidentNotFound(f"Incident {incident_id} not found") from None

    def _stamp(self, incident_id: str):
        self._require(incident_id)
        sequence, last = self._stamps.get(incident_id, (0, None))
        now = utcnow()
        if last is not None and now <= last:
            now = last + timedelta(microseconds=1)
        self._stamps[incident_id] = (sequence + 1, now)
        return sequence + 1, now

    async def create_incident(self, incident: Incident) -> Incident:
        if incident.id in self._incidents:
            raise PersistenceError(f"Incident {incident.id} already exists")
        self._incidents[incident.id] = incident.model_copy(deep=True)
        for store in (self._events, self._commands, self._evidence, self._backups, self._changes, self._verifications):
            store[incident.id] = []
        return incident.model_copy(deep=True)

    async def load_incident(self, incident_id: str) -> Incident:
        return self._require(incident_id).model_copy(deep=True)

    async def save_incident_state(
        self,
        incident_id: str,
        expected_state: IncidentState,
        state: IncidentState,
        fields: Dict[str, Any],
        event: IncidentEvent,
    ) -> tuple[Incident, IncidentEvent]:
        current = self._require(incident_id)
        if current.state != expected_state:
            raise PersistenceError(
                f"Incident {incident_id} is in {current.state.value}, expected {expected_state.value}"
            )
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise PersistenceError(f"Fields not writable with a state change: {sorted(unknown)}")

        data = current.model_dump()
        data.update(fields, state=state)
        try:
            updated = Incident.model_validate(data)
        except ValueError as e:
            raise PersistenceError(f"Invalid incident update: {e}") from None

        sequence, now = self._stamp(incident_id)
        updated = updated.model_copy(update={"updated_at": now})
        stored_event = event.model_copy(update={"sequence": sequence, "timestamp": now})

        self._incidents[incident_id] = updated
        self._events[incident_id].append(stored_event)
        return updated.model_copy(deep=True), stored_event.model_copy(deep=True)

    def _append(self, store: Dict[str, list], record, time_field: str = "timestamp"):
        sequence, now = self._stamp(record.incident_id)
        stored = record.model_copy(update={"sequence": sequence, time_field: now}, deep=True)
        store[record.incident_id].append(stored)
        return stored.model_copy(deep=True)

    async def append_event(self, event: IncidentEvent) -> IncidentEvent:
        return self._append(self._events, event)

    async def append_command(self, execution: CommandExecution) -> CommandExecution:
        if execution.incident_id is None:
            raise PersistenceError("Command execution is not bound to an incident")
        return self._append(self._commands, execution)

    async def append_evidence(self, evidence: Evidence) -> Evidence:
        if evidence.key is not None and any(e.key == evidence.key for e in self._evidence.get(evidence.incident_id, [])):
            raise PersistenceError(f"Evidence key {evidence.key!r} already recorded")
        return self._append(self._evidence, evidence)

    async def append_backup(self, backup: BackupArtifact) -> BackupArtifact:
        return self._append(self._backups, backup, time_field="created_at")

    async def append_file_change(self, change: FileChange) -> FileChange:
        return self._append(self._changes, change)

    async def append_verification(self, result: VerificationResult) -> VerificationResult:
        if result.incident_id is None:
            raise PersistenceError("Verification result is not bound to an incident")
        return self._append(self._verifications, result)

    async def list_timeline(
        self,
        incident_id: str,
        event_type: Optional[str] = None,
        phase: Optional[IncidentState] = None,
        after_sequence: Optional[int] = None,
    ) -> List[IncidentEvent]:
        self._require(incident_id)
        return [
            e.model_copy(deep=True)
            for e in self._events[incident_id]
            if (event_type is None or e.event_type == event_type)
            and (phase is None or e.phase == phase)
            and (after_sequence is None or e.sequence > after_sequence)
        ]

    async def list_commands(self, incident_id: str) -> List[CommandExecution]:
        self._require(incident_id)
        return [c.model_copy(deep=True) for c in self._commands[incident_id]]

    async def list_evidence(self, incident_id: str, key: Optional[str] = None) -> List[Evidence]:
        self._require(incident_id)
        return [
            e.model_copy(deep=True)
            for e in self._evidence[incident_id]
            if key is None or e.key == key
        ]

    async def list_backups(self, incident_id: str) -> List[BackupArtifact]:
        self._require(incident_id)
        return [b.model_copy(deep=True) for b in self._backups[incident_id]]

    async def list_file_changes(self, incident_id: str) -> List[FileChange]:
        self._require(incident_id)
        return [c.model_copy(deep=True) for c in self._changes[incident_id]]

    async def list_verifications(self, incident_id: str) -> List[VerificationResult]:
        self._require(incident_id)
        return [v.model_copy(deep=True) for v in self._verifications[incident_id]]

    async def list_active_incidents(self, limit: int = 100) -> List[Incident]:
        active = [i for i in self._incidents.values() if i.state not in TERMINAL_STATES]
        active.sort(key=lambda i: i.created_at)
        return [i.model_copy(deep=True) for i in active[:limit]]
