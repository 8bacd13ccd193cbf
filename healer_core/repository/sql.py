import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import IncidentNotFound, PersistenceError, ValidationError
from ..models import (
    BackupRecord,
    CommandRecord,
    EvidenceRecord,
    FileChangeRecord,
    IncidentEventRecord,
    IncidentRecord,
    ManagedServer,
    VerificationRecord,
)
from ..schemas.incident import Incident, IncidentEvent, IncidentState
from ..schemas.ledger import (
    BackupArtifact,
    CommandExecution,
    Evidence,
    FileChange,
    VerificationResult,
)
from ..schemas.server import ServerConnectionInfo
from ..utils import utcnow
from .base import MUTABLE_FIELDS

logger = logging.getLogger("healer-core.repository")

_ACTIVE_STATES = [
    s.value for s in IncidentState if s not in (IncidentState.FIXED, IncidentState.ESCALATED)
]


def _incident(row: IncidentRecord) -> Incident:
    return Incident.model_validate(row)


def _event(row: IncidentEventRecord) -> IncidentEvent:
    return IncidentEvent.model_validate(row)


def _evidence(row: EvidenceRecord) -> Evidence:
    return Evidence(
        id=row.id, incident_id=row.incident_id, key=row.key, evidence_type=row.evidence_type,
        phase=row.phase, content_hash=row.content_hash, content=row.content,
        metadata=row.meta or {}, sequence=row.sequence, timestamp=row.timestamp,
    )


def _backup(row: BackupRecord) -> BackupArtifact:
    return BackupArtifact(
        id=row.id, incident_id=row.incident_id, artifact_type=row.artifact_type,
        original_path=row.original_path, stored_path=row.stored_path, checksum=row.checksum,
        size=row.size, metadata=row.meta or {}, sequence=row.sequence, created_at=row.created_at,
    )


def _change(row: FileChangeRecord) -> FileChange:
    return FileChange(
        id=row.id, incident_id=row.incident_id, path=row.path, change_type=row.change_type,
        checksum=row.checksum, fix_attempt=row.fix_attempt, metadata=row.meta or {},
        sequence=row.sequence, timestamp=row.timestamp,
    )


class SqlRepository:
    """
    Repository backed by SQLAlchemy's async ORM.
    Each call runs in its own transaction; every append bumps the owning
    incident's sequence under a row lock so per-incident ordering holds
    across processes.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _stamp(self, session: AsyncSession, incident_id: str):
        row = await session.get(IncidentRecord, incident_id, with_for_update=True)
        if row is None:
            raise IncidentNotFound(f"Incident {incident_id} not found")
        now = utcnow()
        if row.last_stamp is not None and now <= row.last_stamp:
            now = row.last_stamp + timedelta(microseconds=1)
        row.ledger_sequence = (row.ledger_sequence or 0) + 1
        row.last_stamp = now
        return row, row.ledger_sequence, now

    async def _run(self, description: str, work):
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await work(session)
        except (PersistenceError, ValidationError):
            raise
        except IntegrityError as e:
            logger.error(f"{description} violated a constraint: {e.orig}")
            raise PersistenceError(f"{description} violated a constraint") from None
        except SQLAlchemyError as e:
            logger.error(f"{description} failed: {e}", exc_info=True)
            raise PersistenceError(f"{description} failed: {type(e).__name__}") from None

    # ------------------------------------------------------------------ #
    #  Incidents                                                           #
    # ------------------------------------------------------------------ #

    async def create_incident(self, incident: Incident) -> Incident:
        async def work(session: AsyncSession):
            row = IncidentRecord(
                id=incident.id,
                site_id=incident.site_id,
                server_id=incident.server_id,
                site_url=incident.site_url,
                document_root=incident.document_root,
                state=incident.state.value,
                trigger_type=incident.trigger_type.value,
                priority=incident.priority.value,
                fix_attempts=incident.fix_attempts,
                max_fix_attempts=incident.max_fix_attempts,
                created_at=incident.created_at,
                updated_at=incident.updated_at,
                resolved_at=incident.resolved_at,
                escalated_at=incident.escalated_at,
                escalation_reason=incident.escalation_reason,
                ledger_sequence=0,
            )
            session.add(row)
            await session.flush()
            return _incident(row)

        return await self._run("create incident", work)

    async def load_incident(self, incident_id: str) -> Incident:
        async def work(session: AsyncSession):
            row = await session.get(IncidentRecord, incident_id)
            if row is None:
                raise IncidentNotFound(f"Incident {incident_id} not found")
            return _incident(row)

        return await self._run("load incident", work)

    async def save_incident_state(
        self,
        incident_id: str,
        expected_state: IncidentState,
        state: IncidentState,
        fields: Dict[str, Any],
        event: IncidentEvent,
    ) -> tuple[Incident, IncidentEvent]:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise PersistenceError(f"Fields not writable with a state change: {sorted(unknown)}")

        async def work(session: AsyncSession):
            row, sequence, now = await self._stamp(session, incident_id)
            if row.state != expected_state.value:
                raise PersistenceError(
                    f"Incident {incident_id} is in {row.state}, expected {expected_state.value}"
                )
            fix_attempts = fields.get("fix_attempts", row.fix_attempts)
            if not 0 <= fix_attempts <= row.max_fix_attempts:
                raise PersistenceError(f"Invalid incident update: fix_attempts={fix_attempts}")
            for name, value in fields.items():
                setattr(row, name, value)
            row.state = state.value
            row.updated_at = now
            event_row = IncidentEventRecord(
                id=event.id,
                incident_id=incident_id,
                sequence=sequence,
                event_type=event.event_type,
                phase=event.phase.value,
                step=event.step,
                data=event.data,
                duration=event.duration,
                timestamp=now,
            )
            session.add(event_row)
            await session.flush()
            return _incident(row), _event(event_row)

        return await self._run("save incident state", work)

    async def list_active_incidents(self, limit: int = 100) -> List[Incident]:
        async def work(session: AsyncSession):
            result = await session.execute(
                select(IncidentRecord)
                .where(IncidentRecord.state.in_(_ACTIVE_STATES))
                .order_by(IncidentRecord.created_at)
                .limit(limit)
            )
            return [_incident(row) for row in result.scalars()]

        return await self._run("list active incidents", work)

    # ------------------------------------------------------------------ #
    #  Appends                                                             #
    # ------------------------------------------------------------------ #

    async def append_event(self, event: IncidentEvent) -> IncidentEvent:
        async def work(session: AsyncSession):
            _, sequence, now = await self._stamp(session, event.incident_id)
            row = IncidentEventRecord(
                id=event.id, incident_id=event.incident_id, sequence=sequence,
                event_type=event.event_type, phase=event.phase.value, step=event.step,
                data=event.data, duration=event.duration, timestamp=now,
            )
            session.add(row)
            await session.flush()
            return _event(row)

        return await self._run("append event", work)

    async def append_command(self, execution: CommandExecution) -> CommandExecution:
        if execution.incident_id is None:
            raise PersistenceError("Command execution is not bound to an incident")

        async def work(session: AsyncSession):
            _, sequence, now = await self._stamp(session, execution.incident_id)
            row = CommandRecord(
                id=execution.id, incident_id=execution.incident_id, server_id=execution.server_id,
                command=execution.command, exit_code=execution.exit_code, stdout=execution.stdout,
                stderr=execution.stderr, duration=execution.duration, sequence=sequence, timestamp=now,
            )
            session.add(row)
            await session.flush()
            return CommandExecution.model_validate(row)

        return await self._run("append command", work)

    async def append_evidence(self, evidence: Evidence) -> Evidence:
        async def work(session: AsyncSession):
            _, sequence, now = await self._stamp(session, evidence.incident_id)
            row = EvidenceRecord(
                id=evidence.id, incident_id=evidence.incident_id, key=evidence.key,
                evidence_type=evidence.evidence_type, phase=evidence.phase,
                content_hash=evidence.content_hash, content=evidence.content,
                meta=evidence.metadata, sequence=sequence, timestamp=now,
            )
            session.add(row)
            await session.flush()
            return _evidence(row)

        return await self._run("append evidence", work)

    async def append_backup(self, backup: BackupArtifact) -> BackupArtifact:
        async def work(session: AsyncSession):
            _, sequence, now = await self._stamp(session, backup.incident_id)
            row = BackupRecord(
                id=backup.id, incident_id=backup.incident_id, artifact_type=backup.artifact_type.value,
                original_path=backup.original_path, stored_path=backup.stored_path,
                checksum=backup.checksum, size=backup.size, meta=backup.metadata,
                sequence=sequence, created_at=now,
            )
            session.add(row)
            await session.flush()
            return _backup(row)

        return await self._run("append backup", work)

    async def append_file_change(self, change: FileChange) -> FileChange:
        async def work(session: AsyncSession):
            _, sequence, now = await self._stamp(session, change.incident_id)
            row = FileChangeRecord(
                id=change.id, incident_id=change.incident_id, path=change.path,
                change_type=change.change_type.value, checksum=change.checksum,
                fix_attempt=change.fix_attempt, meta=change.metadata, sequence=sequence, timestamp=now,
            )
            session.add(row)
            await session.flush()
            return _change(row)

        return await self._run("append file change", work)

    async def append_verification(self, result: VerificationResult) -> VerificationResult:
        if result.incident_id is None:
            raise PersistenceError("Verification result is not bound to an incident")

        async def work(session: AsyncSession):
            _, sequence, now = await self._stamp(session, result.incident_id)
            row = VerificationRecord(
                id=result.id, incident_id=result.incident_id, passed=result.passed,
                reason=result.reason, details=result.details, fix_attempt=result.fix_attempt,
                sequence=sequence, timestamp=now,
            )
            session.add(row)
            await session.flush()
            return VerificationResult.model_validate(row)

        return await self._run("append verification", work)

    # ------------------------------------------------------------------ #
    #  Queries                                                             #
    # ------------------------------------------------------------------ #

    async def _list(self, description: str, model, incident_id: str, convert, *criteria):
        async def work(session: AsyncSession):
            if await session.get(IncidentRecord, incident_id) is None:
                raise IncidentNotFound(f"Incident {incident_id} not found")
            result = await session.execute(
                select(model)
                .where(model.incident_id == incident_id, *criteria)
                .order_by(model.sequence)
            )
            return [convert(row) for row in result.scalars()]

        return await self._run(description, work)

    async def list_timeline(
        self,
        incident_id: str,
        event_type: Optional[str] = None,
        phase: Optional[IncidentState] = None,
        after_sequence: Optional[int] = None,
    ) -> List[IncidentEvent]:
        criteria = []
        if event_type is not None:
            criteria.append(IncidentEventRecord.event_type == event_type)
        if phase is not None:
            criteria.append(IncidentEventRecord.phase == phase.value)
        if after_sequence is not None:
            criteria.append(IncidentEventRecord.sequence > after_sequence)
        return await self._list("list timeline", IncidentEventRecord, incident_id, _event, *criteria)

    async def list_commands(self, incident_id: str) -> List[CommandExecution]:
        return await self._list(
            "list commands", CommandRecord, incident_id, CommandExecution.model_validate
        )

    async def list_evidence(self, incident_id: str, key: Optional[str] = None) -> List[Evidence]:
        criteria = [EvidenceRecord.key == key] if key is not None else []
        return await self._list("list evidence", EvidenceRecord, incident_id, _evidence, *criteria)

    async def list_backups(self, incident_id: str) -> List[BackupArtifact]:
        return await self._list("list backups", BackupRecord, incident_id, _backup)

    async def list_file_changes(self, incident_id: str) -> List[FileChange]:
        return await self._list("list file changes", FileChangeRecord, incident_id, _change)

    async def list_verifications(self, incident_id: str) -> List[VerificationResult]:
        return await self._list(
            "list verifications", VerificationRecord, incident_id, VerificationResult.model_validate
        )


class SqlServerDirectory:
    """Server credential provider reading the managed_servers table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_server(self, server_id: str) -> ServerConnectionInfo:
        try:
            async with self._session_factory() as session:
                row = await session.get(ManagedServer, server_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Server lookup failed: {type(e).__name__}") from None
        if row is None:
            raise ValidationError(f"Unknown server: {server_id}")
        return ServerConnectionInfo(
            server_id=row.id,
            hostname=row.hostname,
            port=row.port,
            username=row.username,
            auth_type=row.auth_type,
            encrypted_credentials=row.encrypted_credentials,
            host_key_fingerprint=row.host_key_fingerprint,
        )
