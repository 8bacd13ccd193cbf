import logging
import posixpath
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..config import Settings
from ..exceptions import (
    LedgerConsistencyViolation,
    RemoteFileNotFound,
    RemoteOperationError,
    RollbackFailed,
)
from ..execution.pool import RemoteSession
from ..execution.redaction import redact_text
from ..execution.service import ExecutionService
from ..repository.base import Repository
from ..schemas.ledger import (
    ArtifactType,
    BackupArtifact,
    ChangeType,
    CommandExecution,
    Evidence,
    FileChange,
    RollbackStep,
    VerificationResult,
)
from ..utils import sha256_hex
from .store import BackupStore

logger = logging.getLogger("healer-core.ledger")

MAX_EVIDENCE_CHARS = 64 * 1024


def _covers(backup: BackupArtifact, path: str) -> bool:
    if backup.original_path == path:
        return True
    if backup.artifact_type != ArtifactType.DIRECTORY:
        return False
    return path.startswith(backup.original_path.rstrip("/") + "/")


class LedgerService:
    """
    Evidence & Rollback Ledger.
    Responsibility: append-only record of what the engine did to an incident,
    backup capture, and the authority for computing and replaying a rollback.
    """

    def __init__(
        self,
        repository: Repository,
        executor: ExecutionService,
        store: BackupStore,
        settings: Settings,
    ):
        self._repo = repository
        self._executor = executor
        self._store = store
        self._staging = settings.REMOTE_STAGING_DIRECTORY

    # ------------------------------------------------------------------ #
    #  Appends                                                             #
    # ------------------------------------------------------------------ #

    async def record_command(self, incident_id: str, execution: CommandExecution) -> CommandExecution:
        return await self._repo.append_command(execution.model_copy(update={"incident_id": incident_id}))

    async def record_evidence(
        self,
        incident_id: str,
        evidence_type: str,
        content: str | bytes,
        phase: Optional[str] = None,
        key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Evidence:
        """
        Store a diagnostic artifact. The hash covers the raw content; the stored
        text is redacted and truncated.
        """
        raw = content.encode() if isinstance(content, str) else content
        text = raw.decode("utf-8", errors="replace")
        text = redact_text(text)
        if len(text) > MAX_EVIDENCE_CHARS:
            text = text[:MAX_EVIDENCE_CHARS]
        evidence = Evidence(
            incident_id=incident_id,
            key=key,
            evidence_type=evidence_type,
            phase=phase,
            content_hash=sha256_hex(raw),
            content=text,
            metadata=metadata or {},
        )
        return await self._repo.append_evidence(evidence)

    async def find_evidence(self, incident_id: str, key: str) -> Optional[Evidence]:
        found = await self._repo.list_evidence(incident_id, key=key)
        return found[0] if found else None

    async def record_backup(
        self,
        incident_id: str,
        artifact_type: ArtifactType,
        original_path: str,
        stored_path: str,
        checksum: str,
        size: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BackupArtifact:
        backup = BackupArtifact(
            incident_id=incident_id,
            artifact_type=artifact_type,
            original_path=original_path,
            stored_path=stored_path,
            checksum=checksum,
            size=size,
            metadata=metadata or {},
        )
        stored = await self._repo.append_backup(backup)
        logger.info(f"[{incident_id}] backup {stored.id} of {original_path} ({size} bytes, sha256 {checksum[:12]})")
        return stored

    async def record_file_change(
        self,
        incident_id: str,
        path: str,
        change_type: ChangeType,
        checksum: Optional[str],
        fix_attempt: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FileChange:
        change = FileChange(
            incident_id=incident_id,
            path=path,
            change_type=change_type,
            checksum=checksum,
            fix_attempt=fix_attempt,
            metadata=metadata or {},
        )
        stored = await self._repo.append_file_change(change)
        logger.info(f"[{incident_id}] file change {stored.id}: {change_type.value} {path}")
        return stored

    async def record_verification(self, incident_id: str, result: VerificationResult) -> VerificationResult:
        return await self._repo.append_verification(result.model_copy(update={"incident_id": incident_id}))

    async def list_backups(self, incident_id: str) -> List[BackupArtifact]:
        return await self._repo.list_backups(incident_id)

    async def latest_backup(self, incident_id: str, path: str) -> Optional[BackupArtifact]:
        matches = [b for b in await self._repo.list_backups(incident_id) if b.original_path == path]
        return max(matches, key=lambda b: (b.created_at, b.sequence)) if matches else None

    async def change_altered_content(self, change: FileChange) -> bool:
        """False when the post-change checksum equals the backed-up checksum."""
        backup = await self.latest_backup(change.incident_id, change.path)
        if backup is None or change.checksum is None:
            return True
        return backup.checksum != change.checksum

    # ------------------------------------------------------------------ #
    #  Capture                                                             #
    # ------------------------------------------------------------------ #

    async def run(self, incident_id: str, session: RemoteSession, command: str) -> CommandExecution:
        execution = await self._executor.execute(session, command)
        return await self.record_command(incident_id, execution)

    async def run_template(
        self,
        incident_id: str,
        session: RemoteSession,
        template: str,
        **params: Any,
    ) -> CommandExecution:
        execution = await self._executor.execute_template(session, template, params)
        return await self.record_command(incident_id, execution)

    async def capture_file_backup(
        self,
        incident_id: str,
        session: RemoteSession,
        path: str,
        artifact_type: ArtifactType = ArtifactType.FILE,
    ) -> Optional[BackupArtifact]:
        """Back up a single remote file. Returns None if the file does not exist."""
        try:
            data = await self._executor.read_file(session, path)
        except RemoteFileNotFound:
            logger.info(f"[{incident_id}] nothing to back up at {path}")
            return None
        stored_path, checksum, size = await self._store.save(incident_id, data)
        return await self.record_backup(incident_id, artifact_type, path, stored_path, checksum, size)

    async def capture_directory_backup(
        self,
        incident_id: str,
        session: RemoteSession,
        path: str,
    ) -> Optional[BackupArtifact]:
        """Archive a remote directory with tar, fetch it, and store the archive."""
        path = path.rstrip("/")
        check = await self.run_template(incident_id, session, "test -d {{path}}", path=path)
        if not check.ok:
            logger.info(f"[{incident_id}] no directory to back up at {path}")
            return None

        archive = posixpath.join(self._staging, f"backup-{uuid4().hex}.tar.gz")
        await self.run_template(incident_id, session, "mkdir -p {{staging}}", staging=self._staging)
        result = await self.run_template(
            incident_id,
            session,
            "tar -czf {{archive}} -C {{parent}} {{name}}",
            archive=archive,
            parent=posixpath.dirname(path) or "/",
            name=posixpath.basename(path),
        )
        if not result.ok:
            raise RemoteOperationError(f"Archiving {path} failed with exit code {result.exit_code}")
        try:
            data = await self._executor.read_file(session, archive)
        finally:
            await self.run_template(incident_id, session, "rm -f {{archive}}", archive=archive)

        stored_path, checksum, size = await self._store.save(incident_id, data, suffix=".tar.gz")
        return await self.record_backup(
            incident_id, ArtifactType.DIRECTORY, path, stored_path, checksum, size,
            metadata={"format": "tar.gz"},
        )

    # ------------------------------------------------------------------ #
    #  Rollback                                                            #
    # ------------------------------------------------------------------ #

    async def plan_rollback(self, incident_id: str) -> List[RollbackStep]:
        """
        Pair every file change with the most recent backup of its path taken
        no later than the change, newest change first. Equal timestamps are
        broken by ledger sequence; an exact path match wins over a covering
        directory archive.
        """
        backups = await self._repo.list_backups(incident_id)
        changes = await self._repo.list_file_changes(incident_id)

        steps: List[RollbackStep] = []
        for change in sorted(changes, key=lambda c: (c.timestamp, c.sequence), reverse=True):
            candidates = [
                b for b in backups
                if _covers(b, change.path) and b.created_at <= change.timestamp
            ]
            if not candidates:
                raise LedgerConsistencyViolation(
                    f"File change {change.id} ({change.change_type.value} {change.path}) "
                    f"has no backup taken before it; refusing to roll back"
                )
            backup = max(
                candidates,
                key=lambda b: (b.original_path == change.path, b.created_at, b.sequence),
            )
            steps.append(RollbackStep(change=change, backup=backup))
        return steps

    async def execute_rollback(self, incident_id: str, session: RemoteSession) -> List[Dict[str, Any]]:
        """
        Replay the rollback plan. Each restored step is recorded as evidence so
        a resumed rollback skips it. Any failure raises RollbackFailed.
        """
        plan = await self.plan_rollback(incident_id)
        restored: List[Dict[str, Any]] = []
        for step in plan:
            key = f"rollback:{step.change.id}"
            if await self.find_evidence(incident_id, key):
                continue
            outcome = await self._restore(incident_id, session, step)
            await self.record_evidence(
                incident_id, "rollback_restore", outcome["checksum"], phase="ROLLBACK",
                key=key, metadata=outcome,
            )
            restored.append(outcome)
        logger.info(f"[{incident_id}] rollback restored {len(restored)} of {len(plan)} change(s)")
        return restored

    async def _restore(self, incident_id: str, session: RemoteSession, step: RollbackStep) -> Dict[str, Any]:
        backup, change = step.backup, step.change
        data = await self._store.load(backup.stored_path)
        if sha256_hex(data) != backup.checksum:
            raise RollbackFailed(f"Stored backup {backup.id} for {backup.original_path} is corrupt")

        if backup.artifact_type == ArtifactType.DIRECTORY:
            await self._restore_directory(incident_id, session, backup, data)
        else:
            await self._executor.write_file(session, backup.original_path, data)
            restored = await self._executor.read_file(session, backup.original_path)
            if sha256_hex(restored) != backup.checksum:
                raise RollbackFailed(
                    f"Restored {backup.original_path} does not match backup checksum {backup.checksum[:12]}"
                )

        moved_to = change.metadata.get("moved_to")
        if change.change_type == ChangeType.MOVED and moved_to:
            result = await self.run_template(incident_id, session, "rm -rf {{path}}", path=moved_to)
            if not result.ok:
                raise RollbackFailed(f"Removing relocated copy {moved_to} failed with exit code {result.exit_code}")

        logger.info(f"[{incident_id}] restored {backup.original_path} from backup {backup.id}")
        return {
            "change_id": change.id,
            "backup_id": backup.id,
            "path": backup.original_path,
            "checksum": backup.checksum,
        }

    async def _restore_directory(
        self,
        incident_id: str,
        session: RemoteSession,
        backup: BackupArtifact,
        data: bytes,
    ):
        archive = posixpath.join(self._staging, f"restore-{uuid4().hex}.tar.gz")
        await self.run_template(incident_id, session, "mkdir -p {{staging}}", staging=self._staging)
        await self._executor.write_file(session, archive, data)
        try:
            uploaded = await self._executor.read_file(session, archive)
            if sha256_hex(uploaded) != backup.checksum:
                raise RollbackFailed(f"Uploaded archive for {backup.original_path} failed checksum verification")
            removed = await self.run_template(incident_id, session, "rm -rf {{path}}", path=backup.original_path)
            if not removed.ok:
                raise RollbackFailed(f"Clearing {backup.original_path} failed with exit code {removed.exit_code}")
            extracted = await self.run_template(
                incident_id,
                session,
                "tar -xzf {{archive}} -C {{parent}}",
                archive=archive,
                parent=posixpath.dirname(backup.original_path) or "/",
            )
            if not extracted.ok:
                raise RollbackFailed(
                    f"Extracting backup of {backup.original_path} failed with exit code {extracted.exit_code}"
                )
        finally:
            await self.run_template(incident_id, session, "rm -f {{archive}}", archive=archive)
