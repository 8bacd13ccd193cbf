import logging
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..exceptions import RemoteOperationError
from ..execution.pool import RemoteSession
from ..execution.service import ExecutionService
from ..ledger.service import LedgerService
from ..schemas.environment import EnvironmentSnapshot, WordPressInfo
from ..schemas.incident import Incident
from ..schemas.ledger import BackupArtifact, ChangeType, FileChange
from ..utils import sha256_hex

logger = logging.getLogger("healer-core.playbooks")


@dataclass
class FixContext:
    """Everything a playbook may look at or act through during one attempt."""

    incident: Incident
    session: RemoteSession
    attempt: int
    environment: EnvironmentSnapshot
    wordpress: WordPressInfo
    executor: ExecutionService
    ledger: LedgerService
    diagnostics: str = ""
    baseline: Dict[str, Any] = field(default_factory=dict)

    @property
    def wp_path(self) -> Optional[str]:
        return self.wordpress.path if self.wordpress.found else None

    def wp_file(self, *parts: str) -> str:
        return posixpath.join(self.wordpress.path or "", *parts)

    def mentions(self, *needles: str) -> bool:
        text = self.diagnostics.lower()
        return any(n.lower() in text for n in needles)


@dataclass
class FixOutcome:
    applied: bool
    description: str
    changes: List[FileChange] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


class FixPlaybook(ABC):
    """
    One candidate remediation.
    Ordering comes from the catalog: lower tier first, then lower priority.
    Every mutation goes through the helpers below so it is backed up before
    it happens and recorded as a FileChange after.
    """

    name: str = ""
    description: str = ""

    def __init__(self, tier: int = 1, priority: int = 1):
        self.tier = tier
        self.priority = priority

    @abstractmethod
    async def can_apply(self, ctx: FixContext) -> bool:
        ...

    @abstractmethod
    def hypothesis(self, ctx: FixContext) -> str:
        ...

    @abstractmethod
    async def apply(self, ctx: FixContext) -> FixOutcome:
        ...

    # ------------------------------------------------------------------ #
    #  Helpers                                                             #
    # ------------------------------------------------------------------ #

    async def _exists(self, ctx: FixContext, path: str, directory: bool = False) -> bool:
        flag = "-d" if directory else "-f"
        execution = await ctx.ledger.run_template(
            ctx.incident.id, ctx.session, f"test {flag} {{{{path}}}}", path=path
        )
        return execution.ok

    async def _ensure_backup(self, ctx: FixContext, path: str, directory: bool = False) -> BackupArtifact:
        backup = await ctx.ledger.latest_backup(ctx.incident.id, path)
        if backup is not None:
            return backup
        if directory:
            backup = await ctx.ledger.capture_directory_backup(ctx.incident.id, ctx.session, path)
        else:
            backup = await ctx.ledger.capture_file_backup(ctx.incident.id, ctx.session, path)
        if backup is None:
            raise RemoteOperationError(f"Cannot back up {path}: it does not exist")
        return backup

    async def _write_file(self, ctx: FixContext, path: str, data: bytes) -> FileChange:
        await self._ensure_backup(ctx, path)
        await ctx.executor.write_file(ctx.session, path, data)
        return await ctx.ledger.record_file_change(
            ctx.incident.id, path, ChangeType.MODIFIED, sha256_hex(data), fix_attempt=ctx.attempt
        )

    async def _delete_file(self, ctx: FixContext, path: str) -> FileChange:
        await self._ensure_backup(ctx, path)
        execution = await ctx.ledger.run_template(ctx.incident.id, ctx.session, "rm -f {{path}}", path=path)
        if not execution.ok:
            raise RemoteOperationError(f"Removing {path} failed with exit code {execution.exit_code}")
        return await ctx.ledger.record_file_change(
            ctx.incident.id, path, ChangeType.DELETED, None, fix_attempt=ctx.attempt
        )

    async def _move_directory(self, ctx: FixContext, path: str, target: str) -> FileChange:
        await self._ensure_backup(ctx, path, directory=True)
        execution = await ctx.ledger.run_template(
            ctx.incident.id, ctx.session, "mv {{source}} {{target}}", source=path, target=target
        )
        if not execution.ok:
            raise RemoteOperationError(f"Moving {path} failed with exit code {execution.exit_code}")
        return await ctx.ledger.record_file_change(
            ctx.incident.id, path, ChangeType.MOVED, None, fix_attempt=ctx.attempt,
            metadata={"moved_to": target},
        )

    async def _create_file(self, ctx: FixContext, path: str, data: bytes) -> FileChange:
        """Write a new file. Its parent directory is archived first so rollback removes it."""
        parent = posixpath.dirname(path)
        if not await self._exists(ctx, parent, directory=True):
            execution = await ctx.ledger.run_template(ctx.incident.id, ctx.session, "mkdir -p {{path}}", path=parent)
            if not execution.ok:
                raise RemoteOperationError(f"Creating {parent} failed with exit code {execution.exit_code}")
        await self._ensure_backup(ctx, parent, directory=True)
        await ctx.executor.write_file(ctx.session, path, data)
        return await ctx.ledger.record_file_change(
            ctx.incident.id, path, ChangeType.CREATED, sha256_hex(data), fix_attempt=ctx.attempt
        )

    async def _delete_directory(self, ctx: FixContext, path: str) -> FileChange:
        await self._ensure_backup(ctx, path, directory=True)
        execution = await ctx.ledger.run_template(ctx.incident.id, ctx.session, "rm -rf {{path}}", path=path)
        if not execution.ok:
            raise RemoteOperationError(f"Removing {path} failed with exit code {execution.exit_code}")
        return await ctx.ledger.record_file_change(
            ctx.incident.id, path, ChangeType.DELETED, None, fix_attempt=ctx.attempt
        )
