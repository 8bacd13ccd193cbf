import asyncio
import logging
from pathlib import Path
from uuid import uuid4

from ..exceptions import RollbackFailed, ValidationError
from ..utils import sha256_hex

logger = logging.getLogger("healer-core.ledger.store")


class BackupStore:
    """
    Local storage for captured backup bytes, one directory per incident.
    Files are written once and never modified.
    """

    def __init__(self, root: str, max_bytes: int):
        self._root = Path(root)
        self._max_bytes = max_bytes

    async def save(self, incident_id: str, data: bytes, suffix: str = ".bak") -> tuple[str, str, int]:
        """Persist data; returns (stored_path, sha256, size)."""
        size = len(data)
        if size > self._max_bytes:
            raise ValidationError(f"Backup of {size} bytes exceeds the {self._max_bytes} byte limit")
        target = self._root / incident_id / f"{uuid4().hex}{suffix}"

        def _write():
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "xb") as f:
                f.write(data)

        await asyncio.to_thread(_write)
        checksum = sha256_hex(data)
        logger.debug(f"Stored {size} bytes for incident {incident_id} at {target}")
        return str(target), checksum, size

    async def load(self, stored_path: str) -> bytes:
        path = Path(stored_path)
        try:
            path.resolve().relative_to(self._root.resolve())
        except ValueError:
            raise RollbackFailed(f"Backup path {stored_path} is outside the backup store") from None
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise RollbackFailed(f"Backup file {stored_path} is missing") from None
