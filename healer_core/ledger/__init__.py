from .service import LedgerService
from .store import BackupStore

__all__ = ["BackupStore", "LedgerService"]
