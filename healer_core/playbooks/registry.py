import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Type

import yaml

from .base import FixContext, FixPlaybook
from .builtin import BUILTIN_PLAYBOOKS

logger = logging.getLogger("healer-core.playbooks")

DEFAULT_CATALOG = Path(__file__).with_name("catalog.yaml")


class PlaybookRegistry:
    """Ordered set of fix playbooks, lowest tier then lowest priority first."""

    def __init__(self, playbooks: Iterable[FixPlaybook] = ()):
        self._playbooks: List[FixPlaybook] = []
        for playbook in playbooks:
            self.register(playbook)

    @classmethod
    def from_catalog(
        cls,
        path: Path | str = DEFAULT_CATALOG,
        types: Optional[Dict[str, Type[FixPlaybook]]] = None,
    ) -> "PlaybookRegistry":
        types = types or BUILTIN_PLAYBOOKS
        with open(path, "r") as f:
            catalog = yaml.safe_load(f) or {}
        registry = cls()
        for entry in catalog.get("playbooks", []):
            name = entry.get("name")
            if not entry.get("enabled", True):
                logger.info(f"Playbook {name} disabled in catalog")
                continue
            playbook_type = types.get(name)
            if playbook_type is None:
                raise ValueError(f"Catalog {path} references unknown playbook {name!r}")
            registry.register(playbook_type(tier=int(entry.get("tier", 1)), priority=int(entry.get("priority", 1))))
        logger.info(f"Loaded {len(registry)} fix playbook(s) from {path}")
        return registry

    def register(self, playbook: FixPlaybook):
        if any(p.name == playbook.name for p in self._playbooks):
            raise ValueError(f"Playbook {playbook.name!r} already registered")
        self._playbooks.append(playbook)
        self._playbooks.sort(key=lambda p: (p.tier, p.priority, p.name))

    def get(self, name: str) -> Optional[FixPlaybook]:
        return next((p for p in self._playbooks if p.name == name), None)

    def __len__(self) -> int:
        return len(self._playbooks)

    def __iter__(self):
        return iter(list(self._playbooks))

    async def select(self, ctx: FixContext, attempted: Iterable[str] = ()) -> Optional[FixPlaybook]:
        """First playbook not yet attempted whose preconditions hold."""
        tried = set(attempted)
        for playbook in self._playbooks:
            if playbook.name in tried:
                continue
            if await playbook.can_apply(ctx):
                return playbook
        return None
