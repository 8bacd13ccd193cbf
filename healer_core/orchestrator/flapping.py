import logging
import time
from collections import deque
from typing import Callable, Deque, Dict

from ..config import Settings
from ..exceptions import ValidationError

logger = logging.getLogger("healer-core.orchestrator.flapping")


class FlappingGuard:
    """
    Refuses new incidents for a site that keeps breaking.
    Once max_incidents are opened for a site inside the sliding window the
    site is put in cooldown; further incidents are rejected until it ends.
    """

    def __init__(
        self,
        window_seconds: float = 600.0,
        max_incidents: int = 3,
        cooldown_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_incidents = max_incidents
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._history: Dict[str, Deque[float]] = {}
        self._cooldown_until: Dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.monotonic) -> "FlappingGuard":
        return cls(
            window_seconds=settings.FLAPPING_WINDOW_SECONDS,
            max_incidents=settings.FLAPPING_MAX_INCIDENTS,
            cooldown_seconds=settings.FLAPPING_COOLDOWN_SECONDS,
            clock=clock,
        )

    def _recent(self, site_id: str, now: float) -> Deque[float]:
        history = self._history.setdefault(site_id, deque())
        while history and now - history[0] > self.window_seconds:
            history.popleft()
        return history

    def check(self, site_id: str):
        """Raise ValidationError if a new incident for site_id must not be opened now."""
        now = self._clock()
        until = self._cooldown_until.get(site_id)
        if until is not None:
            if now < until:
                raise ValidationError(
                    f"Site {site_id} is flapping; new incidents are suppressed for another "
                    f"{until - now:.0f}s"
                )
            del self._cooldown_until[site_id]
            self._history.pop(site_id, None)

        history = self._recent(site_id, now)
        if len(history) >= self.max_incidents:
            self._cooldown_until[site_id] = now + self.cooldown_seconds
            logger.warning(
                f"Site {site_id} opened {len(history)} incidents within {self.window_seconds:.0f}s; "
                f"cooling down for {self.cooldown_seconds:.0f}s"
            )
            raise ValidationError(
                f"Site {site_id} is flapping ({len(history)} incidents in {self.window_seconds:.0f}s); "
                f"new incidents are suppressed for {self.cooldown_seconds:.0f}s"
            )

    def record(self, site_id: str):
        now = self._clock()
        self._recent(site_id, now).append(now)

    def clear(self, site_id: str):
        self._history.pop(site_id, None)
        self._cooldown_until.pop(site_id, None)

    def status(self, site_id: str) -> dict:
        now = self._clock()
        until = self._cooldown_until.get(site_id)
        return {
            "site_id": site_id,
            "recent_incidents": len(self._recent(site_id, now)),
            "cooling_down": until is not None and now < until,
        }
