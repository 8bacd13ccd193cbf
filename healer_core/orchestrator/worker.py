import asyncio
import logging
from typing import Optional, Set

from ..config import Settings
from ..repository.base import Repository
from ..service_manager.base_service import BaseService
from .service import Orchestrator

logger = logging.getLogger("healer-core.worker")


class IncidentWorker(BaseService):
    """
    Incident Worker Service.
    Responsibility: Poll the repository for non-terminal incidents and drive
    each one through the orchestrator. An incident is never picked up twice
    while a run for it is in flight.
    """

    def __init__(self, repository: Repository, orchestrator: Orchestrator, settings: Settings):
        super().__init__("IncidentWorker")
        self._repo = repository
        self._orchestrator = orchestrator
        self._poll_interval = settings.WORKER_POLL_INTERVAL
        self._batch_size = settings.MAX_CONCURRENT_INCIDENTS * 10
        self._poll_task: Optional[asyncio.Task] = None
        self._runs: Set[asyncio.Task] = set()
        self._inflight: Set[str] = set()

    async def start(self):
        self._running = True
        logger.info(f"IncidentWorker started. Poll interval: {self._poll_interval}s")
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self):
        self._running = False
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        for task in list(self._runs):
            task.cancel()
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        logger.info("IncidentWorker stopped.")

    async def _poll_loop(self):
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Error during incident poll: {e}", exc_info=True)
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> int:
        """Schedule every active, unpaused incident not already running. Returns the count scheduled."""
        incidents = await self._repo.list_active_incidents(limit=self._batch_size)
        batch = []
        for incident in incidents:
            if incident.id in self._inflight:
                continue
            if await self._orchestrator.is_paused(incident.id):
                continue
            batch.append(incident.id)
        if not batch:
            return 0

        self._inflight.update(batch)
        task = asyncio.create_task(self._process(batch))
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        logger.info(f"Scheduled {len(batch)} incident(s)")
        return len(batch)

    async def _process(self, batch):
        try:
            results = await self._orchestrator.run_many(batch)
            for incident_id, result in results.items():
                if not isinstance(result, BaseException):
                    logger.info(f"[{incident_id}] run finished in {result.state.value}")
        finally:
            self._inflight.difference_update(batch)
