import asyncio
import logging

from healer_core.config import get_settings
from healer_core.database.session import create_engine, create_schema, create_session_factory
from healer_core.discovery.service import DiscoveryService
from healer_core.execution.service import ExecutionService
from healer_core.ledger.service import LedgerService
from healer_core.ledger.store import BackupStore
from healer_core.logger import setup_logging
from healer_core.notifier.service import LoggingNotifier, NatsNotifier
from healer_core.orchestrator.service import Orchestrator
from healer_core.orchestrator.worker import IncidentWorker
from healer_core.playbooks.registry import PlaybookRegistry
from healer_core.repository.sql import SqlRepository, SqlServerDirectory
from healer_core.service_manager.service_manager import ServiceManager
from healer_core.utils import print_banner
from healer_core.verification.service import SiteVerifier

logger = logging.getLogger("healer-core")


async def main():
    """
    Main entry point for the remediation engine.
    Builds every component with constructor injection and starts the
    long-lived services.
    """
    settings = get_settings()
    setup_logging(settings)
    print_banner("Healer-Core")
    logger.info("Starting Healer-Core...")

    engine = create_engine(settings)
    await create_schema(engine)
    session_factory = create_session_factory(engine)

    # ----------------------------------------------------------------
    # Build services with dependency injection
    # (order matters: dependencies constructed before dependents)
    # ----------------------------------------------------------------
    repository = SqlRepository(session_factory)
    executor = ExecutionService(settings, SqlServerDirectory(session_factory))
    ledger = LedgerService(
        repository, executor, BackupStore(settings.BACKUP_DIRECTORY, settings.BACKUP_MAX_BYTES), settings
    )
    notifier = NatsNotifier(settings) if settings.NATS_URL else LoggingNotifier()
    orchestrator = Orchestrator(
        repository=repository,
        executor=executor,
        discovery=DiscoveryService(executor),
        ledger=ledger,
        verifier=SiteVerifier(settings),
        playbooks=PlaybookRegistry.from_catalog(),
        notifier=notifier,
        settings=settings,
    )

    service_manager = ServiceManager()
    service_manager.register(executor)
    if isinstance(notifier, NatsNotifier):
        service_manager.register(notifier)
    else:
        logger.info("NATS_URL not set; incident notifications go to the log")
    service_manager.register(IncidentWorker(repository, orchestrator, settings))

    await service_manager.start_all()

    try:
        # Keep the main loop running
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        logger.info("Healer-Core shutting down...")
        await service_manager.stop_all()
        await engine.dispose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Healer-Core stopped by user.")
