import asyncio
import json
import logging
from typing import Any, Dict, Protocol, Set

from nats.aio.client import Client as NATS

from ..config import Settings
from ..execution.redaction import redact_mapping
from ..service_manager.base_service import BaseService

logger = logging.getLogger("healer-core.notifier")

TRANSITION_TOPIC = "healer.incident.transition"
STEP_TOPIC = "healer.incident.step"


class Notifier(Protocol):
    """Where incident progress is announced. Delivery is best-effort."""

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Notifier used when no message bus is configured."""

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        logger.info(f"{topic}: {json.dumps(redact_mapping(payload), default=str, sort_keys=True)}")


class NatsNotifier(BaseService):
    """
    NATS Notifier Service.
    Responsibility: Publish incident transitions and steps to the message bus
    with auto-reconnect. Publishes run as background tasks; a failed publish
    is logged and never interrupts the incident that produced it.
    """

    def __init__(self, settings: Settings, client: NATS | None = None):
        super().__init__("NatsNotifier")
        self._settings = settings
        self.nc = client or NATS()
        self._pending: Set[asyncio.Task] = set()

    async def start(self):
        try:
            await self.nc.connect(
                servers=[self._settings.NATS_URL],
                name=self._settings.NATS_CLIENT_ID,
                reconnect_time_wait=2,
                max_reconnect_attempts=-1,  # Infinite reconnects
                error_cb=self._error_cb,
                disconnected_cb=self._disconnected_cb,
                reconnected_cb=self._reconnected_cb,
            )
            self._running = True
            logger.info(f"Connected to NATS at {self._settings.NATS_URL}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def stop(self):
        self._running = False
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self.nc.is_connected:
            await self.nc.drain()
            logger.info("NATS connection closed.")

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        data = json.dumps(redact_mapping(payload), default=str).encode()
        task = asyncio.create_task(self._send(topic, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, topic: str, data: bytes):
        if not self.nc.is_connected:
            logger.warning(f"NATS not connected, dropping {topic} notification")
            return
        try:
            await self.nc.publish(topic, data)
        except Exception as e:
            logger.error(f"Failed to publish to {topic}: {e}", exc_info=True)

    async def _error_cb(self, e):
        logger.error(f"NATS Error: {e}")

    async def _disconnected_cb(self):
        logger.warning("Disconnected from NATS...")

    async def _reconnected_cb(self):
        logger.info("Reconnected to NATS!")
