from abc import ABC, abstractmethod


class BaseService(ABC):
    """
    Base class for long-lived engine components.
    Anything with background work (sweepers, pollers) is started and stopped
    by the ServiceManager in registration order.
    """

    def __init__(self, name: str):
        self._name = name
        self._running = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._running

    @abstractmethod
    async def start(self):
        """Asynchronously start the service."""

    @abstractmethod
    async def stop(self):
        """Asynchronously stop the service."""
