from .service import DiscoveryService

__all__ = ["DiscoveryService"]
