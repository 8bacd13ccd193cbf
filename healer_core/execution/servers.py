from typing import Dict, Protocol

from ..exceptions import ValidationError
from ..schemas.server import ServerConnectionInfo


class ServerDirectory(Protocol):
    """Server credential provider."""

    async def get_server(self, server_id: str) -> ServerConnectionInfo:
        ...


class StaticServerDirectory:
    """In-process directory, used by tests and single-host deployments."""

    def __init__(self, servers: Dict[str, ServerConnectionInfo] | None = None):
        self._servers: Dict[str, ServerConnectionInfo] = dict(servers or {})

    def add(self, server: ServerConnectionInfo):
        self._servers[server.server_id] = server

    async def get_server(self, server_id: str) -> ServerConnectionInfo:
        try:
            return self._servers[server_id]
        except KeyError:
            raise ValidationError(f"Unknown server: {server_id}") from None
