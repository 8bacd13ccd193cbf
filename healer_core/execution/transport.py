"""
SSH transport. The only module that imports asyncssh.

Host keys are verified against a pinned SHA-256 fingerprint: the server's key
is fetched first, compared, and the authenticated connection then trusts that
single key and nothing else.
"""
import asyncio
import hmac
import logging
from typing import Any, Protocol

import asyncssh

from ..exceptions import (
    AuthenticationFailed,
    CommandTimeout,
    HostKeyVerificationError,
    RemoteConnectionError,
    RemoteFileNotFound,
    RemoteOperationError,
)

logger = logging.getLogger("healer-core.execution.transport")

HEALTH_CHECK_TIMEOUT = 5.0


def normalize_fingerprint(fingerprint: str) -> str:
    value = fingerprint.strip()
    if value.upper().startswith("SHA256:"):
        value = value[7:]
    return value.rstrip("=")


def fingerprints_match(pinned: str, presented: str) -> bool:
    return hmac.compare_digest(normalize_fingerprint(pinned), normalize_fingerprint(presented))


class RemoteConnection(Protocol):
    async def run(self, command: str) -> tuple[str, str, int]:
        ...

    async def read_file(self, path: str) -> bytes:
        ...

    async def write_file(self, path: str, data: bytes) -> None:
        ...

    async def is_alive(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class SSHTransport(Protocol):
    async def open(
        self,
        hostname: str,
        port: int,
        username: str,
        auth_type: str,
        credentials: dict[str, Any],
        host_key_fingerprint: str,
        timeout: float,
    ) -> RemoteConnection:
        ...


class AsyncSSHConnection:
    def __init__(self, conn: asyncssh.SSHClientConnection):
        self._conn = conn

    async def run(self, command: str) -> tuple[str, str, int]:
        try:
            result = await self._conn.run(command, check=False, errors="replace")
        except asyncssh.Error as e:
            raise RemoteConnectionError(f"SSH channel failed: {type(e).__name__}") from None
        except OSError as e:
            raise RemoteConnectionError(f"SSH connection lost: {type(e).__name__}") from None
        exit_status = result.exit_status if result.exit_status is not None else -1
        return str(result.stdout or ""), str(result.stderr or ""), exit_status

    async def read_file(self, path: str) -> bytes:
        try:
            async with self._conn.start_sftp_client() as sftp:
                async with sftp.open(path, "rb") as f:
                    return await f.read()
        except asyncssh.SFTPNoSuchFile:
            raise RemoteFileNotFound(f"Remote file not found: {path}") from None
        except asyncssh.SFTPError as e:
            raise RemoteOperationError(f"SFTP read failed for {path}: {e.reason}") from None
        except (asyncssh.Error, OSError) as e:
            raise RemoteConnectionError(f"SFTP session failed: {type(e).__name__}") from None

    async def write_file(self, path: str, data: bytes) -> None:
        try:
            async with self._conn.start_sftp_client() as sftp:
                async with sftp.open(path, "wb") as f:
                    await f.write(data)
        except asyncssh.SFTPNoSuchFile:
            raise RemoteFileNotFound(f"Remote directory not found for: {path}") from None
        except asyncssh.SFTPError as e:
            raise RemoteOperationError(f"SFTP write failed for {path}: {e.reason}") from None
        except (asyncssh.Error, OSError) as e:
            raise RemoteConnectionError(f"SFTP session failed: {type(e).__name__}") from None

    async def is_alive(self) -> bool:
        try:
            result = await asyncio.wait_for(self._conn.run("true", check=False), HEALTH_CHECK_TIMEOUT)
        except (asyncssh.Error, OSError, asyncio.TimeoutError):
            return False
        return result.exit_status == 0

    async def close(self) -> None:
        self._conn.close()
        await self._conn.wait_closed()


class AsyncSSHTransport:
    """Opens strictly verified asyncssh connections."""

    async def open(
        self,
        hostname: str,
        port: int,
        username: str,
        auth_type: str,
        credentials: dict[str, Any],
        host_key_fingerprint: str,
        timeout: float,
    ) -> AsyncSSHConnection:
        if not host_key_fingerprint:
            raise HostKeyVerificationError("No pinned host key fingerprint; refusing to connect")

        try:
            server_key = await asyncio.wait_for(
                asyncssh.get_server_host_key(hostname, port), timeout
            )
        except asyncio.TimeoutError:
            raise CommandTimeout(f"Timed out fetching host key from {hostname}:{port}", timeout) from None
        except (asyncssh.Error, OSError) as e:
            raise RemoteConnectionError(
                f"Could not reach {hostname}:{port}: {type(e).__name__}"
            ) from None

        if server_key is None:
            raise HostKeyVerificationError(f"{hostname}:{port} presented no host key")
        presented = server_key.get_fingerprint("sha256")
        if not fingerprints_match(host_key_fingerprint, presented):
            logger.error(f"Host key mismatch for {hostname}:{port}: presented {presented}")
            raise HostKeyVerificationError(
                f"Host key for {hostname}:{port} does not match the pinned fingerprint"
            )

        options: dict[str, Any] = {
            "port": port,
            "username": username,
            "known_hosts": ([server_key], [], []),
            "agent_path": None,
        }
        if auth_type == "password":
            options["password"] = credentials["password"]
            options["client_keys"] = None
            options["preferred_auth"] = "password,keyboard-interactive"
        else:
            try:
                key = asyncssh.import_private_key(
                    credentials["private_key"], credentials.get("passphrase")
                )
            except (asyncssh.KeyImportError, ValueError):
                raise AuthenticationFailed("Stored private key could not be loaded") from None
            options["client_keys"] = [key]
            options["preferred_auth"] = "publickey"

        try:
            conn = await asyncio.wait_for(asyncssh.connect(hostname, **options), timeout)
        except asyncio.TimeoutError:
            raise CommandTimeout(f"Timed out connecting to {hostname}:{port}", timeout) from None
        except asyncssh.HostKeyNotVerifiable:
            raise HostKeyVerificationError(
                f"Host key for {hostname}:{port} changed during connection"
            ) from None
        except asyncssh.PermissionDenied:
            raise AuthenticationFailed(f"Authentication failed for {username}@{hostname}") from None
        except (asyncssh.Error, OSError) as e:
            raise RemoteConnectionError(
                f"SSH connection to {hostname}:{port} failed: {type(e).__name__}"
            ) from None
        return AsyncSSHConnection(conn)
