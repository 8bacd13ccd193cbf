import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Mapping

from ..config import Settings
from ..exceptions import (
    CommandTimeout,
    HealerError,
    HostKeyVerificationError,
    RemoteConnectionError,
)
from ..schemas.ledger import CommandExecution
from ..service_manager.base_service import BaseService
from .circuit_breaker import CircuitBreakerRegistry, counts_as_failure
from .crypto import CredentialCipher
from .pool import ConnectionPool, RemoteSession
from .redaction import redact_command, redact_text, safe_error_message
from .servers import ServerDirectory
from .transport import AsyncSSHTransport, SSHTransport
from .validation import (
    render_template,
    validate_command,
    validate_hostname,
    validate_path,
    validate_port,
    validate_username,
)

logger = logging.getLogger("healer-core.execution")

MAX_OUTPUT_CHARS = 64 * 1024


def _secret_values(credentials: Mapping[str, Any]) -> tuple[str, ...]:
    return tuple(str(v) for v in credentials.values() if v)


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n... [truncated {len(text) - MAX_OUTPUT_CHARS} chars]"


class ExecutionService(BaseService):
    """
    Execution Service.
    Responsibility: the only component that talks to managed servers.
    Validates every command and path before transmission, verifies host keys
    against pinned fingerprints, redacts everything it returns or logs, and
    owns the per-server connection pool.
    """

    def __init__(
        self,
        settings: Settings,
        servers: ServerDirectory,
        transport: SSHTransport | None = None,
        pool: ConnectionPool | None = None,
        cipher: CredentialCipher | None = None,
        allowed_commands: Iterable[str] | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ):
        super().__init__("ExecutionService")
        self._settings = settings
        self._servers = servers
        self._transport = transport or AsyncSSHTransport()
        self._pool = pool or ConnectionPool(
            max_size=settings.SSH_POOL_MAX_SIZE,
            max_idle_seconds=settings.SSH_POOL_MAX_IDLE_SECONDS,
            sweep_interval=settings.SSH_POOL_SWEEP_INTERVAL,
        )
        self._cipher = cipher or CredentialCipher(settings.SECRET_KEY)
        self._allowed_commands = frozenset(allowed_commands) if allowed_commands is not None else None
        self._breakers = breakers or CircuitBreakerRegistry.from_settings(settings)

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    async def start(self):
        await self._pool.start()
        self._running = True
        logger.info("ExecutionService started.")

    async def stop(self):
        self._running = False
        await self._pool.stop()
        logger.info("ExecutionService stopped.")

    # ------------------------------------------------------------------ #
    #  Sessions                                                            #
    # ------------------------------------------------------------------ #

    @asynccontextmanager
    async def _guard(self, server_id: str) -> AsyncIterator[None]:
        """Fail fast while server_id's breaker is open; feed it the outcome otherwise."""
        breaker = self._breakers.get(server_id)
        breaker.before_call()
        try:
            yield
        except HealerError as e:
            if counts_as_failure(e):
                breaker.record_failure(e)
            raise
        breaker.record_success()

    async def connect(self, server_id: str) -> RemoteSession:
        """Lease a verified session to server_id from the pool."""
        async with self._guard(server_id):
            return await self._pool.acquire(server_id, lambda: self._open_session(server_id))

    async def _open_session(self, server_id: str) -> RemoteSession:
        info = await self._servers.get_server(server_id)
        hostname = validate_hostname(info.hostname)
        port = validate_port(info.port)
        username = validate_username(info.username)
        if not info.host_key_fingerprint:
            logger.error(f"Refusing to connect to server {server_id}: no pinned host key fingerprint")
            raise HostKeyVerificationError(
                f"Server {server_id} has no pinned host key fingerprint; pin it before connecting",
                server_id=server_id,
            )

        credentials = self._cipher.decrypt_document(info.encrypted_credentials, info.auth_type)
        secrets = _secret_values(credentials)
        logger.info(f"Connecting to {username}@{hostname}:{port} (server {server_id}, auth={info.auth_type})")
        started = time.monotonic()
        try:
            connection = await self._transport.open(
                hostname,
                port,
                username,
                info.auth_type,
                credentials,
                info.host_key_fingerprint,
                self._settings.SSH_CONNECT_TIMEOUT,
            )
        except HealerError as e:
            message = redact_text(e.message, secrets)
            e.message = message
            e.args = (message,)
            if isinstance(e, RemoteConnectionError):
                e.server_id = server_id
            logger.warning(f"Connection to server {server_id} failed: {message}")
            raise e from None
        except Exception as e:
            message = safe_error_message(e, secrets)
            logger.warning(f"Connection to server {server_id} failed: {message}")
            raise RemoteConnectionError(
                f"Connection to server {server_id} failed: {message}", server_id=server_id
            ) from None
        finally:
            del credentials

        logger.info(
            f"Connected to server {server_id} ({hostname}:{port}) in {time.monotonic() - started:.2f}s "
            f"with verified host key"
        )
        return RemoteSession(server_id=server_id, hostname=hostname, connection=connection)

    async def disconnect(self, session: RemoteSession):
        """Return a session to the pool, or close it if it is no longer trustworthy."""
        await self._pool.release(session)

    @asynccontextmanager
    async def session(self, server_id: str) -> AsyncIterator[RemoteSession]:
        remote = await self.connect(server_id)
        try:
            yield remote
        except (RemoteConnectionError, CommandTimeout):
            remote.broken = True
            raise
        finally:
            await self.disconnect(remote)

    # ------------------------------------------------------------------ #
    #  Commands                                                            #
    # ------------------------------------------------------------------ #

    def render_template(self, template: str, params: Mapping[str, Any]) -> str:
        return render_template(template, params, self._allowed_commands)

    async def execute(
        self,
        session: RemoteSession,
        command: str,
        timeout: float | None = None,
    ) -> CommandExecution:
        """
        Run a single validated command. A non-zero exit is a result, not an
        error; rejection, timeout and connection loss raise.
        """
        validate_command(command, self._allowed_commands)
        audit_command = redact_command(command)
        if session.closed:
            raise RemoteConnectionError(f"Session {session.id} is closed", server_id=session.server_id)

        timeout = timeout or self._settings.SSH_COMMAND_TIMEOUT
        started = time.monotonic()
        async with self._guard(session.server_id):
            try:
                stdout, stderr, exit_code = await asyncio.wait_for(session.connection.run(command), timeout)
            except asyncio.TimeoutError:
                session.broken = True
                logger.warning(f"[{session.server_id}] command timed out after {timeout}s: {audit_command}")
                raise CommandTimeout(f"Command timed out after {timeout}s: {audit_command}", timeout) from None
            except RemoteConnectionError as e:
                session.broken = True
                e.server_id = session.server_id
                logger.warning(f"[{session.server_id}] connection failed running '{audit_command}': {e}")
                raise

        duration = time.monotonic() - started
        execution = CommandExecution(
            server_id=session.server_id,
            command=audit_command,
            exit_code=exit_code,
            stdout=_truncate(redact_text(stdout)),
            stderr=_truncate(redact_text(stderr)),
            duration=duration,
        )
        logger.debug(f"[{session.server_id}] '{audit_command}' exited {exit_code} in {duration:.2f}s")
        return execution

    async def execute_template(
        self,
        session: RemoteSession,
        template: str,
        params: Mapping[str, Any],
        timeout: float | None = None,
    ) -> CommandExecution:
        return await self.execute(session, self.render_template(template, params), timeout)

    # ------------------------------------------------------------------ #
    #  File transfer                                                       #
    # ------------------------------------------------------------------ #

    async def read_file(self, session: RemoteSession, path: str, timeout: float | None = None) -> bytes:
        path = validate_path(path)
        timeout = timeout or self._settings.SSH_COMMAND_TIMEOUT
        async with self._guard(session.server_id):
            try:
                return await asyncio.wait_for(session.connection.read_file(path), timeout)
            except asyncio.TimeoutError:
                session.broken = True
                raise CommandTimeout(f"Reading {path} timed out after {timeout}s", timeout) from None
            except RemoteConnectionError:
                session.broken = True
                raise

    async def write_file(
        self,
        session: RemoteSession,
        path: str,
        data: bytes,
        timeout: float | None = None,
    ):
        path = validate_path(path)
        timeout = timeout or self._settings.SSH_COMMAND_TIMEOUT
        async with self._guard(session.server_id):
            try:
                await asyncio.wait_for(session.connection.write_file(path, data), timeout)
            except asyncio.TimeoutError:
                session.broken = True
                raise CommandTimeout(f"Writing {path} timed out after {timeout}s", timeout) from None
            except RemoteConnectionError:
                session.broken = True
                raise
        logger.info(f"[{session.server_id}] wrote {len(data)} bytes to {path}")
