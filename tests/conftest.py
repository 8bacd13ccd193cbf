import base64
import json
import posixpath
import shlex
from typing import Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from healer_core.config import Settings
from healer_core.exceptions import HostKeyVerificationError, RemoteFileNotFound
from healer_core.execution.crypto import CredentialCipher
from healer_core.execution.servers import StaticServerDirectory
from healer_core.execution.service import ExecutionService
from healer_core.ledger.service import LedgerService
from healer_core.ledger.store import BackupStore
from healer_core.repository.memory import InMemoryRepository
from healer_core.schemas.incident import Incident
from healer_core.schemas.server import ServerConnectionInfo

SECRET_KEY = "unit-test-secret-key"
SERVER_PASSWORD = "Hunter2-Sup3rSecret!"
FINGERPRINT = "SHA256:47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU"

WP_CONFIG = b"""<?php
define( 'DB_NAME', 'wordpress' );
define( 'DB_USER', 'wp_user' );
define( 'DB_PASSWORD', 'db-Pa55word-value' );
define( 'DB_HOST', 'localhost' );
$table_prefix = 'wp_';

/* That's all, stop editing! Happy publishing. */
require_once ABSPATH . 'wp-settings.php';
"""


class FakeHost:
    """
    A remote server held in memory: a flat file map plus the handful of
    shell commands the engine sends. Unknown commands exit 127.
    """

    def __init__(self, fingerprint: str = FINGERPRINT):
        self.fingerprint = fingerprint
        self.files: Dict[str, bytes] = {}
        self.dirs = {"/", "/tmp"}
        self.commands: List[str] = []
        self.responses: Dict[str, tuple] = {}
        self.failures: Dict[str, Callable[[], None]] = {}

    def add_file(self, path: str, data: bytes | str):
        self.files[path] = data.encode() if isinstance(data, str) else data
        parent = posixpath.dirname(path)
        while parent not in self.dirs:
            self.dirs.add(parent)
            parent = posixpath.dirname(parent)

    def _under(self, root: str):
        prefix = root.rstrip("/") + "/"
        return [p for p in self.files if p.startswith(prefix)], [d for d in self.dirs if d.startswith(prefix)]

    def remove(self, path: str):
        self.files.pop(path, None)
        files, dirs = self._under(path)
        for f in files:
            del self.files[f]
        for d in dirs:
            self.dirs.discard(d)
        self.dirs.discard(path)

    def run(self, command: str) -> tuple:
        self.commands.append(command)
        if command in self.failures:
            self.failures.pop(command)()
        if command in self.responses:
            return self.responses[command]
        argv = shlex.split(command)
        handler = getattr(self, f"_cmd_{argv[0].replace('-', '_')}", None)
        if handler is None:
            return "", f"{argv[0]}: command not found", 127
        return handler(argv[1:])

    def _cmd_true(self, args):
        return "", "", 0

    def _cmd_test(self, args):
        flag, path = args
        exists = path in self.files if flag == "-f" else path in self.dirs
        return "", "", 0 if exists else 1

    def _cmd_cat(self, args):
        if args[0] not in self.files:
            return "", f"cat: {args[0]}: No such file or directory", 1
        return self.files[args[0]].decode(), "", 0

    def _cmd_grep(self, args):
        pattern, path = args[-2], args[-1]
        if path not in self.files:
            return "", f"grep: {path}: No such file or directory", 2
        lines = [line for line in self.files[path].decode().splitlines() if pattern in line]
        return "\n".join(lines), "", 0 if lines else 1

    def _cmd_tail(self, args):
        count, path = int(args[1]), args[2]
        if path not in self.files:
            return "", f"tail: cannot open '{path}'", 1
        lines = self.files[path].decode().splitlines()[-count:]
        return "\n".join(lines), "", 0

    def _cmd_df(self, args):
        return "Filesystem Size Used Avail Use% Mounted on\n/dev/sda1 40G 12G 28G 30% /", "", 0

    def _cmd_find(self, args):
        root = args[0]
        found = sorted(p for p in self._under(root)[0] if p.endswith("/wp-config.php"))
        return "\n".join(found), "", 0

    def _cmd_mkdir(self, args):
        self.dirs.add(args[-1])
        return "", "", 0

    def _cmd_rm(self, args):
        path = args[-1]
        if args[0] == "-f" and path in self.dirs:
            return "", f"rm: cannot remove '{path}': Is a directory", 1
        self.remove(path)
        return "", "", 0

    def _cmd_mv(self, args):
        source, target = args
        if source in self.files:
            self.files[target] = self.files.pop(source)
            return "", "", 0
        if source not in self.dirs:
            return "", f"mv: cannot stat '{source}'", 1
        files, dirs = self._under(source)
        for f in files:
            self.files[target + f[len(source):]] = self.files.pop(f)
        for d in dirs:
            self.dirs.discard(d)
            self.dirs.add(target + d[len(source):])
        self.dirs.discard(source)
        self.dirs.add(target)
        return "", "", 0

    def _cmd_tar(self, args):
        if args[0] == "-czf":
            archive, parent, name = args[1], args[3], args[4]
            root = posixpath.join(parent, name)
            files, dirs = self._under(root)
            payload = {
                "dirs": sorted(posixpath.relpath(d, parent) for d in dirs + [root]),
                "files": {
                    posixpath.relpath(f, parent): base64.b64encode(self.files[f]).decode()
                    for f in sorted(files)
                },
            }
            self.files[archive] = json.dumps(payload, sort_keys=True).encode()
            return "", "", 0
        archive, parent = args[1], args[3]
        payload = json.loads(self.files[archive])
        for d in payload["dirs"]:
            self.dirs.add(posixpath.join(parent, d))
        for relative, data in payload["files"].items():
            self.files[posixpath.join(parent, relative)] = base64.b64decode(data)
        return "", "", 0


class FakeConnection:
    def __init__(self, host: FakeHost):
        self.host = host
        self.alive = True
        self.closed = False

    async def run(self, command: str):
        return self.host.run(command)

    async def read_file(self, path: str) -> bytes:
        try:
            return self.host.files[path]
        except KeyError:
            raise RemoteFileNotFound(f"Remote file not found: {path}") from None

    async def write_file(self, path: str, data: bytes) -> None:
        self.host.files[path] = data

    async def is_alive(self) -> bool:
        return self.alive and not self.closed

    async def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Stands in for AsyncSSHTransport; enforces the pinned fingerprint the same way."""

    def __init__(self, host: FakeHost):
        self.host = host
        self.opened: List[dict] = []
        self.connections: List[FakeConnection] = []
        self.error: Optional[Exception] = None

    async def open(self, hostname, port, username, auth_type, credentials, host_key_fingerprint, timeout):
        self.opened.append({
            "hostname": hostname,
            "port": port,
            "username": username,
            "auth_type": auth_type,
            "credentials": dict(credentials),
            "fingerprint": host_key_fingerprint,
        })
        if self.error is not None:
            raise self.error
        if host_key_fingerprint != self.host.fingerprint:
            raise HostKeyVerificationError(f"Host key for {hostname}:{port} does not match the pinned fingerprint")
        connection = FakeConnection(self.host)
        self.connections.append(connection)
        return connection


@pytest.fixture
def settings(tmp_path):
    return Settings(
        SECRET_KEY=SECRET_KEY,
        ENVIRONMENT="testing",
        DATABASE_URL="sqlite+aiosqlite://",
        BACKUP_DIRECTORY=str(tmp_path / "backups"),
        PHASE_RETRY_ATTEMPTS=3,
        PHASE_RETRY_BASE_DELAY=0.0,
        PHASE_RETRY_MAX_DELAY=0.0,
        SSH_COMMAND_TIMEOUT=5.0,
        MAX_ADVANCE_STEPS=50,
    )


@pytest.fixture
def cipher():
    return CredentialCipher(SECRET_KEY)


@pytest.fixture
def server(cipher):
    return ServerConnectionInfo(
        server_id="srv-1",
        hostname="web01.example.com",
        port=22,
        username="deploy",
        auth_type="password",
        encrypted_credentials=cipher.encrypt_document({"password": SERVER_PASSWORD}),
        host_key_fingerprint=FINGERPRINT,
    )


@pytest.fixture
def servers(server):
    return StaticServerDirectory({server.server_id: server})


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def wp_host(host):
    """A host with a broken WordPress install under /var/www/html."""
    host.add_file("/var/www/html/wp-config.php", WP_CONFIG)
    host.add_file("/var/www/html/wp-includes/version.php", "<?php\n$wp_version = '6.4.3';\n")
    host.add_file("/var/www/html/.htaccess", "# BEGIN WordPress\nRewriteEngine On\n# END WordPress\n")
    host.add_file("/var/www/html/.maintenance", "<?php $upgrading = 1700000000; ?>")
    host.add_file("/var/www/html/wp-content/plugins/akismet/akismet.php", "<?php // akismet")
    host.add_file("/var/www/html/wp-content/debug.log", "PHP Notice: something minor\n")
    return host


@pytest.fixture
def transport(host):
    return FakeTransport(host)


@pytest.fixture
def executor(settings, servers, transport):
    return ExecutionService(settings, servers, transport=transport)


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def store(settings):
    return BackupStore(settings.BACKUP_DIRECTORY, settings.BACKUP_MAX_BYTES)


@pytest.fixture
def ledger(repository, executor, store, settings):
    return LedgerService(repository, executor, store, settings)


@pytest_asyncio.fixture
async def incident(repository):
    return await repository.create_incident(
        Incident(site_id="site-1", server_id="srv-1", site_url="https://blog.example.com")
    )
