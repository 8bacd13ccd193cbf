import logging
import posixpath
from typing import Awaitable, Callable, List, Optional

from ..exceptions import HealerError
from ..execution.pool import RemoteSession
from ..execution.service import ExecutionService
from ..schemas.environment import (
    CacheLayer,
    ControlPanelInfo,
    DatabaseInfo,
    EnvironmentSnapshot,
    OSInfo,
    PHPInfo,
    WebServerInfo,
    WordPressInfo,
)
from ..schemas.ledger import CommandExecution
from . import parsers

logger = logging.getLogger("healer-core.discovery")

CommandRecorder = Callable[[CommandExecution], Awaitable[object]]

# (type, marker test, version command, web root), most specific first
_CONTROL_PANELS = [
    ("cpanel", "test -f /usr/local/cpanel/version", "cat /usr/local/cpanel/version", "/home"),
    ("plesk", "test -f /usr/local/psa/version", "cat /usr/local/psa/version", "/var/www/vhosts"),
    ("directadmin", "test -f /usr/local/directadmin/conf/directadmin.conf", None, "/home"),
    ("cyberpanel", "test -d /usr/local/CyberCP", None, "/home"),
]

# Panels that ship their own LiteSpeed build are checked for it first
_WEB_SERVER_ORDER = {
    "cyberpanel": ("litespeed", "apache", "nginx"),
    "cpanel": ("litespeed", "apache", "nginx"),
}
_DEFAULT_WEB_SERVER_ORDER = ("apache", "nginx", "litespeed")

LSWS_BINARY = "/usr/local/lsws/bin/lshttpd"
DEFAULT_DOCUMENT_ROOT = "/var/www/html"


class _Shell:
    """Runs best-effort commands on one session, reporting every command to the recorder."""

    def __init__(self, executor: ExecutionService, session: RemoteSession, record: Optional[CommandRecorder]):
        self._executor = executor
        self._session = session
        self._record = record

    async def _execute(self, command: str, params: Optional[dict]) -> CommandExecution:
        if params:
            execution = await self._executor.execute_template(self._session, command, params)
        else:
            execution = await self._executor.execute(self._session, command)
        if self._record is not None:
            await self._record(execution)
        return execution

    async def run(self, command: str, **params) -> Optional[CommandExecution]:
        """The execution if it exited 0, else None."""
        execution = await self._execute(command, params)
        return execution if execution.ok else None

    async def output(self, command: str, **params) -> Optional[str]:
        """Combined stdout and stderr if the command exited 0."""
        execution = await self.run(command, **params)
        if execution is None:
            return None
        return "\n".join(part for part in (execution.stdout, execution.stderr) if part)

    async def first(self, *commands: str) -> Optional[str]:
        for command in commands:
            out = await self.output(command)
            if out is not None:
                return out
        return None

    async def succeeds(self, command: str, **params) -> bool:
        return await self.run(command, **params) is not None


class DiscoveryService:
    """
    Discovery Service.
    Responsibility: turn shell checks into a structured picture of the target
    stack. A failed check is a negative result; only connectivity errors
    propagate, everything else degrades to "unknown".
    """

    def __init__(self, executor: ExecutionService):
        self._executor = executor

    async def _detect(self, label: str, detector, default):
        try:
            return await detector()
        except HealerError as e:
            if e.retryable:
                raise
            logger.warning(f"{label} detection failed: {e}")
        except ValueError as e:
            logger.warning(f"{label} detection could not parse command output: {e}")
        return default

    async def discover_environment(
        self,
        session: RemoteSession,
        record: Optional[CommandRecorder] = None,
    ) -> EnvironmentSnapshot:
        shell = _Shell(self._executor, session, record)
        os_info = await self._detect("OS", lambda: self._detect_os(shell), OSInfo())
        panel = await self._detect("Control panel", lambda: self._detect_control_panel(shell), ControlPanelInfo())
        web = await self._detect("Web server", lambda: self._detect_web_server(shell, panel), WebServerInfo())
        php = await self._detect("PHP", lambda: self._detect_php(shell, web), PHPInfo())
        database = await self._detect("Database", lambda: self._detect_database(shell), DatabaseInfo())
        caches = await self._detect("Cache", lambda: self._detect_caches(shell, php), [])
        snapshot = EnvironmentSnapshot(
            os=os_info, control_panel=panel, web_server=web, php=php, database=database, caches=caches
        )
        logger.info(
            f"[{session.server_id}] discovered {os_info.name} {os_info.version}, "
            f"panel={panel.type}, web={web.type} {web.version}, php={php.version} ({php.handler}), "
            f"db={database.engine} {database.version}"
        )
        return snapshot

    # ------------------------------------------------------------------ #
    #  Detectors                                                           #
    # ------------------------------------------------------------------ #

    async def _detect_os(self, shell: _Shell) -> OSInfo:
        info = OSInfo()
        release = await shell.output("cat /etc/os-release")
        if release is not None:
            parsed = parsers.parse_os_release(release)
        else:
            redhat = await shell.output("cat /etc/redhat-release")
            parsed = parsers.parse_redhat_release(redhat) if redhat else {}
        info.name = parsed.get("name", info.name)
        info.version = parsed.get("version", info.version)
        kernel = await shell.output("uname -r")
        if kernel:
            info.kernel = kernel.strip()
        arch = await shell.output("uname -m")
        if arch:
            info.arch = arch.strip()
        return info

    async def _detect_control_panel(self, shell: _Shell) -> ControlPanelInfo:
        for panel_type, marker, version_command, web_root in _CONTROL_PANELS:
            if not await shell.succeeds(marker):
                continue
            version = parsers.UNKNOWN
            if version_command:
                version = parsers.parse_version(await shell.output(version_command))
            return ControlPanelInfo(type=panel_type, version=version, web_root=web_root)
        return ControlPanelInfo()

    async def _detect_web_server(self, shell: _Shell, panel: ControlPanelInfo) -> WebServerInfo:
        detectors = {
            "apache": self._detect_apache,
            "nginx": self._detect_nginx,
            "litespeed": self._detect_litespeed,
        }
        for server_type in _WEB_SERVER_ORDER.get(panel.type, _DEFAULT_WEB_SERVER_ORDER):
            info = await detectors[server_type](shell)
            if info is not None:
                if not info.document_root:
                    info.document_root = panel.web_root or DEFAULT_DOCUMENT_ROOT
                return info
        return WebServerInfo(document_root=panel.web_root or DEFAULT_DOCUMENT_ROOT)

    async def _detect_apache(self, shell: _Shell) -> Optional[WebServerInfo]:
        if await shell.succeeds("which apache2"):
            binary, ctl, config_path = "apache2", "apache2ctl", "/etc/apache2/apache2.conf"
        elif await shell.succeeds("which httpd"):
            binary, ctl, config_path = "httpd", "httpd", "/etc/httpd/conf/httpd.conf"
        else:
            return None
        version = parsers.parse_version(await shell.output(f"{binary} -v"))
        settings = parsers.parse_apache_settings(await shell.output(f"{ctl} -S") or "")
        modules = parsers.parse_apache_modules(await shell.output(f"{ctl} -M") or "")
        return WebServerInfo(
            type="apache",
            version=version,
            config_path=config_path,
            document_root=settings["document_root"] or "",
            error_log=settings["error_log"],
            modules=modules,
        )

    async def _detect_nginx(self, shell: _Shell) -> Optional[WebServerInfo]:
        if not await shell.succeeds("which nginx"):
            return None
        # nginx -v prints to stderr
        version = parsers.parse_version(await shell.output("nginx -v"))
        config = parsers.parse_nginx_config(await shell.output("nginx -T") or "")
        return WebServerInfo(
            type="nginx",
            version=version,
            config_path=config["config_path"] or "/etc/nginx/nginx.conf",
            document_root=config["document_root"] or "",
            error_log=config["error_log"] or "/var/log/nginx/error.log",
        )

    async def _detect_litespeed(self, shell: _Shell) -> Optional[WebServerInfo]:
        if not await shell.succeeds(f"test -x {LSWS_BINARY}"):
            return None
        return WebServerInfo(
            type="litespeed",
            version=parsers.parse_version(await shell.output(f"{LSWS_BINARY} -v")),
            config_path="/usr/local/lsws/conf/httpd_config.conf",
            document_root="",
            error_log="/usr/local/lsws/logs/error.log",
        )

    async def _detect_php(self, shell: _Shell, web: WebServerInfo) -> PHPInfo:
        version_output = await shell.output("php -v")
        if version_output is None:
            return PHPInfo()
        extensions = parsers.parse_php_modules(await shell.output("php -m") or "")
        ini_path = parsers.parse_php_ini_path(await shell.output("php --ini") or "")
        error_log = parsers.parse_php_error_log(await shell.output("php -i") or "")
        fpm_present = (
            await shell.succeeds("which php-fpm")
            or await shell.succeeds("test -d /run/php")
            or await shell.succeeds("test -d /etc/php-fpm.d")
        )
        cgi_present = False if fpm_present else await shell.succeeds("which php-cgi")
        return PHPInfo(
            version=parsers.parse_version(version_output),
            handler=parsers.determine_php_handler(web.type, web.modules, fpm_present, cgi_present),
            ini_path=ini_path,
            error_log=error_log,
            extensions=extensions,
        )

    async def _detect_database(self, shell: _Shell) -> DatabaseInfo:
        output = await shell.first("mysql --version", "mariadb --version")
        if output is not None:
            parsed = parsers.parse_mysql_version(output)
            return DatabaseInfo(engine=parsed["engine"], version=parsed["version"], port=3306)
        output = await shell.output("psql --version")
        if output is not None:
            return DatabaseInfo(engine="postgresql", version=parsers.parse_version(output), port=5432)
        return DatabaseInfo()

    async def _detect_caches(self, shell: _Shell, php: PHPInfo) -> List[CacheLayer]:
        caches: List[CacheLayer] = []
        if await shell.succeeds("which redis-server"):
            version = parsers.parse_redis_version(await shell.output("redis-server --version") or "")
            active = await self._service_active(shell, "redis-server", "redis")
            caches.append(CacheLayer(type="redis", version=version, active=active))
        if await shell.succeeds("which memcached"):
            version = parsers.parse_version(await shell.output("memcached -h") or "")
            active = await self._service_active(shell, "memcached")
            caches.append(CacheLayer(type="memcached", version=version, active=active))
        if any("opcache" in ext for ext in php.extensions):
            caches.append(CacheLayer(type="opcache", version=php.version, active=True))
        return caches

    async def _service_active(self, shell: _Shell, *units: str) -> bool:
        for unit in units:
            # is-active exits non-zero for inactive units
            execution = await shell.run("systemctl is-active {{unit}}", unit=unit)
            if execution is not None and parsers.is_active(execution.stdout):
                return True
        return False

    # ------------------------------------------------------------------ #
    #  WordPress                                                           #
    # ------------------------------------------------------------------ #

    async def discover_wordpress(
        self,
        session: RemoteSession,
        environment: EnvironmentSnapshot,
        document_root: Optional[str] = None,
        domain: Optional[str] = None,
        record: Optional[CommandRecorder] = None,
    ) -> WordPressInfo:
        shell = _Shell(self._executor, session, record)
        return await self._detect(
            "WordPress",
            lambda: self._detect_wordpress(shell, environment, document_root, domain),
            WordPressInfo(),
        )

    async def _detect_wordpress(
        self,
        shell: _Shell,
        environment: EnvironmentSnapshot,
        document_root: Optional[str],
        domain: Optional[str],
    ) -> WordPressInfo:
        roots = [
            r.rstrip("/") for r in (
                document_root,
                environment.web_server.document_root,
                environment.control_panel.web_root,
                DEFAULT_DOCUMENT_ROOT,
            )
            if r
        ]
        for root in dict.fromkeys(roots):
            config_path = await self._locate_wp_config(shell, root, domain)
            if config_path:
                return await self._read_installation(shell, config_path)
        logger.info("No WordPress installation found in candidate roots")
        return WordPressInfo()

    async def _locate_wp_config(self, shell: _Shell, root: str, domain: Optional[str]) -> Optional[str]:
        direct = f"{root}/wp-config.php"
        if await shell.succeeds("test -f {{path}}", path=direct):
            candidates = [direct]
        else:
            listing = await shell.output(
                "find {{root}} -maxdepth 4 -name wp-config.php -type f", root=root
            )
            candidates = parsers.rank_wp_configs((listing or "").splitlines(), domain)
        for candidate in candidates:
            install_dir = posixpath.dirname(candidate)
            if await shell.succeeds("test -f {{path}}", path=f"{install_dir}/wp-includes/version.php"):
                return candidate
        return None

    async def _read_installation(self, shell: _Shell, config_path: str) -> WordPressInfo:
        install_dir = posixpath.dirname(config_path)
        version_output = await shell.output(
            "grep wp_version {{path}}", path=f"{install_dir}/wp-includes/version.php"
        )
        # Output arrives redacted, DB_PASSWORD never leaves the execution layer in clear
        db_lines = await shell.output("grep DB_ {{path}}", path=config_path) or ""
        multisite = await shell.output("grep MULTISITE {{path}}", path=config_path) or ""
        prefix = await shell.output("grep table_prefix {{path}}", path=config_path) or ""
        info = WordPressInfo(
            found=True,
            path=install_dir,
            version=parsers.parse_wp_version(version_output or ""),
            multisite=parsers.parse_wp_multisite(multisite),
            db_name=parsers.parse_wp_define(db_lines, "DB_NAME"),
            db_host=parsers.parse_wp_define(db_lines, "DB_HOST"),
            db_user=parsers.parse_wp_define(db_lines, "DB_USER"),
            table_prefix=parsers.parse_table_prefix(prefix) or "wp_",
        )
        logger.info(f"WordPress {info.version} at {install_dir} (multisite={info.multisite})")
        return info
