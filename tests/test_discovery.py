import pytest

from healer_core.discovery import parsers
from healer_core.discovery.service import DiscoveryService
from healer_core.exceptions import RemoteConnectionError
from healer_core.execution.service import ExecutionService
from healer_core.execution.validation import DEFAULT_ALLOWED_COMMANDS
from healer_core.schemas.environment import EnvironmentSnapshot

APACHE_S = """VirtualHost configuration:
*:80                   blog.example.com (/etc/apache2/sites-enabled/blog.conf:1)
ServerRoot: "/etc/apache2"
Main DocumentRoot: "/var/www/html"
Main ErrorLog: "/var/log/apache2/error.log"
"""

DEBIAN_STACK = {
    "cat /etc/os-release": ('PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\nNAME="Debian GNU/Linux"\nVERSION_ID="12"\n', "", 0),
    "uname -r": ("6.1.0-18-amd64", "", 0),
    "uname -m": ("x86_64", "", 0),
    "which apache2": ("/usr/sbin/apache2", "", 0),
    "apache2 -v": ("Server version: Apache/2.4.57 (Debian)\nServer built: 2023-04-13", "", 0),
    "apache2ctl -S": (APACHE_S, "", 0),
    "apache2ctl -M": ("Loaded Modules:\n core_module (static)\n php_module (shared)\n rewrite_module (shared)\n", "", 0),
    "php -v": ("PHP 8.2.7 (cli) (built: Jun  9 2023 19:37:27) (NTS)", "", 0),
    "php -m": ("[PHP Modules]\nmysqli\nZend OPcache\n\n[Zend Modules]\nZend OPcache\n", "", 0),
    "php --ini": ("Configuration File (php.ini) Path: /etc/php/8.2/cli\nLoaded Configuration File:         /etc/php/8.2/cli/php.ini\n", "", 0),
    "php -i": ("error_log => /var/log/php_errors.log => /var/log/php_errors.log\n", "", 0),
    "mysql --version": ("mysql  Ver 15.1 Distrib 10.6.12-MariaDB, for debian-linux-gnu (x86_64)", "", 0),
}


def test_os_release_parsing():
    assert parsers.parse_os_release('NAME="Ubuntu"\nVERSION="22.04.3 LTS (Jammy Jellyfish)"\n') == {
        "name": "Ubuntu",
        "version": "22.04.3",
    }
    assert parsers.parse_redhat_release("CentOS Linux release 7.9.2009 (Core)\n") == {
        "name": "CentOS Linux",
        "version": "7.9.2009",
    }


def test_mariadb_server_version_is_distrib():
    parsed = parsers.parse_mysql_version("mysql  Ver 15.1 Distrib 10.6.12-MariaDB, for debian-linux-gnu")
    assert parsed == {"engine": "mariadb", "version": "10.6.12"}
    assert parsers.parse_mysql_version("mysql  Ver 8.0.35 for Linux on x86_64")["version"] == "8.0.35"


def test_nginx_config_parsing():
    text = (
        "# configuration file /etc/nginx/nginx.conf:\n"
        "http {\n    error_log /var/log/nginx/site-error.log warn;\n"
        "    server {\n        root /srv/www/blog;\n    }\n}\n"
    )
    assert parsers.parse_nginx_config(text) == {
        "config_path": "/etc/nginx/nginx.conf",
        "document_root": "/srv/www/blog",
        "error_log": "/var/log/nginx/site-error.log",
    }


def test_php_error_log_no_value():
    assert parsers.parse_php_error_log("error_log => no value => no value") is None
    assert parsers.parse_php_ini_path("Loaded Configuration File:         (none)") is None


def test_php_handler_precedence():
    assert parsers.determine_php_handler("apache", ["php_module"], True, False) == "mod_php"
    assert parsers.determine_php_handler("litespeed", [], True, False) == "lsapi"
    assert parsers.determine_php_handler("nginx", [], True, False) == "php-fpm"
    assert parsers.determine_php_handler("nginx", [], False, True) == "cgi"
    assert parsers.determine_php_handler("nginx", [], False, False) == "unknown"


def test_wp_config_parsing():
    config = (
        "define( 'DB_NAME', 'blog' );\ndefine(\"DB_HOST\", \"db.internal:3307\");\n"
        "define( 'MULTISITE', true );\n$table_prefix = 'wpx_';\n"
    )
    assert parsers.parse_wp_define(config, "DB_NAME") == "blog"
    assert parsers.parse_wp_define(config, "DB_HOST") == "db.internal:3307"
    assert parsers.parse_wp_define(config, "DB_USER") is None
    assert parsers.parse_wp_multisite(config)
    assert parsers.parse_table_prefix(config) == "wpx_"
    assert parsers.parse_wp_version("$wp_version = '6.4.3';") == "6.4.3"


def test_wp_config_ranking_prefers_domain_then_depth():
    paths = [
        "/home/alice/public_html/staging/wp-config.php",
        "/home/alice/public_html/wp-config.php",
        "/home/bob/blog.example.com/wp-config.php",
        "/home/alice/public_html/wp-config.php",
        "/home/alice/notes.txt",
    ]
    assert parsers.rank_wp_configs(paths, "blog.example.com") == [
        "/home/bob/blog.example.com/wp-config.php",
        "/home/alice/public_html/wp-config.php",
        "/home/alice/public_html/staging/wp-config.php",
    ]


@pytest.mark.asyncio
async def test_discover_environment_on_debian_apache(executor, host):
    host.responses.update(DEBIAN_STACK)
    recorded = []

    async def record(execution):
        recorded.append(execution)

    async with executor.session("srv-1") as session:
        snapshot = await DiscoveryService(executor).discover_environment(session, record=record)

    assert snapshot.os.name == "Debian GNU/Linux"
    assert snapshot.os.version == "12"
    assert snapshot.os.kernel == "6.1.0-18-amd64"
    assert snapshot.control_panel.type == "none"
    assert snapshot.web_server.type == "apache"
    assert snapshot.web_server.version == "2.4.57"
    assert snapshot.web_server.document_root == "/var/www/html"
    assert snapshot.web_server.error_log == "/var/log/apache2/error.log"
    assert snapshot.php.version == "8.2.7"
    assert snapshot.php.handler == "mod_php"
    assert snapshot.php.error_log == "/var/log/php_errors.log"
    assert snapshot.database.engine == "mariadb"
    assert snapshot.database.version == "10.6.12"
    assert [c.type for c in snapshot.caches] == ["opcache"]
    assert len(recorded) == len(host.commands)


@pytest.mark.asyncio
async def test_bare_host_degrades_to_unknown(executor):
    async with executor.session("srv-1") as session:
        snapshot = await DiscoveryService(executor).discover_environment(session)

    assert snapshot.os.name == "unknown"
    assert snapshot.web_server.type == "unknown"
    assert snapshot.web_server.document_root == "/var/www/html"
    assert snapshot.php.handler == "unknown"
    assert snapshot.database.engine == "unknown"
    assert snapshot.caches == []


@pytest.mark.asyncio
async def test_rejected_command_degrades_only_its_detector(settings, servers, transport, host):
    host.responses.update(DEBIAN_STACK)
    executor = ExecutionService(
        settings, servers, transport=transport, allowed_commands=DEFAULT_ALLOWED_COMMANDS - {"uname"}
    )
    async with executor.session("srv-1") as session:
        snapshot = await DiscoveryService(executor).discover_environment(session)

    assert snapshot.os.name == "unknown"
    assert snapshot.web_server.type == "apache"


@pytest.mark.asyncio
async def test_connection_loss_propagates(executor, host):
    def drop():
        raise RemoteConnectionError("connection reset by peer")

    host.failures["cat /etc/os-release"] = drop
    with pytest.raises(RemoteConnectionError):
        async with executor.session("srv-1") as session:
            await DiscoveryService(executor).discover_environment(session)


@pytest.mark.asyncio
async def test_discover_wordpress_reads_install_without_password(executor, wp_host):
    async with executor.session("srv-1") as session:
        info = await DiscoveryService(executor).discover_wordpress(
            session, EnvironmentSnapshot(), domain="blog.example.com"
        )

    assert info.found
    assert info.path == "/var/www/html"
    assert info.version == "6.4.3"
    assert info.db_name == "wordpress"
    assert info.db_user == "wp_user"
    assert info.db_host == "localhost"
    assert info.table_prefix == "wp_"
    assert not info.multisite
    assert "db-Pa55word-value" not in info.model_dump_json()


@pytest.mark.asyncio
async def test_discover_wordpress_searches_nested_installs(executor, host):
    host.add_file("/var/www/html/blog/wp-config.php", "define( 'DB_NAME', 'nested' );")
    host.add_file("/var/www/html/blog/wp-includes/version.php", "$wp_version = '6.2';")

    async with executor.session("srv-1") as session:
        info = await DiscoveryService(executor).discover_wordpress(session, EnvironmentSnapshot())

    assert info.found
    assert info.path == "/var/www/html/blog"
    assert info.version == "6.2"
    assert info.db_name == "nested"


@pytest.mark.asyncio
async def test_missing_wordpress_is_not_found(executor):
    async with executor.session("srv-1") as session:
        info = await DiscoveryService(executor).discover_wordpress(session, EnvironmentSnapshot())
    assert not info.found
    assert info.path is None
