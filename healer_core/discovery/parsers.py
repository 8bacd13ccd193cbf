"""Pure parsers for discovery command output. None of these touch the network."""
import re
from typing import Dict, List, Optional

UNKNOWN = "unknown"

_VERSION = re.compile(r"(\d+\.\d+(?:\.\d+)?)")
_QUOTED = r"""['"]([^'"]*)['"]"""


def parse_version(text: str | None) -> str:
    if not text:
        return UNKNOWN
    match = _VERSION.search(text)
    return match.group(1) if match else UNKNOWN


def parse_os_release(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")
    return {
        "name": values.get("NAME") or values.get("ID") or UNKNOWN,
        "version": values.get("VERSION_ID") or parse_version(values.get("VERSION")),
    }


def parse_redhat_release(text: str) -> Dict[str, str]:
    """e.g. 'CentOS Linux release 7.9.2009 (Core)'"""
    line = text.strip().splitlines()[0] if text.strip() else ""
    name = line.split(" release ")[0].strip() if " release " in line else UNKNOWN
    return {"name": name or UNKNOWN, "version": parse_version(line)}


def parse_apache_settings(text: str) -> Dict[str, Optional[str]]:
    """Extract ServerRoot, main DocumentRoot and ErrorLog from `apache2ctl -S`."""
    def _field(pattern: str) -> Optional[str]:
        match = re.search(pattern + r':\s*"?([^"\n]+)"?', text)
        return match.group(1).strip() if match else None

    return {
        "server_root": _field(r"ServerRoot"),
        "document_root": _field(r"Main DocumentRoot"),
        "error_log": _field(r"Main ErrorLog"),
    }


def parse_apache_modules(text: str) -> List[str]:
    """`apache2ctl -M` lists ' php_module (shared)' style lines."""
    modules = []
    for line in text.splitlines():
        match = re.match(r"^\s*(\w+_module)\s+\((static|shared)\)", line)
        if match:
            modules.append(match.group(1))
    return modules


def parse_nginx_config(text: str) -> Dict[str, Optional[str]]:
    """Pick the config file, first `root` and first `error_log` from `nginx -T`."""
    config = re.search(r"^# configuration file (\S+?):", text, re.MULTILINE)
    root = re.search(r"^\s*root\s+([^;\s]+)\s*;", text, re.MULTILINE)
    error_log = re.search(r"^\s*error_log\s+([^;\s]+)", text, re.MULTILINE)
    return {
        "config_path": config.group(1) if config else None,
        "document_root": root.group(1) if root else None,
        "error_log": error_log.group(1) if error_log else None,
    }


def parse_php_modules(text: str) -> List[str]:
    modules = []
    for line in text.splitlines():
        name = line.strip()
        if not name or name.startswith("["):
            continue
        modules.append(name.lower())
    return sorted(set(modules))


def parse_php_ini_path(text: str) -> Optional[str]:
    match = re.search(r"Loaded Configuration File:\s*(\S+)", text)
    if not match or match.group(1) == "(none)":
        return None
    return match.group(1)


def parse_php_error_log(text: str) -> Optional[str]:
    """`php -i` prints 'error_log => /path => /path' or 'no value'."""
    match = re.search(r"^error_log\s*=>\s*([^=\n]+?)\s*=>", text, re.MULTILINE)
    if not match:
        return None
    value = match.group(1).strip()
    return None if value == "no value" else value


def determine_php_handler(
    web_server: str,
    apache_modules: List[str],
    fpm_present: bool,
    cgi_present: bool,
) -> str:
    if web_server == "apache" and any(m.startswith("php") for m in apache_modules):
        return "mod_php"
    if web_server == "litespeed":
        return "lsapi"
    if fpm_present:
        return "php-fpm"
    if cgi_present:
        return "cgi"
    return UNKNOWN


def parse_mysql_version(text: str) -> Dict[str, str]:
    """
    `mysql --version` output differs between MySQL ('Ver 8.0.35 for Linux')
    and MariaDB ('Ver 15.1 Distrib 10.6.12-MariaDB'); the client version is
    not the server version in the latter.
    """
    engine = "mariadb" if "mariadb" in text.lower() else "mysql"
    distrib = re.search(r"Distrib\s+(\d+\.\d+(?:\.\d+)?)", text)
    version = distrib.group(1) if distrib else parse_version(text)
    return {"engine": engine, "version": version}


def parse_redis_version(text: str) -> str:
    match = re.search(r"v=(\d+\.\d+(?:\.\d+)?)", text)
    return match.group(1) if match else parse_version(text)


def is_active(systemctl_output: str) -> bool:
    lines = systemctl_output.strip().splitlines()
    return bool(lines) and lines[0].strip() == "active"


def parse_wp_version(text: str) -> str:
    match = re.search(r"\$wp_version\s*=\s*" + _QUOTED, text)
    return match.group(1) if match else UNKNOWN


def parse_wp_define(text: str, name: str) -> Optional[str]:
    match = re.search(r"define\(\s*['\"]" + re.escape(name) + r"['\"]\s*,\s*" + _QUOTED, text)
    return match.group(1) if match else None


def parse_wp_multisite(text: str) -> bool:
    return re.search(r"define\(\s*['\"]MULTISITE['\"]\s*,\s*true\s*\)", text, re.IGNORECASE) is not None


def parse_table_prefix(text: str) -> Optional[str]:
    match = re.search(r"\$table_prefix\s*=\s*" + _QUOTED, text)
    return match.group(1) if match else None


def rank_wp_configs(paths: List[str], domain: Optional[str] = None) -> List[str]:
    """Paths mentioning the site's domain first, then the shallowest."""
    cleaned = [p.strip() for p in paths if p.strip().endswith("wp-config.php")]
    return sorted(
        dict.fromkeys(cleaned),
        key=lambda p: (not (domain and domain in p), p.count("/"), p),
    )
