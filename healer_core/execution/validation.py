"""
Pre-flight gates for everything sent to a managed server.

All checks run locally and raise before any network I/O. Commands are
parsed with shlex so that quoting tricks (``/etc/pa''sswd``) are judged on
the string the remote shell would actually see.
"""
import ipaddress
import posixpath
import re
import shlex
from typing import Any, Iterable, Mapping

from ..exceptions import CommandRejected, ValidationError
from .redaction import redact_text

MAX_COMMAND_LENGTH = 4096
MAX_PARAM_LENGTH = 256
MAX_HOSTNAME_LENGTH = 253
MAX_USERNAME_LENGTH = 32

# Chaining, substitution, redirection, escaping and globbing
METACHARACTERS = frozenset(";&|`$(){}[]<>\\*?~\n\r\x00")

DEFAULT_ALLOWED_COMMANDS = frozenset({
    # inspection
    "ls", "cat", "head", "tail", "grep", "find", "which", "stat", "file",
    "test", "true", "du", "df", "wc", "uname", "uptime", "free", "ps",
    "id", "whoami", "sha256sum", "journalctl",
    # stack
    "wp", "php", "php-fpm", "mysql", "mariadb", "mysqldump", "psql",
    "apache2", "apache2ctl", "apachectl", "httpd", "nginx", "lshttpd",
    "systemctl", "service", "redis-server", "redis-cli", "memcached",
    # file operations used by backups and fixes
    "tar", "gzip", "gunzip", "mv", "cp", "rm", "mkdir", "touch",
})

_DENIED_PATH_PATTERNS = [
    re.compile(r"^/etc/(passwd|shadow|gshadow|master\.passwd)$"),
    re.compile(r"^/etc/sudoers(\.d)?(/|$)"),
    re.compile(r"(^|/)\.ssh(/|$)"),
    re.compile(r"^/dev(/|$)"),
    re.compile(r"^/proc/(self|\d+|thread-self)/(mem|environ)$"),
    re.compile(r"^/proc/(kcore|kmem|sysrq-trigger)$"),
    re.compile(r"^/sys/kernel/(debug|security)(/|$)"),
]

# validate_path is stricter than command scanning: the whole of /proc and /sys
_DENIED_TRANSFER_ROOTS = re.compile(r"^/(proc|sys)(/|$)")

_PROTECTED_TARGETS = frozenset({
    "/", "/bin", "/boot", "/etc", "/home", "/lib", "/lib64", "/opt", "/root",
    "/sbin", "/srv", "/usr", "/var", "/var/www", "/tmp",
})

_HOSTNAME_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")
_USERNAME = re.compile(r"^[a-z_][a-z0-9_-]*$")
_PARAM_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PLACEHOLDER = re.compile(r"\{\{(.*?)\}\}")


def _normalize(token: str) -> str:
    if token.startswith("/"):
        return posixpath.normpath(re.sub(r"/+", "/", token))
    return token


def _has_traversal(token: str) -> bool:
    return ".." in token.split("/")


def _denied(path: str) -> bool:
    normalized = _normalize(path)
    return any(p.search(normalized) for p in _DENIED_PATH_PATTERNS)


def validate_command(command: str, allowed_commands: Iterable[str] | None = None) -> str:
    """
    Return the command unchanged if it is safe to transmit, else raise
    CommandRejected. The message never echoes the raw command.
    """
    if not isinstance(command, str) or not command.strip():
        raise CommandRejected("Command rejected: empty command", reason="empty")
    if len(command) > MAX_COMMAND_LENGTH:
        raise CommandRejected(
            f"Command rejected: longer than {MAX_COMMAND_LENGTH} characters", reason="too_long"
        )
    if "$" in command:
        raise CommandRejected(
            "Command rejected: environment variable expansion or substitution", reason="expansion"
        )
    found = sorted({c for c in command if c in METACHARACTERS})
    if found:
        shown = " ".join(repr(c) for c in found)
        raise CommandRejected(
            f"Command rejected: shell metacharacters not permitted ({shown})", reason="metacharacter"
        )

    try:
        tokens = shlex.split(command)
    except ValueError:
        raise CommandRejected("Command rejected: unbalanced quoting", reason="quoting")
    if not tokens:
        raise CommandRejected("Command rejected: empty command", reason="empty")

    allowed = DEFAULT_ALLOWED_COMMANDS if allowed_commands is None else frozenset(allowed_commands)
    binary = posixpath.basename(tokens[0])
    if binary not in allowed:
        raise CommandRejected(
            f"Command rejected: '{redact_text(binary)}' is not an allowed command", reason="not_allowed"
        )

    for token in tokens[1:]:
        candidates = {token}
        if "=" in token:
            candidates.add(token.split("=", 1)[1])
        for candidate in candidates:
            if _has_traversal(candidate):
                raise CommandRejected("Command rejected: path traversal", reason="traversal")
            if _denied(candidate):
                raise CommandRejected(
                    "Command rejected: references a protected system path", reason="denied_path"
                )

    if binary in ("rm", "mv"):
        for token in tokens[1:]:
            if not token.startswith("-") and _normalize(token) in _PROTECTED_TARGETS:
                raise CommandRejected(
                    f"Command rejected: refusing to {binary} a top-level system directory",
                    reason="dangerous",
                )

    return command


def validate_path(path: str) -> str:
    """Validate a path used for file transfer. Returns the normalized path."""
    if not isinstance(path, str) or not path.strip():
        raise CommandRejected("Path rejected: empty path", reason="empty")
    if any(c in METACHARACTERS for c in path):
        raise CommandRejected("Path rejected: contains shell metacharacters", reason="metacharacter")
    if _has_traversal(path):
        raise CommandRejected("Path rejected: path traversal", reason="traversal")
    if not path.startswith("/"):
        raise CommandRejected("Path rejected: must be absolute", reason="relative")
    normalized = _normalize(path)
    if _denied(normalized) or _DENIED_TRANSFER_ROOTS.search(normalized):
        raise CommandRejected("Path rejected: protected system path", reason="denied_path")
    return normalized


def validate_hostname(hostname: str) -> str:
    """RFC 1123 hostname or IP literal; returns the lowercased form."""
    if not isinstance(hostname, str) or not hostname:
        raise ValidationError("Invalid hostname: empty")
    candidate = hostname.strip().lower().rstrip(".")
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        pass
    if len(candidate) > MAX_HOSTNAME_LENGTH:
        raise ValidationError(f"Invalid hostname: longer than {MAX_HOSTNAME_LENGTH} characters")
    labels = candidate.split(".")
    if not all(_HOSTNAME_LABEL.match(label) for label in labels):
        raise ValidationError("Invalid hostname: not a valid RFC 1123 name")
    return candidate


def validate_port(port: Any) -> int:
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValidationError("Invalid port: must be an integer")
    if not 1 <= port <= 65535:
        raise ValidationError(f"Invalid port {port}: must be between 1 and 65535")
    return port


def validate_username(username: str) -> str:
    if not isinstance(username, str) or not username:
        raise ValidationError("Invalid username: empty")
    if len(username) > MAX_USERNAME_LENGTH:
        raise ValidationError(f"Invalid username: longer than {MAX_USERNAME_LENGTH} characters")
    if not _USERNAME.match(username):
        raise ValidationError(
            "Invalid username: must start with a lowercase letter or underscore "
            "and contain only lowercase letters, digits, '_' or '-'"
        )
    return username


def sanitize_param_value(value: Any) -> str:
    """Strip metacharacters, cap the length, then quote for the shell."""
    text = "".join(c for c in str(value) if c not in METACHARACTERS)
    text = text[:MAX_PARAM_LENGTH]
    return shlex.quote(text)


def render_template(
    template: str,
    params: Mapping[str, Any],
    allowed_commands: Iterable[str] | None = None,
) -> str:
    """
    Substitute ``{{key}}`` placeholders with sanitized values and validate the
    result. Every placeholder needs a parameter and every parameter must be used.
    """
    for key in params:
        if not isinstance(key, str) or not _PARAM_KEY.match(key):
            raise ValidationError(f"Invalid template parameter name: {key!r}")

    placeholders = [name.strip() for name in _PLACEHOLDER.findall(template)]
    for name in placeholders:
        if not _PARAM_KEY.match(name):
            raise ValidationError(f"Invalid template placeholder: {{{{{name}}}}}")

    missing = sorted(set(placeholders) - set(params))
    if missing:
        raise ValidationError(f"Template parameters missing for placeholders: {', '.join(missing)}")
    unused = sorted(set(params) - set(placeholders))
    if unused:
        raise ValidationError(f"Template has no placeholder for parameters: {', '.join(unused)}")

    def _substitute(match: re.Match) -> str:
        return sanitize_param_value(params[match.group(1).strip()])

    rendered = _PLACEHOLDER.sub(_substitute, template)
    if "{{" in rendered or "}}" in rendered:
        raise ValidationError("Template has unconsumed placeholders after substitution")
    return validate_command(rendered, allowed_commands)
