"""
Secret scrubbing for anything that leaves the execution layer: log records,
stored command output, exception messages and notification payloads.
"""
import logging
import re
import traceback
from typing import Any, Iterable

REDACTED = "[REDACTED]"

_WP_SECRET_DEFINES = (
    "DB_PASSWORD|AUTH_KEY|SECURE_AUTH_KEY|LOGGED_IN_KEY|NONCE_KEY|"
    "AUTH_SALT|SECURE_AUTH_SALT|LOGGED_IN_SALT|NONCE_SALT"
)

# (pattern, replacement) applied in order
_PATTERNS: list[tuple[re.Pattern, str]] = [
    (
        re.compile(r"-----BEGIN [A-Z0-9 ]*PRIVATE KEY-----.*?-----END [A-Z0-9 ]*PRIVATE KEY-----", re.DOTALL),
        "[REDACTED PRIVATE KEY]",
    ),
    (
        re.compile(r"(define\(\s*['\"](?:" + _WP_SECRET_DEFINES + r")['\"]\s*,\s*)(['\"]).*?\2"),
        r"\1\2" + REDACTED + r"\2",
    ),
    (re.compile(r"(\b[a-zA-Z][a-zA-Z0-9+.-]*://[^:/\s@]+:)([^@\s]+)(@)"), r"\1" + REDACTED + r"\3"),
    (re.compile(r"(--password[=\s]+)(\S+)", re.IGNORECASE), r"\1" + REDACTED),
    (
        re.compile(r"(\b(?:mysql|mysqldump|mariadb|mysqladmin)\b[^\n]*?\s-p)(?=[^\s-])(\S+)"),
        r"\1" + REDACTED,
    ),
    (
        re.compile(r"\b([A-Z0-9_]*(?:PASSWORD|SECRET|TOKEN|PWD|_KEY)[A-Z0-9_]*)=(\S+)"),
        r"\1=" + REDACTED,
    ),
    (
        re.compile(
            r"\b(password|passwd|passphrase|secret|token|api[_-]?key|access[_-]?key|private[_-]?key)"
            r"(\s*[=:]\s*)(\"[^\"]*\"|'[^']*'|[^\s&;,]+)",
            re.IGNORECASE,
        ),
        r"\1\2" + REDACTED,
    ),
    (re.compile(r"(\bBearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE), r"\1" + REDACTED),
]

SENSITIVE_FIELDS = frozenset({
    "password",
    "passphrase",
    "private_key",
    "secret",
    "secret_key",
    "token",
    "api_key",
    "credentials",
    "encrypted_credentials",
    "host_key_fingerprint",
})

# Secrets shorter than this are only scrubbed as a whole, not line by line
_MIN_FRAGMENT = 8


def redact_text(text: str | None, secrets: Iterable[str] = ()) -> str:
    """Apply pattern redaction, then scrub every literal secret supplied."""
    if not text:
        return text or ""
    result = text
    for secret in secrets:
        if not secret:
            continue
        result = result.replace(secret, REDACTED)
        for fragment in secret.splitlines():
            fragment = fragment.strip()
            if len(fragment) >= _MIN_FRAGMENT:
                result = result.replace(fragment, REDACTED)
    for pattern, replacement in _PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def redact_command(command: str, secrets: Iterable[str] = ()) -> str:
    return redact_text(command, secrets)


def redact_mapping(data: Any, secrets: Iterable[str] = ()) -> Any:
    """Recursively redact a JSON-like structure, blanking sensitive keys."""
    secrets = tuple(secrets)
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            if isinstance(key, str) and key.lower() in SENSITIVE_FIELDS:
                cleaned[key] = REDACTED
            else:
                cleaned[key] = redact_mapping(value, secrets)
        return cleaned
    if isinstance(data, (list, tuple)):
        return [redact_mapping(item, secrets) for item in data]
    if isinstance(data, str):
        return redact_text(data, secrets)
    return data


def safe_error_message(exc: BaseException, secrets: Iterable[str] = ()) -> str:
    """Describe a third-party exception without leaking secrets."""
    detail = redact_text(str(exc), secrets)
    name = type(exc).__name__
    return f"{name}: {detail}" if detail else name


class RedactingFilter(logging.Filter):
    """Scrubs formatted log messages and tracebacks before any handler emits them."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = redact_text(message)
        record.args = None
        if record.exc_info:
            formatted = "".join(traceback.format_exception(*record.exc_info))
            record.exc_text = redact_text(formatted)
            record.exc_info = None
        return True
