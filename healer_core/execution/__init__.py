from .circuit_breaker import CircuitBreakerRegistry, CircuitState
from .service import ExecutionService, RemoteSession
from .validation import (
    render_template,
    validate_command,
    validate_hostname,
    validate_path,
    validate_port,
    validate_username,
)

__all__ = [
    "CircuitBreakerRegistry",
    "CircuitState",
    "ExecutionService",
    "RemoteSession",
    "render_template",
    "validate_command",
    "validate_hostname",
    "validate_path",
    "validate_port",
    "validate_username",
]
