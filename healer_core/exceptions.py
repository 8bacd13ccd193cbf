"""Error taxonomy for the remediation engine.

Messages are built from already-redacted text: nothing raised from here may
carry a credential or other secret.
"""


class HealerError(Exception):
    """Base class for all engine errors."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(HealerError):
    """Bad input to a public operation. Never reaches the network."""


class CommandRejected(ValidationError):
    """The sanitizer refused a command or path."""

    def __init__(self, message: str, reason: str = "rejected"):
        super().__init__(message)
        self.reason = reason


class RemoteConnectionError(HealerError):
    """Network failure talking to a managed server."""

    retryable = True

    def __init__(self, message: str, server_id: str | None = None):
        super().__init__(message)
        self.server_id = server_id


class HostKeyVerificationError(RemoteConnectionError):
    """Missing or mismatched pinned host key. Never retried."""

    retryable = False


class AuthenticationFailed(RemoteConnectionError):
    """Server refused the stored credentials."""

    retryable = False


class PoolExhausted(RemoteConnectionError):
    """Every pooled session is leased and the pool is at capacity."""


class CircuitOpen(RemoteConnectionError):
    """Calls to a server are suspended after repeated connection failures."""

    retryable = False

    def __init__(self, message: str, server_id: str | None = None, retry_after: float = 0.0):
        super().__init__(message, server_id=server_id)
        self.retry_after = retry_after


class CommandTimeout(HealerError):
    """A connect or command exceeded its deadline."""

    retryable = True

    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout


class CredentialError(HealerError):
    """Stored credentials could not be decrypted or are malformed."""


class InvalidTransition(HealerError):
    """State machine misuse."""

    def __init__(self, message: str, from_state: str | None = None, to_state: str | None = None):
        super().__init__(message)
        self.from_state = from_state
        self.to_state = to_state


class AttemptLimitExceeded(HealerError):
    """A fix attempt would exceed the incident's attempt cap."""


class LedgerConsistencyViolation(HealerError):
    """The ledger cannot justify a rollback step. Halts rollback."""


class RollbackFailed(HealerError):
    """Restoring a backup failed or produced unexpected bytes."""


class PersistenceError(HealerError):
    """Repository contract failure."""


class IncidentNotFound(PersistenceError):
    pass


class PhaseFailure(HealerError):
    """A phase exhausted its local retry budget or hit a non-retryable error."""

    def __init__(self, message: str, phase: str, cause: Exception | None = None):
        super().__init__(message)
        self.phase = phase
        self.cause = cause


class RemoteFileNotFound(HealerError):
    """A remote path requested for transfer does not exist."""


class RemoteOperationError(HealerError):
    """A remote file operation failed for a reason other than connectivity."""
