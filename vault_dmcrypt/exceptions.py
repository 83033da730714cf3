"""
Error taxonomy for vault-dm-crypt.

Every error raised by this package derives from ``VaultDmCryptError``.
Errors that wrap a lower-level failure keep it both as ``cause`` and as the
``__cause__`` of the exception (``raise ... from err``), so the top-level
command can surface the deepest message.

Errors whose ``retryable`` flag is False are never retried by the
``RetryExecutor``: repeating them cannot change the outcome.
"""
from typing import Any


class VaultDmCryptError(Exception):
    """Base error for all vault-dm-crypt failures."""

    retryable: bool = True

    def __init__(self, message: str = "", cause: BaseException | None = None):
        self.message = message or "vault-dm-crypt error"
        self.cause = cause
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class ConfigError(VaultDmCryptError):
    """Invalid or missing configuration."""

    retryable = False

    def __init__(
        self,
        message: str,
        field: str = "",
        cause: BaseException | None = None,
    ):
        self.field = field
        if field:
            message = f"configuration error in field '{field}': {message}"
        else:
            message = f"configuration error: {message}"
        super().__init__(message, cause)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class AuthError(VaultDmCryptError):
    """Authentication against the secret store failed."""


class EmptyRoleID(AuthError):
    def __init__(self):
        super().__init__("AppRole ID cannot be empty")


class EmptySecretID(AuthError):
    def __init__(self):
        super().__init__("Secret ID cannot be empty")


class EmptyToken(AuthError):
    def __init__(self):
        super().__init__("Vault token cannot be empty")


class ExchangeFailed(AuthError):
    """The credential exchange with the store did not yield a session."""


class NoTokenToRenew(AuthError):
    def __init__(self):
        super().__init__("no token to renew")


class AuthMethodError(VaultDmCryptError):
    """Operation is not applicable for the configured authentication method."""

    retryable = False


# ---------------------------------------------------------------------------
# Secret store
# ---------------------------------------------------------------------------

class StoreError(VaultDmCryptError):
    """Base error for secret store operations."""

    operation = "access"

    def __init__(self, path: str, cause: BaseException | None = None):
        self.path = path
        super().__init__(
            f"failed to {self.operation} vault path {path}", cause
        )


class StoreReadError(StoreError):
    operation = "read from"


class StoreWriteError(StoreError):
    operation = "write to"


class StoreDeleteError(StoreError):
    operation = "delete"


class StoreHTTPError(VaultDmCryptError):
    """The store answered with a non-success HTTP status or an unusable body."""

    def __init__(self, status: int, errors: list[Any] | None = None, url: str = ""):
        self.status = status
        self.errors = errors or []
        detail = "; ".join(str(e) for e in self.errors) or "no error details"
        where = f" ({url})" if url else ""
        super().__init__(f"vault returned HTTP {status}{where}: {detail}")


class SecretNotFound(VaultDmCryptError):
    def __init__(self):
        super().__init__("secret not found")


# ---------------------------------------------------------------------------
# Retry / cancellation
# ---------------------------------------------------------------------------

class RetryExhausted(VaultDmCryptError):
    """Every attempt of a retried operation failed."""

    def __init__(self, last_error: BaseException, retries: int):
        self.last_error = last_error
        self.retries = retries
        super().__init__(f"operation failed after {retries} retries", last_error)


class CancellationError(VaultDmCryptError):
    """The caller cancelled the operation (distinct from a timeout)."""

    retryable = False

    def __init__(self, attempts: int = 0):
        self.attempts = attempts
        super().__init__(f"operation cancelled after {attempts} attempt(s)")


# ---------------------------------------------------------------------------
# Key material and devices
# ---------------------------------------------------------------------------

class KeyFormatError(VaultDmCryptError):
    """Key material is not in the expected encoding or length."""

    retryable = False


class StagingError(VaultDmCryptError):
    """The key file could not be staged on disk."""

    retryable = False


class LUKSFailure(VaultDmCryptError):
    """A LUKS operation on a block device failed."""

    def __init__(self, device: str, operation: str, cause: BaseException | None = None):
        self.device = device
        self.operation = operation
        super().__init__(f"LUKS {operation} failed on device {device}", cause)


class CommandError(VaultDmCryptError):
    """An external command exited non-zero or timed out."""

    def __init__(
        self,
        command: str,
        message: str,
        returncode: int | None = None,
        stderr: str = "",
    ):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{command}: {message}")


class DeviceNotFound(VaultDmCryptError):
    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"device with UUID {identifier} not found")


class SystemRequirementError(VaultDmCryptError):
    """The host lacks something dm-crypt operations need."""

    retryable = False
