"""
Custom exceptions for chat session storage.

Local and remote tiers raise these exceptions so callers can tell
a corrupt cache from a flaky network from an expired login.
"""


class ChatStorageError(Exception):
    """Base exception for all chat storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Local tier
# =============================================================================


class StorageIOError(ChatStorageError):
    """Raised when a local storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class StorageQuotaExceededError(StorageIOError):
    """Raised when a value does not fit in the host's local storage quota."""

    def __init__(self, key: str, size_bytes: int, max_bytes: int):
        super().__init__(
            "write", key, cause=ValueError(f"quota exceeded: {size_bytes} > {max_bytes} bytes")
        )
        self.details.update({"size_bytes": size_bytes, "max_bytes": max_bytes})
        self.key = key
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes


class LocalStorageCorruptError(ChatStorageError):
    """Raised when a persisted local value cannot be parsed."""

    def __init__(self, key: str, cause: Exception | None = None):
        details = {"key": key}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Corrupt local value for key: {key}", details)
        self.key = key
        self.cause = cause


# =============================================================================
# Remote tier
# =============================================================================


class RemoteStoreError(ChatStorageError):
    """Base exception for remote store failures."""

    def __init__(
        self,
        operation: str,
        status_code: int | None = None,
        cause: Exception | None = None,
        message: str | None = None,
    ):
        details: dict = {"operation": operation}
        if status_code is not None:
            details["status_code"] = status_code
        if cause:
            details["cause"] = str(cause)
        super().__init__(message or f"Remote store error during {operation}", details)
        self.operation = operation
        self.status_code = status_code
        self.cause = cause


class RemoteTransientError(RemoteStoreError):
    """Network failure, timeout, throttling or 5xx. Worth trying again later."""


class RemoteAuthError(RemoteStoreError):
    """Remote store rejected the caller's credentials (401/403)."""


class RemoteNotFoundError(RemoteStoreError):
    """Remote item does not exist (404)."""


class CircuitOpenError(ChatStorageError):
    """Raised when the circuit breaker is open and requests are rejected."""

    def __init__(self, name: str, retry_in: float | None = None):
        details: dict = {"circuit": name}
        if retry_in is not None:
            details["retry_in_seconds"] = round(retry_in, 3)
        super().__init__(f"Circuit breaker '{name}' is OPEN - service unavailable", details)
        self.name = name
        self.retry_in = retry_in


class SecretFetchError(ChatStorageError):
    """Raised when the secret proxy cannot return a secret."""

    def __init__(self, secret_name: str, reason: str, status_code: int | None = None):
        details: dict = {"secret_name": secret_name, "reason": reason}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(f"Failed to get secret {secret_name}: {reason}", details)
        self.secret_name = secret_name
        self.reason = reason
        self.status_code = status_code


class ConfigurationError(ChatStorageError):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, setting: str, reason: str):
        super().__init__(f"Invalid configuration for {setting}: {reason}", {"setting": setting})
        self.setting = setting
        self.reason = reason
