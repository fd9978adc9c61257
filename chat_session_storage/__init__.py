"""
Chat Session Storage

Local-first chat session storage with best-effort replication to
Azure Cosmos DB.

Provides:
- Durable local storage of the current session and day-indexed history
- Deduplicated, idempotent replication of messages to a remote store
- A circuit breaker that keeps a flaky remote from slowing the chat down
- A cached secret proxy client for remote configuration
- Fire-and-forget usage analytics

Usage:

    >>> from chat_session_storage import build_services, StaticAuth, StorageConfig
    >>> from chat_session_storage.remote import CosmosRemoteStore
    >>> services = build_services(
    ...     config=StorageConfig.from_environment(),
    ...     auth=StaticAuth("user-123"),
    ...     remote=CosmosRemoteStore.from_environment(),
    ... )
    >>> async with services:
    ...     await services.sessions.add_message(message)
    ...     await services.sessions.end_session()
"""

from .analytics import AnalyticsEmitter
from .auth import AnonymousAuth, AuthProvider, ConfigFileAuthProvider, StaticAuth
from .cache import BoundedCache
from .config import CosmosAuthMethod, CosmosConfig, SecretProxyConfig, StorageConfig
from .exceptions import (
    ChatStorageError,
    CircuitOpenError,
    ConfigurationError,
    LocalStorageCorruptError,
    RemoteAuthError,
    RemoteNotFoundError,
    RemoteStoreError,
    RemoteTransientError,
    SecretFetchError,
    StorageIOError,
    StorageQuotaExceededError,
)
from .local import FileKeyValueStore, KeyValueStore, LocalStore, MemoryKeyValueStore, RecoveryReport
from .logging_utils import configure_structured_logging, get_storage_logger, log_once
from .models import ChatMessage, ChatSession, DayHistory, Sender, StorageHealthStatus
from .remote import Page, RemoteHealth, RemoteStore
from .resilience import CircuitBreaker, CircuitState
from .secrets import SecretProxyClient
from .service import ChatStorageServices, build_services, build_services_from_environment
from .session import SessionManager
from .sync import CloudReplicator, DeduplicationTracker, SyncResult, SyncStatus
from .tasks import BackgroundTasks

__all__ = [
    # Entry points
    "SessionManager",
    "build_services",
    "build_services_from_environment",
    "ChatStorageServices",
    # Data model
    "ChatMessage",
    "ChatSession",
    "DayHistory",
    "Sender",
    "StorageHealthStatus",
    # Local tier
    "LocalStore",
    "RecoveryReport",
    "KeyValueStore",
    "FileKeyValueStore",
    "MemoryKeyValueStore",
    # Remote tier
    "RemoteStore",
    "Page",
    "RemoteHealth",
    "CloudReplicator",
    "DeduplicationTracker",
    "SyncResult",
    "SyncStatus",
    "AnalyticsEmitter",
    "SecretProxyClient",
    # Resilience
    "CircuitBreaker",
    "CircuitState",
    "BackgroundTasks",
    "BoundedCache",
    # Auth
    "AuthProvider",
    "AnonymousAuth",
    "StaticAuth",
    "ConfigFileAuthProvider",
    # Configuration
    "StorageConfig",
    "CosmosConfig",
    "CosmosAuthMethod",
    "SecretProxyConfig",
    # Logging
    "configure_structured_logging",
    "get_storage_logger",
    "log_once",
    # Exceptions
    "ChatStorageError",
    "StorageIOError",
    "StorageQuotaExceededError",
    "LocalStorageCorruptError",
    "RemoteStoreError",
    "RemoteTransientError",
    "RemoteAuthError",
    "RemoteNotFoundError",
    "CircuitOpenError",
    "SecretFetchError",
    "ConfigurationError",
]

__version__ = "0.1.0"
