"""
Configuration for chat session storage.

Configuration can be provided directly, via environment variables, or via
a YAML settings file:

```yaml
storage:
  local_path: ~/.chat-session-storage
  circuit_failure_threshold: 3
  circuit_reset_timeout: 30
  request_timeout: 10
  analytics_enabled: true
```

Environment Variables:
    CHAT_STORAGE_LOCAL_PATH: Directory for local storage
    CHAT_STORAGE_CIRCUIT_FAILURE_THRESHOLD: Failures before the circuit opens
    CHAT_STORAGE_CIRCUIT_RESET_TIMEOUT: Seconds before an open circuit probes
    CHAT_STORAGE_REQUEST_TIMEOUT: Seconds before a remote call is abandoned
    CHAT_STORAGE_ANALYTICS_ENABLED: Emit analytics events (default: true)
    CHAT_STORAGE_LOCAL_QUOTA_BYTES: Maximum size of one stored value
    CHAT_STORAGE_COSMOS_ENDPOINT: Cosmos DB endpoint URL
    CHAT_STORAGE_COSMOS_KEY: Cosmos DB key (if using key auth)
    CHAT_STORAGE_COSMOS_DATABASE: Database name (default: chat-storage)
    CHAT_STORAGE_COSMOS_AUTH_METHOD: key | default_credential | managed_identity
    CHAT_STORAGE_SECRET_PROXY_URL: Base URL of the secret proxy
    CHAT_STORAGE_DEVELOPMENT_MODE: Allow CHAT_STORAGE_SECRET_<NAME> fallbacks
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .secrets import SecretProxyClient

ENV_PREFIX = "CHAT_STORAGE_"

COSMOS_ENDPOINT_SECRET = "azure-cosmos-db-endpoint-uri"
COSMOS_KEY_SECRET = "azure-cosmos-db-key"
COSMOS_DATABASE_SECRET = "azure-cosmos-db-database-name"

DEFAULT_DATABASE = "chat-storage"
ANALYTICS_TTL = timedelta(days=90)


def _env(name: str) -> str | None:
    value = os.environ.get(ENV_PREFIX + name)
    return value if value not in (None, "") else None


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: Any, kind: type) -> Any:
    value = _env(name)
    if value is None:
        return default
    try:
        return kind(value)
    except ValueError as e:
        raise ConfigurationError(ENV_PREFIX + name, f"expected {kind.__name__}, got {value!r}") from e


def _default_local_path() -> Path:
    return Path.home() / ".chat-session-storage"


@dataclass
class StorageConfig:
    """Settings for the local tier, replication and resilience.

    Attributes:
        local_path: Directory holding the local key/value documents
        circuit_failure_threshold: Consecutive failures before the circuit opens
        circuit_reset_timeout: Seconds an open circuit waits before probing
        request_timeout: Seconds before a remote call counts as failed
        title_max_length: Characters kept from the first user message for a title
        summary_max_length: Characters kept from the first user message for a summary
        history_page_size: Conversations fetched per page when pulling history
        message_page_size: Messages fetched per page when pulling history
        max_pull_conversations: Upper bound on conversations folded per pull
        analytics_enabled: Whether analytics events are written
        local_quota_bytes: Maximum size of one stored value (None = unlimited)
    """

    local_path: Path | None = None
    circuit_failure_threshold: int = 3
    circuit_reset_timeout: float = 30.0
    request_timeout: float = 10.0
    title_max_length: int = 30
    summary_max_length: int = 50
    history_page_size: int = 50
    message_page_size: int = 100
    max_pull_conversations: int = 50
    analytics_enabled: bool = True
    local_quota_bytes: int | None = None

    def __post_init__(self) -> None:
        if self.local_path is None:
            self.local_path = _default_local_path()
        else:
            self.local_path = Path(self.local_path).expanduser()

        if self.circuit_failure_threshold < 1:
            raise ConfigurationError("circuit_failure_threshold", "must be >= 1")
        for name in ("circuit_reset_timeout", "request_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(name, "must be > 0")
        for name in ("history_page_size", "message_page_size", "max_pull_conversations"):
            if getattr(self, name) < 1:
                raise ConfigurationError(name, "must be >= 1")

    @classmethod
    def from_environment(cls) -> StorageConfig:
        """Create configuration from CHAT_STORAGE_* environment variables."""
        quota = _env_number("LOCAL_QUOTA_BYTES", None, int)
        return cls(
            local_path=_env("LOCAL_PATH"),
            circuit_failure_threshold=_env_number("CIRCUIT_FAILURE_THRESHOLD", 3, int),
            circuit_reset_timeout=_env_number("CIRCUIT_RESET_TIMEOUT", 30.0, float),
            request_timeout=_env_number("REQUEST_TIMEOUT", 10.0, float),
            title_max_length=_env_number("TITLE_MAX_LENGTH", 30, int),
            summary_max_length=_env_number("SUMMARY_MAX_LENGTH", 50, int),
            history_page_size=_env_number("HISTORY_PAGE_SIZE", 50, int),
            message_page_size=_env_number("MESSAGE_PAGE_SIZE", 100, int),
            max_pull_conversations=_env_number("MAX_PULL_CONVERSATIONS", 50, int),
            analytics_enabled=_env_bool("ANALYTICS_ENABLED", True),
            local_quota_bytes=quota,
        )

    @classmethod
    def from_yaml(cls, path: Path | str) -> StorageConfig:
        """Load the ``storage:`` section of a YAML settings file.

        Unknown keys are ignored. A missing section yields the defaults.

        Raises:
            ConfigurationError: If the file is missing or not valid YAML
        """
        config_path = Path(path).expanduser()
        try:
            content = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except FileNotFoundError as e:
            raise ConfigurationError(str(config_path), "settings file not found") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(str(config_path), f"invalid YAML: {e}") from e

        section = (content.get("storage") or {}) if isinstance(content, dict) else {}
        if not isinstance(section, dict):
            raise ConfigurationError("storage", "section must be a mapping")

        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in section.items() if k in known})


class CosmosAuthMethod(Enum):
    """Authentication method for Cosmos DB.

    KEY: Use the account key (development only)
    DEFAULT_CREDENTIAL: Use Azure DefaultAzureCredential (recommended)
    MANAGED_IDENTITY: Use Azure Managed Identity explicitly
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"


@dataclass
class CosmosConfig:
    """Connection settings for the remote Cosmos DB store.

    Attributes:
        endpoint: Cosmos DB account endpoint URL
        database_name: Name of the database to use
        auth_method: How to authenticate
        key: Account key (only for KEY auth)
        azure_client_id: Client ID for a user-assigned managed identity
        analytics_ttl_seconds: Default time-to-live of analytics records
    """

    endpoint: str
    database_name: str = DEFAULT_DATABASE
    auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    key: str | None = None
    azure_client_id: str | None = None
    analytics_ttl_seconds: int = int(ANALYTICS_TTL.total_seconds())

    def __post_init__(self) -> None:
        if not self.endpoint:
            raise ConfigurationError("cosmos_endpoint", "endpoint is required")
        if self.auth_method == CosmosAuthMethod.KEY and not self.key:
            raise ConfigurationError("cosmos_key", "key is required for KEY authentication")

    @classmethod
    def from_environment(cls) -> CosmosConfig:
        """Create config from CHAT_STORAGE_COSMOS_* environment variables.

        The auth method defaults to KEY when a key is set, otherwise to
        DEFAULT_CREDENTIAL.

        Raises:
            ConfigurationError: If the endpoint is missing or the auth method is unknown
        """
        endpoint = _env("COSMOS_ENDPOINT")
        if not endpoint:
            raise ConfigurationError(ENV_PREFIX + "COSMOS_ENDPOINT", "environment variable not set")

        key = _env("COSMOS_KEY")
        method = _env("COSMOS_AUTH_METHOD")
        try:
            auth_method = (
                CosmosAuthMethod(method.lower())
                if method
                else CosmosAuthMethod.KEY if key else CosmosAuthMethod.DEFAULT_CREDENTIAL
            )
        except ValueError as e:
            raise ConfigurationError(
                ENV_PREFIX + "COSMOS_AUTH_METHOD", f"unknown auth method {method!r}"
            ) from e

        return cls(
            endpoint=endpoint,
            database_name=_env("COSMOS_DATABASE") or DEFAULT_DATABASE,
            auth_method=auth_method,
            key=key,
            azure_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
        )

    @classmethod
    async def from_secrets(cls, client: SecretProxyClient) -> CosmosConfig:
        """Load connection settings through the secret proxy.

        Raises:
            ConfigurationError: If the proxy cannot supply an endpoint
        """
        secrets = await client.get_secrets(
            [COSMOS_ENDPOINT_SECRET, COSMOS_KEY_SECRET, COSMOS_DATABASE_SECRET]
        )
        endpoint = secrets.get(COSMOS_ENDPOINT_SECRET)
        if not endpoint:
            raise ConfigurationError(COSMOS_ENDPOINT_SECRET, "secret proxy returned no endpoint")

        key = secrets.get(COSMOS_KEY_SECRET)
        return cls(
            endpoint=endpoint,
            database_name=secrets.get(COSMOS_DATABASE_SECRET) or DEFAULT_DATABASE,
            auth_method=CosmosAuthMethod.KEY if key else CosmosAuthMethod.DEFAULT_CREDENTIAL,
            key=key,
        )


@dataclass
class SecretProxyConfig:
    """Settings for the secret proxy client.

    Attributes:
        base_url: Base URL of the proxy (``/api/get-secret`` is appended)
        request_timeout: Seconds before a request counts as failed
        cache_ttl: Seconds a fetched secret stays cached
        cache_max_entries: Maximum number of cached secrets
        warning_cache_size: Maximum number of remembered one-time warnings
        circuit_failure_threshold: Consecutive failures before the circuit opens
        circuit_reset_timeout: Seconds an open circuit waits before probing
        development_mode: Allow CHAT_STORAGE_SECRET_<NAME> fallbacks
    """

    base_url: str = "http://localhost:7071"
    request_timeout: float = 10.0
    cache_ttl: float = 300.0
    cache_max_entries: int = 100
    warning_cache_size: int = 256
    circuit_failure_threshold: int = 3
    circuit_reset_timeout: float = 30.0
    development_mode: bool = False

    @classmethod
    def from_environment(cls) -> SecretProxyConfig:
        return cls(
            base_url=_env("SECRET_PROXY_URL") or cls.base_url,
            request_timeout=_env_number("SECRET_PROXY_TIMEOUT", 10.0, float),
            cache_ttl=_env_number("SECRET_CACHE_TTL", 300.0, float),
            development_mode=_env_bool("DEVELOPMENT_MODE", False),
        )


def development_fallback(secret_name: str) -> str | None:
    """Environment fallback for a secret, e.g. CHAT_STORAGE_SECRET_AZURE_COSMOS_DB_KEY."""
    name = secret_name.upper().replace("-", "_").replace(".", "_")
    return _env(f"SECRET_{name}")
