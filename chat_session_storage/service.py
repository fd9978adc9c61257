"""
Service wiring.

Builds one explicit object graph: local store, optional remote store,
replicator and analytics sharing one circuit breaker, and the session
manager on top. Whether the remote tier exists is decided here, once.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .analytics import AnalyticsEmitter
from .auth import AnonymousAuth, AuthProvider
from .config import ENV_PREFIX, CosmosConfig, SecretProxyConfig, StorageConfig
from .exceptions import CircuitOpenError, ConfigurationError
from .local import FileKeyValueStore, KeyValueStore, LocalStore
from .remote import CosmosRemoteStore, RemoteStore
from .resilience import CircuitBreaker
from .secrets import SecretProxyClient
from .session import SessionManager
from .sync import CloudReplicator, DeduplicationTracker
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)


@dataclass
class ChatStorageServices:
    """The assembled service graph."""

    config: StorageConfig
    auth: AuthProvider
    local: LocalStore
    tasks: BackgroundTasks
    sessions: SessionManager
    remote: RemoteStore | None = None
    replicator: CloudReplicator | None = None
    analytics: AnalyticsEmitter | None = None
    secrets: SecretProxyClient | None = None

    async def close(self) -> None:
        await self.sessions.close()
        if self.remote is not None:
            await self.remote.close()
        if self.secrets is not None:
            await self.secrets.close()

    async def __aenter__(self) -> ChatStorageServices:
        await self.sessions.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def build_services(
    config: StorageConfig | None = None,
    auth: AuthProvider | None = None,
    remote: RemoteStore | None = None,
    kv: KeyValueStore | None = None,
    secrets: SecretProxyClient | None = None,
) -> ChatStorageServices:
    """Assemble the services.

    Args:
        config: Storage settings (defaults to StorageConfig())
        auth: Auth collaborator (defaults to AnonymousAuth)
        remote: Remote store, or None for local-only operation
        kv: Key/value primitive (defaults to files under config.local_path)
        secrets: Secret proxy client to close with the services

    Returns:
        ChatStorageServices (call ``sessions.initialize()`` before use)
    """
    config = config or StorageConfig()
    auth = auth or AnonymousAuth()
    if kv is None:
        assert config.local_path is not None
        kv = FileKeyValueStore(config.local_path, quota_bytes=config.local_quota_bytes)

    local = LocalStore(kv, title_max_length=config.title_max_length)
    tasks = BackgroundTasks("chat-storage")

    replicator: CloudReplicator | None = None
    analytics: AnalyticsEmitter | None = None
    if remote is not None:
        breaker = CircuitBreaker(
            name="remote-store",
            failure_threshold=config.circuit_failure_threshold,
            reset_timeout=config.circuit_reset_timeout,
        )
        replicator = CloudReplicator(remote, local, DeduplicationTracker(), breaker, config)
        if config.analytics_enabled:
            analytics = AnalyticsEmitter(remote, auth, breaker, tasks, config)
        logger.info("Chat storage configured with remote replication")
    else:
        logger.info("Chat storage configured in local-only mode")

    sessions = SessionManager(
        local, auth, replicator=replicator, analytics=analytics, tasks=tasks, config=config
    )
    return ChatStorageServices(
        config=config,
        auth=auth,
        local=local,
        tasks=tasks,
        sessions=sessions,
        remote=remote,
        replicator=replicator,
        analytics=analytics,
        secrets=secrets,
    )


async def build_services_from_environment(
    auth: AuthProvider | None = None,
) -> ChatStorageServices:
    """Assemble services from CHAT_STORAGE_* environment variables.

    Cosmos settings come from the environment, or failing that from the
    secret proxy when CHAT_STORAGE_SECRET_PROXY_URL is set. Without either
    the services run local-only.
    """
    config = StorageConfig.from_environment()
    secrets: SecretProxyClient | None = None
    cosmos_config: CosmosConfig | None = None

    try:
        cosmos_config = CosmosConfig.from_environment()
    except ConfigurationError as e:
        logger.debug("Cosmos settings not in environment: %s", e.message)

    if cosmos_config is None and os.environ.get(ENV_PREFIX + "SECRET_PROXY_URL"):
        secrets = SecretProxyClient(SecretProxyConfig.from_environment())
        try:
            cosmos_config = await CosmosConfig.from_secrets(secrets)
        except (ConfigurationError, CircuitOpenError) as e:
            logger.warning("Cosmos settings unavailable from secret proxy: %s", e.message)

    remote = CosmosRemoteStore(cosmos_config) if cosmos_config is not None else None
    return build_services(config=config, auth=auth, remote=remote, secrets=secrets)
