"""
Azure Cosmos DB remote store.

Three containers in one database:
- conversations: /user_id
- messages: /conversation_id
- analytics: /user_id (default TTL, old events expire)

Supports key auth and Azure AD (DefaultAzureCredential or managed
identity). Connects lazily on first use. There is no retry loop here:
every SDK failure is translated to the remote error taxonomy and the
caller's circuit breaker decides what happens next.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

from azure.core.exceptions import (
    ClientAuthenticationError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import CosmosHttpResponseError, CosmosResourceNotFoundError
from azure.identity.aio import DefaultAzureCredential, ManagedIdentityCredential

from ..config import CosmosAuthMethod, CosmosConfig
from ..exceptions import (
    RemoteAuthError,
    RemoteNotFoundError,
    RemoteStoreError,
    RemoteTransientError,
)
from ..resilience import is_auth_status
from .protocol import (
    DEFAULT_CONVERSATION_PAGE_SIZE,
    DEFAULT_MESSAGE_PAGE_SIZE,
    Page,
    RemoteHealth,
    RemoteStore,
)

logger = logging.getLogger(__name__)

CONVERSATIONS_CONTAINER = "conversations"
MESSAGES_CONTAINER = "messages"
ANALYTICS_CONTAINER = "analytics"

SYSTEM_FIELDS = ("_rid", "_self", "_etag", "_attachments", "_ts")


def _get_credential(config: CosmosConfig) -> Any:
    """Credential object for the configured auth method."""
    if config.auth_method == CosmosAuthMethod.KEY:
        return config.key
    if config.auth_method == CosmosAuthMethod.MANAGED_IDENTITY:
        if config.azure_client_id:
            return ManagedIdentityCredential(client_id=config.azure_client_id)
        return ManagedIdentityCredential()
    return DefaultAzureCredential()


def translate_error(operation: str, exc: Exception) -> RemoteStoreError:
    """Map an Azure SDK exception onto the remote error taxonomy."""
    if isinstance(exc, RemoteStoreError):
        return exc
    if isinstance(exc, CosmosResourceNotFoundError):
        return RemoteNotFoundError(operation, 404, exc)
    if isinstance(exc, ClientAuthenticationError):
        return RemoteAuthError(operation, getattr(exc, "status_code", None) or 401, exc)
    if isinstance(exc, CosmosHttpResponseError):
        status = exc.status_code
        if status == 404:
            return RemoteNotFoundError(operation, status, exc)
        if is_auth_status(status):
            return RemoteAuthError(operation, status, exc)
        return RemoteTransientError(operation, status, exc)
    if isinstance(exc, (ServiceRequestError, ServiceResponseError, OSError, TimeoutError)):
        return RemoteTransientError(operation, None, exc)
    return RemoteTransientError(operation, None, exc, message=f"Unexpected error during {operation}")


def _strip_system_fields(item: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in item.items() if k not in SYSTEM_FIELDS}


async def _first_page(pages: AsyncIterator[AsyncIterator[dict[str, Any]]]) -> list[dict[str, Any]]:
    page = await anext(pages, None)
    if page is None:
        return []
    return [_strip_system_fields(item) async for item in page]


class CosmosRemoteStore(RemoteStore):
    """RemoteStore backed by the azure-cosmos async client."""

    def __init__(self, config: CosmosConfig):
        self.config = config
        self._credential: Any = None
        self._client: CosmosClient | None = None
        self._database: DatabaseProxy | None = None
        self._containers: dict[str, ContainerProxy] = {}
        self._initialized = False
        self._connection_error: str | None = None

    @classmethod
    def from_environment(cls) -> CosmosRemoteStore:
        return cls(CosmosConfig.from_environment())

    async def initialize(self) -> None:
        """Connect and ensure the database and containers exist.

        Raises:
            RemoteAuthError: If the credentials are rejected
            RemoteTransientError: If the account cannot be reached
        """
        if self._initialized:
            return

        try:
            self._credential = _get_credential(self.config)
            self._client = CosmosClient(self.config.endpoint, credential=self._credential)
            self._database = await self._client.create_database_if_not_exists(
                id=self.config.database_name
            )

            await self._ensure_container(CONVERSATIONS_CONTAINER, "/user_id")
            await self._ensure_container(MESSAGES_CONTAINER, "/conversation_id")
            await self._ensure_container(
                ANALYTICS_CONTAINER, "/user_id", default_ttl=self.config.analytics_ttl_seconds
            )
        except Exception as e:
            error = translate_error("initialize", e)
            self._connection_error = str(e) or error.message
            await self._close_client()
            logger.error(
                "Failed to initialize Cosmos DB",
                extra={"endpoint": self.config.endpoint, "error": self._connection_error},
            )
            raise error from e

        self._initialized = True
        self._connection_error = None
        logger.info(
            "Connected to Cosmos DB: %s (database=%s, auth=%s)",
            self.config.endpoint,
            self.config.database_name,
            self.config.auth_method.value,
        )

    async def _ensure_container(
        self, name: str, partition_key_path: str, default_ttl: int | None = None
    ) -> None:
        assert self._database is not None
        options: dict[str, Any] = {}
        if default_ttl is not None:
            options["default_ttl"] = default_ttl
        container = await self._database.create_container_if_not_exists(
            id=name,
            partition_key=PartitionKey(path=partition_key_path),
            **options,
        )
        self._containers[name] = container

    async def _container(self, name: str) -> ContainerProxy:
        await self.initialize()
        return self._containers[name]

    async def _close_client(self) -> None:
        if self._client is not None:
            await self._client.close()
        # AAD credentials hold their own HTTP session
        if self._credential is not None and hasattr(self._credential, "close"):
            await self._credential.close()
        self._client = None
        self._credential = None
        self._database = None
        self._containers = {}
        self._initialized = False

    async def close(self) -> None:
        await self._close_client()

    # =========================================================================
    # Conversations
    # =========================================================================

    async def create_conversation(self, data: dict[str, Any]) -> dict[str, Any]:
        body = dict(data)
        body.setdefault("id", f"conv_{uuid.uuid4().hex}")
        try:
            container = await self._container(CONVERSATIONS_CONTAINER)
            created = await container.create_item(body=body)
        except Exception as e:
            raise translate_error("create_conversation", e) from e
        logger.debug("Conversation created: %s", body["id"])
        return _strip_system_fields(created)

    async def get_conversations_by_user(
        self,
        user_id: str,
        page_size: int = DEFAULT_CONVERSATION_PAGE_SIZE,
        continuation_token: str | None = None,
    ) -> Page:
        try:
            container = await self._container(CONVERSATIONS_CONTAINER)
            pages = container.query_items(
                query=(
                    "SELECT * FROM c WHERE c.user_id = @user_id "
                    "ORDER BY c.last_activity_timestamp DESC"
                ),
                parameters=[{"name": "@user_id", "value": user_id}],
                partition_key=user_id,
                max_item_count=page_size,
            ).by_page(continuation_token)
            items = await _first_page(pages)
        except Exception as e:
            raise translate_error("get_conversations_by_user", e) from e
        return Page(items=items, continuation_token=pages.continuation_token)

    async def update_conversation(
        self,
        conversation_id: str,
        user_id: str,
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        try:
            container = await self._container(CONVERSATIONS_CONTAINER)
            existing = await container.read_item(item=conversation_id, partition_key=user_id)
            merged = {**_strip_system_fields(existing), **patch, "id": conversation_id}
            updated = await container.replace_item(item=conversation_id, body=merged)
        except CosmosResourceNotFoundError:
            logger.warning("Conversation not found for update: %s", conversation_id)
            return None
        except Exception as e:
            raise translate_error("update_conversation", e) from e
        return _strip_system_fields(updated)

    # =========================================================================
    # Messages
    # =========================================================================

    async def create_message(self, data: dict[str, Any]) -> dict[str, Any]:
        try:
            container = await self._container(MESSAGES_CONTAINER)
            stored = await container.upsert_item(body=data)
        except Exception as e:
            raise translate_error("create_message", e) from e
        return _strip_system_fields(stored)

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        page_size: int = DEFAULT_MESSAGE_PAGE_SIZE,
        continuation_token: str | None = None,
    ) -> Page:
        try:
            container = await self._container(MESSAGES_CONTAINER)
            pages = container.query_items(
                query=(
                    "SELECT * FROM c WHERE c.conversation_id = @conversation_id "
                    "ORDER BY c.timestamp ASC"
                ),
                parameters=[{"name": "@conversation_id", "value": conversation_id}],
                partition_key=conversation_id,
                max_item_count=page_size,
            ).by_page(continuation_token)
            items = await _first_page(pages)
        except Exception as e:
            raise translate_error("get_messages_by_conversation", e) from e
        return Page(items=items, continuation_token=pages.continuation_token)

    # =========================================================================
    # Analytics and health
    # =========================================================================

    async def create_analytics_record(self, data: dict[str, Any]) -> dict[str, Any]:
        body = dict(data)
        body.setdefault("id", f"analytics_{uuid.uuid4().hex}")
        try:
            container = await self._container(ANALYTICS_CONTAINER)
            created = await container.create_item(body=body)
        except Exception as e:
            raise translate_error("create_analytics_record", e) from e
        return _strip_system_fields(created)

    async def health_check(self) -> RemoteHealth:
        try:
            await self.initialize()
        except RemoteStoreError:
            return RemoteHealth(is_initialized=False, error=self._connection_error)
        return RemoteHealth(is_initialized=True, error=None)
