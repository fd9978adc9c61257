"""
Abstract remote store interface.

Defines the CRUD primitives the replicator and analytics emitter need from
the remote durable store. Implementations translate their SDK failures into
RemoteTransientError, RemoteAuthError and RemoteNotFoundError.

Document shapes:

Conversation:
    id, user_id, title, summary, message_count, date, timestamp,
    last_activity_timestamp, metadata {tags, category, importance}

Message:
    id ({session_id}_msg_{message_id}), conversation_id, user_id,
    client_message_id, content, sender, timestamp

Analytics record:
    id, user_id, event_type, attributes, date, timestamp
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

DEFAULT_CONVERSATION_PAGE_SIZE = 50
DEFAULT_MESSAGE_PAGE_SIZE = 100


@dataclass
class Page:
    """One page of query results.

    Attributes:
        items: Documents on this page
        continuation_token: Opaque token for the next page (None when exhausted)
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    continuation_token: str | None = None

    @property
    def has_more(self) -> bool:
        return self.continuation_token is not None


@dataclass
class RemoteHealth:
    """Result of a remote store health check."""

    is_initialized: bool
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.is_initialized and self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {"is_initialized": self.is_initialized, "error": self.error}


class RemoteStore(ABC):
    """Remote durable store for conversations, messages and analytics.

    Writes of messages must be idempotent on the document ID so that a
    re-sent message replaces rather than duplicates.
    """

    async def initialize(self) -> None:
        """Open connections. Implementations that need no setup may skip this."""

    @abstractmethod
    async def close(self) -> None:
        """Close connections and cleanup resources."""
        pass

    async def __aenter__(self) -> RemoteStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Conversations
    # =========================================================================

    @abstractmethod
    async def create_conversation(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Create a conversation.

        Args:
            data: Conversation document. An ``id`` is assigned if missing.

        Returns:
            The stored document
        """
        pass

    @abstractmethod
    async def get_conversations_by_user(
        self,
        user_id: str,
        page_size: int = DEFAULT_CONVERSATION_PAGE_SIZE,
        continuation_token: str | None = None,
    ) -> Page:
        """List a user's conversations, most recently active first."""
        pass

    @abstractmethod
    async def update_conversation(
        self,
        conversation_id: str,
        user_id: str,
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Merge ``patch`` into a conversation.

        Returns:
            The updated document, or None if the conversation does not exist
        """
        pass

    # =========================================================================
    # Messages
    # =========================================================================

    @abstractmethod
    async def create_message(self, data: dict[str, Any]) -> dict[str, Any]:
        """Upsert a message document keyed by its ``id``."""
        pass

    @abstractmethod
    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        page_size: int = DEFAULT_MESSAGE_PAGE_SIZE,
        continuation_token: str | None = None,
    ) -> Page:
        """List a conversation's messages, oldest first."""
        pass

    # =========================================================================
    # Analytics and health
    # =========================================================================

    @abstractmethod
    async def create_analytics_record(self, data: dict[str, Any]) -> dict[str, Any]:
        """Write one analytics record."""
        pass

    @abstractmethod
    async def health_check(self) -> RemoteHealth:
        """Report whether the store is connected. Never raises."""
        pass
