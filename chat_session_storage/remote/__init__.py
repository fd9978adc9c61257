"""
Remote durable store.

Key classes:
- RemoteStore: Abstract CRUD contract used by replication and analytics
- CosmosRemoteStore: Azure Cosmos DB implementation
"""

from .cosmos import (
    ANALYTICS_CONTAINER,
    CONVERSATIONS_CONTAINER,
    MESSAGES_CONTAINER,
    CosmosRemoteStore,
    translate_error,
)
from .protocol import Page, RemoteHealth, RemoteStore

__all__ = [
    "RemoteStore",
    "Page",
    "RemoteHealth",
    "CosmosRemoteStore",
    "translate_error",
    "CONVERSATIONS_CONTAINER",
    "MESSAGES_CONTAINER",
    "ANALYTICS_CONTAINER",
]
