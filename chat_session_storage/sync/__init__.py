"""
Local-to-remote replication.

Pushes sessions and messages to the remote store without blocking the
send path, and folds remote history back into local storage.
"""

from .replicator import (
    CloudReplicator,
    SyncResult,
    SyncStatus,
    match_synced_messages,
    message_from_remote,
)
from .tracker import DeduplicationTracker, SessionSyncState

__all__ = [
    "CloudReplicator",
    "SyncResult",
    "SyncStatus",
    "DeduplicationTracker",
    "SessionSyncState",
    "match_synced_messages",
    "message_from_remote",
]
