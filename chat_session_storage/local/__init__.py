"""
Local chat storage.

Synchronous, durable storage of the current session and day-indexed
history. This tier is always available and is the source of truth.

Key classes:
- LocalStore: Session and history persistence with legacy migration
- FileKeyValueStore: One JSON document per key with atomic writes
- MemoryKeyValueStore: In-process store for tests
"""

from .kv import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .store import (
    CURRENT_SESSION_KEY,
    HISTORY_KEY,
    LAST_SYNC_KEY,
    LEGACY_HISTORY_KEY,
    LocalStore,
    RecoveryReport,
)

__all__ = [
    "LocalStore",
    "RecoveryReport",
    # Key/value primitives
    "KeyValueStore",
    "FileKeyValueStore",
    "MemoryKeyValueStore",
    # Storage keys
    "CURRENT_SESSION_KEY",
    "HISTORY_KEY",
    "LAST_SYNC_KEY",
    "LEGACY_HISTORY_KEY",
]
