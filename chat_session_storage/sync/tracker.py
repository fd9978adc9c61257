"""
Per-session replication bookkeeping.

Tracks, for each session, which remote conversation it maps to, which
local message IDs have been confirmed written remotely, whether the
session is blocked by an auth failure, and the in-flight task resolving
its conversation. All state is in memory and discarded when the session
ends; a later run rediscovers the conversation by tag.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..models import ChatMessage, ChatSession


@dataclass
class SessionSyncState:
    """Replication state of one session.

    Attributes:
        session_id: Local session ID
        conversation_id: Remote conversation ID once known
        synced_message_ids: Message IDs confirmed written remotely
        auth_blocked: Remote rejected the credentials for this session
        title_synced: The derived title has been patched remotely
        pending: In-flight task resolving the remote conversation
    """

    session_id: str
    conversation_id: str | None = None
    synced_message_ids: set[str] = field(default_factory=set)
    auth_blocked: bool = False
    title_synced: bool = False
    pending: asyncio.Task | None = field(default=None, repr=False)


class DeduplicationTracker:
    """Remembers what has already reached the remote store.

    A message ID is added only after a confirmed write, so a failed or
    abandoned write is retried by the next sweep.
    """

    def __init__(self) -> None:
        self._states: dict[str, SessionSyncState] = {}

    def state(self, session_id: str) -> SessionSyncState:
        if session_id not in self._states:
            self._states[session_id] = SessionSyncState(session_id=session_id)
        return self._states[session_id]

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._states

    @property
    def tracked_sessions(self) -> list[str]:
        return list(self._states)

    # =========================================================================
    # Conversation mapping
    # =========================================================================

    def get_conversation_id(self, session_id: str) -> str | None:
        state = self._states.get(session_id)
        return state.conversation_id if state else None

    def set_conversation_id(self, session_id: str, conversation_id: str) -> None:
        self.state(session_id).conversation_id = conversation_id

    def pending_resolution(self, session_id: str) -> asyncio.Task | None:
        state = self._states.get(session_id)
        return state.pending if state else None

    def set_pending(self, session_id: str, task: asyncio.Task) -> None:
        self.state(session_id).pending = task

    def resolve_pending(
        self,
        session_id: str,
        task: asyncio.Task | None,
        conversation_id: str,
        synced_ids: Iterable[str] = (),
    ) -> bool:
        """Record the result of ``task`` if it is still the session's pending task.

        Returns False when the session was reset while the task ran, in
        which case nothing is recorded.
        """
        state = self._states.get(session_id)
        if state is None or state.pending is not task:
            return False
        state.pending = None
        state.conversation_id = conversation_id
        state.synced_message_ids.update(synced_ids)
        return True

    def discard_pending(self, session_id: str, task: asyncio.Task | None) -> None:
        """Forget a failed resolution so a later call can retry."""
        state = self._states.get(session_id)
        if state is not None and state.pending is task:
            state.pending = None

    # =========================================================================
    # Synced messages
    # =========================================================================

    def is_synced(self, session_id: str, message_id: str) -> bool:
        state = self._states.get(session_id)
        return state is not None and message_id in state.synced_message_ids

    def mark_synced(self, session_id: str, message_id: str) -> None:
        self.state(session_id).synced_message_ids.add(message_id)

    def synced_count(self, session_id: str) -> int:
        state = self._states.get(session_id)
        return len(state.synced_message_ids) if state else 0

    def unsynced_messages(self, session: ChatSession) -> list[ChatMessage]:
        """Messages of ``session`` not yet confirmed remotely, in order."""
        state = self._states.get(session.id)
        if state is None:
            return list(session.messages)
        return [m for m in session.messages if m.id not in state.synced_message_ids]

    def is_title_synced(self, session_id: str) -> bool:
        state = self._states.get(session_id)
        return state is not None and state.title_synced

    def mark_title_synced(self, session_id: str) -> None:
        self.state(session_id).title_synced = True

    # =========================================================================
    # Auth blocking
    # =========================================================================

    def block_auth(self, session_id: str) -> None:
        self.state(session_id).auth_blocked = True

    def is_auth_blocked(self, session_id: str) -> bool:
        state = self._states.get(session_id)
        return state is not None and state.auth_blocked

    def unblock_auth(self, session_id: str | None = None) -> None:
        """Lift the auth block for one session, or for all when ``session_id`` is None."""
        targets = [self._states.get(session_id)] if session_id else list(self._states.values())
        for state in targets:
            if state is not None:
                state.auth_blocked = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def reset(self, session_id: str) -> None:
        """Discard all state for a session. An in-flight resolution is not cancelled."""
        self._states.pop(session_id, None)

    def clear(self) -> None:
        self._states.clear()
