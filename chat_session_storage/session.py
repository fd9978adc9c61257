"""
Chat session lifecycle.

SessionManager is the only entry point the chat UI talks to. Every change
is persisted locally before anything else happens; replication and
analytics run afterwards in the background and can only ever degrade to
local-only mode, never fail the caller.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from .analytics import MESSAGE_ADDED, SESSION_ENDED, SESSION_STARTED, AnalyticsEmitter
from .auth import AuthProvider
from .config import StorageConfig
from .local import LocalStore, RecoveryReport
from .models import ChatMessage, ChatSession, StorageHealthStatus
from .sync import CloudReplicator, SyncResult
from .tasks import BackgroundTasks
from .utils import derive_summary, derive_title, format_date, generate_session_id

logger = logging.getLogger(__name__)


class SessionManager:
    """Creates, extends and closes chat sessions.

    Example:
        >>> manager = SessionManager(local, auth, replicator=replicator)
        >>> await manager.initialize()
        >>> await manager.add_message(message)
        >>> await manager.end_session()
    """

    def __init__(
        self,
        local: LocalStore,
        auth: AuthProvider,
        replicator: CloudReplicator | None = None,
        analytics: AnalyticsEmitter | None = None,
        tasks: BackgroundTasks | None = None,
        config: StorageConfig | None = None,
    ):
        """
        Initialize the manager.

        Args:
            local: Local store (source of truth)
            auth: Auth collaborator
            replicator: Remote replication, or None for local-only operation
            analytics: Analytics emitter, or None to disable analytics
            tasks: Background task set for replication work
            config: Storage settings
        """
        self.local = local
        self.auth = auth
        self.replicator = replicator
        self.analytics = analytics
        self.tasks = tasks if tasks is not None else BackgroundTasks("sessions")
        self.config = config or StorageConfig()

        self._current: ChatSession | None = None
        self._initialized = False
        # In-flight replication tasks per session, awaited before a full sync.
        self._replicating: dict[str, set[asyncio.Task[Any]]] = {}

    @property
    def current_session(self) -> ChatSession | None:
        return self._current

    @property
    def remote_enabled(self) -> bool:
        return self.replicator is not None

    def _user_id(self) -> str | None:
        return self.auth.current_user_id() if self.auth.is_authenticated() else None

    def _emit(self, event_type: str, attributes: dict[str, Any]) -> None:
        if self.analytics is not None:
            self.analytics.emit(event_type, attributes)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Load local state and start a background pull of remote history.

        Never blocks on the remote store. Safe to call more than once.
        """
        if self._initialized:
            return
        self._initialized = True

        user_id = self._user_id()
        self._current = self.local.load_current()
        migrated = self.local.migrate_legacy_format(user_id)
        if migrated:
            logger.info("Migrated %d legacy sessions", migrated)

        if user_id and self.replicator is not None:
            logger.info("User authenticated - pulling remote history in the background")
            self.tasks.spawn(
                self.replicator.pull_remote_history(user_id), name="pull-remote-history"
            )
        else:
            logger.info("Running in local storage mode only")

    def start_session(self) -> ChatSession:
        """Return an empty current session, creating a new one if needed."""
        if self._current is not None and self._current.is_empty:
            logger.debug("Reusing existing empty session: %s", self._current.id)
            return self._current

        previous = self._current
        now = datetime.now(UTC)
        session = ChatSession(
            id=generate_session_id(),
            date=format_date(now),
            start_time=now,
            user_id=self._user_id(),
        )
        self._current = session
        self.local.save_current(session)

        if previous is not None and self.replicator is not None:
            self.replicator.reset_session(previous.id)

        logger.debug("New chat session started: %s", session.id)
        self._emit(SESSION_STARTED, {"session_id": session.id})
        return session

    async def add_message(self, message: ChatMessage) -> ChatSession:
        """Append a message to the current session.

        The session is persisted locally before this returns. Replication
        is scheduled in the background.
        """
        session = self._current if self._current is not None else self.start_session()

        session.messages.append(message)
        if not session.title and message.is_user:
            session.title = derive_title(session.messages, self.config.title_max_length)

        self.local.save_current(session)
        self.local.merge_into_day_history(session)

        if self.replicator is not None:
            self._schedule_replication(message, session.copy())

        self._emit(
            MESSAGE_ADDED,
            {"session_id": session.id, "sender": message.sender.value, "length": len(message.text)},
        )
        return session

    def _schedule_replication(self, message: ChatMessage, snapshot: ChatSession) -> None:
        assert self.replicator is not None
        task = self.tasks.spawn(
            self._replicate_message(message, snapshot), name=f"sync-message-{message.id}"
        )
        self._replicating.setdefault(snapshot.id, set()).add(task)
        task.add_done_callback(lambda t: self._replication_done(snapshot.id, t))

    def _replication_done(self, session_id: str, task: asyncio.Task[Any]) -> None:
        pending = self._replicating.get(session_id)
        if pending is None:
            return
        pending.discard(task)
        if not pending:
            del self._replicating[session_id]

    async def _replicate_message(self, message: ChatMessage, snapshot: ChatSession) -> None:
        assert self.replicator is not None
        try:
            await self.replicator.sync_new_message(message, snapshot)
        except Exception as e:
            logger.warning("Failed to sync message %s to remote: %s", message.id, e)

    async def _wait_for_replication(self, session_id: str) -> None:
        pending = self._replicating.get(session_id)
        while pending:
            await asyncio.gather(*list(pending), return_exceptions=True)
            pending = self._replicating.get(session_id)

    async def end_session(self) -> ChatSession | None:
        """Close the current session and finalize it into day history.

        Waits for in-flight replication of this session, then attempts one
        full sync. The current session is cleared whatever the outcome.

        Returns:
            The closed session, or None if there was no current session
        """
        session = self._current
        if session is None:
            return None

        session.end_time = datetime.now(UTC)
        session.summary = derive_summary(session.messages, self.config.summary_max_length)
        self.local.merge_into_day_history(session)

        if self.replicator is not None:
            await self._wait_for_replication(session.id)
            try:
                result = await self.replicator.sync_full_session(session.copy())
                logger.debug("Ended session sync: %s", result.status.value)
            except Exception as e:
                logger.warning("Failed to sync ended session to remote: %s", e)
            self.replicator.reset_session(session.id)

        self._current = None
        self.local.clear_current()

        self._emit(
            SESSION_ENDED, {"session_id": session.id, "message_count": len(session.messages)}
        )
        logger.debug("Chat session ended and saved: %s", session.id)
        return session

    # =========================================================================
    # History
    # =========================================================================

    def list_sessions_for_date(self, date: str) -> list[ChatSession]:
        return self.local.list_sessions_for_date(date)

    def list_dates_with_history(self) -> list[str]:
        return self.local.list_dates_with_history()

    def delete_session(self, session_id: str) -> bool:
        """Delete a session from local history. Remote copies are kept."""
        deleted = self.local.delete_session(session_id)
        if self._current is not None and self._current.id == session_id:
            self._current = None
            self.local.clear_current()
            deleted = True
        if self.replicator is not None:
            self.replicator.reset_session(session_id)
        return deleted

    def delete_day(self, date: str) -> int:
        """Delete every local session of one day. Returns how many were removed."""
        removed = self.local.delete_day(date)
        removed_ids = {s.id for s in removed}
        if self._current is not None and self._current.id in removed_ids:
            self._current = None
            self.local.clear_current()
        if self.replicator is not None:
            for session_id in removed_ids:
                self.replicator.reset_session(session_id)
        return len(removed)

    def recover_and_clean(self) -> RecoveryReport:
        return self.local.recover_and_clean()

    # =========================================================================
    # Remote
    # =========================================================================

    def on_auth_changed(self) -> None:
        """React to sign in: attach the user to the current session and lift auth blocks."""
        user_id = self._user_id()
        if self.replicator is not None:
            self.replicator.unblock_auth()

        if user_id is None or self._current is None:
            return
        if self._current.user_id != user_id:
            self._current.user_id = user_id
            self.local.save_current(self._current)
            if not self._current.is_empty:
                self.local.merge_into_day_history(self._current)
            logger.info("Attached user to current session %s", self._current.id)

    async def force_sync(self) -> dict[str, Any]:
        """Pull remote history now. Returns ``{"success": bool, "message": str}``."""
        if self.replicator is None:
            return {"success": False, "message": "Remote sync is not configured"}
        user_id = self._user_id()
        if user_id is None:
            return {"success": False, "message": "Remote sync requires a signed-in user"}

        result: SyncResult = await self.replicator.pull_remote_history(user_id)
        if result.ok:
            return {
                "success": True,
                "message": f"Remote sync completed ({result.sessions_updated} sessions updated)",
            }
        return {"success": False, "message": f"Remote sync {result.status.value}: {result.reason}"}

    async def get_health_status(self) -> StorageHealthStatus:
        remote_working = False
        circuit: dict[str, Any] = {}
        if self.replicator is not None:
            health = await self.replicator.check_remote_health()
            remote_working = health.healthy
            circuit = self.replicator.breaker.metrics()

        return StorageHealthStatus(
            local_storage_working=self.local.is_writable(),
            remote_store_working=remote_working,
            total_local_sessions=self.local.total_sessions(),
            last_sync_time=self.local.get_last_sync_time(),
            circuit=circuit,
        )

    async def wait_for_background(self) -> None:
        """Wait for all scheduled replication and analytics work."""
        await self.tasks.drain()
        if self.analytics is not None and self.analytics.tasks is not self.tasks:
            await self.analytics.tasks.drain()

    async def close(self) -> None:
        """Let in-flight work finish, then stop."""
        await self.wait_for_background()
        await self.tasks.cancel_all()
        if self.analytics is not None and self.analytics.tasks is not self.tasks:
            await self.analytics.tasks.cancel_all()
