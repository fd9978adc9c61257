"""
Best-effort replication of local chat sessions to the remote store.

Local storage is the source of truth; this module pushes sessions and
messages to the remote store and folds remote history back in. Every
remote call is gated by a circuit breaker and bounded by a timeout. Entry
points return a SyncResult instead of raising, so callers on the send
path never see remote failures.

Idempotency:
- Remote message IDs are derived from (session_id, message_id), so a
  re-sent message upserts the same document.
- A message is marked synced only after its write is confirmed.
- Conversation resolution is single-flight per session: concurrent callers
  await one shared task.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from ..cache import BoundedCache
from ..config import StorageConfig
from ..exceptions import (
    CircuitOpenError,
    RemoteAuthError,
    RemoteNotFoundError,
    RemoteStoreError,
    RemoteTransientError,
)
from ..local import LocalStore
from ..logging_utils import DEFAULT_ONCE_CACHE_SIZE, StorageLoggerAdapter, log_once
from ..models import ChatMessage, ChatSession, Sender, parse_timestamp
from ..remote import Page, RemoteHealth, RemoteStore
from ..resilience import CircuitBreaker, CircuitState
from ..utils import (
    DEFAULT_SUMMARY,
    REMOTE_SESSION_PREFIX,
    derive_summary,
    derive_title,
    format_date,
    parse_date,
    remote_message_id,
    session_id_from_tags,
    session_tag,
)
from .tracker import DeduplicationTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncStatus(Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Outcome of one replication entry point.

    Attributes:
        status: synced, skipped (nothing attempted) or failed
        messages_written: Messages confirmed written during this call
        sessions_updated: Local sessions created or extended by a pull
        conversation_id: Remote conversation involved, if known
        reason: Why the call was skipped or failed
    """

    status: SyncStatus
    messages_written: int = 0
    sessions_updated: int = 0
    conversation_id: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SYNCED

    @classmethod
    def skipped(cls, reason: str, conversation_id: str | None = None) -> SyncResult:
        return cls(SyncStatus.SKIPPED, conversation_id=conversation_id, reason=reason)

    @classmethod
    def failed(
        cls, reason: str, messages_written: int = 0, conversation_id: str | None = None
    ) -> SyncResult:
        return cls(
            SyncStatus.FAILED,
            messages_written=messages_written,
            conversation_id=conversation_id,
            reason=reason,
        )


def conversation_tags(conversation: dict[str, Any]) -> list[str]:
    metadata = conversation.get("metadata") or {}
    tags = metadata.get("tags") if isinstance(metadata, dict) else None
    return list(tags or conversation.get("tags") or [])


def message_from_remote(document: dict[str, Any]) -> ChatMessage:
    """Rebuild a local message from a remote message document."""
    return ChatMessage(
        id=str(document.get("client_message_id") or document["id"]),
        sender=Sender.parse(document.get("sender")),
        text=str(document.get("content", "")),
        timestamp=parse_timestamp(document.get("timestamp") or datetime.now(UTC)),
        audio_url=document.get("audio_url"),
    )


def match_synced_messages(
    local_messages: Iterable[ChatMessage], remote_documents: Iterable[dict[str, Any]]
) -> set[str]:
    """IDs of local messages that already exist remotely.

    A local message matches a remote document by client message ID, or
    failing that by (text, sender). The second match is a multiset match:
    two identical local messages need two identical remote documents.
    """
    remote = list(remote_documents)
    local = list(local_messages)
    matched: set[str] = set()

    remote_client_ids = {str(d["client_message_id"]) for d in remote if d.get("client_message_id")}
    local_ids = {m.id for m in local}

    unclaimed: Counter[tuple[str, Sender]] = Counter()
    for document in remote:
        client_id = document.get("client_message_id")
        if client_id and str(client_id) in local_ids:
            continue
        try:
            unclaimed[(str(document.get("content", "")), Sender.parse(document.get("sender")))] += 1
        except ValueError:
            continue

    for message in local:
        if message.id in remote_client_ids:
            matched.add(message.id)
            continue
        key = (message.text, message.sender)
        if unclaimed[key] > 0:
            unclaimed[key] -= 1
            matched.add(message.id)

    return matched


class CloudReplicator:
    """Pushes local sessions to a RemoteStore and pulls remote history back."""

    def __init__(
        self,
        remote: RemoteStore,
        local: LocalStore,
        tracker: DeduplicationTracker | None = None,
        breaker: CircuitBreaker | None = None,
        config: StorageConfig | None = None,
    ):
        self.remote = remote
        self.local = local
        self.tracker = tracker or DeduplicationTracker()
        self.config = config or StorageConfig()
        self.breaker = breaker or CircuitBreaker(
            name="remote-store",
            failure_threshold=self.config.circuit_failure_threshold,
            reset_timeout=self.config.circuit_reset_timeout,
        )
        self._pull_in_progress = False
        self._warnings: BoundedCache[bool] = BoundedCache(max_entries=DEFAULT_ONCE_CACHE_SIZE)

    @property
    def pull_in_progress(self) -> bool:
        return self._pull_in_progress

    def _log(self, session: ChatSession) -> StorageLoggerAdapter:
        return StorageLoggerAdapter(logger, {"session_id": session.id, "user_id": session.user_id})

    def _circuit_open(self) -> bool:
        # Reads state without claiming the half-open probe slot.
        return self.breaker.state == CircuitState.OPEN

    # =========================================================================
    # Gated remote call
    # =========================================================================

    async def _call(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Run one remote call through the breaker with a timeout.

        Raises:
            CircuitOpenError: If the breaker rejects the call
            RemoteNotFoundError: Target does not exist (counts as a success)
            RemoteAuthError: Credentials rejected
            RemoteTransientError: Anything else, including timeouts
        """
        if self.breaker.is_open():
            raise CircuitOpenError(self.breaker.name, self.breaker.retry_in())

        timeout = self.config.request_timeout
        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
        except RemoteNotFoundError:
            self.breaker.record_success()
            raise
        except TimeoutError as e:
            self.breaker.record_failure()
            raise RemoteTransientError(
                operation, None, e, message=f"Remote {operation} timed out after {timeout}s"
            ) from e
        except RemoteStoreError:
            self.breaker.record_failure()
            raise
        except Exception as e:
            self.breaker.record_failure()
            raise RemoteTransientError(operation, None, e) from e

        self.breaker.record_success()
        return result

    # =========================================================================
    # Conversation resolution
    # =========================================================================

    async def ensure_remote_conversation(self, session: ChatSession) -> str:
        """Return the remote conversation ID for ``session``, creating it if needed.

        Single-flight: concurrent callers share one resolution task. A
        failed resolution is forgotten so the next call starts over.

        Raises:
            CircuitOpenError, RemoteStoreError: If resolution fails
        """
        conversation_id = self.tracker.get_conversation_id(session.id)
        if conversation_id:
            return conversation_id

        task = self.tracker.pending_resolution(session.id)
        if task is None:
            task = asyncio.create_task(
                self._resolve_conversation(session.copy()),
                name=f"resolve-conversation-{session.id}",
            )
            self.tracker.set_pending(session.id, task)

        # Shielded so one cancelled caller does not cancel the shared task.
        return await asyncio.shield(task)

    async def _resolve_conversation(self, session: ChatSession) -> str:
        task = asyncio.current_task()
        try:
            conversation_id, synced_ids = await self._find_or_create_conversation(session)
        except BaseException:
            self.tracker.discard_pending(session.id, task)
            raise
        self.tracker.resolve_pending(session.id, task, conversation_id, synced_ids)
        return conversation_id

    async def _find_or_create_conversation(self, session: ChatSession) -> tuple[str, set[str]]:
        log = self._log(session)
        assert session.user_id is not None

        existing = await self._find_conversation_by_tag(session.user_id, session_tag(session.id))
        if existing is not None:
            remote_messages = await self._fetch_all_messages(existing["id"])
            synced = match_synced_messages(session.messages, remote_messages)
            log.info(
                "Resumed remote conversation %s (%d of %d local messages already synced)",
                existing["id"],
                len(synced),
                len(session.messages),
            )
            return existing["id"], synced

        created = await self._call(
            "create_conversation",
            self.remote.create_conversation,
            self._conversation_document(session),
        )
        log.info("Created remote conversation %s", created["id"])
        return created["id"], set()

    async def _find_conversation_by_tag(self, user_id: str, tag: str) -> dict[str, Any] | None:
        token: str | None = None
        while True:
            page: Page = await self._call(
                "get_conversations_by_user",
                self.remote.get_conversations_by_user,
                user_id,
                self.config.history_page_size,
                token,
            )
            for conversation in page.items:
                if tag in conversation_tags(conversation):
                    return conversation
            token = page.continuation_token
            if not token:
                return None

    async def _fetch_all_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        documents: list[dict[str, Any]] = []
        token: str | None = None
        while True:
            page: Page = await self._call(
                "get_messages_by_conversation",
                self.remote.get_messages_by_conversation,
                conversation_id,
                self.config.message_page_size,
                token,
            )
            documents.extend(page.items)
            token = page.continuation_token
            if not token:
                return documents

    def _conversation_document(self, session: ChatSession) -> dict[str, Any]:
        now = datetime.now(UTC).isoformat()
        return {
            "user_id": session.user_id,
            "title": session.title or derive_title(session.messages, self.config.title_max_length),
            "summary": session.summary or DEFAULT_SUMMARY,
            "message_count": len(session.messages),
            "date": session.date,
            "timestamp": session.start_time.isoformat(),
            "last_activity_timestamp": now,
            "metadata": {
                "tags": [session_tag(session.id)],
                "category": "chat",
                "importance": "medium",
            },
        }

    def _message_document(
        self, session: ChatSession, conversation_id: str, message: ChatMessage
    ) -> dict[str, Any]:
        document: dict[str, Any] = {
            "id": remote_message_id(session.id, message.id),
            "conversation_id": conversation_id,
            "user_id": session.user_id,
            "session_id": session.id,
            "client_message_id": message.id,
            "content": message.text,
            "sender": message.sender.value,
            "timestamp": message.timestamp.isoformat(),
        }
        if message.audio_url:
            document["audio_url"] = message.audio_url
        return document

    async def _write_message(
        self, session: ChatSession, conversation_id: str, message: ChatMessage
    ) -> None:
        await self._call(
            "create_message",
            self.remote.create_message,
            self._message_document(session, conversation_id, message),
        )
        self.tracker.mark_synced(session.id, message.id)

    async def _patch_conversation(
        self, session: ChatSession, conversation_id: str, patch: dict[str, Any]
    ) -> bool:
        log = self._log(session)
        patch = {**patch, "last_activity_timestamp": datetime.now(UTC).isoformat()}
        try:
            updated = await self._call(
                "update_conversation",
                self.remote.update_conversation,
                conversation_id,
                session.user_id,
                patch,
            )
        except RemoteAuthError as e:
            self._block(session, e)
            return False
        except (CircuitOpenError, RemoteStoreError) as e:
            log.warning("Failed to update remote conversation %s: %s", conversation_id, e.message)
            return False

        if updated is None:
            log.warning("Remote conversation %s no longer exists - update skipped", conversation_id)
            return False
        return True

    def _block(self, session: ChatSession, error: RemoteAuthError) -> None:
        self.tracker.block_auth(session.id)
        log_once(
            logger,
            logging.WARNING,
            f"auth-blocked:{session.id}",
            "Remote store rejected credentials (%s) - replication paused for session %s",
            error.status_code,
            session.id,
            cache=self._warnings,
        )

    def _skip_reason(self, session: ChatSession) -> str | None:
        if not session.user_id:
            return "no owner"
        if self.tracker.is_auth_blocked(session.id):
            return "auth blocked"
        if self._circuit_open():
            return "circuit open"
        return None

    # =========================================================================
    # Entry points
    # =========================================================================

    async def sync_new_message(self, message: ChatMessage, session: ChatSession) -> SyncResult:
        """Replicate one newly added message.

        Skips when the session has no owner, is auth-blocked, the message is
        already synced, or the circuit is open. The first user message also
        patches the remote title.
        """
        log = self._log(session)
        reason = self._skip_reason(session)
        if reason is None and self.tracker.is_synced(session.id, message.id):
            reason = "already synced"
        if reason is not None:
            log.debug("Skipping replication of message %s: %s", message.id, reason)
            return SyncResult.skipped(reason, self.tracker.get_conversation_id(session.id))

        conversation_id: str | None = None
        try:
            conversation_id = await self.ensure_remote_conversation(session)
            # Resuming a conversation can mark this message as already present.
            if self.tracker.is_synced(session.id, message.id):
                return SyncResult.skipped("already synced", conversation_id)
            await self._write_message(session, conversation_id, message)
        except CircuitOpenError as e:
            log.debug("Replication of message %s skipped: %s", message.id, e.message)
            return SyncResult.skipped("circuit open", conversation_id)
        except RemoteAuthError as e:
            self._block(session, e)
            return SyncResult.failed("auth rejected", conversation_id=conversation_id)
        except RemoteStoreError as e:
            log.warning("Failed to replicate message %s: %s", message.id, e.message)
            return SyncResult.failed(e.message, conversation_id=conversation_id)

        first = session.first_user_message()
        if first is not None and first.id == message.id and not self.tracker.is_title_synced(
            session.id
        ):
            title = session.title or derive_title(session.messages, self.config.title_max_length)
            patched = await self._patch_conversation(
                session,
                conversation_id,
                {"title": title, "message_count": len(session.messages)},
            )
            if patched:
                self.tracker.mark_title_synced(session.id)

        log.debug("Message %s replicated to conversation %s", message.id, conversation_id)
        return SyncResult(SyncStatus.SYNCED, messages_written=1, conversation_id=conversation_id)

    async def sync_full_session(self, session: ChatSession) -> SyncResult:
        """Write every unsynced message in order, then patch summary and title.

        Stops at the first failed write; the remaining messages stay
        unsynced for the next attempt.
        """
        log = self._log(session)
        reason = self._skip_reason(session)
        if reason is not None:
            log.debug("Skipping full session sync: %s", reason)
            return SyncResult.skipped(reason, self.tracker.get_conversation_id(session.id))

        written = 0
        conversation_id: str | None = None
        try:
            conversation_id = await self.ensure_remote_conversation(session)
            for message in self.tracker.unsynced_messages(session):
                await self._write_message(session, conversation_id, message)
                written += 1
        except CircuitOpenError as e:
            log.info("Full session sync interrupted after %d messages: %s", written, e.message)
            return SyncResult.failed("circuit open", written, conversation_id)
        except RemoteAuthError as e:
            self._block(session, e)
            return SyncResult.failed("auth rejected", written, conversation_id)
        except RemoteStoreError as e:
            log.warning("Full session sync failed after %d messages: %s", written, e.message)
            return SyncResult.failed(e.message, written, conversation_id)

        await self._patch_conversation(
            session,
            conversation_id,
            {
                "title": session.title
                or derive_title(session.messages, self.config.title_max_length),
                "summary": session.summary
                or derive_summary(session.messages, self.config.summary_max_length),
                "message_count": len(session.messages),
            },
        )
        log.info("Session synced to remote (%d new messages)", written)
        return SyncResult(SyncStatus.SYNCED, messages_written=written, conversation_id=conversation_id)

    async def pull_remote_history(self, user_id: str) -> SyncResult:
        """Fold the user's remote conversations into local history.

        Local data wins: the active session is never touched and an existing
        local session only gains remote messages it does not already have.
        Only one pull runs at a time.
        """
        if self._pull_in_progress:
            return SyncResult.skipped("pull in progress")
        if self._circuit_open():
            return SyncResult.skipped("circuit open")

        self._pull_in_progress = True
        try:
            updated = await self._pull(user_id)
        except CircuitOpenError as e:
            logger.info("Remote history pull interrupted: %s", e.message)
            return SyncResult.failed("circuit open")
        except RemoteAuthError as e:
            log_once(
                logger,
                logging.WARNING,
                f"pull-auth:{user_id}",
                "Remote store rejected credentials (%s) while pulling history",
                e.status_code,
                cache=self._warnings,
            )
            return SyncResult.failed("auth rejected")
        except RemoteStoreError as e:
            logger.warning("Remote history pull failed: %s", e.message)
            return SyncResult.failed(e.message)
        finally:
            self._pull_in_progress = False

        self.local.set_last_sync_time()
        logger.info("Remote history pulled: %d local sessions updated", updated)
        return SyncResult(SyncStatus.SYNCED, sessions_updated=updated)

    async def _pull(self, user_id: str) -> int:
        conversations = await self._list_conversations(user_id)
        current = self.local.load_current()
        active_id = current.id if current else None

        updated = 0
        for conversation in conversations:
            session_id = session_id_from_tags(conversation_tags(conversation)) or (
                f"{REMOTE_SESSION_PREFIX}{conversation['id']}"
            )
            if session_id == active_id:
                continue

            documents = await self._fetch_all_messages(conversation["id"])
            messages = self._parse_remote_messages(documents, conversation["id"])

            existing = self.local.find_session(session_id)
            if existing is not None:
                known = {m.id for m in existing.messages}
                missing = [m for m in messages if m.id not in known]
                if not missing:
                    continue
                merged = existing.copy()
                merged.messages.extend(missing)
                if self.local.merge_into_day_history(merged):
                    updated += 1
                continue

            session = self._session_from_remote(conversation, session_id, messages, user_id)
            if self.local.merge_into_day_history(session):
                updated += 1
        return updated

    async def _list_conversations(self, user_id: str) -> list[dict[str, Any]]:
        limit = self.config.max_pull_conversations
        conversations: list[dict[str, Any]] = []
        token: str | None = None
        while len(conversations) < limit:
            page: Page = await self._call(
                "get_conversations_by_user",
                self.remote.get_conversations_by_user,
                user_id,
                min(self.config.history_page_size, limit - len(conversations)),
                token,
            )
            conversations.extend(page.items)
            token = page.continuation_token
            if not token:
                break
        return conversations[:limit]

    @staticmethod
    def _parse_remote_messages(
        documents: list[dict[str, Any]], conversation_id: str
    ) -> list[ChatMessage]:
        messages: list[ChatMessage] = []
        for document in documents:
            try:
                messages.append(message_from_remote(document))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed remote message in %s: %s", conversation_id, e)
        return messages

    def _session_from_remote(
        self,
        conversation: dict[str, Any],
        session_id: str,
        messages: list[ChatMessage],
        user_id: str,
    ) -> ChatSession:
        now = datetime.now(UTC)
        try:
            start_time = parse_timestamp(conversation.get("timestamp"))
        except ValueError:
            start_time = messages[0].timestamp if messages else now
        try:
            end_time = parse_timestamp(conversation.get("last_activity_timestamp"))
        except ValueError:
            end_time = None

        date = str(conversation.get("date") or "")
        if parse_date(date) is None:
            date = format_date(start_time)

        return ChatSession(
            id=session_id,
            date=date,
            start_time=start_time,
            end_time=end_time,
            title=conversation.get("title")
            or derive_title(messages, self.config.title_max_length),
            summary=conversation.get("summary"),
            messages=messages,
            user_id=user_id,
        )

    # =========================================================================
    # Housekeeping
    # =========================================================================

    async def check_remote_health(self) -> RemoteHealth:
        try:
            return await asyncio.wait_for(
                self.remote.health_check(), timeout=self.config.request_timeout
            )
        except TimeoutError:
            return RemoteHealth(is_initialized=False, error="health check timed out")

    def reset_session(self, session_id: str) -> None:
        self.tracker.reset(session_id)

    def unblock_auth(self, session_id: str | None = None) -> None:
        self.tracker.unblock_auth(session_id)
