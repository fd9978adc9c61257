"""
Shared test configuration and fixtures.

Provides an in-memory remote store with failure injection and latency, a
controllable clock, and factories for messages and sessions. No test talks
to a real Cosmos DB account.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from chat_session_storage.auth import StaticAuth
from chat_session_storage.config import StorageConfig
from chat_session_storage.local import LocalStore, MemoryKeyValueStore
from chat_session_storage.models import ChatMessage, ChatSession, Sender
from chat_session_storage.remote import Page, RemoteHealth, RemoteStore
from chat_session_storage.resilience import CircuitBreaker
from chat_session_storage.sync import CloudReplicator, DeduplicationTracker
from chat_session_storage.utils import session_tag

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemoteStore(RemoteStore):
    """
    In-memory RemoteStore.

    Supports:
    - Per-operation call counts
    - One-shot failures (fail_next) and a standing failure (fail_all)
    - Artificial latency to widen race windows
    - Offset-based continuation tokens
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.conversations: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, dict[str, Any]] = {}
        self.analytics: list[dict[str, Any]] = []
        self.calls: Counter[str] = Counter()
        self.fail_all: Exception | None = None
        self.closed = False
        self._failures: dict[str, list[Exception]] = {}
        self._ids = itertools.count(1)

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        self._failures.setdefault(operation, []).extend([error] * times)

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.fail_all is not None:
            raise self.fail_all
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    @staticmethod
    def _page(items: list[dict[str, Any]], page_size: int, token: str | None) -> Page:
        offset = int(token or 0)
        end = offset + page_size
        return Page(
            items=[dict(i) for i in items[offset:end]],
            continuation_token=str(end) if end < len(items) else None,
        )

    # Seeding helpers

    def add_conversation(
        self,
        user_id: str,
        session_id: str | None = None,
        conversation_id: str | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        conversation_id = conversation_id or f"conv-{next(self._ids)}"
        document = {
            "id": conversation_id,
            "user_id": user_id,
            "title": fields.pop("title", "Remote chat"),
            "summary": fields.pop("summary", None),
            "message_count": 0,
            "date": fields.pop("date", "2024-02-01"),
            "timestamp": fields.pop("timestamp", "2024-02-01T08:00:00+00:00"),
            "last_activity_timestamp": fields.pop(
                "last_activity_timestamp", "2024-02-01T09:00:00+00:00"
            ),
            "metadata": {
                "tags": [session_tag(session_id)] if session_id else [],
                "category": "chat",
                "importance": "medium",
            },
            **fields,
        }
        self.conversations[conversation_id] = document
        return document

    def add_message(
        self,
        conversation_id: str,
        content: str,
        sender: str = "user",
        client_message_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> dict[str, Any]:
        document_id = f"remote-msg-{next(self._ids)}"
        document = {
            "id": document_id,
            "conversation_id": conversation_id,
            "user_id": self.conversations[conversation_id]["user_id"],
            "content": content,
            "sender": sender,
            "timestamp": (timestamp or BASE_TIME + timedelta(minutes=len(self.messages))).isoformat(),
        }
        if client_message_id:
            document["client_message_id"] = client_message_id
        self.messages[document_id] = document
        return document

    def messages_for(self, conversation_id: str) -> list[dict[str, Any]]:
        return sorted(
            (m for m in self.messages.values() if m["conversation_id"] == conversation_id),
            key=lambda m: m["timestamp"],
        )

    # RemoteStore

    async def create_conversation(self, data: dict[str, Any]) -> dict[str, Any]:
        await self._enter("create_conversation")
        document = dict(data)
        document.setdefault("id", f"conv-{next(self._ids)}")
        self.conversations[document["id"]] = document
        return dict(document)

    async def get_conversations_by_user(
        self, user_id: str, page_size: int = 50, continuation_token: str | None = None
    ) -> Page:
        await self._enter("get_conversations_by_user")
        items = sorted(
            (c for c in self.conversations.values() if c["user_id"] == user_id),
            key=lambda c: c.get("last_activity_timestamp", ""),
            reverse=True,
        )
        return self._page(items, page_size, continuation_token)

    async def update_conversation(
        self, conversation_id: str, user_id: str, patch: dict[str, Any]
    ) -> dict[str, Any] | None:
        await self._enter("update_conversation")
        existing = self.conversations.get(conversation_id)
        if existing is None or existing["user_id"] != user_id:
            return None
        existing.update(patch)
        return dict(existing)

    async def create_message(self, data: dict[str, Any]) -> dict[str, Any]:
        await self._enter("create_message")
        self.messages[data["id"]] = dict(data)
        return dict(data)

    async def get_messages_by_conversation(
        self, conversation_id: str, page_size: int = 100, continuation_token: str | None = None
    ) -> Page:
        await self._enter("get_messages_by_conversation")
        return self._page(self.messages_for(conversation_id), page_size, continuation_token)

    async def create_analytics_record(self, data: dict[str, Any]) -> dict[str, Any]:
        await self._enter("create_analytics_record")
        self.analytics.append(dict(data))
        return dict(data)

    async def health_check(self) -> RemoteHealth:
        if self.fail_all is not None:
            return RemoteHealth(is_initialized=False, error=str(self.fail_all))
        return RemoteHealth(is_initialized=True)

    async def close(self) -> None:
        self.closed = True


_message_ids = itertools.count(1)


def build_message(
    text: str,
    sender: Sender = Sender.USER,
    message_id: str | None = None,
    timestamp: datetime | None = None,
) -> ChatMessage:
    index = next(_message_ids)
    return ChatMessage(
        id=message_id or f"msg-{index}",
        sender=sender,
        text=text,
        timestamp=timestamp or BASE_TIME + timedelta(seconds=index),
    )


def build_session(
    session_id: str = "session-a",
    user_id: str | None = "user-1",
    messages: list[ChatMessage] | None = None,
    date: str = "2024-03-01",
    start_time: datetime = BASE_TIME,
) -> ChatSession:
    return ChatSession(
        id=session_id,
        date=date,
        start_time=start_time,
        messages=list(messages or []),
        user_id=user_id,
    )


@pytest.fixture
def make_message():
    """Factory for chat messages with unique IDs and increasing timestamps."""
    return build_message


@pytest.fixture
def make_session():
    """Factory for chat sessions."""
    return build_session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return StorageConfig(local_path=tmp_path, request_timeout=1.0)


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def local(kv):
    return LocalStore(kv)


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def remote_factory():
    """The FakeRemoteStore class, for tests that need latency or a subclass."""
    return FakeRemoteStore


@pytest.fixture
def auth():
    return StaticAuth("user-1")


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(name="remote-store", failure_threshold=3, reset_timeout=30.0, clock=clock)


@pytest.fixture
def tracker():
    return DeduplicationTracker()


@pytest.fixture
def replicator(remote, local, tracker, breaker, config):
    return CloudReplicator(remote, local, tracker, breaker, config)
