"""Tests for CloudReplicator: idempotent push, circuit gating and history pull."""

import asyncio
from datetime import UTC, datetime

import pytest

from chat_session_storage.config import StorageConfig
from chat_session_storage.exceptions import (
    RemoteAuthError,
    RemoteNotFoundError,
    RemoteTransientError,
)
from chat_session_storage.models import Sender
from chat_session_storage.remote import RemoteHealth
from chat_session_storage.resilience import CircuitState
from chat_session_storage.sync import (
    CloudReplicator,
    SyncStatus,
    match_synced_messages,
    message_from_remote,
)
from chat_session_storage.utils import remote_message_id, session_tag


def transient(operation="create_message"):
    return RemoteTransientError(operation, 503)


class TestSyncNewMessage:
    async def test_first_message_creates_conversation(self, replicator, remote, make_session, make_message):
        message = make_message("What is the weather like today in Jakarta?")
        session = make_session("s1", messages=[message])

        result = await replicator.sync_new_message(message, session)

        assert result.ok
        assert result.messages_written == 1
        conversation = remote.conversations[result.conversation_id]
        assert conversation["user_id"] == "user-1"
        assert conversation["metadata"]["tags"] == [session_tag("s1")]
        assert conversation["title"] == "What is the weather like today..."
        assert conversation["message_count"] == 1

        document = remote.messages[remote_message_id("s1", message.id)]
        assert document["client_message_id"] == message.id
        assert document["content"] == message.text
        assert document["sender"] == "user"
        assert replicator.tracker.is_title_synced("s1")

    async def test_title_patched_once(self, replicator, remote, make_session, make_message):
        first = make_message("hello")
        reply = make_message("hi!", Sender.ASSISTANT)
        session = make_session("s1", messages=[first])
        await replicator.sync_new_message(first, session)

        session.messages.append(reply)
        await replicator.sync_new_message(reply, session)

        assert remote.calls["update_conversation"] == 1
        assert remote.calls["create_conversation"] == 1
        assert remote.calls["create_message"] == 2

    async def test_session_without_owner_is_skipped(self, replicator, remote, make_session, make_message):
        message = make_message("hello")
        session = make_session("s1", user_id=None, messages=[message])

        result = await replicator.sync_new_message(message, session)

        assert result.status == SyncStatus.SKIPPED
        assert result.reason == "no owner"
        assert sum(remote.calls.values()) == 0

    async def test_already_synced_is_skipped(self, replicator, remote, make_session, make_message):
        message = make_message("hello")
        session = make_session("s1", messages=[message])
        await replicator.sync_new_message(message, session)

        result = await replicator.sync_new_message(message, session)

        assert result.reason == "already synced"
        assert remote.calls["create_message"] == 1

    async def test_concurrent_messages_share_one_conversation(
        self, local, tracker, breaker, config, make_session, make_message, remote_factory
    ):
        remote = remote_factory(latency=0.01)
        replicator = CloudReplicator(remote, local, tracker, breaker, config)
        messages = [make_message(f"message {i}") for i in range(3)]
        session = make_session("s1", messages=messages)

        results = await asyncio.gather(
            *(replicator.sync_new_message(m, session.copy()) for m in messages)
        )

        assert all(r.ok for r in results)
        assert remote.calls["create_conversation"] == 1
        assert remote.calls["get_conversations_by_user"] == 1
        assert len({r.conversation_id for r in results}) == 1
        assert len(remote.messages_for(results[0].conversation_id)) == 3

    async def test_failed_resolution_is_forgotten(self, replicator, remote, tracker, make_session, make_message):
        message = make_message("hello")
        session = make_session("s1", messages=[message])
        remote.fail_next("get_conversations_by_user", transient("get_conversations_by_user"))

        first = await replicator.sync_new_message(message, session)
        assert first.status == SyncStatus.FAILED
        assert tracker.pending_resolution("s1") is None
        assert tracker.get_conversation_id("s1") is None

        second = await replicator.sync_new_message(message, session)
        assert second.ok
        assert remote.calls["create_conversation"] == 1

    async def test_resolution_finishing_after_reset_is_ignored(
        self, local, tracker, breaker, config, make_session, make_message, remote_factory
    ):
        remote = remote_factory(latency=0.02)
        replicator = CloudReplicator(remote, local, tracker, breaker, config)
        message = make_message("hello")
        session = make_session("s1", messages=[message])

        pending = asyncio.create_task(replicator.sync_new_message(message, session))
        await asyncio.sleep(0.005)
        replicator.reset_session("s1")
        await pending

        assert tracker.get_conversation_id("s1") is None


class TestFullSessionSync:
    async def test_writes_only_unsynced_messages(self, replicator, remote, make_session, make_message):
        first, second = make_message("one"), make_message("two")
        session = make_session("s1", messages=[first])
        await replicator.sync_new_message(first, session)

        session.messages.append(second)
        session.summary = "one"
        result = await replicator.sync_full_session(session)

        assert result.ok
        assert result.messages_written == 1
        assert remote.calls["create_message"] == 2
        conversation = remote.conversations[result.conversation_id]
        assert conversation["summary"] == "one"
        assert conversation["message_count"] == 2

    async def test_stops_at_first_failed_write(self, replicator, remote, tracker, make_session, make_message):
        messages = [make_message(t) for t in ("one", "two", "three")]
        session = make_session("s1", messages=messages[:1])
        await replicator.sync_new_message(messages[0], session)
        session.messages.extend(messages[1:])
        remote.fail_next("create_message", transient())

        result = await replicator.sync_full_session(session)

        assert result.status == SyncStatus.FAILED
        assert result.messages_written == 0
        assert remote.calls["create_message"] == 2
        assert tracker.unsynced_messages(session) == messages[1:]

        retry = await replicator.sync_full_session(session)
        assert retry.messages_written == 2
        assert len(remote.messages_for(retry.conversation_id)) == 3

    async def test_resumes_conversation_by_tag(self, replicator, remote, make_session, make_message):
        first, second = make_message("one"), make_message("two")
        remote.add_conversation("user-1", session_id="s1", conversation_id="conv-x")
        remote.add_message("conv-x", "one", client_message_id=first.id)
        session = make_session("s1", messages=[first, second])

        result = await replicator.sync_full_session(session)

        assert result.conversation_id == "conv-x"
        assert result.messages_written == 1
        assert remote.calls["create_conversation"] == 0
        assert len(remote.messages_for("conv-x")) == 2

    async def test_resume_matches_by_content_as_multiset(self, replicator, remote, make_session, make_message):
        messages = [
            make_message("ok"),
            make_message("ok", Sender.ASSISTANT),
            make_message("ok"),
        ]
        remote.add_conversation("user-1", session_id="s1", conversation_id="conv-x")
        remote.add_message("conv-x", "ok", sender="user")
        session = make_session("s1", messages=messages)

        result = await replicator.sync_full_session(session)

        assert result.messages_written == 2

    async def test_finds_tag_on_later_page(self, remote, local, tracker, breaker, tmp_path, make_session):
        config = StorageConfig(local_path=tmp_path, history_page_size=2)
        replicator = CloudReplicator(remote, local, tracker, breaker, config)
        for i in range(4):
            remote.add_conversation(
                "user-1",
                session_id=f"other-{i}",
                last_activity_timestamp=f"2024-02-0{5 - i}T00:00:00+00:00",
            )
        remote.add_conversation(
            "user-1", session_id="s1", conversation_id="conv-x",
            last_activity_timestamp="2024-01-01T00:00:00+00:00",
        )

        conversation_id = await replicator.ensure_remote_conversation(make_session("s1"))

        assert conversation_id == "conv-x"
        assert remote.calls["get_conversations_by_user"] == 3


class TestMatchSyncedMessages:
    def test_client_id_match(self, make_message):
        message = make_message("hi")
        documents = [{"id": "x", "client_message_id": message.id, "content": "edited", "sender": "user"}]
        assert match_synced_messages([message], documents) == {message.id}

    def test_content_match_does_not_double_count(self, make_message):
        a, b = make_message("same"), make_message("same")
        documents = [{"id": "x", "content": "same", "sender": "user"}]
        assert match_synced_messages([a, b], documents) == {a.id}

    def test_claimed_document_not_reused_for_content(self, make_message):
        a, b = make_message("same"), make_message("same")
        documents = [{"id": "x", "client_message_id": a.id, "content": "same", "sender": "user"}]
        assert match_synced_messages([a, b], documents) == {a.id}

    def test_message_from_remote(self):
        message = message_from_remote(
            {"id": "doc-1", "content": "hello", "sender": "assistant", "timestamp": "2024-01-01T00:00:00Z"}
        )
        assert message.id == "doc-1"
        assert message.text == "hello"
        assert message.sender == Sender.ASSISTANT


class TestFailureHandling:
    async def test_auth_error_blocks_session_until_unblocked(
        self, replicator, remote, tracker, make_session, make_message
    ):
        message = make_message("hello")
        session = make_session("s1", messages=[message])
        remote.fail_next("create_conversation", RemoteAuthError("create_conversation", 401))

        first = await replicator.sync_new_message(message, session)
        assert first.reason == "auth rejected"
        assert tracker.is_auth_blocked("s1")

        blocked = await replicator.sync_new_message(message, session)
        assert blocked.reason == "auth blocked"
        assert remote.calls["create_conversation"] == 1

        replicator.unblock_auth()
        assert (await replicator.sync_new_message(message, session)).ok

    async def test_auth_warning_logged_once(self, replicator, remote, make_session, make_message, caplog):
        session = make_session("s1")
        for text in ("a", "b"):
            message = make_message(text)
            session.messages.append(message)
            remote.fail_next("create_conversation", RemoteAuthError("create_conversation", 403))
            await replicator.sync_new_message(message, session)
            replicator.unblock_auth("s1")

        warnings = [r for r in caplog.records if "rejected credentials" in r.getMessage()]
        assert len(warnings) == 1

    async def test_auth_warning_markers_are_per_replicator(
        self, remote, local, config, make_session, make_message, caplog
    ):
        message = make_message("hello")
        session = make_session("s1", messages=[message])
        remote.fail_next("create_conversation", RemoteAuthError("create_conversation", 403), times=2)

        for _ in range(2):
            await CloudReplicator(remote, local, config=config).sync_new_message(message, session)

        warnings = [r for r in caplog.records if "rejected credentials" in r.getMessage()]
        assert len(warnings) == 2

    async def test_transient_failures_open_circuit(
        self, replicator, remote, breaker, clock, make_session, make_message
    ):
        message = make_message("hello")
        session = make_session("s1", messages=[message])
        remote.fail_all = transient("get_conversations_by_user")

        for _ in range(3):
            result = await replicator.sync_new_message(message, session)
            assert result.status == SyncStatus.FAILED
        assert breaker.state == CircuitState.OPEN

        skipped = await replicator.sync_new_message(message, session)
        assert skipped.reason == "circuit open"
        assert remote.calls["get_conversations_by_user"] == 3

        remote.fail_all = None
        clock.advance(30)

        recovered = await replicator.sync_new_message(message, session)
        assert recovered.ok
        assert breaker.state == CircuitState.CLOSED

    async def test_timeout_counts_as_failure(
        self, local, tracker, breaker, tmp_path, make_session, make_message, remote_factory
    ):
        remote = remote_factory(latency=0.2)
        config = StorageConfig(local_path=tmp_path, request_timeout=0.01)
        replicator = CloudReplicator(remote, local, tracker, breaker, config)
        message = make_message("hello")

        result = await replicator.sync_new_message(message, make_session("s1", messages=[message]))

        assert result.status == SyncStatus.FAILED
        assert "timed out" in result.reason
        assert breaker.failure_count == 1

    async def test_not_found_on_update_is_noop(self, replicator, remote, breaker, tracker, make_session, make_message):
        message = make_message("hello")
        remote.fail_next("update_conversation", RemoteNotFoundError("update_conversation", 404))

        result = await replicator.sync_new_message(message, make_session("s1", messages=[message]))

        assert result.ok
        assert breaker.failure_count == 0
        assert not tracker.is_title_synced("s1")

    async def test_missing_conversation_on_update(self, replicator, remote, tracker, make_session, make_message):
        message = make_message("hello")
        session = make_session("s1", messages=[message])
        await replicator.ensure_remote_conversation(session)
        remote.conversations.clear()

        result = await replicator.sync_new_message(message, session)

        assert result.ok
        assert not tracker.is_title_synced("s1")


class TestPullRemoteHistory:
    async def test_creates_sessions_for_tagged_and_untagged(self, replicator, remote, local):
        remote.add_conversation("user-1", session_id="old", title="Old chat", summary="Old summary")
        remote.add_message(
            next(iter(remote.conversations)), "hello", client_message_id="m-1"
        )
        remote.add_conversation("user-1", conversation_id="conv-legacy", date="2024-01-15")
        remote.add_conversation("someone-else", session_id="not-mine")

        result = await replicator.pull_remote_history("user-1")

        assert result.ok
        assert result.sessions_updated == 2
        old = local.find_session("old")
        assert old.title == "Old chat"
        assert old.summary == "Old summary"
        assert old.user_id == "user-1"
        assert [m.id for m in old.messages] == ["m-1"]
        assert local.find_session("remote-conv-legacy").date == "2024-01-15"
        assert local.find_session("not-mine") is None
        assert local.get_last_sync_time() is not None

    async def test_active_session_is_never_touched(self, replicator, remote, local, make_session, make_message):
        current = make_session("s1", messages=[make_message("local")])
        local.save_current(current)
        remote.add_conversation("user-1", session_id="s1", conversation_id="conv-1")
        remote.add_message("conv-1", "remote only")

        result = await replicator.pull_remote_history("user-1")

        assert result.sessions_updated == 0
        assert local.find_session("s1") is None
        assert local.load_current() == current

    async def test_local_data_wins(self, replicator, remote, local, make_session, make_message):
        mine = make_message("original")
        existing = make_session("s2", messages=[mine])
        existing.title = "Local title"
        local.merge_into_day_history(existing)
        remote.add_conversation("user-1", session_id="s2", conversation_id="conv-2", title="Remote title")
        remote.add_message("conv-2", "edited remotely", client_message_id=mine.id)
        remote.add_message("conv-2", "from another device", sender="assistant")

        result = await replicator.pull_remote_history("user-1")

        assert result.sessions_updated == 1
        merged = local.find_session("s2")
        assert merged.title == "Local title"
        assert [m.text for m in merged.messages] == ["original", "from another device"]

    async def test_unchanged_session_not_counted(self, replicator, remote, local, make_session, make_message):
        mine = make_message("original")
        local.merge_into_day_history(make_session("s2", messages=[mine]))
        remote.add_conversation("user-1", session_id="s2", conversation_id="conv-2")
        remote.add_message("conv-2", "original", client_message_id=mine.id)

        result = await replicator.pull_remote_history("user-1")

        assert result.sessions_updated == 0

    async def test_concurrent_pull_is_skipped(self, local, tracker, breaker, config, remote_factory):
        remote = remote_factory(latency=0.01)
        replicator = CloudReplicator(remote, local, tracker, breaker, config)
        remote.add_conversation("user-1", session_id="old")

        first, second = await asyncio.gather(
            replicator.pull_remote_history("user-1"),
            replicator.pull_remote_history("user-1"),
        )

        assert first.ok
        assert second.reason == "pull in progress"
        assert not replicator.pull_in_progress

    async def test_bounded_by_max_conversations(self, remote, local, tracker, breaker, tmp_path):
        config = StorageConfig(local_path=tmp_path, history_page_size=2, max_pull_conversations=3)
        replicator = CloudReplicator(remote, local, tracker, breaker, config)
        for i in range(5):
            remote.add_conversation("user-1", session_id=f"old-{i}")

        result = await replicator.pull_remote_history("user-1")

        assert result.sessions_updated == 3
        assert local.total_sessions() == 3
        assert remote.calls["get_conversations_by_user"] == 2

    async def test_skipped_while_circuit_open(self, replicator, remote, breaker):
        for _ in range(3):
            breaker.record_failure()

        result = await replicator.pull_remote_history("user-1")

        assert result.reason == "circuit open"
        assert remote.calls["get_conversations_by_user"] == 0

    async def test_failure_does_not_record_sync_time(self, replicator, remote, local):
        remote.fail_all = transient("get_conversations_by_user")

        result = await replicator.pull_remote_history("user-1")

        assert result.status == SyncStatus.FAILED
        assert local.get_last_sync_time() is None
        assert not replicator.pull_in_progress

    async def test_falls_back_to_start_time_for_bad_date(self, replicator, remote, local):
        remote.add_conversation(
            "user-1", session_id="old", date="garbage", timestamp="2024-02-10T12:00:00+00:00"
        )

        await replicator.pull_remote_history("user-1")

        session = local.find_session("old")
        assert session.start_time == datetime(2024, 2, 10, 12, tzinfo=UTC)
        assert session.date == "2024-02-10"


class TestHealth:
    async def test_healthy(self, replicator):
        health = await replicator.check_remote_health()
        assert health.healthy

    async def test_timeout_reports_unhealthy(self, local, config, remote_factory):
        class SlowRemote(remote_factory):
            async def health_check(self):
                await asyncio.sleep(5)
                return RemoteHealth(is_initialized=True)

        config.request_timeout = 0.01
        replicator = CloudReplicator(SlowRemote(), local, config=config)

        health = await replicator.check_remote_health()

        assert not health.healthy
        assert health.error == "health check timed out"


@pytest.mark.parametrize("user_id", [None, ""])
async def test_full_sync_requires_owner(replicator, make_session, user_id):
    result = await replicator.sync_full_session(make_session("s1", user_id=user_id))
    assert result.reason == "no owner"
