"""
Local chat storage: the source of truth.

Persists the current session and day-indexed history as JSON documents in a
synchronous key/value store. Nothing here awaits, so a read-modify-write
cannot interleave with other coroutines.

Read paths never raise: a value that cannot be parsed is logged and treated
as empty, so a corrupted cache degrades to "no history" instead of breaking
the chat. Write failures are logged and reported as False.

Keys:
    current-session       one ChatSession
    chat-history          list of DayHistory, newest date first
    last-sync-timestamp   ISO timestamp of the last successful pull
    chat-history-v1       legacy flat list of {date, messages, summary}
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, time
from typing import Any

from ..exceptions import ChatStorageError, LocalStorageCorruptError
from ..models import ChatMessage, ChatSession, DayHistory, parse_timestamp
from ..utils import (
    TITLE_MAX_LENGTH,
    derive_title,
    format_date,
    generate_session_id,
    parse_date,
)
from .kv import KeyValueStore

logger = logging.getLogger(__name__)

CURRENT_SESSION_KEY = "current-session"
HISTORY_KEY = "chat-history"
LAST_SYNC_KEY = "last-sync-timestamp"
LEGACY_HISTORY_KEY = "chat-history-v1"

_PROBE_KEY = "storage-probe"


@dataclass
class RecoveryReport:
    """Outcome of a history cleanup pass."""

    recovered: int = 0
    removed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"recovered": self.recovered, "removed": self.removed, "errors": list(self.errors)}


class LocalStore:
    """Durable, synchronous, always-available chat storage."""

    def __init__(self, kv: KeyValueStore, title_max_length: int = TITLE_MAX_LENGTH) -> None:
        self.kv = kv
        self.title_max_length = title_max_length

    # =========================================================================
    # JSON boundary
    # =========================================================================

    def _read_json(self, key: str, default: Any) -> Any:
        try:
            raw = self.kv.get(key)
            if raw is None or not raw.strip():
                return default
            return json.loads(raw)
        except (ValueError, ChatStorageError) as e:
            error = LocalStorageCorruptError(key, e)
            logger.warning("%s - treating as empty", error.message, extra=error.details)
            return default

    def _write_json(self, key: str, value: Any) -> bool:
        try:
            self.kv.set(key, json.dumps(value))
            return True
        except ChatStorageError as e:
            logger.error("Failed to save %s to local storage: %s", key, e, extra=e.details)
            return False
        except (TypeError, ValueError) as e:
            logger.error("Failed to serialize %s for local storage: %s", key, e)
            return False

    def _remove(self, key: str) -> bool:
        try:
            self.kv.remove(key)
            return True
        except ChatStorageError as e:
            logger.error("Failed to remove %s from local storage: %s", key, e)
            return False

    # =========================================================================
    # Current session
    # =========================================================================

    def load_current(self) -> ChatSession | None:
        data = self._read_json(CURRENT_SESSION_KEY, None)
        if data is None:
            return None
        try:
            session = ChatSession.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Failed to parse current session from local storage: %s", e)
            return None
        logger.debug("Current session loaded from local storage: %s", session.id)
        return session

    def save_current(self, session: ChatSession) -> bool:
        return self._write_json(CURRENT_SESSION_KEY, session.to_dict())

    def clear_current(self) -> bool:
        return self._remove(CURRENT_SESSION_KEY)

    # =========================================================================
    # Day history
    # =========================================================================

    def load_history(self) -> list[DayHistory]:
        """All day history, newest date first. Unparseable entries are skipped."""
        raw = self._read_json(HISTORY_KEY, [])
        if not isinstance(raw, list):
            logger.warning("Local chat history is not a list - treating as empty")
            return []

        days: list[DayHistory] = []
        for entry in raw:
            if not isinstance(entry, dict) or "date" not in entry:
                logger.warning("Skipping malformed day history entry")
                continue
            day = DayHistory(date=str(entry["date"]))
            items = entry.get("sessions") or []
            if not isinstance(items, list):
                logger.warning("Skipping malformed sessions list in %s", day.date)
                items = []
            for item in items:
                try:
                    day.sessions.append(ChatSession.from_dict(item))
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.warning("Skipping malformed session in %s: %s", day.date, e)
            days.append(day)
        return days

    def _save_history(self, days: Iterable[DayHistory]) -> bool:
        ordered = sorted((d for d in days if d.sessions), key=lambda d: d.date, reverse=True)
        for day in ordered:
            day.sessions.sort(key=lambda s: s.start_time)
        return self._write_json(HISTORY_KEY, [d.to_dict() for d in ordered])

    @staticmethod
    def _merge(days: list[DayHistory], session: ChatSession) -> None:
        day = next((d for d in days if d.date == session.date), None)
        if day is None:
            day = DayHistory(date=session.date)
            days.append(day)

        for index, existing in enumerate(day.sessions):
            if existing.id == session.id:
                day.sessions[index] = session.copy()
                logger.debug("Updated existing session in history: %s", session.id)
                return

        day.sessions.append(session.copy())
        logger.debug("Added new session to history: %s", session.id)

    def merge_into_day_history(self, session: ChatSession) -> bool:
        """Insert or replace a session in its day, keeping both levels sorted."""
        days = self.load_history()

        # A session belongs to exactly one day, even if its date was edited.
        for day in days:
            if day.date != session.date:
                day.sessions = [s for s in day.sessions if s.id != session.id]

        self._merge(days, session)
        return self._save_history(days)

    def list_sessions_for_date(self, date: str) -> list[ChatSession]:
        day = next((d for d in self.load_history() if d.date == date), None)
        return list(day.sessions) if day else []

    def list_dates_with_history(self) -> list[str]:
        return sorted(d.date for d in self.load_history())

    def find_session(self, session_id: str) -> ChatSession | None:
        for day in self.load_history():
            for session in day.sessions:
                if session.id == session_id:
                    return session
        return None

    def total_sessions(self) -> int:
        return sum(d.total_sessions for d in self.load_history())

    def delete_session(self, session_id: str) -> bool:
        """Delete one session. Empty days are dropped. Returns True if found."""
        days = self.load_history()
        found = False
        for day in days:
            kept = [s for s in day.sessions if s.id != session_id]
            if len(kept) != len(day.sessions):
                day.sessions = kept
                found = True
                break

        if not found:
            return False
        self._save_history(days)
        logger.debug("Chat session deleted: %s", session_id)
        return True

    def delete_day(self, date: str) -> list[ChatSession]:
        """Delete every session of one day. Returns the removed sessions."""
        days = self.load_history()
        removed = next((d for d in days if d.date == date), None)
        if removed is None:
            return []

        self._save_history(d for d in days if d.date != date)
        logger.debug("Day history deleted: %s", date)
        return removed.sessions

    # =========================================================================
    # Sync bookkeeping
    # =========================================================================

    def get_last_sync_time(self) -> str | None:
        value = self._read_json(LAST_SYNC_KEY, None)
        return value if isinstance(value, str) else None

    def set_last_sync_time(self, when: datetime | None = None) -> bool:
        return self._write_json(LAST_SYNC_KEY, (when or datetime.now(UTC)).isoformat())

    def is_writable(self) -> bool:
        """Probe the key/value store with a write and a remove."""
        try:
            self.kv.set(_PROBE_KEY, '"probe"')
            self.kv.remove(_PROBE_KEY)
            return True
        except ChatStorageError:
            return False

    # =========================================================================
    # Migration and recovery
    # =========================================================================

    def migrate_legacy_format(self, user_id: str | None = None) -> int:
        """Rewrite the legacy flat history into day-indexed sessions.

        Each legacy entry becomes one session starting at midnight of its
        date, titled from its first user message. The legacy key is deleted
        once the new history has been saved.

        Returns:
            Number of sessions migrated
        """
        try:
            raw = self.kv.get(LEGACY_HISTORY_KEY)
        except ChatStorageError as e:
            logger.warning("Failed to read legacy chat history: %s", e)
            return 0
        if raw is None:
            return 0

        try:
            entries = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Failed to migrate from legacy format: %s", e)
            return 0
        if not isinstance(entries, list):
            logger.warning("Legacy chat history is not a list - skipping migration")
            return 0

        days = self.load_history()
        migrated = 0
        for entry in entries:
            session = self._session_from_legacy(entry, user_id)
            if session is None:
                continue
            self._merge(days, session)
            migrated += 1

        if not self._save_history(days):
            return 0

        self._remove(LEGACY_HISTORY_KEY)
        logger.info("Migrated %d sessions from legacy chat history format", migrated)
        return migrated

    def _session_from_legacy(self, entry: Any, user_id: str | None) -> ChatSession | None:
        if not isinstance(entry, dict):
            logger.warning("Skipping malformed legacy history entry")
            return None

        day = parse_date(str(entry.get("date", "")))
        if day is None:
            logger.warning("Skipping legacy history entry with invalid date: %r", entry.get("date"))
            return None

        items = entry.get("messages") or []
        if not isinstance(items, list):
            logger.warning("Skipping malformed legacy message list on %s", day)
            items = []
        messages: list[ChatMessage] = []
        for item in items:
            try:
                messages.append(ChatMessage.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping malformed legacy message on %s: %s", day, e)

        return ChatSession(
            id=generate_session_id("migrated"),
            date=day.isoformat(),
            start_time=datetime.combine(day, time.min).astimezone(),
            title=derive_title(messages, self.title_max_length),
            summary=entry.get("summary"),
            messages=messages,
            user_id=user_id,
        )

    def recover_and_clean(self) -> RecoveryReport:
        """Repair what can be repaired in the stored history, drop the rest."""
        report = RecoveryReport()
        raw = self._read_json(HISTORY_KEY, [])
        if not isinstance(raw, list):
            report.errors.append("History is not a list")
            report.removed += 1
            self._write_json(HISTORY_KEY, [])
            return report

        changed = False
        seen: set[str] = set()
        by_date: dict[str, list[ChatSession]] = {}

        for entry in raw:
            sessions = entry.get("sessions") if isinstance(entry, dict) else None
            if not isinstance(sessions, list):
                report.errors.append(f"Malformed day entry: {entry!r:.80}")
                report.removed += 1
                changed = True
                continue

            for item in sessions:
                session, repaired, error = self._recover_session(item, seen)
                if session is None:
                    report.errors.append(error or "Unrecoverable session")
                    report.removed += 1
                    changed = True
                    continue
                if repaired:
                    report.recovered += repaired
                    changed = True
                seen.add(session.id)
                by_date.setdefault(session.date, []).append(session)

        empty_days = sum(
            1 for e in raw if isinstance(e, dict) and isinstance(e.get("sessions"), list)
            and not e["sessions"]
        )
        if empty_days:
            report.removed += empty_days
            changed = True

        if changed:
            self._save_history(DayHistory(date=d, sessions=s) for d, s in by_date.items())
            logger.info(
                "Session recovery completed: %d recovered, %d removed",
                report.recovered,
                report.removed,
            )
        return report

    def _recover_session(
        self, item: Any, seen: set[str]
    ) -> tuple[ChatSession | None, int, str | None]:
        if not isinstance(item, dict):
            return None, 0, f"Session is not an object: {item!r:.80}"
        if not item.get("id") or not item.get("date") or not item.get("start_time"):
            return None, 0, f"Session missing required fields: {item.get('id')!r}"
        if str(item["id"]) in seen:
            return None, 0, f"Duplicate session ID found: {item['id']}"

        data = dict(item)
        repaired = 0

        if parse_date(str(data["date"])) is None:
            try:
                data["date"] = format_date(parse_timestamp(str(data["date"])))
                repaired += 1
            except ValueError:
                return None, 0, f"Invalid date in session {data['id']}: {data['date']}"

        if not isinstance(data.get("messages"), list):
            data["messages"] = []
            repaired += 1

        try:
            session = ChatSession.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return None, 0, f"Error processing session {data['id']}: {e}"

        if not session.title and session.messages:
            session.title = derive_title(session.messages, self.title_max_length)
            repaired += 1

        return session, repaired, None
