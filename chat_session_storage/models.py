"""
Chat data model.

Defines messages, sessions and day-indexed history as dataclasses with
dict round-tripping for JSON persistence. Timestamps are timezone-aware
datetimes in memory and ISO 8601 strings on disk and on the wire.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class Sender(Enum):
    """Who sent a chat message."""

    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: Any) -> Sender:
        """Parse a sender, accepting legacy assistant spellings."""
        if isinstance(value, Sender):
            return value
        text = str(value or "").strip().lower()
        if text == "user":
            return cls.USER
        if text in ("assistant", "virpal", "bot", "ai"):
            return cls.ASSISTANT
        raise ValueError(f"Unknown message sender: {value!r}")


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO string / epoch millis / datetime into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, UTC)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Timestamp out of range: {value!r}") from e
    if isinstance(value, str) and value:
        text = value.replace("Z", "+00:00") if value.endswith("Z") else value
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raise ValueError(f"Invalid timestamp: {value!r}")


def format_timestamp(value: datetime) -> str:
    return value.isoformat()


@dataclass(frozen=True)
class ChatMessage:
    """A single chat message. Immutable once created.

    Attributes:
        id: Client-generated unique identifier
        sender: Who sent the message
        text: Message body
        timestamp: When the message was sent or received
        audio_url: Optional reference to synthesized audio
    """

    id: str
    sender: Sender
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    audio_url: str | None = None

    @property
    def is_user(self) -> bool:
        return self.sender == Sender.USER

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "sender": self.sender.value,
            "text": self.text,
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.audio_url:
            data["audio_url"] = self.audio_url
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        return cls(
            id=str(data["id"]),
            sender=Sender.parse(data.get("sender")),
            text=str(data.get("text", "")),
            timestamp=parse_timestamp(data.get("timestamp") or datetime.now(UTC)),
            audio_url=data.get("audio_url") or data.get("audioUrl"),
        )


@dataclass
class ChatSession:
    """One continuous chat interaction.

    Attributes:
        id: Session identifier
        date: Local calendar date the session started (YYYY-MM-DD)
        start_time: When the session started
        end_time: When the session was closed (None while active)
        title: Short title, derived from the first user message
        summary: Summary, derived when the session ends
        messages: Messages in send order (append-only while active)
        user_id: Owning user (None for unauthenticated use)
    """

    id: str
    date: str
    start_time: datetime
    end_time: datetime | None = None
    title: str | None = None
    summary: str | None = None
    messages: list[ChatMessage] = field(default_factory=list)
    user_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.messages

    def user_messages(self) -> list[ChatMessage]:
        return [m for m in self.messages if m.is_user]

    def first_user_message(self) -> ChatMessage | None:
        return next((m for m in self.messages if m.is_user), None)

    def copy(self) -> ChatSession:
        """Shallow copy with its own message list."""
        return replace(self, messages=list(self.messages))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "date": self.date,
            "start_time": format_timestamp(self.start_time),
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.end_time is not None:
            data["end_time"] = format_timestamp(self.end_time)
        if self.title is not None:
            data["title"] = self.title
        if self.summary is not None:
            data["summary"] = self.summary
        if self.user_id is not None:
            data["user_id"] = self.user_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatSession:
        end_time = data.get("end_time")
        return cls(
            id=str(data["id"]),
            date=str(data["date"]),
            start_time=parse_timestamp(data["start_time"]),
            end_time=parse_timestamp(end_time) if end_time else None,
            title=data.get("title"),
            summary=data.get("summary"),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages") or []],
            user_id=data.get("user_id"),
        )


@dataclass
class DayHistory:
    """All sessions that started on one calendar date."""

    date: str
    sessions: list[ChatSession] = field(default_factory=list)

    @property
    def total_sessions(self) -> int:
        return len(self.sessions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "sessions": [s.to_dict() for s in self.sessions],
            "total_sessions": self.total_sessions,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DayHistory:
        return cls(
            date=str(data["date"]),
            sessions=[ChatSession.from_dict(s) for s in data.get("sessions") or []],
        )


@dataclass
class StorageHealthStatus:
    """Snapshot of both storage tiers."""

    local_storage_working: bool
    remote_store_working: bool
    total_local_sessions: int
    last_sync_time: str | None = None
    circuit: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_storage_working": self.local_storage_working,
            "remote_store_working": self.remote_store_working,
            "total_local_sessions": self.total_local_sessions,
            "last_sync_time": self.last_sync_time,
            "circuit": self.circuit,
        }
