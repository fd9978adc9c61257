"""ID, date and text helpers shared by the local and remote tiers.

Centralizes the ID format knowledge so callers never need to
construct or parse identifiers directly.

Session IDs:          session_{epoch_ms}_{random}
Migrated session IDs: migrated_{epoch_ms}_{random}
Remote message IDs:   {session_id}_msg_{message_id}
Conversation tags:    session-{session_id}
"""

from __future__ import annotations

import secrets
import string
import time
from datetime import date, datetime

from .models import ChatMessage

SESSION_TAG_PREFIX = "session-"
REMOTE_SESSION_PREFIX = "remote-"

DEFAULT_TITLE = "New chat"
DEFAULT_SUMMARY = "New conversation"
TITLE_MAX_LENGTH = 30
SUMMARY_MAX_LENGTH = 50
ELLIPSIS = "..."

_BASE36 = string.digits + string.ascii_lowercase


def _random_suffix(length: int = 9) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_session_id(prefix: str = "session") -> str:
    """Generate a new session ID."""
    return f"{prefix}_{int(time.time() * 1000)}_{_random_suffix()}"


def generate_message_id() -> str:
    """Generate a new client-side message ID."""
    return f"msg_{int(time.time() * 1000)}_{_random_suffix()}"


def remote_message_id(session_id: str, message_id: str) -> str:
    """Deterministic remote document ID for a local message.

    Re-sending the same message yields the same document ID, so the remote
    write is an idempotent upsert rather than a duplicate.
    """
    return _safe_document_id(f"{session_id}_msg_{message_id}")


def _safe_document_id(value: str) -> str:
    # Cosmos DB rejects '/', '\\', '?' and '#' in item ids.
    return value.translate(str.maketrans({"/": "_", "\\": "_", "?": "_", "#": "_"}))


def session_tag(session_id: str) -> str:
    return f"{SESSION_TAG_PREFIX}{session_id}"


def session_id_from_tags(tags: list[str] | None) -> str | None:
    """Extract the local session ID from a conversation's tags, if present."""
    for tag in tags or []:
        if isinstance(tag, str) and tag.startswith(SESSION_TAG_PREFIX):
            value = tag[len(SESSION_TAG_PREFIX):]
            if value:
                return value
    return None


def format_date(value: date | datetime) -> str:
    """Format a date as YYYY-MM-DD.

    Aware datetimes are converted to the host's local time zone first, so
    the calendar date is the one the user saw.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone()
        value = value.date()
    return value.isoformat()


def parse_date(text: str) -> date | None:
    """Parse YYYY-MM-DD, returning None for anything else."""
    try:
        return date.fromisoformat(text) if len(text) == 10 else None
    except (TypeError, ValueError):
        return None


def truncate(text: str, max_length: int) -> str:
    return text if len(text) <= max_length else text[:max_length] + ELLIPSIS


def derive_title(messages: list[ChatMessage], max_length: int = TITLE_MAX_LENGTH) -> str:
    """Session title from the first user message."""
    first = next((m.text for m in messages if m.is_user and m.text), None)
    if not first:
        return DEFAULT_TITLE
    return truncate(first, max_length)


def derive_summary(messages: list[ChatMessage], max_length: int = SUMMARY_MAX_LENGTH) -> str:
    """Session summary from the first user message."""
    first = next((m.text for m in messages if m.is_user and m.text), None)
    if not first:
        return DEFAULT_SUMMARY
    return truncate(first, max_length)
