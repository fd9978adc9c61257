"""
Best-effort usage analytics.

Writes small event records to the remote analytics container. Events are
dropped, never queued, when nobody is signed in or the remote circuit is
open. Failures are logged and swallowed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from .auth import AuthProvider
from .cache import BoundedCache
from .config import StorageConfig
from .exceptions import RemoteAuthError, RemoteNotFoundError, RemoteStoreError
from .logging_utils import DEFAULT_ONCE_CACHE_SIZE, log_once
from .remote import RemoteStore
from .resilience import CircuitBreaker
from .tasks import BackgroundTasks
from .utils import format_date

logger = logging.getLogger(__name__)

MESSAGE_ADDED = "message_added"
SESSION_STARTED = "session_started"
SESSION_ENDED = "session_ended"


class AnalyticsEmitter:
    """Fire-and-forget analytics over a RemoteStore.

    Shares the circuit breaker of the replicator so a remote outage stops
    both at once.
    """

    def __init__(
        self,
        remote: RemoteStore,
        auth: AuthProvider,
        breaker: CircuitBreaker,
        tasks: BackgroundTasks | None = None,
        config: StorageConfig | None = None,
    ):
        self.remote = remote
        self.auth = auth
        self.breaker = breaker
        self.tasks = tasks if tasks is not None else BackgroundTasks("analytics")
        self.config = config or StorageConfig()
        self._warnings: BoundedCache[bool] = BoundedCache(max_entries=DEFAULT_ONCE_CACHE_SIZE)

    @property
    def enabled(self) -> bool:
        return self.config.analytics_enabled

    def _resolve_user(self, user_id: str | None) -> str | None:
        if not self.auth.is_authenticated():
            return None
        return user_id or self.auth.current_user_id()

    async def track(
        self,
        event_type: str,
        attributes: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> bool:
        """Write one analytics record.

        Returns:
            True if the record was written
        """
        if not self.enabled:
            return False
        owner = self._resolve_user(user_id)
        if not owner:
            logger.debug("Analytics event %s dropped: no authenticated user", event_type)
            return False
        if self.breaker.is_open():
            logger.debug("Analytics event %s dropped: circuit open", event_type)
            return False

        now = datetime.now(UTC)
        record = {
            "id": f"analytics_{uuid.uuid4().hex}",
            "user_id": owner,
            "event_type": event_type,
            "attributes": dict(attributes or {}),
            "date": format_date(now),
            "timestamp": now.isoformat(),
        }

        try:
            await asyncio.wait_for(
                self.remote.create_analytics_record(record),
                timeout=self.config.request_timeout,
            )
        except RemoteNotFoundError as e:
            self.breaker.record_success()
            logger.warning("Analytics container missing, event %s dropped: %s", event_type, e)
            return False
        except RemoteAuthError as e:
            self.breaker.record_failure()
            log_once(
                logger,
                logging.WARNING,
                f"analytics-auth:{owner}",
                "Remote store rejected credentials (%s) for analytics",
                e.status_code,
                cache=self._warnings,
            )
            return False
        except TimeoutError:
            self.breaker.record_failure()
            logger.warning("Analytics event %s timed out", event_type)
            return False
        except RemoteStoreError as e:
            self.breaker.record_failure()
            logger.warning("Failed to write analytics event %s: %s", event_type, e.message)
            return False

        self.breaker.record_success()
        logger.debug("Analytics event %s written", event_type)
        return True

    def emit(
        self,
        event_type: str,
        attributes: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> asyncio.Task[bool] | None:
        """Schedule ``track`` in the background. Returns None when nothing would be sent."""
        if not self.enabled or not self._resolve_user(user_id):
            return None
        return self.tasks.spawn(
            self.track(event_type, attributes, user_id), name=f"analytics-{event_type}"
        )
