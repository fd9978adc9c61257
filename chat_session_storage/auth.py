"""
Auth collaborator adapters.

Storage only needs two questions answered: is somebody signed in, and
who. Token issuance and refresh live elsewhere.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml

logger = logging.getLogger(__name__)


@runtime_checkable
class AuthProvider(Protocol):
    """Answers who the current user is. Implementations never raise."""

    def is_authenticated(self) -> bool: ...

    def current_user_id(self) -> str | None: ...


class AnonymousAuth:
    """Nobody is ever signed in. Storage stays local-only."""

    def is_authenticated(self) -> bool:
        return False

    def current_user_id(self) -> str | None:
        return None


class StaticAuth:
    """In-process auth state that the host flips on sign in and sign out."""

    def __init__(self, user_id: str | None = None):
        self._user_id = user_id

    def is_authenticated(self) -> bool:
        return self._user_id is not None

    def current_user_id(self) -> str | None:
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        self._user_id = user_id

    def sign_out(self) -> None:
        self._user_id = None


class ConfigFileAuthProvider:
    """Reads the signed-in user from a local settings file.

    Configuration in ~/.chat-session-storage/settings.yaml:

    ```yaml
    identity:
      user_id: "user-abc123"
    ```

    A missing file, section or user_id means nobody is signed in.
    """

    def __init__(self, config_path: Path | None = None):
        self.config_path = config_path or Path.home() / ".chat-session-storage" / "settings.yaml"
        self._user_id: str | None = None
        self._loaded = False

    def is_authenticated(self) -> bool:
        return self.current_user_id() is not None

    def current_user_id(self) -> str | None:
        if not self._loaded:
            identity = self._load_config().get("identity") or {}
            user_id = identity.get("user_id") if isinstance(identity, dict) else None
            self._user_id = str(user_id) if user_id else None
            self._loaded = True
        return self._user_id

    def reload(self) -> None:
        """Forget the cached identity so the next call re-reads the file."""
        self._loaded = False
        self._user_id = None

    def _load_config(self) -> dict[str, Any]:
        if not self.config_path.exists():
            return {}

        try:
            content = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Failed to read identity settings from %s: %s", self.config_path, e)
            return {}
        return content if isinstance(content, dict) else {}
