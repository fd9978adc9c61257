"""
Synchronous key/value persistence primitives.

LocalStore is the correctness boundary, so these primitives never suspend:
every call runs to completion before control returns to the event loop.

FileKeyValueStore provides:
- One JSON document per key under a base directory
- Atomic writes using temp file + fsync + rename
- An optional per-value byte quota, like a browser's storage limit
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..exceptions import StorageIOError, StorageQuotaExceededError


@runtime_checkable
class KeyValueStore(Protocol):
    """String key/value storage. Values are serialized JSON."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


def _check_quota(key: str, value: str, quota_bytes: int | None) -> None:
    if quota_bytes is None:
        return
    size = len(value.encode("utf-8"))
    if size > quota_bytes:
        raise StorageQuotaExceededError(key, size, quota_bytes)


class MemoryKeyValueStore:
    """In-process store, for tests and ephemeral clients."""

    def __init__(self, quota_bytes: int | None = None) -> None:
        self.quota_bytes = quota_bytes
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        _check_quota(key, value, self.quota_bytes)
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class FileKeyValueStore:
    """Directory-backed store.

    Directory structure:
    {base_path}/
      {key}.json
    """

    SUFFIX = ".json"

    def __init__(self, base_path: Path | str, quota_bytes: int | None = None) -> None:
        self.base_path = Path(base_path)
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.base_path / f"{key}{self.SUFFIX}"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise StorageIOError("read", str(path), e) from e

    def set(self, key: str, value: str) -> None:
        _check_quota(key, value, self.quota_bytes)
        path = self._path(key)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError("create_directory", str(path.parent), e) from e

        try:
            fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=self.SUFFIX)
        except OSError as e:
            raise StorageIOError("create_temp", str(path.parent), e) from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except (OSError, ValueError) as e:
            try:
                os.remove(temp_path)
            except OSError:
                pass
            raise StorageIOError("write", str(path), e) from e

    def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageIOError("remove", str(path), e) from e

    def keys(self) -> list[str]:
        if not self.base_path.exists():
            return []
        return sorted(
            p.name[: -len(self.SUFFIX)]
            for p in self.base_path.iterdir()
            if p.is_file() and p.name.endswith(self.SUFFIX) and not p.name.startswith(".")
        )
