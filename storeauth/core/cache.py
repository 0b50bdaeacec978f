"""Time-bound cache of the current session's permission snapshot.

The snapshot is stored as one JSON document under a single key of a
key-value store. Nothing else reads that key: callers go through
:class:`PermissionSnapshotCache`, whose membership queries fail closed
(return ``False``) whenever the snapshot is missing, expired or corrupt.
Storage failures are logged and degrade to "no cached data"; they are never
raised to the caller.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import pydantic

from storeauth.core.models import PermissionSnapshot, Role, Store

logger = logging.getLogger("storeauth.cache")

#: Storage key holding the serialized snapshot.
STORAGE_KEY = "auth_permissions_and_roles"

#: Fixed extension applied by :meth:`PermissionSnapshotCache.refresh_expiration`.
REFRESH_WINDOW = timedelta(minutes=30)

SUPER_ADMIN_ROLE = "super-admin"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Key-value stores
# ---------------------------------------------------------------------------


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal text key-value storage used by the cache."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store, mainly for tests and short-lived sessions."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileStore:
    """One ``<key>.json`` file per key inside *directory*."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class PermissionSnapshotCache:
    """Single-writer, multi-reader holder of the session snapshot."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
        refresh_window: timedelta = REFRESH_WINDOW,
    ) -> None:
        self._store = store
        self._clock = clock
        self._refresh_window = refresh_window

    def now(self) -> datetime:
        """Current time according to the cache's clock."""
        return self._clock()

    # -- raw storage ------------------------------------------------------

    def _read_raw(self) -> str | None:
        try:
            return self._store.get(STORAGE_KEY)
        except UnicodeDecodeError as exc:
            logger.warning("Discarding undecodable permission snapshot: %s", exc)
            self.clear()
            return None
        except Exception:
            logger.exception("Failed to read permission snapshot")
            return None

    def _read(self) -> PermissionSnapshot | None:
        """Parse the stored snapshot without applying expiry."""
        raw = self._read_raw()
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("stored snapshot is not an object")
            return PermissionSnapshot.model_validate(data)
        except (ValueError, pydantic.ValidationError) as exc:
            logger.warning("Discarding corrupt permission snapshot: %s", exc)
            self.clear()
            return None

    def _write(self, snapshot: PermissionSnapshot) -> bool:
        try:
            self._store.set(STORAGE_KEY, snapshot.model_dump_json())
        except Exception:
            logger.exception("Failed to save permission snapshot")
            return False
        return True

    # -- lifecycle --------------------------------------------------------

    def save(self, snapshot: PermissionSnapshot) -> bool:
        """Replace any stored snapshot with *snapshot* (last write wins)."""
        saved = self._write(snapshot)
        if saved:
            logger.debug("Permission snapshot saved, expires at %s", snapshot.expires_at)
        return saved

    def load(self) -> PermissionSnapshot | None:
        """Return the stored snapshot, or None when missing, corrupt or expired.

        Corrupt and expired snapshots are removed from storage.
        """
        snapshot = self._read()
        if snapshot is None:
            return None
        if self._clock() > snapshot.expires_at:
            logger.info("Permission snapshot expired at %s", snapshot.expires_at)
            self.clear()
            return None
        return snapshot

    def clear(self) -> None:
        try:
            self._store.delete(STORAGE_KEY)
        except Exception:
            logger.exception("Failed to clear permission snapshot")

    def has_snapshot(self) -> bool:
        return self.load() is not None

    def is_expired(self) -> bool:
        """``now > expires_at``; a missing or unreadable snapshot counts as expired."""
        snapshot = self._read()
        if snapshot is None:
            return True
        return self._clock() > snapshot.expires_at

    def refresh_expiration(self) -> bool:
        """Push ``expires_at`` back by the refresh window without refetching.

        Returns False when there is no readable snapshot to extend.
        """
        snapshot = self._read()
        if snapshot is None:
            return False
        extended = snapshot.model_copy(
            update={"expires_at": snapshot.expires_at + self._refresh_window}
        )
        return self._write(extended)

    def minutes_until_expiration(self) -> int | None:
        snapshot = self._read()
        if snapshot is None:
            return None
        remaining = snapshot.expires_at - self._clock()
        return max(0, int(remaining.total_seconds() // 60))

    # -- read-only views --------------------------------------------------

    def permission_names(self) -> frozenset[str]:
        snapshot = self.load()
        if snapshot is None:
            return frozenset()
        return frozenset(p.name for p in snapshot.all_permissions)

    def role_names(self) -> frozenset[str]:
        snapshot = self.load()
        if snapshot is None:
            return frozenset()
        return frozenset(r.name for r in snapshot.global_roles)

    def roles(self) -> list[Role]:
        snapshot = self.load()
        return list(snapshot.global_roles) if snapshot else []

    def stores(self) -> list[Store]:
        snapshot = self.load()
        return list(snapshot.stores) if snapshot else []

    def summary(self) -> dict[str, Any] | None:
        snapshot = self.load()
        return dict(snapshot.summary) if snapshot and snapshot.summary else None

    # -- membership -------------------------------------------------------

    def has_permission(self, name: str) -> bool:
        if not name:
            return False
        return name in self.permission_names()

    def has_role(self, name: str) -> bool:
        if not name:
            return False
        return name in self.role_names()

    def has_any_permission(self, names: Iterable[str]) -> bool:
        wanted = set(names or ())
        if not wanted:
            return False
        return not self.permission_names().isdisjoint(wanted)

    def has_all_permissions(self, names: Iterable[str]) -> bool:
        wanted = set(names or ())
        if not wanted:
            return False
        return self.permission_names().issuperset(wanted)

    def has_any_role(self, names: Iterable[str]) -> bool:
        wanted = set(names or ())
        if not wanted:
            return False
        return not self.role_names().isdisjoint(wanted)

    def has_all_roles(self, names: Iterable[str]) -> bool:
        wanted = set(names or ())
        if not wanted:
            return False
        return self.role_names().issuperset(wanted)

    def is_super_admin(self) -> bool:
        return self.has_role(SUPER_ADMIN_ROLE)


_default_cache: PermissionSnapshotCache | None = None


def get_snapshot_cache() -> PermissionSnapshotCache:
    """Process-wide cache backed by a FileStore under ``settings.cache_dir``."""
    global _default_cache
    if _default_cache is None:
        from storeauth.config import settings

        _default_cache = PermissionSnapshotCache(FileStore(settings.cache_dir))
    return _default_cache
