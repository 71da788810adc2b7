"""Key-value storage for OAuth records.

Every OAuth entity lives in a named collection that maps an opaque key to a
pydantic model plus an optional absolute expiry. Two backends are provided:

- ``MemoryStore``: process-local, for development and tests.
- ``FileStore``: one JSON file per key, for a single-node deployment that must
  survive restarts.

Reads never return an expired entry. ``pop`` is the atomic
delete-and-return used to consume authorization codes: concurrent callers
racing on the same key see the value at most once. Expired entries are
removed by ``sweep``, which only deletes entries whose expiry is known and in
the past.
"""

import asyncio
import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from neon_mcp.auth.storage import (
    StoredAccessToken,
    StoredApiKey,
    StoredAuthCode,
    StoredClient,
    StoredRefreshToken,
)
from neon_mcp.core.exceptions import StoreError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
Clock = Callable[[], float]


class KeyValueStore(ABC, Generic[M]):
    """A single collection of records of one model type."""

    def __init__(self, name: str, model: type[M], clock: Clock = time.time) -> None:
        self.name = name
        self.model = model
        self.clock = clock

    def _expiry(self, ttl: float | None) -> float | None:
        return None if ttl is None else self.clock() + ttl

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and expires_at <= self.clock()

    @abstractmethod
    async def get(self, key: str) -> M | None:
        """Return the live value for ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: M, ttl: float | None = None) -> None:
        """Store ``value`` under ``key``; ``ttl`` is in seconds, None never expires."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns whether an entry was removed."""

    @abstractmethod
    async def pop(self, key: str) -> M | None:
        """Atomically delete ``key`` and return its live value, if any."""

    @abstractmethod
    async def sweep(self) -> int:
        """Delete entries proven expired. Returns the number removed."""


# ========== In-Memory Backend ==========


class MemoryStore(KeyValueStore[M]):
    """Dictionary backed collection.

    Values are kept serialized so callers never share mutable state with the
    store.
    """

    def __init__(self, name: str, model: type[M], clock: Clock = time.time) -> None:
        super().__init__(name, model, clock)
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> M | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            payload, expires_at = entry
            if self._expired(expires_at):
                del self._entries[key]
                return None
        return self.model.model_validate_json(payload)

    async def set(self, key: str, value: M, ttl: float | None = None) -> None:
        payload = value.model_dump_json()
        with self._lock:
            self._entries[key] = (payload, self._expiry(ttl))

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def pop(self, key: str) -> M | None:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return None
        payload, expires_at = entry
        if self._expired(expires_at):
            return None
        return self.model.model_validate_json(payload)

    async def sweep(self) -> int:
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if self._expired(exp)]
            for key in expired:
                del self._entries[key]
        return len(expired)


# ========== File Backend ==========


class _Envelope(BaseModel):
    expires_at: float | None = None
    value: dict[str, Any]


class FileStore(KeyValueStore[M]):
    """One JSON file per key under ``<storage_dir>/<name>/``.

    Writes go through a temporary file and ``os.replace``. ``pop`` claims the
    file with ``os.rename``, which succeeds for exactly one caller.
    """

    def __init__(
        self,
        name: str,
        model: type[M],
        storage_dir: str | Path,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(name, model, clock)
        self._dir = Path(storage_dir) / name
        self._dir.mkdir(parents=True, exist_ok=True)

    def _get_file_path(self, key: str) -> Path:
        """Get file path for a storage key (sanitized)."""
        safe_key = key.replace("/", "_").replace("\\", "_").replace("..", "_").replace(":", "_")
        return self._dir / f"{safe_key}.json"

    def _read_envelope(self, path: Path) -> _Envelope | None:
        try:
            text = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreError(f"Failed to read {self.name} entry") from e
        try:
            return _Envelope.model_validate_json(text)
        except ValidationError as e:
            logger.warning("Unreadable %s entry %s: %s", self.name, path.name, e)
            return None

    def _decode(self, envelope: _Envelope | None) -> M | None:
        if envelope is None or self._expired(envelope.expires_at):
            return None
        try:
            return self.model.model_validate(envelope.value)
        except ValidationError as e:
            logger.warning("Failed to decode %s entry: %s", self.name, e)
            return None

    async def get(self, key: str) -> M | None:
        return self._decode(self._read_envelope(self._get_file_path(key)))

    async def set(self, key: str, value: M, ttl: float | None = None) -> None:
        path = self._get_file_path(key)
        envelope = _Envelope(expires_at=self._expiry(ttl), value=value.model_dump(mode="json"))
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_text(envelope.model_dump_json(indent=2))
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StoreError(f"Failed to write {self.name} entry") from e

    async def delete(self, key: str) -> bool:
        try:
            self._get_file_path(key).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreError(f"Failed to delete {self.name} entry") from e
        return True

    async def pop(self, key: str) -> M | None:
        path = self._get_file_path(key)
        claimed = path.with_name(f".{path.name}.{uuid.uuid4().hex}.claimed")
        try:
            os.rename(path, claimed)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreError(f"Failed to claim {self.name} entry") from e
        try:
            return self._decode(self._read_envelope(claimed))
        finally:
            claimed.unlink(missing_ok=True)

    async def sweep(self) -> int:
        removed = 0
        for path in self._dir.glob("*.json"):
            envelope = self._read_envelope(path)
            if envelope is None or not self._expired(envelope.expires_at):
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed += 1
        return removed


# ========== Store Bundle ==========


@dataclass
class OAuthStores:
    """The collections backing the authorization server."""

    clients: KeyValueStore[StoredClient]
    access_tokens: KeyValueStore[StoredAccessToken]
    refresh_tokens: KeyValueStore[StoredRefreshToken]
    authorization_codes: KeyValueStore[StoredAuthCode]
    api_keys: KeyValueStore[StoredApiKey]

    @classmethod
    def in_memory(cls, clock: Clock = time.time) -> "OAuthStores":
        return cls(
            clients=MemoryStore("clients", StoredClient, clock),
            access_tokens=MemoryStore("access_tokens", StoredAccessToken, clock),
            refresh_tokens=MemoryStore("refresh_tokens", StoredRefreshToken, clock),
            authorization_codes=MemoryStore("authorization_codes", StoredAuthCode, clock),
            api_keys=MemoryStore("api_keys", StoredApiKey, clock),
        )

    @classmethod
    def on_disk(cls, storage_dir: str | Path, clock: Clock = time.time) -> "OAuthStores":
        logger.info("Initialized file OAuth storage at %s", storage_dir)
        return cls(
            clients=FileStore("clients", StoredClient, storage_dir, clock),
            access_tokens=FileStore("access_tokens", StoredAccessToken, storage_dir, clock),
            refresh_tokens=FileStore("refresh_tokens", StoredRefreshToken, storage_dir, clock),
            authorization_codes=FileStore("authorization_codes", StoredAuthCode, storage_dir, clock),
            api_keys=FileStore("api_keys", StoredApiKey, storage_dir, clock),
        )

    @classmethod
    def from_settings(cls, settings: Any, clock: Clock = time.time) -> "OAuthStores":
        if settings.oauth_storage_backend == "file":
            return cls.on_disk(settings.oauth_storage_dir, clock)
        return cls.in_memory(clock)

    def collections(self) -> list[KeyValueStore[Any]]:
        return [
            self.clients,
            self.access_tokens,
            self.refresh_tokens,
            self.authorization_codes,
            self.api_keys,
        ]

    async def sweep(self) -> dict[str, int]:
        """Sweep every collection and return removal counts by name."""
        return {store.name: await store.sweep() for store in self.collections()}


async def run_expiry_sweeper(stores: OAuthStores, interval: float) -> None:
    """Periodically remove expired records until cancelled."""
    logger.info("Expiry sweeper started (interval %ss)", interval)
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await stores.sweep()
        except StoreError as e:
            logger.error("Expiry sweep failed: %s", e)
            continue
        total = sum(removed.values())
        if total:
            logger.info("Expiry sweep removed %d records: %s", total, removed)
