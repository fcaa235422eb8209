"""Pluggable persistence for the analytics core.

Each backend stores JSON-serializable values under string keys:
- ``analytics_events``: capped event buffer
- ``ab_tests``: A/B test definitions
- ``analytics_realtime``: ``{lastUpdate, recentEvents}`` mirror

Backends raise on failure; the engine decides what to swallow.
"""

import asyncio
import json
import re
from pathlib import Path
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog

from .config import Settings, StorageBackendType

logger = structlog.get_logger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")


class StorageBackend:
    """Async key/value store holding JSON documents."""

    name = "base"

    async def load(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def save(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryStorage(StorageBackend):
    """Process-local storage. Values are stored serialized so callers never share references."""

    name = "memory"

    def __init__(self):
        self._data: dict[str, str] = {}

    async def load(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def save(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)


class FileStorage(StorageBackend):
    """One JSON file per key inside a directory."""

    name = "file"

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        # Keys become file names; reject anything that could escape the directory
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key}")
        return self.directory / f"{key}.json"

    def _read(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(value), encoding="utf-8")
        tmp_path.replace(path)

    async def load(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._read, key)

    async def save(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write, key, value)


class RedisStorage(StorageBackend):
    """Redis-backed storage, one JSON string per key."""

    name = "redis"

    def __init__(self, redis_url: str, key_prefix: str = "leadlens:", client=None):
        self.key_prefix = key_prefix
        self.redis_client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            max_connections=10,
        )

    async def load(self, key: str) -> Optional[Any]:
        data = await self.redis_client.get(f"{self.key_prefix}{key}")
        return json.loads(data) if data else None

    async def save(self, key: str, value: Any) -> None:
        await self.redis_client.set(f"{self.key_prefix}{key}", json.dumps(value))

    async def close(self) -> None:
        await self.redis_client.aclose()


def build_storage(settings: Settings) -> StorageBackend:
    """Create the storage backend selected in settings."""
    backend = settings.storage_backend
    if backend == StorageBackendType.FILE:
        storage: StorageBackend = FileStorage(settings.storage_path)
    elif backend == StorageBackendType.REDIS:
        storage = RedisStorage(settings.redis_url, settings.redis_key_prefix)
    else:
        storage = MemoryStorage()

    logger.info("storage_configured", backend=storage.name)
    return storage
