"""Persistence backends for circuit breaker state.

The breaker serializes its whole state to a plain dict and hands it to a
store under a fixed key. Stores only move JSON-compatible dicts around; they
know nothing about circuit semantics.

Backends:
- InMemoryStateStore: process-local, for tests and single-process use
- JsonFileStateStore: one JSON document on disk
- SQLiteStateStore: key/value table via aiosqlite
- RedisStateStore: key/value via redis.asyncio
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import aiosqlite
import structlog
from redis.asyncio import Redis

from event_relay.config import Settings, settings

logger = structlog.get_logger(__name__)


@runtime_checkable
class StateStore(Protocol):
    """Narrow load/save interface the circuit breaker persists through."""

    async def load(self, key: str) -> dict[str, Any] | None:
        """Return the stored document, or None if nothing was saved."""
        ...

    async def save(self, key: str, data: dict[str, Any]) -> None:
        """Replace the stored document."""
        ...

    async def delete(self, key: str) -> None:
        """Remove the stored document."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


class InMemoryStateStore:
    """Keeps documents in a dict, serialized so callers never share objects."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def load(self, key: str) -> dict[str, Any] | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def save(self, key: str, data: dict[str, Any]) -> None:
        self._data[key] = json.dumps(data)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        return None


class JsonFileStateStore:
    """Stores every key in a single JSON file.

    Writes go to a temporary sibling first and are renamed into place, so a
    crash mid-write never leaves a truncated document behind.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._logger = logger.bind(component="json_state_store", path=str(self.path))

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        content = self.path.read_text(encoding="utf-8")
        if not content.strip():
            return {}
        data = json.loads(content)
        return data if isinstance(data, dict) else {}

    def _write_all(self, documents: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(documents, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

    async def load(self, key: str) -> dict[str, Any] | None:
        async with self._lock:
            documents = await asyncio.to_thread(self._read_all)
        return documents.get(key)

    async def save(self, key: str, data: dict[str, Any]) -> None:
        async with self._lock:
            documents = await asyncio.to_thread(self._read_all)
            documents[key] = data
            await asyncio.to_thread(self._write_all, documents)
        self._logger.debug("state_saved", key=key)

    async def delete(self, key: str) -> None:
        async with self._lock:
            documents = await asyncio.to_thread(self._read_all)
            if documents.pop(key, None) is not None:
                await asyncio.to_thread(self._write_all, documents)

    async def close(self) -> None:
        return None


class SQLiteStateStore:
    """SQLite-based key/value storage for breaker state."""

    def __init__(self, db_path: Path | str) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database.
        """
        self.db_path = Path(db_path)
        self._logger = logger.bind(component="sqlite_state_store")
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        """Ensure the state table exists."""
        if self._initialized:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS circuit_state (
                    key TEXT PRIMARY KEY,
                    state_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await db.commit()

        self._initialized = True
        self._logger.info("storage_initialized", db_path=str(self.db_path))

    async def load(self, key: str) -> dict[str, Any] | None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT state_json FROM circuit_state WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None
        result: dict[str, Any] = json.loads(row[0])
        return result

    async def save(self, key: str, data: dict[str, Any]) -> None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO circuit_state (key, state_json, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                """,
                (key, json.dumps(data)),
            )
            await db.commit()

        self._logger.debug("state_saved", key=key)

    async def delete(self, key: str) -> None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM circuit_state WHERE key = ?", (key,))
            await db.commit()

    async def close(self) -> None:
        return None


class RedisStateStore:
    """Redis-backed storage, shared by every process pointing at the same key.

    Example:
        from redis.asyncio import Redis

        store = RedisStateStore(Redis.from_url("redis://localhost:6379"))
    """

    PREFIX = "event_relay:circuit"

    def __init__(self, redis: Any) -> None:  # redis.asyncio.Redis
        self.redis = redis
        self._logger = logger.bind(component="redis_state_store")

    def _key(self, key: str) -> str:
        return f"{self.PREFIX}:{key}"

    async def load(self, key: str) -> dict[str, Any] | None:
        raw = await self.redis.get(self._key(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        result: dict[str, Any] = json.loads(raw)
        return result

    async def save(self, key: str, data: dict[str, Any]) -> None:
        await self.redis.set(self._key(key), json.dumps(data))
        self._logger.debug("state_saved", key=key)

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._key(key))

    async def close(self) -> None:
        await self.redis.aclose()


def create_state_store(config: Settings | None = None) -> StateStore:
    """Build the state store selected by ``CIRCUIT_STATE_BACKEND``.

    Args:
        config: Settings to read (uses global settings if not provided).

    Returns:
        A StateStore implementation.

    Raises:
        ValueError: If the backend name is unknown.
    """
    config = config or settings
    backend = config.CIRCUIT_STATE_BACKEND.lower()

    if backend == "memory":
        return InMemoryStateStore()
    if backend == "file":
        return JsonFileStateStore(config.CIRCUIT_STATE_PATH)
    if backend == "sqlite":
        return SQLiteStateStore(config.CIRCUIT_STATE_PATH)
    if backend == "redis":
        return RedisStateStore(Redis.from_url(config.REDIS_URL))

    raise ValueError(f"Unknown circuit state backend: {config.CIRCUIT_STATE_BACKEND}")
