"""Key-value settings store.

Three interchangeable backends implement :class:`StateStore`:

- :class:`PostgresStateStore` keeps values in a ``state`` table as JSONB.
- :class:`JsonFileStateStore` keeps every key in one JSON document on disk.
- :class:`MemoryStateStore` keeps values in a dict (tests, ``memory`` backend).

Values are any JSON-serialisable type.  Keys are plain strings; callers use
the constants in :mod:`almanac.settings`.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_STATE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS state (
    key        TEXT PRIMARY KEY,
    value      JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version    INTEGER NOT NULL DEFAULT 1
)
"""


class StateStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings (text representation)
    when no custom codec is registered.  Normally one ``json.loads`` pass
    suffices.  If the stored JSONB was accidentally double-encoded (a JSON
    string containing JSON text), a second pass is needed.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected; applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


async def state_get(pool: asyncpg.Pool, key: str) -> Any | None:
    """Return the JSONB value for *key*, or ``None`` if the key does not exist."""
    row = await pool.fetchval(
        "SELECT value FROM state WHERE key = $1",
        key,
    )
    if row is None:
        return None
    return decode_jsonb(row)


async def state_set(pool: asyncpg.Pool, key: str, value: Any) -> int:
    """Upsert *key* with *value* (any JSON-serialisable type).

    Returns:
        The new version number for the row after the upsert.
    """
    json_value = json.dumps(value)
    new_version: int = await pool.fetchval(
        """
        INSERT INTO state (key, value, updated_at, version)
        VALUES ($1, $2::jsonb, now(), 1)
        ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                updated_at = now(),
                version = state.version + 1
        RETURNING version
        """,
        key,
        json_value,
    )
    return new_version


async def state_delete(pool: asyncpg.Pool, key: str) -> None:
    """Delete *key* from the state store.  No-op if the key does not exist."""
    await pool.execute("DELETE FROM state WHERE key = $1", key)


class PostgresStateStore:
    """:class:`StateStore` over an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        await self.pool.execute(_STATE_TABLE_DDL)

    async def get(self, key: str) -> Any | None:
        return await state_get(self.pool, key)

    async def set(self, key: str, value: Any) -> None:
        version = await state_set(self.pool, key, value)
        logger.debug("State key %r written (version=%d)", key, version)

    async def delete(self, key: str) -> None:
        await state_delete(self.pool, key)


class JsonFileStateStore:
    """:class:`StateStore` persisted as a single JSON object at *path*.

    Writes go to a sibling temp file that is atomically renamed over the
    original, so a crash mid-write never leaves a truncated document.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._data: dict[str, Any] | None = None

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            data = await self._load()
            value = data.get(key)
            return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        # Round-trip through JSON so unserialisable values fail before touching disk.
        encoded = json.loads(json.dumps(value))
        async with self._lock:
            data = dict(await self._load())
            data[key] = encoded
            await asyncio.to_thread(self._write, data)
            self._data = data

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = dict(await self._load())
            if key not in data:
                return
            del data[key]
            await asyncio.to_thread(self._write, data)
            self._data = data

    async def _load(self) -> dict[str, Any]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read)
        return self._data

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.error("Settings file %s is not valid JSON; starting empty", self.path)
            return {}
        if not isinstance(payload, dict):
            logger.error("Settings file %s must contain a JSON object; starting empty", self.path)
            return {}
        return payload

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self.path)


class MemoryStateStore:
    """In-process :class:`StateStore`."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self.data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self.data[key] = json.loads(json.dumps(value))

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)
