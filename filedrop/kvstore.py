"""Key-value store backends.

The store has hash-map semantics only: ``hget``/``hset``/``hgetall`` on a
named hash. There are no transactions and no compare-and-swap, and values
are never removed; deleting means overwriting with an empty string.
"""

import asyncio
import json
import logging
import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

import httpx

from filedrop.errors import StorageUnavailable

logger = logging.getLogger(__name__)


class KVStore(Protocol):
    async def init(self) -> None: ...

    async def hget(self, hkey: str, key: str) -> str | None: ...

    async def hset(self, hkey: str, key: str, value: str) -> None: ...

    async def hgetall(self, hkey: str) -> dict[str, str]: ...

    async def aclose(self) -> None: ...


class InMemoryKVStore:
    def __init__(self):
        self._hashes: dict[str, dict[str, str]] = defaultdict(dict)

    async def init(self) -> None:
        return None

    async def hget(self, hkey: str, key: str) -> str | None:
        await asyncio.sleep(0)
        return self._hashes[hkey].get(key)

    async def hset(self, hkey: str, key: str, value: str) -> None:
        await asyncio.sleep(0)
        self._hashes[hkey][key] = value

    async def hgetall(self, hkey: str) -> dict[str, str]:
        await asyncio.sleep(0)
        return dict(self._hashes[hkey])

    async def aclose(self) -> None:
        return None


class SqliteKVStore:
    """Hashes persisted in a single SQLite table; calls run in a worker thread."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    hkey TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (hkey, key)
                );
                """
            )

    def _hget(self, hkey: str, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE hkey = ? AND key = ?", (hkey, key)).fetchone()
        return row[0] if row else None

    def _hset(self, hkey: str, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kv(hkey, key, value) VALUES(?, ?, ?)
                ON CONFLICT(hkey, key) DO UPDATE SET value = excluded.value
                """,
                (hkey, key, value),
            )

    def _hgetall(self, hkey: str) -> dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM kv WHERE hkey = ?", (hkey,)).fetchall()
        return {key: value for key, value in rows}

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            logger.error("SQLite key-value store error: %s", exc)
            raise StorageUnavailable("Storage unavailable") from exc

    async def init(self) -> None:
        await self._run(self._init)

    async def hget(self, hkey: str, key: str) -> str | None:
        return await self._run(self._hget, hkey, key)

    async def hset(self, hkey: str, key: str, value: str) -> None:
        await self._run(self._hset, hkey, key, value)

    async def hgetall(self, hkey: str) -> dict[str, str]:
        return await self._run(self._hgetall, hkey)

    async def aclose(self) -> None:
        return None


class HttpKVStore:
    """Client for a CStore-style JSON API (``/hget``, ``/hset``, ``/hgetall``)."""

    def __init__(self, base_url: str, *, timeout: float = 30.0, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def init(self) -> None:
        return None

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError(f"unexpected response body: {type(payload).__name__}")
            return payload.get("result")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Key-value store call %s %s failed: %s", method, path, exc)
            raise StorageUnavailable("Storage unavailable") from exc

    @staticmethod
    def _as_text(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value)

    async def hget(self, hkey: str, key: str) -> str | None:
        result = await self._call("GET", "/hget", params={"hkey": hkey, "key": key})
        return None if result is None else self._as_text(result)

    async def hset(self, hkey: str, key: str, value: str) -> None:
        await self._call("POST", "/hset", json={"hkey": hkey, "key": key, "value": value})

    async def hgetall(self, hkey: str) -> dict[str, str]:
        result = await self._call("GET", "/hgetall", params={"hkey": hkey})
        if result is None:
            return {}
        if not isinstance(result, dict):
            logger.error("Key-value store returned %s for hash %s", type(result).__name__, hkey)
            raise StorageUnavailable("Storage unavailable")
        return {str(key): self._as_text(value) for key, value in result.items()}

    async def aclose(self) -> None:
        await self._client.aclose()
