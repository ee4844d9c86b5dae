from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from .errors import PersistenceError
from .schema import decode_blob, encode_blob, now_iso

logger = logging.getLogger(__name__)

USER_ID_KEY = "convomem_user_id"


class KeyValueStore(Protocol):
    """String-keyed blob storage.

    The methods are coroutines so a genuinely asynchronous backend can replace the
    bundled ones without changing call sites.
    """

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)


def connect(db_path: Path | str) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )
    conn.commit()


class SqliteKeyValueStore:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path).expanduser()
        self.conn = connect(self.db_path)
        initialize_schema(self.conn)

    async def get(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    async def set(self, key: str, value: str) -> None:
        self.conn.execute(
            """
            INSERT INTO kv(key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, now_iso()),
        )
        self.conn.commit()

    async def remove(self, key: str) -> None:
        self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        self.conn.commit()

    def keys(self) -> list[str]:
        rows = self.conn.execute("SELECT key FROM kv ORDER BY key").fetchall()
        return [str(row["key"]) for row in rows]

    def close(self) -> None:
        self.conn.close()


def storage_key(domain: str, user_id: str) -> str:
    return f"{domain}_{user_id}"


async def ensure_user_id(kv: KeyValueStore) -> str:
    try:
        existing = await kv.get(USER_ID_KEY)
    except Exception as exc:
        logger.warning("user id read failed", exc_info=exc)
        existing = None
    if existing:
        return existing
    user_id = f"user_{int(time.time() * 1000)}_{uuid4().hex[:9]}"
    try:
        await kv.set(USER_ID_KEY, user_id)
    except Exception as exc:
        logger.warning("user id write failed", exc_info=exc)
    return user_id


class BlobStore:
    """JSON blob persistence for one user.

    Storage problems never reach callers: loads fall back to an empty mapping and
    saves report ``False``.
    """

    def __init__(self, kv: KeyValueStore, user_id: str) -> None:
        self.kv = kv
        self.user_id = user_id

    def key_for(self, domain: str) -> str:
        return storage_key(domain, self.user_id)

    async def load(self, domain: str) -> dict[str, Any]:
        try:
            try:
                raw = await self.kv.get(self.key_for(domain))
            except Exception as exc:
                raise PersistenceError(f"{domain}: read failed") from exc
            return decode_blob(domain, raw)
        except PersistenceError as exc:
            logger.warning("%s load failed; starting empty", domain, exc_info=exc)
            return {}

    async def save(self, domain: str, data: dict[str, Any]) -> bool:
        try:
            try:
                payload = encode_blob(domain, data)
            except (TypeError, ValueError) as exc:
                raise PersistenceError(f"{domain}: data is not serializable") from exc
            try:
                await self.kv.set(self.key_for(domain), payload)
            except Exception as exc:
                raise PersistenceError(f"{domain}: write failed") from exc
        except PersistenceError as exc:
            logger.warning("%s save failed", domain, exc_info=exc)
            return False
        return True

    async def clear(self, domain: str) -> None:
        try:
            await self.kv.remove(self.key_for(domain))
        except Exception as exc:
            logger.warning("%s clear failed", domain, exc_info=exc)
