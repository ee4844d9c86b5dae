import asyncio
import json
from pathlib import Path

import pytest

from convomem.errors import PersistenceError
from convomem.kv import (
    USER_ID_KEY,
    BlobStore,
    InMemoryKeyValueStore,
    SqliteKeyValueStore,
    ensure_user_id,
)
from convomem.schema import SCHEMA_VERSION, decode_blob, encode_blob, migrate_blob


class FailingStore:
    async def get(self, key: str) -> str | None:
        raise OSError("disk gone")

    async def set(self, key: str, value: str) -> None:
        raise OSError("disk gone")

    async def remove(self, key: str) -> None:
        raise OSError("disk gone")


def test_encode_blob_wraps_data_in_envelope() -> None:
    raw = encode_blob("references", {"references": {}})

    envelope = json.loads(raw)
    assert envelope["schema"] == "references"
    assert envelope["version"] == SCHEMA_VERSION
    assert envelope["saved_at"]
    assert envelope["data"] == {"references": {}}
    assert decode_blob("references", raw) == {"references": {}}


def test_migrate_blob_handles_legacy_shapes() -> None:
    assert migrate_blob("longterm", [{"message": "hi"}]) == {"entries": [{"message": "hi"}]}
    assert migrate_blob("emotional", {"emotions": [], "lastUpdated": "2024-01-01"}) == {
        "emotions": []
    }
    assert migrate_blob("longterm", {"schema": "longterm", "version": 1, "data": [1, 2]}) == {
        "entries": [1, 2]
    }


def test_migrate_blob_rejects_foreign_or_malformed_blobs() -> None:
    with pytest.raises(PersistenceError):
        migrate_blob("references", {"schema": "conversations", "version": 1, "data": {}})
    with pytest.raises(PersistenceError):
        migrate_blob("references", "just a string")
    with pytest.raises(PersistenceError):
        decode_blob("references", "{broken")
    assert decode_blob("references", None) == {}
    assert decode_blob("references", "   ") == {}


def test_newer_blob_versions_load_best_effort() -> None:
    raw = json.dumps({"schema": "preferences", "version": 99, "data": {"triggers": ["x"]}})

    assert decode_blob("preferences", raw) == {"triggers": ["x"]}


def test_blob_store_round_trip_uses_per_user_keys() -> None:
    kv = InMemoryKeyValueStore()
    blobs = BlobStore(kv, "u1")

    assert asyncio.run(blobs.save("contextual", {"contexts": []})) is True

    assert list(kv.data) == ["contextual_u1"]
    assert asyncio.run(blobs.load("contextual")) == {"contexts": []}
    assert asyncio.run(BlobStore(kv, "u2").load("contextual")) == {}

    asyncio.run(blobs.clear("contextual"))
    assert kv.data == {}


def test_blob_store_swallows_storage_failures() -> None:
    blobs = BlobStore(FailingStore(), "u1")

    assert asyncio.run(blobs.load("references")) == {}
    assert asyncio.run(blobs.save("references", {"references": {}})) is False
    asyncio.run(blobs.clear("references"))


def test_blob_store_reports_unserializable_data() -> None:
    blobs = BlobStore(InMemoryKeyValueStore(), "u1")

    assert asyncio.run(blobs.save("references", {"bad": object()})) is False


def test_blob_store_load_with_corrupt_payload_is_empty() -> None:
    kv = InMemoryKeyValueStore({"references_u1": "not json at all"})

    assert asyncio.run(BlobStore(kv, "u1").load("references")) == {}


def test_ensure_user_id_is_stable() -> None:
    kv = InMemoryKeyValueStore()

    first = asyncio.run(ensure_user_id(kv))
    second = asyncio.run(ensure_user_id(kv))

    assert first == second
    assert first.startswith("user_")
    assert kv.data[USER_ID_KEY] == first
    assert asyncio.run(ensure_user_id(FailingStore())).startswith("user_")


def test_sqlite_store_round_trip(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "store.sqlite"
    store = SqliteKeyValueStore(db_path)
    asyncio.run(store.set("a", "1"))
    asyncio.run(store.set("a", "2"))
    asyncio.run(store.set("b", "3"))
    asyncio.run(store.remove("b"))
    store.close()

    reopened = SqliteKeyValueStore(db_path)
    try:
        assert asyncio.run(reopened.get("a")) == "2"
        assert asyncio.run(reopened.get("b")) is None
        assert reopened.keys() == ["a"]
    finally:
        reopened.close()
