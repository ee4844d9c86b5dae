from __future__ import annotations

import datetime as dt
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import ConvomemConfig, load_config
from .kv import BlobStore, InMemoryKeyValueStore, KeyValueStore, ensure_user_id


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass
class MemoryContext:
    """Shared collaborators handed to every component constructor.

    One context is built per process (or per page session) and lives as long as the
    components that hold it.
    """

    config: ConvomemConfig
    kv: KeyValueStore
    user_id: str
    clock: Callable[[], dt.datetime] = field(default=_utc_now)
    blobs: BlobStore = field(init=False)

    def __post_init__(self) -> None:
        self.blobs = BlobStore(self.kv, self.user_id)

    def now(self) -> dt.datetime:
        return self.clock()

    def now_iso(self) -> str:
        return self.clock().isoformat()


async def create_context(
    *,
    config: ConvomemConfig | None = None,
    kv: KeyValueStore | None = None,
    user_id: str | None = None,
    clock: Callable[[], dt.datetime] | None = None,
) -> MemoryContext:
    cfg = config or load_config()
    store = kv if kv is not None else InMemoryKeyValueStore()
    resolved_user = user_id or cfg.user_id or await ensure_user_id(store)
    return MemoryContext(config=cfg, kv=store, user_id=resolved_user, clock=clock or _utc_now)
