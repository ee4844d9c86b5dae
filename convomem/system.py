from __future__ import annotations

import datetime as dt
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .config import ConvomemConfig, load_config
from .context import MemoryContext, create_context
from .history import SessionStore
from .kv import KeyValueStore, SqliteKeyValueStore
from .memory import Extractor, MemoryAggregator
from .references import ReferenceManager


@dataclass
class MemorySystem:
    """Every component built once over one shared context."""

    context: MemoryContext
    sessions: SessionStore
    references: ReferenceManager
    memory: MemoryAggregator

    @classmethod
    def build(cls, context: MemoryContext, extractor: Extractor | None = None) -> MemorySystem:
        sessions = SessionStore(context)
        return cls(
            context=context,
            sessions=sessions,
            references=ReferenceManager(context, sessions),
            memory=MemoryAggregator(context, sessions, extractor),
        )

    async def load(self) -> None:
        await self.sessions.load()
        await self.references.load()
        await self.memory.load()

    async def save(self) -> bool:
        saved_sessions = await self.sessions.save()
        saved_references = await self.references.save()
        return saved_sessions and saved_references

    def close(self) -> None:
        close = getattr(self.context.kv, "close", None)
        if callable(close):
            close()


async def open_system(
    *,
    config: ConvomemConfig | None = None,
    kv: KeyValueStore | None = None,
    db_path: Path | str | None = None,
    user_id: str | None = None,
    clock: Callable[[], dt.datetime] | None = None,
    extractor: Extractor | None = None,
) -> MemorySystem:
    """Build and load a system; a sqlite store at ``db_path`` is used when no ``kv`` is given."""

    cfg = config or load_config()
    store = kv if kv is not None else SqliteKeyValueStore(db_path or cfg.db_path)
    context = await create_context(config=cfg, kv=store, user_id=user_id, clock=clock)
    system = MemorySystem.build(context, extractor)
    await system.load()
    return system
