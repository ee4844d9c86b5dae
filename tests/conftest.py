from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from convomem.config import ConvomemConfig
from convomem.context import MemoryContext, create_context
from convomem.kv import InMemoryKeyValueStore


@pytest.fixture(autouse=True)
def _isolate_convomem_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for key in list(os.environ):
        if key.startswith("CONVOMEM_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CONVOMEM_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("CONVOMEM_DB_PATH", str(tmp_path / "store.sqlite"))


@pytest.fixture
def memory_context() -> MemoryContext:
    return asyncio.run(
        create_context(config=ConvomemConfig(), kv=InMemoryKeyValueStore(), user_id="tester")
    )
