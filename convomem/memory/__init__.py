from __future__ import annotations

from .aggregator import MemoryAggregator, StoredMemory
from .extract import Entity, Extraction, Extractor, KeywordExtractor
from .layers import (
    ContextualMemory,
    EmotionalMemory,
    LongTermMemory,
    MemoryEntry,
    ShortTermMemory,
    UserPreferences,
)

__all__ = [
    "ContextualMemory",
    "EmotionalMemory",
    "Entity",
    "Extraction",
    "Extractor",
    "KeywordExtractor",
    "LongTermMemory",
    "MemoryAggregator",
    "MemoryEntry",
    "ShortTermMemory",
    "StoredMemory",
    "UserPreferences",
]
