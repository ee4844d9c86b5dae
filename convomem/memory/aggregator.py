from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..context import MemoryContext
from ..history import SessionStore
from ..schema import Message, new_id, sentiment_score
from .extract import Extraction, Extractor, KeywordExtractor
from .layers import (
    ContextualMemory,
    EmotionalMemory,
    LongTermMemory,
    MemoryEntry,
    ShortTermMemory,
    UserPreferences,
    query_terms,
)

logger = logging.getLogger(__name__)

EMOTIONAL_KEYWORDS = (
    "feel",
    "emotion",
    "sad",
    "happy",
    "angry",
    "anxious",
    "depressed",
    "excited",
    "love",
    "hate",
    "fear",
)
STRONG_SENTIMENT = 0.7
SIGNIFICANT_LENGTH = 100
LONG_MESSAGE_LENGTH = 200
BASE_IMPORTANCE = 0.5


def normalize_sentiment(sentiment: Any) -> dict[str, Any] | None:
    if isinstance(sentiment, dict):
        return dict(sentiment) if sentiment_score(sentiment) is not None else None
    score = sentiment_score(sentiment)
    if score is None:
        return None
    return {"score": score}


def is_significant(message: str, score: float | None) -> bool:
    lowered = message.lower()
    if any(keyword in lowered for keyword in EMOTIONAL_KEYWORDS):
        return True
    if score is not None and abs(score) > STRONG_SENTIMENT:
        return True
    return len(message) > SIGNIFICANT_LENGTH


def calculate_importance(message: str, score: float | None) -> float:
    importance = BASE_IMPORTANCE
    if score is not None:
        importance += abs(score) * 0.3
    if len(message) > LONG_MESSAGE_LENGTH:
        importance += 0.2
    return max(0.0, min(importance, 1.0))


def memory_relevance(entry: MemoryEntry, words: list[str]) -> int:
    text = entry.message.lower()
    return sum(1 for word in words if word in text)


@dataclass
class StoredMemory:
    short_term: MemoryEntry
    significant: bool
    importance: float
    long_term: MemoryEntry | None = None
    emotional: MemoryEntry | None = None
    contextual: MemoryEntry | None = None
    messages: list[Message] = field(default_factory=list)


def empty_user_context() -> dict[str, Any]:
    return {"user_profile": {}, "recent_memories": [], "emotional_patterns": {}}


class MemoryAggregator:
    """Fans an interaction out to the memory layers and fuses them back for prompts."""

    def __init__(
        self,
        context: MemoryContext,
        sessions: SessionStore | None = None,
        extractor: Extractor | None = None,
    ) -> None:
        self.context = context
        self.sessions = sessions
        self.extractor: Extractor = extractor or KeywordExtractor()
        self.short_term = ShortTermMemory(context.config.short_term_size)
        self.long_term = LongTermMemory(context)
        self.emotional = EmotionalMemory(context)
        self.contextual = ContextualMemory(context)
        self.preferences = UserPreferences(context)

    async def load(self) -> None:
        await self.long_term.load()
        await self.emotional.load()
        await self.contextual.load()
        await self.preferences.load()

    def _entry(
        self,
        layer: str,
        prefix: str,
        *,
        message: str,
        response: str | None,
        sentiment: dict[str, Any] | None,
        context: Any,
        session_id: str | None,
        timestamp: str,
        extraction: Extraction,
        importance: float | None = None,
    ) -> MemoryEntry:
        return MemoryEntry(
            id=new_id(prefix),
            layer=layer,
            message=message,
            response=response,
            sentiment=sentiment,
            context=context,
            session_id=session_id,
            timestamp=timestamp,
            importance=importance,
            topics=sorted(extraction.topics),
            entities=[entity.to_dict() for entity in extraction.entities],
            triggers=list(extraction.triggers),
        )

    async def store_memory(
        self,
        message: str,
        response: str | None = None,
        sentiment: Any = None,
        context: Any = None,
        session_id: str | None = None,
        timestamp: str | None = None,
    ) -> StoredMemory:
        message = message if isinstance(message, str) else str(message or "")
        sentiment = normalize_sentiment(sentiment)
        score = sentiment_score(sentiment)
        timestamp = timestamp or self.context.now_iso()
        extraction = self.extractor.extract(message)
        significant = is_significant(message, score)
        importance = calculate_importance(message, score)
        common = {
            "message": message,
            "response": response,
            "sentiment": sentiment,
            "context": context,
            "session_id": session_id,
            "timestamp": timestamp,
            "extraction": extraction,
        }

        stored = StoredMemory(
            short_term=self.short_term.store(self._entry("short_term", "stm", **common)),
            significant=significant,
            importance=importance,
        )
        if significant:
            stored.long_term = await self.long_term.store(
                self._entry("long_term", "ltm", importance=importance, **common)
            )
        if sentiment is not None or extraction.triggers:
            stored.emotional = await self.emotional.store(
                self._entry("emotional", "emotion", **common)
            )
        if extraction.topics or extraction.entities:
            stored.contextual = await self.contextual.store(
                self._entry("contextual", "cm", **common)
            )

        if self.sessions is not None:
            user_message = await self.sessions.add_message(
                message,
                True,
                {
                    "sentiment": sentiment,
                    "topics": sorted(extraction.topics),
                    "entities": [entity.to_dict() for entity in extraction.entities],
                    "importance": importance,
                },
                session_id=session_id,
            )
            stored.messages.append(user_message)
            if response:
                target = session_id or self.sessions.current_session_id
                stored.messages.append(
                    await self.sessions.add_message(response, False, session_id=target)
                )
        return stored

    def get_relevant_memories(
        self,
        query: str,
        *,
        include_short_term: bool = True,
        include_long_term: bool = True,
        include_emotional: bool = True,
        include_contextual: bool = True,
        limit: int = 10,
    ) -> list[MemoryEntry]:
        try:
            words = query_terms(query)
            candidates: list[MemoryEntry] = []
            if include_short_term:
                candidates.extend(self.short_term.search(words))
            if include_long_term:
                candidates.extend(self.long_term.search(words, limit))
            if include_emotional:
                candidates.extend(self.emotional.search(words))
            if include_contextual:
                candidates.extend(self.contextual.search(words))
            candidates.sort(
                key=lambda entry: (memory_relevance(entry, words), entry.when()), reverse=True
            )
            return candidates[: max(0, limit)]
        except Exception:
            logger.exception("relevant memory lookup failed")
            return []

    def get_recent_memories(self, limit: int = 10) -> list[MemoryEntry]:
        try:
            merged = self.short_term.recent(limit) + self.long_term.all()
            merged.sort(key=lambda entry: entry.when(), reverse=True)
            return merged[: max(0, limit)]
        except Exception:
            logger.exception("recent memory lookup failed")
            return []

    def get_user_context(self) -> dict[str, Any]:
        """Profile, recent memories and emotional patterns for prompt assembly.

        Never raises; on failure the empty bundle is returned.
        """

        try:
            prefs = self.preferences
            gender = prefs.gender_preference()
            session_prefs = prefs.preferences.get("session_preferences") or {}
            profile = {
                "therapy_goals": prefs.get("therapy_goals") or [],
                "triggers": prefs.get("triggers") or [],
                "coping_strategies": prefs.get("coping_strategies") or [],
                "interests": list(prefs.personal_info.get("interests") or []),
                "relationship_patterns": prefs.get("relationship_patterns") or [],
                "communication_style": prefs.get("communication_style"),
                "preferred_name": prefs.preferred_name(),
                "full_name": prefs.full_name(),
                "gender": gender["gender"],
                "gender_preference": gender["gender_preference"],
                "proactive_engagement": bool(session_prefs.get("proactive_engagement", True)),
            }
            return {
                "user_profile": profile,
                "recent_memories": [entry.to_dict() for entry in self.get_recent_memories(10)],
                "emotional_patterns": self.emotional.get_patterns(),
            }
        except Exception:
            logger.exception("user context assembly failed")
            return empty_user_context()

    async def update_preferences(self, updates: dict[str, Any]) -> dict[str, Any]:
        return await self.preferences.update(updates)

    def get_all_memories(self) -> dict[str, Any]:
        return {
            "short_term": [entry.to_dict() for entry in self.short_term.all()],
            "long_term": [entry.to_dict() for entry in self.long_term.all()],
            "emotional": self.emotional.all(),
            "contextual": self.contextual.all(),
            "preferences": self.preferences.all(),
        }

    def export_memories(self) -> dict[str, Any]:
        return {
            "user_id": self.context.user_id,
            "export_date": self.context.now_iso(),
            **self.get_all_memories(),
        }

    async def clear_all(self) -> None:
        self.short_term.clear()
        await self.long_term.clear()
        await self.emotional.clear()
        await self.contextual.clear()
        await self.preferences.clear()
