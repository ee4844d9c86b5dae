from __future__ import annotations

import copy
import datetime as dt
import logging
import math
import re
from collections import Counter, deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .. import stats as memory_stats
from ..context import MemoryContext
from ..schema import as_dict, as_int, as_list, new_id, parse_timestamp, sentiment_score

logger = logging.getLogger(__name__)

NEGATIVE_TRIGGER_THRESHOLD = -0.3
MOOD_HISTORY_DAYS = 90
TRIGGER_CONTEXTS_KEPT = 10
TRIGGER_SEVERITY_KEPT = 20

_EPOCH = dt.datetime.min.replace(tzinfo=dt.UTC)
_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


def query_terms(query: str) -> list[str]:
    return [word for word in (query or "").lower().split() if word]


@dataclass
class MemoryEntry:
    """One recorded interaction as held by a memory layer."""

    id: str
    layer: str
    message: str
    timestamp: str
    response: str | None = None
    sentiment: dict[str, Any] | None = None
    context: Any = None
    session_id: str | None = None
    importance: float | None = None
    topics: list[str] = field(default_factory=list)
    entities: list[dict[str, str]] = field(default_factory=list)
    triggers: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = {
        "id",
        "layer",
        "message",
        "timestamp",
        "response",
        "sentiment",
        "context",
        "session_id",
        "sessionId",
        "importance",
        "topics",
        "entities",
        "triggers",
    }

    @property
    def score(self) -> float | None:
        return sentiment_score(self.sentiment)

    def search_text(self) -> str:
        parts = [self.message, self.response or "", " ".join(self.topics)]
        parts.extend(entity.get("value", "") for entity in self.entities)
        return " ".join(parts).lower()

    def when(self) -> dt.datetime:
        return parse_timestamp(self.timestamp) or _EPOCH

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "id": self.id,
            "layer": self.layer,
            "message": self.message,
            "response": self.response,
            "sentiment": self.sentiment,
            "context": self.context,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "importance": self.importance,
            "topics": list(self.topics),
            "entities": [dict(e) for e in self.entities],
            "triggers": list(self.triggers),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], layer: str) -> MemoryEntry:
        sentiment = data.get("sentiment")
        if isinstance(sentiment, (int, float)) and not isinstance(sentiment, bool):
            sentiment = {"score": float(sentiment)}
        importance = data.get("importance")
        return cls(
            id=str(data.get("id") or new_id(LAYER_PREFIXES.get(layer, "mem"))),
            layer=str(data.get("layer") or layer),
            message=str(data.get("message") or data.get("content") or ""),
            response=data.get("response"),
            sentiment=sentiment if isinstance(sentiment, dict) else None,
            context=data.get("context"),
            session_id=data.get("session_id", data.get("sessionId")),
            timestamp=str(data.get("timestamp") or ""),
            importance=float(importance) if isinstance(importance, (int, float)) else None,
            topics=[str(t) for t in as_list(data.get("topics"))],
            entities=[e for e in as_list(data.get("entities")) if isinstance(e, dict)],
            triggers=[str(t) for t in as_list(data.get("triggers"))],
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )


LAYER_PREFIXES = {
    "short_term": "stm",
    "long_term": "ltm",
    "emotional": "emotion",
    "contextual": "cm",
}


def matching_entries(entries: Iterable[MemoryEntry], words: Sequence[str]) -> list[MemoryEntry]:
    if not words:
        return []
    return [entry for entry in entries if any(word in entry.search_text() for word in words)]


class ShortTermMemory:
    """Most recent interactions of this process. Never persisted."""

    layer = "short_term"

    def __init__(self, max_size: int = 50) -> None:
        self.entries: deque[MemoryEntry] = deque(maxlen=max(1, max_size))

    def store(self, entry: MemoryEntry) -> MemoryEntry:
        self.entries.append(entry)
        return entry

    def search(self, words: Sequence[str]) -> list[MemoryEntry]:
        return matching_entries(self.entries, words)

    def recent(self, count: int = 10) -> list[MemoryEntry]:
        if count <= 0:
            return []
        return list(self.entries)[-count:]

    def all(self) -> list[MemoryEntry]:
        return list(self.entries)

    def clear(self) -> None:
        self.entries.clear()


class LongTermMemory:
    layer = "long_term"
    domain = "longterm"

    def __init__(self, context: MemoryContext) -> None:
        self.context = context
        self.limit = max(1, context.config.long_term_limit)
        self.entries: list[MemoryEntry] = []

    async def load(self) -> None:
        data = await self.context.blobs.load(self.domain)
        self.entries = _load_entries(data.get("entries"), self.layer)
        self._trim()

    async def save(self) -> bool:
        return await self.context.blobs.save(
            self.domain, {"entries": [entry.to_dict() for entry in self.entries]}
        )

    def _trim(self) -> None:
        self.entries.sort(key=lambda entry: entry.importance or 0.0, reverse=True)
        del self.entries[self.limit :]

    async def store(self, entry: MemoryEntry) -> MemoryEntry:
        if entry.importance is None:
            entry.importance = 0.5
        self.entries.append(entry)
        self._trim()
        await self.save()
        return entry

    def search(self, words: Sequence[str], limit: int | None = None) -> list[MemoryEntry]:
        matches = matching_entries(self.entries, words)
        return matches if limit is None else matches[:limit]

    def all(self) -> list[MemoryEntry]:
        return list(self.entries)

    async def clear(self) -> None:
        self.entries = []
        await self.context.blobs.clear(self.domain)


def time_slot(hour: int) -> str:
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _stdev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = _mean(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def volatility(scores: Sequence[float]) -> str:
    if len(scores) < 2:
        return "insufficient_data"
    deviation = _stdev(scores)
    if deviation < 0.2:
        return "low"
    if deviation < 0.4:
        return "moderate"
    return "high"


def mood_trend(averages: Sequence[float]) -> str:
    if len(averages) < 3:
        return "insufficient_data"
    half = len(averages) // 2
    change = _mean(averages[half:]) - _mean(averages[:half])
    if change > 0.15:
        return "improving"
    if change < -0.15:
        return "declining"
    return "stable"


def mood_consistency(averages: Sequence[float]) -> str:
    if len(averages) < 5:
        return "insufficient_data"
    deviation = _stdev(averages)
    if deviation < 0.2:
        return "very_consistent"
    if deviation < 0.4:
        return "consistent"
    if deviation < 0.6:
        return "somewhat_variable"
    return "highly_variable"


class EmotionalMemory:
    """Sentiment history with trigger, mood and time-of-day aggregates."""

    layer = "emotional"
    domain = "emotional"

    def __init__(self, context: MemoryContext) -> None:
        self.context = context
        self.limit = max(1, context.config.emotional_limit)
        self.emotions: list[MemoryEntry] = []
        self.triggers: dict[str, dict[str, Any]] = {}
        self.mood_history: list[dict[str, Any]] = []
        self.time_of_day: dict[str, list[float]] = {}
        self.streaks: dict[str, Any] = memory_stats.sentiment_streak([])

    async def load(self) -> None:
        data = await self.context.blobs.load(self.domain)
        self.emotions = _load_entries(data.get("emotions"), self.layer)[-self.limit :]
        self.triggers = {
            str(name): _load_trigger(trigger)
            for name, trigger in as_dict(data.get("triggers")).items()
            if isinstance(trigger, dict)
        }
        raw_history = as_list(data.get("mood_history") or data.get("moodHistory"))
        self.mood_history = [
            _load_mood_day(day) for day in raw_history if isinstance(day, dict) and day.get("date")
        ]
        patterns = as_dict(data.get("patterns"))
        time_of_day = as_dict(data.get("time_of_day") or patterns.get("timeOfDay"))
        self.time_of_day = {
            str(slot): _numbers(scores)
            for slot, scores in time_of_day.items()
            if isinstance(scores, list)
        }
        streaks = data.get("streaks")
        if not isinstance(streaks, dict):
            streaks = as_dict(data.get("progressMetrics")).get("streaks")
        self.streaks = _load_streaks(streaks)

    async def save(self) -> bool:
        return await self.context.blobs.save(
            self.domain,
            {
                "emotions": [entry.to_dict() for entry in self.emotions],
                "triggers": self.triggers,
                "mood_history": self.mood_history,
                "time_of_day": self.time_of_day,
                "streaks": self.streaks,
            },
        )

    async def store(self, entry: MemoryEntry) -> MemoryEntry:
        self.emotions.append(entry)
        score = entry.score
        if score is not None:
            self._record_score(entry, score)
            if score < NEGATIVE_TRIGGER_THRESHOLD:
                self._record_triggers(entry, score)
        if len(self.emotions) > self.limit:
            self.emotions = self.emotions[-self.limit :]
        await self.save()
        return entry

    def _record_score(self, entry: MemoryEntry, score: float) -> None:
        when = entry.when()
        slot = time_slot(when.hour)
        self.time_of_day.setdefault(slot, []).append(score)

        day = when.date().isoformat()
        existing = next((d for d in self.mood_history if d.get("date") == day), None)
        if existing is None:
            self.mood_history.append(
                {"date": day, "scores": [score], "average_score": score, "last_updated": entry.timestamp}
            )
        else:
            scores = existing.setdefault("scores", [])
            scores.append(score)
            existing["average_score"] = _mean(scores)
            existing["last_updated"] = entry.timestamp
        if len(self.mood_history) > MOOD_HISTORY_DAYS:
            self.mood_history.sort(key=lambda d: str(d.get("date")))
            self.mood_history = self.mood_history[-MOOD_HISTORY_DAYS:]

        state = memory_stats.sentiment_state(score)
        if state == self.streaks.get("current"):
            self.streaks[state] = int(self.streaks.get(state) or 0) + 1
        else:
            self.streaks["current"] = state
            self.streaks[state] = 1

    def _record_triggers(self, entry: MemoryEntry, score: float) -> None:
        for trigger in entry.triggers:
            data = self.triggers.setdefault(
                trigger,
                {
                    "count": 0,
                    "severity": [],
                    "contexts": [],
                    "first_seen": entry.timestamp,
                    "last_seen": entry.timestamp,
                },
            )
            data["count"] = int(data.get("count") or 0) + 1
            data["severity"] = (list(data.get("severity") or []) + [abs(score)])[
                -TRIGGER_SEVERITY_KEPT:
            ]
            data["contexts"] = (list(data.get("contexts") or []) + [entry.context])[
                -TRIGGER_CONTEXTS_KEPT:
            ]
            data["last_seen"] = entry.timestamp

    def risk_level(self, trigger: dict[str, Any]) -> str:
        severity = _mean([float(s) for s in trigger.get("severity") or []])
        frequency = int(trigger.get("count") or 0)
        last_seen = parse_timestamp(trigger.get("last_seen") or trigger.get("lastSeen"))
        days = (self.context.now() - last_seen).total_seconds() / 86400 if last_seen else 7.0
        risk = severity * 40 + min(frequency / 10, 1) * 30 + max(0.0, (7 - days) / 7) * 30
        if risk > 70:
            return "high"
        if risk > 40:
            return "medium"
        return "low"

    def top_triggers(self, limit: int = 5) -> list[dict[str, Any]]:
        ranked = sorted(
            self.triggers.items(), key=lambda item: int(item[1].get("count") or 0), reverse=True
        )
        top = []
        for trigger, data in ranked[:limit]:
            top.append(
                {
                    "trigger": trigger,
                    "count": int(data.get("count") or 0),
                    "average_severity": _mean([float(s) for s in data.get("severity") or []]),
                    "risk_level": self.risk_level(data),
                    "last_seen": data.get("last_seen"),
                }
            )
        return top

    def mood_summary(self) -> dict[str, Any] | None:
        if not self.mood_history:
            return None
        week = self.mood_history[-7:]
        month = self.mood_history[-30:]
        week_scores = [float(d.get("average_score") or 0.0) for d in week]
        month_scores = [float(d.get("average_score") or 0.0) for d in month]
        return {
            "last_7_days": {
                "average": _mean(week_scores),
                "trend": mood_trend(week_scores),
                "best_day": max(week, key=lambda d: float(d.get("average_score") or 0.0))["date"],
                "worst_day": min(week, key=lambda d: float(d.get("average_score") or 0.0))["date"],
            },
            "last_30_days": {
                "average": _mean(month_scores),
                "trend": mood_trend(month_scores),
                "consistency": mood_consistency(month_scores),
            },
        }

    def search(self, words: Sequence[str]) -> list[MemoryEntry]:
        return matching_entries(self.emotions, words)

    def get_patterns(self) -> dict[str, Any]:
        recent = self.emotions[-20:]
        scores = [s for s in (entry.score for entry in recent) if s is not None]
        return {
            "time_of_day": {
                slot: {"average": _mean(values), "count": len(values)}
                for slot, values in self.time_of_day.items()
                if values
            },
            "recent_emotions": [entry.to_dict() for entry in self.emotions[-10:]],
            "average_sentiment": _mean(scores) if scores else None,
            "trend": memory_stats.calculate_emotional_trend(scores),
            "volatility": volatility(scores),
            "triggers": self.top_triggers(),
            "mood_summary": self.mood_summary(),
            "streaks": dict(self.streaks),
        }

    def all(self) -> dict[str, Any]:
        return {
            "emotions": [entry.to_dict() for entry in self.emotions],
            "triggers": copy.deepcopy(self.triggers),
            "mood_history": copy.deepcopy(self.mood_history),
            "time_of_day": copy.deepcopy(self.time_of_day),
            "streaks": dict(self.streaks),
        }

    async def clear(self) -> None:
        self.emotions = []
        self.triggers = {}
        self.mood_history = []
        self.time_of_day = {}
        self.streaks = memory_stats.sentiment_streak([])
        await self.context.blobs.clear(self.domain)


class ContextualMemory:
    layer = "contextual"
    domain = "contextual"

    def __init__(self, context: MemoryContext) -> None:
        self.context = context
        self.limit = max(1, context.config.contextual_limit)
        self.contexts: list[MemoryEntry] = []
        self.topic_frequency: Counter[str] = Counter()
        self.entity_map: dict[str, dict[str, int]] = {}

    async def load(self) -> None:
        data = await self.context.blobs.load(self.domain)
        self.contexts = _load_entries(data.get("contexts"), self.layer)[-self.limit :]
        topics = as_dict(data.get("topic_frequency") or data.get("topicFrequency"))
        self.topic_frequency = Counter(_counts(topics))
        entity_map = as_dict(data.get("entity_map") or data.get("entityMap"))
        self.entity_map = {
            str(kind): _counts(values)
            for kind, values in entity_map.items()
            if isinstance(values, dict)
        }

    async def save(self) -> bool:
        return await self.context.blobs.save(
            self.domain,
            {
                "contexts": [entry.to_dict() for entry in self.contexts],
                "topic_frequency": dict(self.topic_frequency),
                "entity_map": self.entity_map,
            },
        )

    async def store(self, entry: MemoryEntry) -> MemoryEntry:
        self.contexts.append(entry)
        self.topic_frequency.update(entry.topics)
        for entity in entry.entities:
            bucket = self.entity_map.setdefault(entity.get("type", "unknown"), {})
            value = entity.get("value", "")
            bucket[value] = bucket.get(value, 0) + 1
        if len(self.contexts) > self.limit:
            self.contexts = self.contexts[-self.limit :]
        await self.save()
        return entry

    def search(self, words: Sequence[str]) -> list[MemoryEntry]:
        return matching_entries(self.contexts, words)

    def top_topics(self, limit: int = 20) -> list[tuple[str, int]]:
        return self.topic_frequency.most_common(limit)

    def all(self) -> dict[str, Any]:
        return {
            "contexts": [entry.to_dict() for entry in self.contexts],
            "topic_frequency": dict(self.topic_frequency),
            "entity_map": copy.deepcopy(self.entity_map),
        }

    async def clear(self) -> None:
        self.contexts = []
        self.topic_frequency = Counter()
        self.entity_map = {}
        await self.context.blobs.clear(self.domain)


DEFAULT_PREFERENCES: dict[str, Any] = {
    "therapy_goals": [],
    "communication_style": "balanced",
    "preferred_topics": [],
    "avoided_topics": [],
    "triggers": [],
    "coping_strategies": [],
    "relationship_patterns": [],
    "personal_info": {
        "name": "",
        "full_name": "",
        "preferred_name": "",
        "age": None,
        "occupation": "",
        "interests": [],
        "gender": "",
        "gender_preference": "auto",
    },
    "session_preferences": {
        "session_length": "medium",
        "reminder_frequency": "weekly",
        "voice_enabled": False,
        "proactive_engagement": True,
    },
}


def _snake_dict(data: dict[str, Any]) -> dict[str, Any]:
    return {snake_case(str(k)): v for k, v in data.items()}


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _numbers(values: Any) -> list[float]:
    return [float(v) for v in as_list(values) if _is_number(v)]


def _counts(values: dict[Any, Any]) -> dict[str, int]:
    return {str(k): int(v) for k, v in values.items() if _is_number(v)}


def _load_trigger(data: dict[str, Any]) -> dict[str, Any]:
    trigger = _snake_dict(data)
    trigger["count"] = as_int(trigger.get("count"), 0)
    trigger["severity"] = _numbers(trigger.get("severity"))[-TRIGGER_SEVERITY_KEPT:]
    trigger["contexts"] = as_list(trigger.get("contexts"))[-TRIGGER_CONTEXTS_KEPT:]
    return trigger


def _load_mood_day(data: dict[str, Any]) -> dict[str, Any]:
    day = _snake_dict(data)
    scores = _numbers(day.get("scores"))
    day["date"] = str(day["date"])
    day["scores"] = scores
    average = day.get("average_score")
    day["average_score"] = float(average) if _is_number(average) else _mean(scores)
    return day


def _load_streaks(raw: Any) -> dict[str, Any]:
    streaks = memory_stats.sentiment_streak([])
    for key, value in as_dict(raw).items():
        if key == "current":
            if isinstance(value, str):
                streaks["current"] = value
        elif key in streaks:
            streaks[key] = as_int(value, 0)
    return streaks


def merge_preferences(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in _snake_dict(updates).items():
        if isinstance(merged.get(key), dict):
            if isinstance(value, dict):
                merged[key] = {**merged[key], **_snake_dict(value)}
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class UserPreferences:
    layer = "preferences"
    domain = "preferences"

    def __init__(self, context: MemoryContext) -> None:
        self.context = context
        self.preferences: dict[str, Any] = copy.deepcopy(DEFAULT_PREFERENCES)

    async def load(self) -> None:
        data = await self.context.blobs.load(self.domain)
        self.preferences = merge_preferences(DEFAULT_PREFERENCES, data)

    async def save(self) -> bool:
        return await self.context.blobs.save(self.domain, self.preferences)

    async def update(self, updates: dict[str, Any]) -> dict[str, Any]:
        self.preferences = merge_preferences(self.preferences, updates)
        await self.save()
        return self.all()

    def get(self, key: str | None = None) -> Any:
        if key is None:
            return self.all()
        return copy.deepcopy(self.preferences.get(key))

    def all(self) -> dict[str, Any]:
        return copy.deepcopy(self.preferences)

    @property
    def personal_info(self) -> dict[str, Any]:
        return self.preferences.get("personal_info") or {}

    def preferred_name(self) -> str:
        info = self.personal_info
        return str(info.get("preferred_name") or info.get("name") or "")

    def full_name(self) -> str:
        info = self.personal_info
        return str(info.get("full_name") or info.get("name") or "")

    def gender_preference(self) -> dict[str, str]:
        info = self.personal_info
        return {
            "gender": str(info.get("gender") or ""),
            "gender_preference": str(info.get("gender_preference") or "auto"),
        }

    async def clear(self) -> None:
        self.preferences = copy.deepcopy(DEFAULT_PREFERENCES)
        await self.context.blobs.clear(self.domain)


def _load_entries(raw: Any, layer: str) -> list[MemoryEntry]:
    entries = []
    for item in as_list(raw):
        if not isinstance(item, dict):
            continue
        try:
            entries.append(MemoryEntry.from_dict(item, layer))
        except Exception as exc:
            logger.warning("skipping unreadable %s memory", layer, exc_info=exc)
    return entries
