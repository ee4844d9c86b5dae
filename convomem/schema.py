"""Stored shapes and the versioned blob envelope.

Every persisted domain is written as::

    {"schema": "<domain>", "version": 1, "saved_at": "...", "data": {...}}

Blobs written before the envelope existed (version 0) are bare objects, often
with camelCase keys. ``decode_blob`` migrates them so callers always receive the
current shape, and the ``from_dict`` constructors fill defaults for anything
missing. Keys the current code does not know about are kept in ``extra`` and
written back unchanged.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from .errors import PersistenceError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def parse_timestamp(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


def unique(values: Iterable[Any]) -> list[Any]:
    seen: set[Any] = set()
    deduped: list[Any] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        deduped.append(value)
    return deduped


def _get(data: dict[str, Any], key: str, legacy: str | None = None, default: Any = None) -> Any:
    if key in data:
        return data[key]
    if legacy and legacy in data:
        return data[legacy]
    return default


def as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(value)
    if isinstance(value, (tuple, set, frozenset)):
        return list(value)
    return []


def as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def _extra(data: dict[str, Any], known: set[str]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in known}


def sentiment_score(sentiment: Any) -> float | None:
    if isinstance(sentiment, dict):
        score = sentiment.get("score")
        if isinstance(score, (int, float)):
            return float(score)
        return None
    if isinstance(sentiment, (int, float)) and not isinstance(sentiment, bool):
        return float(sentiment)
    return None


@dataclass
class MessageMetadata:
    sentiment: dict[str, Any] | None = None
    topics: list[str] = field(default_factory=list)
    entities: list[Any] = field(default_factory=list)
    importance: float = 0.5
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = {"sentiment", "topics", "entities", "importance"}

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "sentiment": self.sentiment,
            "topics": list(self.topics),
            "entities": list(self.entities),
            "importance": self.importance,
        }

    @classmethod
    def from_dict(cls, data: Any) -> MessageMetadata:
        data = as_dict(data)
        sentiment = data.get("sentiment")
        if isinstance(sentiment, (int, float)) and not isinstance(sentiment, bool):
            sentiment = {"score": float(sentiment)}
        return cls(
            sentiment=sentiment if isinstance(sentiment, dict) else None,
            topics=unique(str(t) for t in as_list(data.get("topics"))),
            entities=as_list(data.get("entities")),
            importance=as_float(data.get("importance"), 0.5),
            extra=_extra(data, cls._KNOWN),
        )


@dataclass
class Message:
    id: str
    content: str
    is_user: bool
    timestamp: str
    metadata: MessageMetadata = field(default_factory=MessageMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "is_user": self.is_user,
            "timestamp": self.timestamp,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        content = data.get("content")
        return cls(
            id=str(data.get("id") or new_id("msg")),
            content=content if isinstance(content, str) else "",
            is_user=bool(_get(data, "is_user", "isUser", True)),
            timestamp=str(data.get("timestamp") or now_iso()),
            metadata=MessageMetadata.from_dict(data.get("metadata")),
        )


@dataclass
class KeyMoment:
    id: str
    description: str
    timestamp: str
    message_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "timestamp": self.timestamp,
            "message_id": self.message_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeyMoment:
        return cls(
            id=str(data.get("id") or new_id("moment")),
            description=str(data.get("description") or ""),
            timestamp=str(data.get("timestamp") or now_iso()),
            message_id=_get(data, "message_id", "messageId"),
            metadata=as_dict(data.get("metadata")),
        )


@dataclass
class SessionMetadata:
    title: str
    tags: list[str] = field(default_factory=list)
    mood: Any = None
    goals: list[Any] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = {"title", "tags", "mood", "goals"}

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "title": self.title,
            "tags": list(self.tags),
            "mood": self.mood,
            "goals": list(self.goals),
        }

    @classmethod
    def from_dict(cls, data: Any, *, default_title: str = "Session") -> SessionMetadata:
        data = as_dict(data)
        return cls(
            title=str(data.get("title") or default_title),
            tags=as_list(data.get("tags")),
            mood=data.get("mood"),
            goals=as_list(data.get("goals")),
            extra=_extra(data, cls._KNOWN),
        )


@dataclass
class Session:
    id: str
    start_time: str
    metadata: SessionMetadata
    end_time: str | None = None
    messages: list[Message] = field(default_factory=list)
    summary: dict[str, Any] | None = None
    key_moments: list[KeyMoment] = field(default_factory=list)
    emotional_journey: list[dict[str, Any]] = field(default_factory=list)

    def find_message(self, message_id: str | None) -> Message | None:
        if not message_id:
            return None
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "messages": [m.to_dict() for m in self.messages],
            "metadata": self.metadata.to_dict(),
            "summary": self.summary,
            "key_moments": [k.to_dict() for k in self.key_moments],
            "emotional_journey": [dict(e) for e in self.emotional_journey],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        start_time = str(_get(data, "start_time", "startTime") or now_iso())
        summary = data.get("summary")
        return cls(
            id=str(data.get("id") or new_id("session")),
            start_time=start_time,
            end_time=_get(data, "end_time", "endTime"),
            messages=[
                Message.from_dict(m) for m in as_list(data.get("messages")) if isinstance(m, dict)
            ],
            metadata=SessionMetadata.from_dict(
                data.get("metadata"), default_title=f"Session {start_time[:10]}"
            ),
            summary=summary if isinstance(summary, dict) else None,
            key_moments=[
                KeyMoment.from_dict(k)
                for k in as_list(_get(data, "key_moments", "keyMoments"))
                if isinstance(k, dict)
            ],
            emotional_journey=[
                _migrate_journey_entry(e)
                for e in as_list(_get(data, "emotional_journey", "emotionalJourney"))
                if isinstance(e, dict)
            ],
        )


def _migrate_journey_entry(entry: dict[str, Any]) -> dict[str, Any]:
    migrated = dict(entry)
    if "messageId" in migrated and "message_id" not in migrated:
        migrated["message_id"] = migrated.pop("messageId")
    return migrated


@dataclass
class ReferenceMetadata:
    created_at: str
    updated_at: str
    access_count: int = 0
    last_accessed: str | None = None
    is_private: bool = False
    linked_references: list[str] = field(default_factory=list)
    related_sessions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "access_count": self.access_count,
            "last_accessed": self.last_accessed,
            "is_private": self.is_private,
            "linked_references": list(self.linked_references),
            "related_sessions": list(self.related_sessions),
        }

    @classmethod
    def from_dict(cls, data: Any) -> ReferenceMetadata:
        data = as_dict(data)
        created_at = str(_get(data, "created_at", "createdAt") or now_iso())
        return cls(
            created_at=created_at,
            updated_at=str(_get(data, "updated_at", "updatedAt") or created_at),
            access_count=as_int(_get(data, "access_count", "accessCount"), 0),
            last_accessed=_get(data, "last_accessed", "lastAccessed"),
            is_private=bool(_get(data, "is_private", "isPrivate", False)),
            linked_references=[
                str(r) for r in as_list(_get(data, "linked_references", "linkedReferences"))
            ],
            related_sessions=as_list(_get(data, "related_sessions", "relatedSessions")),
        )


def default_insights() -> dict[str, Any]:
    return {
        "key_points": [],
        "emotional_significance": None,
        "therapeutic_value": None,
        "progress_markers": [],
    }


@dataclass
class Reference:
    id: str
    session_id: str
    title: str
    metadata: ReferenceMetadata
    message_id: str | None = None
    description: str = ""
    type: str = "message"
    importance: str = "medium"
    tags: list[str] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    insights: dict[str, Any] = field(default_factory=default_insights)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = {
        "id",
        "session_id",
        "sessionId",
        "message_id",
        "messageId",
        "title",
        "description",
        "type",
        "importance",
        "tags",
        "context",
        "metadata",
        "insights",
    }

    def topics(self) -> list[str]:
        return [str(t) for t in as_list(self.context.get("topics"))]

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "id": self.id,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "importance": self.importance,
            "tags": list(self.tags),
            "context": dict(self.context),
            "metadata": self.metadata.to_dict(),
            "insights": dict(self.insights),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Reference:
        insights = default_insights()
        insights.update(as_dict(data.get("insights")))
        return cls(
            id=str(data.get("id") or new_id("ref")),
            session_id=str(_get(data, "session_id", "sessionId") or ""),
            message_id=_get(data, "message_id", "messageId"),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            type=str(data.get("type") or "message"),
            importance=str(data.get("importance") or "medium"),
            tags=unique(str(t) for t in as_list(data.get("tags"))),
            context=as_dict(data.get("context")),
            metadata=ReferenceMetadata.from_dict(data.get("metadata")),
            insights=insights,
            extra=_extra(data, cls._KNOWN),
        )


@dataclass
class Bookmark:
    id: str
    reference_id: str
    label: str
    created_at: str
    position: int
    color: str = "blue"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "reference_id": self.reference_id,
            "label": self.label,
            "color": self.color,
            "created_at": self.created_at,
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Bookmark:
        return cls(
            id=str(data.get("id") or new_id("bookmark")),
            reference_id=str(_get(data, "reference_id", "referenceId") or ""),
            label=str(data.get("label") or ""),
            color=str(data.get("color") or "blue"),
            created_at=str(_get(data, "created_at", "createdAt") or now_iso()),
            position=as_int(data.get("position"), 0),
        )


@dataclass
class Collection:
    id: str
    name: str
    description: str = ""
    reference_ids: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    insights: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "reference_ids": list(self.reference_ids),
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "insights": dict(self.insights),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Collection:
        metadata = as_dict(data.get("metadata"))
        created_at = str(_get(metadata, "created_at", "createdAt") or now_iso())
        return cls(
            id=str(data.get("id") or new_id("collection")),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            reference_ids=unique(
                str(r) for r in as_list(_get(data, "reference_ids", "referenceIds"))
            ),
            tags=unique(str(t) for t in as_list(data.get("tags"))),
            metadata={
                "created_at": created_at,
                "updated_at": str(_get(metadata, "updated_at", "updatedAt") or created_at),
                "access_count": as_int(_get(metadata, "access_count", "accessCount"), 0),
                "is_shared": bool(_get(metadata, "is_shared", "isShared", False)),
            },
            insights={
                "common_themes": [],
                "emotional_patterns": [],
                "progress_narrative": "",
                **as_dict(data.get("insights")),
            },
        )


def encode_blob(domain: str, data: dict[str, Any]) -> str:
    envelope = {
        "schema": domain,
        "version": SCHEMA_VERSION,
        "saved_at": now_iso(),
        "data": data,
    }
    return json.dumps(envelope, ensure_ascii=False)


def decode_blob(domain: str, raw: str | None) -> dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PersistenceError(f"{domain}: stored blob is not valid json") from exc
    return migrate_blob(domain, parsed)


def migrate_blob(domain: str, parsed: Any) -> dict[str, Any]:
    if isinstance(parsed, list):
        # Bare lists predate the envelope (long-term memory was stored that way).
        return {"entries": parsed}
    if not isinstance(parsed, dict):
        raise PersistenceError(f"{domain}: stored blob must be an object")
    if "schema" not in parsed or "data" not in parsed:
        legacy = dict(parsed)
        legacy.pop("lastUpdated", None)
        return legacy
    schema = parsed.get("schema")
    if schema != domain:
        raise PersistenceError(f"{domain}: blob belongs to {schema!r}")
    version = as_int(parsed.get("version"), 0)
    if version > SCHEMA_VERSION:
        logger.info(
            "%s blob version %s is newer than %s; loading best effort",
            domain,
            version,
            SCHEMA_VERSION,
        )
    data = parsed.get("data")
    if isinstance(data, list):
        return {"entries": data}
    return as_dict(data)
