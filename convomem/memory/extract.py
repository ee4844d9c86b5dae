"""Keyword heuristics for topics, entities and emotional triggers.

Anything implementing ``Extractor`` can be handed
to ``MemoryAggregator`` instead.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Final, Protocol

TOPIC_KEYWORDS: Final[dict[str, tuple[str, ...]]] = {
    "work": ("work", "job", "career", "boss", "colleague"),
    "family": ("family", "parent", "mother", "father", "sibling"),
    "relationship": ("relationship", "partner", "boyfriend", "girlfriend", "spouse"),
    "health": ("health", "sick", "doctor", "medicine", "hospital"),
    "education": ("school", "study", "exam", "university", "college"),
}

TRIGGER_KEYWORDS: Final[tuple[str, ...]] = (
    "stress",
    "anxiety",
    "panic",
    "trauma",
    "trigger",
    "upset",
    "overwhelmed",
    "worry",
    "fear",
    "sad",
    "depressed",
    "lonely",
    "isolated",
    "hopeless",
    "angry",
    "frustrated",
    "irritated",
    "annoyed",
    "furious",
    "deadline",
    "pressure",
    "conflict",
    "argument",
    "money",
    "financial",
    "bills",
    "debt",
    "illness",
    "pain",
    "tired",
    "exhausted",
    "rejection",
    "failure",
    "mistake",
    "criticism",
)

_NAME_PATTERN = re.compile(r"\b[A-Z][a-z]+\b")


@dataclass(frozen=True)
class Entity:
    type: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "value": self.value}

    @classmethod
    def from_any(cls, data: Any) -> Entity | None:
        if isinstance(data, Entity):
            return data
        if isinstance(data, dict) and data.get("value"):
            return cls(type=str(data.get("type") or "unknown"), value=str(data["value"]))
        if isinstance(data, str) and data:
            return cls(type="unknown", value=data)
        return None


@dataclass
class Extraction:
    topics: set[str] = field(default_factory=set)
    entities: list[Entity] = field(default_factory=list)
    triggers: list[str] = field(default_factory=list)


class Extractor(Protocol):
    def extract(self, text: str) -> Extraction: ...


class KeywordExtractor:
    def __init__(
        self,
        topic_keywords: dict[str, tuple[str, ...]] | None = None,
        trigger_keywords: tuple[str, ...] | None = None,
    ) -> None:
        self.topic_keywords = topic_keywords if topic_keywords is not None else TOPIC_KEYWORDS
        self.trigger_keywords = (
            trigger_keywords if trigger_keywords is not None else TRIGGER_KEYWORDS
        )

    def extract(self, text: str) -> Extraction:
        text = text or ""
        lowered = text.lower()
        topics = {
            topic
            for topic, keywords in self.topic_keywords.items()
            if any(keyword in lowered for keyword in keywords)
        }
        triggers = [keyword for keyword in self.trigger_keywords if keyword in lowered]
        entities = [Entity(type="person", value=name) for name in _NAME_PATTERN.findall(text)]
        return Extraction(topics=topics, entities=entities, triggers=triggers)
