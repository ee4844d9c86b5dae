from __future__ import annotations

import datetime as dt
import json
from collections.abc import Sequence
from typing import TYPE_CHECKING

from ..history import query_words
from ..reference_kinds import importance_rank, normalize_kind
from ..schema import Reference, parse_timestamp

if TYPE_CHECKING:
    from ._manager import ReferenceManager

SORT_ORDERS = ("relevance", "date", "importance", "access")

TITLE_PHRASE_WEIGHT = 5.0
TITLE_WORD_WEIGHT = 2.0
DESCRIPTION_PHRASE_WEIGHT = 3.0
DESCRIPTION_WORD_WEIGHT = 1.0
TAG_PHRASE_WEIGHT = 2.0
TAG_WORD_WEIGHT = 1.0
CONTEXT_WORD_WEIGHT = 0.5

_EPOCH = dt.datetime.min.replace(tzinfo=dt.UTC)


def score_reference(
    reference: Reference, query_lower: str, words: Sequence[str], *, include_context: bool
) -> float:
    score = 0.0
    title = reference.title.lower()
    if query_lower in title:
        score += TITLE_PHRASE_WEIGHT
    score += TITLE_WORD_WEIGHT * sum(1 for word in words if word in title)

    description = reference.description.lower()
    if query_lower in description:
        score += DESCRIPTION_PHRASE_WEIGHT
    score += DESCRIPTION_WORD_WEIGHT * sum(1 for word in words if word in description)

    for tag in reference.tags:
        tag_lower = tag.lower()
        if query_lower in tag_lower:
            score += TAG_PHRASE_WEIGHT
        score += TAG_WORD_WEIGHT * sum(1 for word in words if word in tag_lower)

    if include_context and reference.context:
        context_text = json.dumps(reference.context, ensure_ascii=False, default=str).lower()
        score += CONTEXT_WORD_WEIGHT * sum(1 for word in words if word in context_text)
    return score


def _passes_filters(
    reference: Reference,
    *,
    tags: Sequence[str] | None,
    type: str | None,
    importance: str | None,
    date_range: tuple[dt.datetime, dt.datetime] | None,
    session_ids: Sequence[str] | None,
) -> bool:
    if tags and not any(tag in reference.tags for tag in tags):
        return False
    if type and reference.type != normalize_kind(type):
        return False
    if importance and reference.importance != normalize_kind(importance):
        return False
    if session_ids is not None and reference.session_id not in session_ids:
        return False
    if date_range is not None:
        created = parse_timestamp(reference.metadata.created_at)
        if created is None:
            return False
        start, end = date_range
        if start.tzinfo is None:
            start = start.replace(tzinfo=dt.UTC)
        if end.tzinfo is None:
            end = end.replace(tzinfo=dt.UTC)
        if created < start or created > end:
            return False
    return True


def search_references(
    manager: ReferenceManager,
    query: str,
    *,
    tags: Sequence[str] | None = None,
    type: str | None = None,
    importance: str | None = None,
    date_range: tuple[dt.datetime, dt.datetime] | None = None,
    session_ids: Sequence[str] | None = None,
    include_context: bool = True,
    sort_by: str = "relevance",
    limit: int = 50,
) -> list[Reference]:
    query_lower = (query or "").strip().lower()
    if not query_lower:
        return []
    words = query_words(query_lower)

    scored: list[tuple[Reference, float]] = []
    for reference in manager.references.values():
        if not _passes_filters(
            reference,
            tags=tags,
            type=type,
            importance=importance,
            date_range=date_range,
            session_ids=session_ids,
        ):
            continue
        score = score_reference(reference, query_lower, words, include_context=include_context)
        if score > 0:
            scored.append((reference, score))

    if sort_by == "date":
        scored.sort(
            key=lambda item: parse_timestamp(item[0].metadata.created_at) or _EPOCH, reverse=True
        )
    elif sort_by == "importance":
        scored.sort(key=lambda item: importance_rank(item[0].importance), reverse=True)
    elif sort_by == "access":
        scored.sort(key=lambda item: item[0].metadata.access_count, reverse=True)
    else:
        scored.sort(key=lambda item: item[1], reverse=True)
    return [reference for reference, _ in scored[: max(0, limit)]]
