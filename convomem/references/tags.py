from __future__ import annotations

from collections.abc import Iterable

from ..errors import ValidationError
from ..schema import Reference


def clean_tags(values: Iterable[str] | None) -> list[str]:
    if values is None:
        return []
    if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        raise ValidationError("tags must be a list of strings")
    tags: list[str] = []
    seen: set[str] = set()
    for value in values:
        tag = str(value or "").strip()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        tags.append(tag)
    return tags


def add_to_tags(tag_index: dict[str, list[str]], reference_id: str, tags: Iterable[str]) -> None:
    for tag in tags:
        bucket = tag_index.setdefault(tag, [])
        if reference_id not in bucket:
            bucket.append(reference_id)


def remove_from_tags(
    tag_index: dict[str, list[str]], reference_id: str, tags: Iterable[str] | None = None
) -> None:
    """Drop ``reference_id`` from the given buckets, or from every bucket when ``tags`` is None."""

    candidates = list(tag_index) if tags is None else list(tags)
    for tag in candidates:
        bucket = tag_index.get(tag)
        if bucket is None:
            continue
        tag_index[tag] = [rid for rid in bucket if rid != reference_id]
        if not tag_index[tag]:
            del tag_index[tag]


def derive_tag_index(references: Iterable[Reference]) -> dict[str, list[str]]:
    tag_index: dict[str, list[str]] = {}
    for reference in references:
        add_to_tags(tag_index, reference.id, reference.tags)
    return tag_index


def tag_usage(tag_index: dict[str, list[str]], limit: int = 10) -> list[dict[str, object]]:
    usage = [{"tag": tag, "count": len(ids)} for tag, ids in tag_index.items()]
    usage.sort(key=lambda item: int(item["count"]), reverse=True)  # type: ignore[call-overload]
    return usage[:limit]
