from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ._manager import ReferenceManager

MAX_LINKED_REFERENCES = 10


def related_reference_ids(manager: ReferenceManager, reference_id: str) -> list[str]:
    """Candidates in discovery order: shared tag, same session, overlapping topic."""

    reference = manager.references.get(reference_id)
    if reference is None:
        return []

    related: list[str] = []
    seen = {reference_id}

    def _push(candidate: str) -> None:
        if candidate in seen or candidate not in manager.references:
            return
        seen.add(candidate)
        related.append(candidate)

    for tag in reference.tags:
        for candidate in manager.tags.get(tag, []):
            _push(candidate)

    for candidate_id, candidate in manager.references.items():
        if candidate.session_id == reference.session_id:
            _push(candidate_id)

    topics = set(reference.topics())
    if topics:
        for candidate_id, candidate in manager.references.items():
            if topics.intersection(candidate.topics()):
                _push(candidate_id)

    return related


def link_related_references(manager: ReferenceManager, reference_id: str) -> list[str]:
    """Recompute ``linked_references`` for one reference.

    Only the given reference is updated; neighbours keep whatever links they had.
    """

    reference = manager.references.get(reference_id)
    if reference is None:
        return []
    limit = min(manager.context.config.linked_reference_limit, MAX_LINKED_REFERENCES)
    linked = related_reference_ids(manager, reference_id)[: max(0, limit)]
    reference.metadata.linked_references = linked
    return linked
