from __future__ import annotations

import datetime as dt
import json
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from typing import Any

from ..context import MemoryContext
from ..errors import ReferenceNotFoundError, SessionNotFoundError, ValidationError
from ..history import SessionStore
from ..reference_kinds import validate_importance, validate_reference_type
from ..schema import (
    Bookmark,
    Collection,
    Reference,
    ReferenceMetadata,
    as_list,
    default_insights,
    new_id,
    parse_timestamp,
    unique,
)
from ..search_index import InvertedIndex
from . import export as reference_export
from . import linking as reference_linking
from . import search as reference_search
from . import tags as reference_tags

logger = logging.getLogger(__name__)

DOMAIN = "references"
TITLE_PREVIEW_CHARS = 50
MESSAGE_CONTEXT_RADIUS = 3
RECENT_ACTIVITY_WINDOW = dt.timedelta(hours=24)
UPDATABLE_FIELDS = frozenset(
    {"title", "description", "tags", "type", "importance", "context", "insights", "is_private"}
)

_EPOCH = dt.datetime.min.replace(tzinfo=dt.UTC)


def _index_text(reference: Reference) -> str:
    return " ".join(
        [
            reference.title,
            reference.description,
            *reference.tags,
            json.dumps(reference.context, ensure_ascii=False, default=str),
        ]
    )


class ReferenceManager:
    """Bookmarked moments, insights and goals that point back into sessions.

    ``tags`` maps each tag to the ids carrying it and is kept in step with every
    reference's own ``tags`` list. The full-text index is rebuilt from the
    references on load and updated incrementally afterwards.
    """

    def __init__(self, context: MemoryContext, sessions: SessionStore) -> None:
        self.context = context
        self.sessions = sessions
        self.references: dict[str, Reference] = {}
        self.tags: dict[str, list[str]] = {}
        self.collections: dict[str, Collection] = {}
        self.bookmarks: dict[str, Bookmark] = {}
        self.index = InvertedIndex()

    async def load(self) -> None:
        data = await self.context.blobs.load(DOMAIN)
        self.references = {
            ref.id: ref for ref in _load_items(data.get("references"), Reference.from_dict)
        }
        self.collections = {
            c.id: c for c in _load_items(data.get("collections"), Collection.from_dict)
        }
        self.bookmarks = {b.id: b for b in _load_items(data.get("bookmarks"), Bookmark.from_dict)}
        self.tags = reference_tags.derive_tag_index(self.references.values())
        self.rebuild_index()

    async def save(self) -> bool:
        data = {
            "references": {rid: ref.to_dict() for rid, ref in self.references.items()},
            "tags": {tag: list(ids) for tag, ids in self.tags.items()},
            "collections": {cid: c.to_dict() for cid, c in self.collections.items()},
            "bookmarks": {bid: b.to_dict() for bid, b in self.bookmarks.items()},
        }
        return await self.context.blobs.save(DOMAIN, data)

    def rebuild_index(self) -> None:
        self.index.rebuild_all((ref.id, _index_text(ref)) for ref in self.references.values())

    async def create_reference(
        self,
        session_id: str,
        message_id: str | None = None,
        *,
        title: str | None = None,
        description: str = "",
        tags: Iterable[str] = (),
        type: str = "message",
        importance: str = "medium",
        context: dict[str, Any] | None = None,
        is_private: bool = False,
    ) -> Reference:
        if not session_id:
            raise ValidationError("session_id is required to create a reference")
        kind = validate_reference_type(type)
        level = validate_importance(importance)
        cleaned_tags = reference_tags.clean_tags(tags)
        session = self.sessions.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        caller_context = dict(context or {})
        message_context = None
        if message_id:
            window = self.sessions.get_message_context(
                session_id, message_id, MESSAGE_CONTEXT_RADIUS
            )
            if window is not None:
                message_context = {
                    "before": [m.to_dict() for m in window["before"]],
                    "target": window["target"].to_dict(),
                    "after": [m.to_dict() for m in window["after"]],
                }

        now = self.context.now_iso()
        reference = Reference(
            id=new_id("ref"),
            session_id=session_id,
            message_id=message_id,
            title=title or self._default_title(session_id, message_id),
            description=description or "",
            type=kind,
            importance=level,
            tags=cleaned_tags,
            context={
                "session_title": session.metadata.title,
                "session_date": session.start_time,
                "message_context": message_context,
                "emotional_state": caller_context.get("emotional_state"),
                "topics": list(caller_context.get("topics") or []),
                "entities": list(caller_context.get("entities") or []),
                **caller_context,
            },
            metadata=ReferenceMetadata(
                created_at=now,
                updated_at=now,
                is_private=bool(is_private),
            ),
            insights=default_insights(),
        )

        self.references[reference.id] = reference
        reference_tags.add_to_tags(self.tags, reference.id, reference.tags)
        self.index.add(reference.id, _index_text(reference))
        self.link_related_references(reference.id)
        await self.save()
        return reference

    def _default_title(self, session_id: str, message_id: str | None) -> str:
        message = self.sessions.get_message(session_id, message_id)
        if message is not None:
            preview = message.content[:TITLE_PREVIEW_CHARS]
            suffix = "..." if len(message.content) > TITLE_PREVIEW_CHARS else ""
            return f"{preview}{suffix}"
        session = self.sessions.get_session(session_id)
        title = session.metadata.title if session is not None else session_id
        return f"Reference from {title}"

    def get_reference(self, reference_id: str) -> Reference | None:
        # Access bookkeeping is persisted with the next save.
        reference = self.references.get(reference_id)
        if reference is None:
            return None
        reference.metadata.access_count += 1
        reference.metadata.last_accessed = self.context.now_iso()
        return reference

    async def update_reference(self, reference_id: str, updates: dict[str, Any]) -> Reference:
        reference = self.references.get(reference_id)
        if reference is None:
            raise ReferenceNotFoundError(reference_id)

        unknown = sorted(set(updates) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update reference fields: {', '.join(unknown)}")
        kind = validate_reference_type(updates["type"]) if "type" in updates else None
        level = (
            validate_importance(updates["importance"]) if "importance" in updates else None
        )
        if "context" in updates and not isinstance(updates["context"], dict):
            raise ValidationError("context must be an object")
        if "insights" in updates and not isinstance(updates["insights"], dict):
            raise ValidationError("insights must be an object")
        new_tags = reference_tags.clean_tags(updates["tags"]) if "tags" in updates else None

        if new_tags is not None:
            reference_tags.remove_from_tags(self.tags, reference_id, reference.tags)
            reference.tags = new_tags
            reference_tags.add_to_tags(self.tags, reference_id, new_tags)
        if "title" in updates:
            reference.title = str(updates["title"] or "")
        if "description" in updates:
            reference.description = str(updates["description"] or "")
        if kind is not None:
            reference.type = kind
        if level is not None:
            reference.importance = level
        if "context" in updates:
            reference.context = {**reference.context, **updates["context"]}
        if "insights" in updates:
            reference.insights = {**reference.insights, **updates["insights"]}
        if "is_private" in updates:
            reference.metadata.is_private = bool(updates["is_private"])

        reference.metadata.updated_at = self.context.now_iso()
        self.index.remove(reference_id)
        self.index.add(reference_id, _index_text(reference))
        await self.save()
        return reference

    async def delete_reference(self, reference_id: str) -> bool:
        reference = self.references.get(reference_id)
        if reference is None:
            return False
        reference_tags.remove_from_tags(self.tags, reference_id)
        for collection in self.collections.values():
            if reference_id in collection.reference_ids:
                collection.reference_ids = [
                    rid for rid in collection.reference_ids if rid != reference_id
                ]
                collection.metadata["updated_at"] = self.context.now_iso()
        self.bookmarks = {
            bid: bookmark
            for bid, bookmark in self.bookmarks.items()
            if bookmark.reference_id != reference_id
        }
        self.index.remove(reference_id)
        del self.references[reference_id]
        await self.save()
        return True

    async def create_bookmark(
        self, reference_id: str, label: str | None = None, color: str = "blue"
    ) -> Bookmark:
        reference = self.references.get(reference_id)
        if reference is None:
            raise ReferenceNotFoundError(reference_id)
        bookmark = Bookmark(
            id=new_id("bookmark"),
            reference_id=reference_id,
            label=label or reference.title,
            color=color or "blue",
            created_at=self.context.now_iso(),
            position=max((b.position for b in self.bookmarks.values()), default=-1) + 1,
        )
        self.bookmarks[bookmark.id] = bookmark
        await self.save()
        return bookmark

    def list_bookmarks(self) -> list[Bookmark]:
        return sorted(self.bookmarks.values(), key=lambda b: b.position)

    async def create_collection(
        self,
        name: str,
        description: str = "",
        reference_ids: Iterable[str] = (),
        tags: Iterable[str] = (),
    ) -> Collection:
        now = self.context.now_iso()
        collection = Collection(
            id=new_id("collection"),
            name=name,
            description=description or "",
            reference_ids=unique(str(rid) for rid in reference_ids),
            tags=reference_tags.clean_tags(tags),
            metadata={
                "created_at": now,
                "updated_at": now,
                "access_count": 0,
                "is_shared": False,
            },
            insights={"common_themes": [], "emotional_patterns": [], "progress_narrative": ""},
        )
        self.collections[collection.id] = collection
        await self.save()
        return collection

    def get_collection(self, collection_id: str) -> dict[str, Any] | None:
        collection = self.collections.get(collection_id)
        if collection is None:
            return None
        collection.metadata["access_count"] = int(collection.metadata.get("access_count") or 0) + 1
        resolved = [
            self.references[rid] for rid in collection.reference_ids if rid in self.references
        ]
        return {"collection": collection, "references": resolved}

    def list_collections(self) -> list[Collection]:
        return list(self.collections.values())

    def references_by_tag(self, tag: str) -> list[Reference]:
        return [self.references[rid] for rid in self.tags.get(tag, []) if rid in self.references]

    def references_by_type(self, type: str) -> list[Reference]:
        kind = validate_reference_type(type)
        return [ref for ref in self.references.values() if ref.type == kind]

    def all_references(self) -> list[Reference]:
        return sorted(
            self.references.values(),
            key=lambda ref: parse_timestamp(ref.metadata.created_at) or _EPOCH,
            reverse=True,
        )

    def recent_references(self, limit: int = 10) -> list[Reference]:
        return self.all_references()[: max(0, limit)]

    def popular_references(self, limit: int = 10) -> list[Reference]:
        ranked = sorted(
            self.references.values(), key=lambda ref: ref.metadata.access_count, reverse=True
        )
        return ranked[: max(0, limit)]

    def lookup(self, word: str) -> list[str]:
        return sorted(str(key) for key in self.index.lookup(word))

    def tag_index(self) -> dict[str, list[str]]:
        return {tag: list(ids) for tag, ids in self.tags.items()}

    def link_related_references(self, reference_id: str) -> list[str]:
        return reference_linking.link_related_references(self, reference_id)

    def search_references(
        self,
        query: str,
        *,
        tags: Sequence[str] | None = None,
        type: str | None = None,
        importance: str | None = None,
        date_range: tuple[dt.datetime, dt.datetime] | None = None,
        session_ids: Sequence[str] | None = None,
        include_context: bool = True,
        sort_by: str = "relevance",
        limit: int | None = None,
    ) -> list[Reference]:
        try:
            return reference_search.search_references(
                self,
                query,
                tags=tags,
                type=type,
                importance=importance,
                date_range=date_range,
                session_ids=session_ids,
                include_context=include_context,
                sort_by=sort_by,
                limit=self.context.config.search_limit if limit is None else limit,
            )
        except Exception:
            logger.exception("reference search failed")
            return []

    def get_statistics(self) -> dict[str, Any]:
        cutoff = self.context.now() - RECENT_ACTIVITY_WINDOW
        recent_activity = 0
        for reference in self.references.values():
            created = parse_timestamp(reference.metadata.created_at)
            if created is not None and created > cutoff:
                recent_activity += 1
        return {
            "total_references": len(self.references),
            "total_bookmarks": len(self.bookmarks),
            "total_collections": len(self.collections),
            "total_tags": len(self.tags),
            "type_distribution": dict(Counter(ref.type for ref in self.references.values())),
            "importance_distribution": dict(
                Counter(ref.importance for ref in self.references.values())
            ),
            "top_tags": reference_tags.tag_usage(self.tags, limit=10),
            "recent_activity": recent_activity,
        }

    def build_export(
        self,
        *,
        include_collections: bool = True,
        include_bookmarks: bool = True,
        reference_ids: Sequence[str] | None = None,
    ) -> reference_export.ReferenceExport:
        if reference_ids is not None:
            selected = [self.references[rid] for rid in reference_ids if rid in self.references]
        else:
            selected = list(self.references.values())
        return reference_export.ReferenceExport(
            references=selected,
            collections=list(self.collections.values()) if include_collections else [],
            bookmarks=list(self.bookmarks.values()) if include_bookmarks else [],
            exported_at=self.context.now_iso(),
        )

    def export_references(
        self,
        format: str = "json",
        *,
        include_collections: bool = True,
        include_bookmarks: bool = True,
        reference_ids: Sequence[str] | None = None,
    ) -> str:
        export = self.build_export(
            include_collections=include_collections,
            include_bookmarks=include_bookmarks,
            reference_ids=reference_ids,
        )
        return reference_export.render(export, format)

    async def import_references(
        self, payload: str | dict[str, Any], *, replace: bool = False
    ) -> int:
        """Restore references, collections and bookmarks from a JSON export.

        Existing ids are overwritten. With ``replace`` everything not in the payload is
        dropped first. Returns the number of references imported.
        """

        export = reference_export.parse_export(payload)
        for reference in export.references:
            reference.type = validate_reference_type(reference.type)
            reference.importance = validate_importance(reference.importance)
        if replace:
            self.references = {}
            self.collections = {}
            self.bookmarks = {}
        for reference in export.references:
            self.references[reference.id] = reference
        for collection in export.collections:
            self.collections[collection.id] = collection
        for bookmark in export.bookmarks:
            self.bookmarks[bookmark.id] = bookmark
        self.tags = reference_tags.derive_tag_index(self.references.values())
        self.rebuild_index()
        await self.save()
        return len(export.references)


def _load_items(raw: Any, factory: Any) -> list[Any]:
    if isinstance(raw, dict):
        raw = list(raw.values())
    items = []
    for item in as_list(raw):
        if not isinstance(item, dict):
            continue
        try:
            items.append(factory(item))
        except Exception as exc:
            logger.warning("skipping unreadable stored item", exc_info=exc)
    return items
