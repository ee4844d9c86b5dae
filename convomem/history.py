from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass
from typing import Any

from . import stats as history_stats
from .context import MemoryContext
from .errors import DuplicateSessionError
from .schema import (
    KeyMoment,
    Message,
    MessageMetadata,
    Session,
    SessionMetadata,
    as_list,
    new_id,
    parse_timestamp,
)
from .search_index import MIN_TOKEN_LENGTH, InvertedIndex

logger = logging.getLogger(__name__)

DOMAIN = "conversations"
SORT_ORDERS = ("relevance", "date", "importance")

_EPOCH = dt.datetime.min.replace(tzinfo=dt.UTC)


@dataclass
class ConversationHit:
    session_id: str
    session_title: str
    message: Message
    relevance_score: float
    context: dict[str, Any] | None

    def to_dict(self) -> dict[str, Any]:
        context = None
        if self.context is not None:
            context = {
                "before": [m.to_dict() for m in self.context["before"]],
                "target": self.context["target"].to_dict(),
                "after": [m.to_dict() for m in self.context["after"]],
            }
        return {
            "session_id": self.session_id,
            "session_title": self.session_title,
            "message": self.message.to_dict(),
            "relevance_score": self.relevance_score,
            "context": context,
        }


def query_words(query: str) -> list[str]:
    return [word for word in query.lower().split() if len(word) >= MIN_TOKEN_LENGTH]


def _in_range(value: str | None, date_range: tuple[dt.datetime, dt.datetime] | None) -> bool:
    if date_range is None:
        return True
    parsed = parse_timestamp(value)
    if parsed is None:
        return False
    start, end = date_range
    return _aware(start) <= parsed <= _aware(end)


def _aware(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.UTC)
    return value


class SessionStore:
    def __init__(self, context: MemoryContext) -> None:
        self.context = context
        self.sessions: dict[str, Session] = {}
        self.index = InvertedIndex()
        self.current_session_id: str | None = None

    async def load(self) -> None:
        data = await self.context.blobs.load(DOMAIN)
        sessions: dict[str, Session] = {}
        raw_sessions = data.get("sessions")
        if isinstance(raw_sessions, dict):
            raw_sessions = list(raw_sessions.values())
        for raw in as_list(raw_sessions):
            if not isinstance(raw, dict):
                continue
            try:
                session = Session.from_dict(raw)
            except Exception as exc:
                logger.warning("skipping unreadable session", exc_info=exc)
                continue
            sessions[session.id] = session
        self.sessions = sessions
        self.rebuild_index()

    async def save(self) -> bool:
        data = {
            "sessions": [session.to_dict() for session in self.sessions.values()],
            "last_updated": self.context.now_iso(),
        }
        return await self.context.blobs.save(DOMAIN, data)

    def rebuild_index(self) -> None:
        self.index.rebuild_all(
            ((session.id, message.id), message.content)
            for session in self.sessions.values()
            for message in session.messages
        )

    async def start_session(
        self, session_id: str | None = None, metadata: dict[str, Any] | None = None
    ) -> Session:
        session_id = session_id or new_id("session")
        if session_id in self.sessions:
            raise DuplicateSessionError(session_id)
        now = self.context.now()
        session = Session(
            id=session_id,
            start_time=now.isoformat(),
            metadata=SessionMetadata.from_dict(
                metadata, default_title=f"Session {now.date().isoformat()}"
            ),
        )
        self.sessions[session_id] = session
        self.current_session_id = session_id
        return session

    async def add_message(
        self,
        content: str,
        is_user: bool = True,
        metadata: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> Message:
        target_id = session_id if session_id in self.sessions else None
        if session_id is not None and target_id is None:
            logger.warning("Unknown session %s, writing to the active session instead", session_id)
        if target_id is None:
            if self.current_session_id not in self.sessions:
                logger.warning("No active session. Starting new session.")
                await self.start_session()
            target_id = self.current_session_id
        session = self.sessions[target_id]  # type: ignore[index]

        raw_metadata = dict(metadata or {})
        if raw_metadata.get("importance") is None:
            raw_metadata["importance"] = 0.5
        message = Message(
            id=self._unique_message_id(session),
            content=content if isinstance(content, str) else str(content),
            is_user=is_user,
            timestamp=self.context.now_iso(),
            metadata=MessageMetadata.from_dict(raw_metadata),
        )
        session.messages.append(message)
        self.index.add((session.id, message.id), message.content)

        if message.metadata.sentiment:
            session.emotional_journey.append(
                {
                    "timestamp": message.timestamp,
                    "sentiment": message.metadata.sentiment,
                    "message_id": message.id,
                }
            )

        flush_every = max(1, self.context.config.flush_every)
        if len(session.messages) % flush_every == 0:
            await self.save()
        return message

    def _unique_message_id(self, session: Session) -> str:
        existing = {m.id for m in session.messages}
        message_id = new_id("msg")
        while message_id in existing:
            message_id = new_id("msg")
        return message_id

    async def mark_key_moment(
        self,
        description: str,
        message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> KeyMoment | None:
        session = self.sessions.get(self.current_session_id or "")
        if session is None:
            return None
        moment = KeyMoment(
            id=new_id("moment"),
            description=description,
            timestamp=self.context.now_iso(),
            message_id=message_id,
            metadata=dict(metadata or {}),
        )
        session.key_moments.append(moment)
        await self.save()
        return moment

    async def end_session(self, session_id: str | None = None) -> None:
        target_id = session_id or self.current_session_id
        if not target_id:
            return
        session = self.sessions.get(target_id)
        if session is not None:
            session.end_time = self.context.now_iso()
            session.summary = history_stats.build_session_summary(session)
            await self.save()
        if target_id == self.current_session_id:
            self.current_session_id = None

    async def delete_session(self, session_id: str) -> bool:
        if session_id not in self.sessions:
            return False
        del self.sessions[session_id]
        self.index.remove_where(lambda key: key[0] == session_id)  # type: ignore[index]
        if self.current_session_id == session_id:
            self.current_session_id = None
        await self.save()
        return True

    @property
    def current_session(self) -> Session | None:
        if self.current_session_id is None:
            return None
        return self.sessions.get(self.current_session_id)

    def get_session(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        return self.sessions.get(session_id)

    def get_message(self, session_id: str, message_id: str | None) -> Message | None:
        session = self.get_session(session_id)
        if session is None:
            return None
        return session.find_message(message_id)

    def all_sessions(self) -> list[Session]:
        return sorted(self.sessions.values(), key=lambda s: s.start_time, reverse=True)

    def recent_sessions(self, limit: int = 10) -> list[Session]:
        return self.all_sessions()[:limit]

    def message_count(self, session_id: str | None = None) -> int:
        if session_id:
            session = self.sessions.get(session_id)
            return len(session.messages) if session else 0
        return sum(len(session.messages) for session in self.sessions.values())

    def lookup(self, word: str) -> list[tuple[str, str]]:
        keys = self.index.lookup(word)
        return sorted(key for key in keys if isinstance(key, tuple))

    def get_message_context(
        self, session_id: str, message_id: str, radius: int | None = None
    ) -> dict[str, Any] | None:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        radius = self.context.config.context_radius if radius is None else radius
        for index, message in enumerate(session.messages):
            if message.id == message_id:
                start = max(0, index - radius)
                return {
                    "before": session.messages[start:index],
                    "target": message,
                    "after": session.messages[index + 1 : index + radius + 1],
                }
        return None

    def search_conversations(
        self,
        query: str,
        *,
        session_ids: list[str] | None = None,
        date_range: tuple[dt.datetime, dt.datetime] | None = None,
        include_metadata: bool = True,
        sort_by: str = "relevance",
        limit: int | None = None,
        context_radius: int | None = None,
    ) -> list[ConversationHit]:
        try:
            return self._search(
                query,
                session_ids=session_ids,
                date_range=date_range,
                include_metadata=include_metadata,
                sort_by=sort_by,
                limit=self.context.config.search_limit if limit is None else limit,
                context_radius=context_radius,
            )
        except Exception:
            logger.exception("conversation search failed")
            return []

    def _search(
        self,
        query: str,
        *,
        session_ids: list[str] | None,
        date_range: tuple[dt.datetime, dt.datetime] | None,
        include_metadata: bool,
        sort_by: str,
        limit: int,
        context_radius: int | None,
    ) -> list[ConversationHit]:
        query_lower = (query or "").strip().lower()
        if not query_lower:
            return []
        words = query_words(query_lower)
        allowed = set(session_ids) if session_ids is not None else None

        hits: list[ConversationHit] = []
        for session in self.sessions.values():
            if allowed is not None and session.id not in allowed:
                continue
            if not _in_range(session.start_time, date_range):
                continue
            for message in session.messages:
                text = message.content.lower()
                score = 0.0
                for word in words:
                    if word in text:
                        score += 1
                if query_lower in text:
                    score += 2
                if include_metadata:
                    metadata_text = json.dumps(
                        message.metadata.to_dict(), ensure_ascii=False, default=str
                    ).lower()
                    for word in words:
                        if word in metadata_text:
                            score += 0.5
                if score <= 0:
                    continue
                hits.append(
                    ConversationHit(
                        session_id=session.id,
                        session_title=session.metadata.title,
                        message=message,
                        relevance_score=score,
                        context=self.get_message_context(session.id, message.id, context_radius),
                    )
                )

        if sort_by == "date":
            hits.sort(
                key=lambda hit: parse_timestamp(hit.message.timestamp) or _EPOCH, reverse=True
            )
        elif sort_by == "importance":
            hits.sort(key=lambda hit: hit.message.metadata.importance, reverse=True)
        else:
            hits.sort(key=lambda hit: hit.relevance_score, reverse=True)
        return hits[: max(0, limit)]

    def get_statistics(self, session_id: str | None = None) -> dict[str, Any] | None:
        if session_id:
            session = self.sessions.get(session_id)
            if session is None:
                return None
            return history_stats.session_statistics(session)
        return history_stats.conversation_statistics(list(self.sessions.values()))
