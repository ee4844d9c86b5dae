import asyncio
import datetime as dt
import json
import logging

import pytest

from convomem.config import ConvomemConfig
from convomem.context import MemoryContext
from convomem.errors import DuplicateSessionError
from convomem.history import SessionStore
from convomem.kv import InMemoryKeyValueStore
from convomem.schema import encode_blob


class FakeClock:
    def __init__(self, start: dt.datetime) -> None:
        self.current = start

    def __call__(self) -> dt.datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += dt.timedelta(**kwargs)


def _context(
    clock: FakeClock | None = None, kv: InMemoryKeyValueStore | None = None
) -> MemoryContext:
    return MemoryContext(
        config=ConvomemConfig(),
        kv=kv or InMemoryKeyValueStore(),
        user_id="tester",
        clock=clock or FakeClock(dt.datetime(2024, 3, 1, 9, 0, tzinfo=dt.UTC)),
    )


def test_start_session_rejects_duplicate_id() -> None:
    store = SessionStore(_context())
    asyncio.run(store.start_session("s1", {"title": "First"}))

    with pytest.raises(DuplicateSessionError):
        asyncio.run(store.start_session("s1"))

    assert store.sessions["s1"].metadata.title == "First"
    assert store.current_session_id == "s1"


def test_start_session_defaults_title_to_date() -> None:
    store = SessionStore(_context())
    session = asyncio.run(store.start_session())

    assert session.id.startswith("session_")
    assert session.metadata.title == "Session 2024-03-01"
    assert session.end_time is None


def test_add_message_without_session_starts_one() -> None:
    store = SessionStore(_context())

    message = asyncio.run(store.add_message("hello there"))

    assert store.current_session is not None
    assert store.current_session.messages == [message]
    assert message.metadata.importance == 0.5
    assert store.lookup("hello") == [(store.current_session_id, message.id)]


def test_add_message_records_emotional_journey() -> None:
    store = SessionStore(_context())
    asyncio.run(store.start_session("s1"))

    first = asyncio.run(store.add_message("rough day", metadata={"sentiment": -0.6}))
    asyncio.run(store.add_message("no sentiment here"))

    journey = store.sessions["s1"].emotional_journey
    assert len(journey) == 1
    assert journey[0]["message_id"] == first.id
    assert journey[0]["sentiment"] == {"score": -0.6}


def test_add_message_to_unknown_session_warns_and_uses_active(
    caplog: pytest.LogCaptureFixture,
) -> None:
    store = SessionStore(_context())
    asyncio.run(store.start_session("s1"))

    with caplog.at_level(logging.WARNING, logger="convomem.history"):
        message = asyncio.run(store.add_message("misrouted", session_id="nope"))

    assert "nope" in caplog.text
    assert store.sessions["s1"].messages == [message]
    assert "nope" not in store.sessions


def test_messages_flush_every_ten() -> None:
    kv = InMemoryKeyValueStore()
    store = SessionStore(_context(kv=kv))
    asyncio.run(store.start_session("s1"))

    for n in range(9):
        asyncio.run(store.add_message(f"message number {n}"))
    assert "conversations_tester" not in kv.data

    asyncio.run(store.add_message("tenth message"))

    stored = json.loads(kv.data["conversations_tester"])
    assert stored["schema"] == "conversations"
    assert len(stored["data"]["sessions"][0]["messages"]) == 10


def _populated_store() -> tuple[SessionStore, FakeClock]:
    clock = FakeClock(dt.datetime(2024, 3, 1, 9, 0, tzinfo=dt.UTC))
    store = SessionStore(_context(clock))
    asyncio.run(store.start_session("s1", {"title": "Monday"}))
    asyncio.run(store.add_message("I feel anxious about work", metadata={"importance": 0.2}))
    clock.advance(minutes=1)
    asyncio.run(store.add_message("Work can be stressful", is_user=False, metadata={"importance": 0.9}))
    clock.advance(minutes=1)
    asyncio.run(store.add_message("Tell me more about feeling anxious", is_user=False))
    return store, clock


def test_search_scores_words_and_phrase_bonus() -> None:
    store, _ = _populated_store()

    hits = store.search_conversations("feel anxious", include_metadata=False)

    assert [hit.message.content for hit in hits] == [
        "I feel anxious about work",
        "Tell me more about feeling anxious",
    ]
    assert hits[0].relevance_score == 4.0
    assert hits[1].relevance_score == 2.0
    assert hits[0].session_title == "Monday"


def test_search_adds_metadata_matches() -> None:
    store, _ = _populated_store()
    message = store.sessions["s1"].messages[1]
    message.metadata.topics.append("stressful")

    hits = store.search_conversations("stressful", include_metadata=True)

    assert len(hits) == 1
    # 1 for the word, 2 for the full query, 0.5 for the metadata topic.
    assert hits[0].relevance_score == 3.5


def test_search_sort_orders_and_limit() -> None:
    store, _ = _populated_store()

    by_date = store.search_conversations("work anxious", sort_by="date", include_metadata=False)
    by_importance = store.search_conversations(
        "work anxious", sort_by="importance", include_metadata=False
    )
    limited = store.search_conversations("work anxious", limit=1, include_metadata=False)

    assert [h.message.content for h in by_date] == [
        "Tell me more about feeling anxious",
        "Work can be stressful",
        "I feel anxious about work",
    ]
    assert by_importance[0].message.content == "Work can be stressful"
    assert len(limited) == 1
    assert limited[0].message.content == "I feel anxious about work"


def test_search_includes_context_window() -> None:
    store, _ = _populated_store()

    hits = store.search_conversations("stressful")

    context = hits[0].context
    assert context is not None
    assert [m.content for m in context["before"]] == ["I feel anxious about work"]
    assert context["target"].content == "Work can be stressful"
    assert [m.content for m in context["after"]] == ["Tell me more about feeling anxious"]
    assert hits[0].to_dict()["context"]["target"]["content"] == "Work can be stressful"


def test_search_filters_sessions_and_ignores_blank_queries() -> None:
    store, _ = _populated_store()
    asyncio.run(store.start_session("s2"))
    asyncio.run(store.add_message("work again"))

    assert store.search_conversations("   ") == []
    only_s2 = store.search_conversations("work", session_ids=["s2"])
    assert [hit.session_id for hit in only_s2] == ["s2"]
    assert store.search_conversations("work", session_ids=[]) == []


def test_end_session_builds_summary() -> None:
    clock = FakeClock(dt.datetime(2024, 3, 1, 9, 0, tzinfo=dt.UTC))
    store = SessionStore(_context(clock))
    asyncio.run(store.start_session("s1"))
    for score in (-0.5, -0.4, 0.1, 0.5, 0.6, 0.7):
        asyncio.run(
            store.add_message(
                "checking in", metadata={"sentiment": {"score": score}, "topics": ["work"]}
            )
        )
    asyncio.run(store.mark_key_moment("named the pattern"))
    clock.advance(minutes=30)

    asyncio.run(store.end_session())

    session = store.sessions["s1"]
    assert session.end_time == clock.current.isoformat()
    assert session.summary == {
        "message_count": 6,
        "user_messages": 6,
        "duration_minutes": 30,
        "duration": "30 minutes",
        "main_topics": ["work"],
        "key_moments": 1,
        "emotional_trend": "improving",
    }
    assert store.current_session_id is None


def test_end_session_without_active_session_is_noop() -> None:
    kv = InMemoryKeyValueStore()
    store = SessionStore(_context(kv=kv))

    asyncio.run(store.end_session())

    assert kv.data == {}


def test_delete_session_removes_index_entries() -> None:
    store, _ = _populated_store()
    asyncio.run(store.start_session("s2"))
    asyncio.run(store.add_message("anxious but fine"))

    assert asyncio.run(store.delete_session("s1")) is True
    assert asyncio.run(store.delete_session("missing")) is False

    assert [key[0] for key in store.lookup("anxious")] == ["s2"]
    assert store.lookup("stressful") == []
    assert store.search_conversations("stressful") == []


def test_save_and_load_round_trip() -> None:
    kv = InMemoryKeyValueStore()
    store = SessionStore(_context(kv=kv))
    asyncio.run(store.start_session("s1", {"title": "Kept", "mood": "calm"}))
    message = asyncio.run(store.add_message("remember this", metadata={"topics": ["memory"]}))
    assert asyncio.run(store.save()) is True

    reloaded = SessionStore(_context(kv=kv))
    asyncio.run(reloaded.load())

    session = reloaded.sessions["s1"]
    assert session.metadata.title == "Kept"
    assert session.metadata.mood == "calm"
    assert session.messages[0].metadata.topics == ["memory"]
    assert reloaded.lookup("remember") == [("s1", message.id)]


def test_load_migrates_legacy_camel_case_blob() -> None:
    legacy = {
        "sessions": [
            {
                "id": "s1",
                "startTime": "2024-01-01T10:00:00Z",
                "endTime": None,
                "messages": [
                    {
                        "id": "m1",
                        "content": "hello legacy world",
                        "isUser": False,
                        "timestamp": "2024-01-01T10:01:00Z",
                    }
                ],
                "keyMoments": [{"id": "k1", "description": "first", "messageId": "m1"}],
                "emotionalJourney": [{"messageId": "m1", "sentiment": {"score": 0.4}}],
            }
        ],
        "lastUpdated": "2024-01-01T10:05:00Z",
    }
    kv = InMemoryKeyValueStore({"conversations_tester": json.dumps(legacy)})
    store = SessionStore(_context(kv=kv))

    asyncio.run(store.load())

    session = store.sessions["s1"]
    assert session.start_time == "2024-01-01T10:00:00Z"
    assert session.metadata.title == "Session 2024-01-01"
    assert session.messages[0].is_user is False
    assert session.key_moments[0].message_id == "m1"
    assert session.emotional_journey[0]["message_id"] == "m1"
    assert store.lookup("legacy") == [("s1", "m1")]


def test_load_with_corrupt_blob_starts_empty() -> None:
    kv = InMemoryKeyValueStore({"conversations_tester": "{not json"})
    store = SessionStore(_context(kv=kv))

    asyncio.run(store.load())

    assert store.sessions == {}


def test_load_with_wrongly_shaped_sessions_starts_empty() -> None:
    raw = encode_blob("conversations", {"sessions": 5})
    kv = InMemoryKeyValueStore({"conversations_tester": raw})
    store = SessionStore(_context(kv=kv))

    asyncio.run(store.load())

    assert store.sessions == {}
    assert store.lookup("anything") == []


def test_session_statistics() -> None:
    store, _ = _populated_store()

    per_session = store.get_statistics("s1")
    overall = store.get_statistics()

    assert per_session is not None
    assert per_session["total_messages"] == 3
    assert per_session["user_messages"] == 1
    assert per_session["ai_messages"] == 2
    assert store.get_statistics("missing") is None
    assert overall is not None
    assert overall["total_sessions"] == 1
    assert overall["average_messages_per_session"] == 3.0
