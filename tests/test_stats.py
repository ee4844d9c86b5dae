import datetime as dt

import pytest

from convomem.schema import Message, MessageMetadata, Session, SessionMetadata
from convomem.stats import (
    activity_streak,
    build_session_summary,
    calculate_emotional_trend,
    conversation_statistics,
    sentiment_streak,
)


@pytest.mark.parametrize(
    ("scores", "expected"),
    [
        ([], "stable"),
        ([0.5], "stable"),
        ([0.1, 0.1, 0.1, 0.9, 0.9, 0.9], "improving"),
        ([0.9, 0.9, 0.9, 0.1, 0.1, 0.1], "declining"),
        ([-0.5, 0.5], "improving"),
        ([0.5, -0.5], "declining"),
        ([0.1, 0.2, 0.15], "stable"),
        ([-0.6, -0.4, 0.0, 0.1, 0.5, 0.6, 0.7], "improving"),
    ],
)
def test_calculate_emotional_trend(scores: list[float], expected: str) -> None:
    assert calculate_emotional_trend(scores) == expected


def test_activity_streak_counts_back_from_today() -> None:
    today = dt.date(2024, 3, 10)
    stamps = [
        "2024-03-10T08:00:00Z",
        "2024-03-10T20:00:00Z",
        "2024-03-09T12:00:00+00:00",
        "2024-03-07T12:00:00+00:00",
        "not a date",
    ]

    assert activity_streak(stamps, today=today) == 2
    assert activity_streak(stamps, today=dt.date(2024, 3, 8)) == 0
    assert activity_streak([], today=today) == 0


def test_sentiment_streak_tracks_current_run() -> None:
    streaks = sentiment_streak([0.5, 0.6, -0.5, 0.0, 0.1, 0.7])

    assert streaks["current"] == "positive"
    assert streaks["positive"] == 1
    assert streaks["stable"] == 2
    assert streaks["negative"] == 1


def _session(session_id: str, start: str, end: str | None, topics: list[list[str]]) -> Session:
    return Session(
        id=session_id,
        start_time=start,
        end_time=end,
        metadata=SessionMetadata(title=session_id),
        messages=[
            Message(
                id=f"{session_id}-{n}",
                content="x" * (n + 1),
                is_user=n % 2 == 0,
                timestamp=start,
                metadata=MessageMetadata(topics=message_topics),
            )
            for n, message_topics in enumerate(topics)
        ],
    )


def test_session_summary_without_end_time() -> None:
    session = _session("s1", "2024-03-01T09:00:00+00:00", None, [["work"], ["work", "sleep"]])

    summary = build_session_summary(session)

    assert summary["message_count"] == 2
    assert summary["user_messages"] == 1
    assert summary["duration"] == "0 minutes"
    assert summary["main_topics"] == ["work", "sleep"]
    assert summary["emotional_trend"] == "stable"


def test_conversation_statistics_aggregate_sessions() -> None:
    sessions = [
        _session("s1", "2024-03-01T09:00:00+00:00", "2024-03-01T09:10:00+00:00", [["work"], []]),
        _session("s2", "2024-03-02T09:00:00+00:00", "2024-03-02T09:20:00+00:00", [["work"]] * 4),
    ]

    stats = conversation_statistics(sessions)

    assert stats["total_sessions"] == 2
    assert stats["total_messages"] == 6
    assert stats["average_messages_per_session"] == 3.0
    assert stats["total_duration"] == 30 * 60 * 1000
    assert stats["average_session_duration"] == 15 * 60 * 1000
    assert stats["top_topics"] == [("work", 5)]


def test_conversation_statistics_empty() -> None:
    stats = conversation_statistics([])

    assert stats["total_sessions"] == 0
    assert stats["average_messages_per_session"] == 0.0
    assert stats["top_topics"] == []
    assert stats["activity_streak"] == 0
