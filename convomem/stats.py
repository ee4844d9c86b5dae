from __future__ import annotations

import datetime as dt
import math
from collections import Counter
from collections.abc import Iterable, Sequence
from typing import Any

from .schema import Session, parse_timestamp, sentiment_score

TREND_THRESHOLD = 0.2


def calculate_emotional_trend(scores: Sequence[float]) -> str:
    """Compare the mean of the first and last thirds of a sentiment sequence."""

    if len(scores) < 2:
        return "stable"
    window = math.ceil(len(scores) / 3)
    start = sum(scores[:window]) / window
    end = sum(scores[-window:]) / window
    change = end - start
    if change > TREND_THRESHOLD:
        return "improving"
    if change < -TREND_THRESHOLD:
        return "declining"
    return "stable"


def journey_scores(session: Session) -> list[float]:
    scores: list[float] = []
    for entry in session.emotional_journey:
        score = sentiment_score(entry.get("sentiment"))
        scores.append(score if score is not None else 0.0)
    return scores


def emotional_trend(session: Session) -> str:
    return calculate_emotional_trend(journey_scores(session))


def topic_frequency(sessions: Iterable[Session]) -> Counter[str]:
    counts: Counter[str] = Counter()
    for session in sessions:
        for message in session.messages:
            counts.update(message.metadata.topics)
    return counts


def session_topics(session: Session) -> list[str]:
    return [topic for topic, _ in topic_frequency([session]).most_common()]


def duration_ms(session: Session) -> int | None:
    start = parse_timestamp(session.start_time)
    end = parse_timestamp(session.end_time)
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


def build_session_summary(session: Session) -> dict[str, Any]:
    elapsed = duration_ms(session) or 0
    minutes = round(elapsed / 60000)
    return {
        "message_count": len(session.messages),
        "user_messages": sum(1 for m in session.messages if m.is_user),
        "duration_minutes": minutes,
        "duration": f"{minutes} minutes",
        "main_topics": session_topics(session)[:3],
        "key_moments": len(session.key_moments),
        "emotional_trend": emotional_trend(session),
    }


def session_statistics(session: Session) -> dict[str, Any]:
    user_messages = sum(1 for m in session.messages if m.is_user)
    total = len(session.messages)
    return {
        "session_id": session.id,
        "title": session.metadata.title,
        "start_time": session.start_time,
        "end_time": session.end_time,
        "duration": duration_ms(session),
        "total_messages": total,
        "user_messages": user_messages,
        "ai_messages": total - user_messages,
        "key_moments": len(session.key_moments),
        "emotional_journey": [dict(e) for e in session.emotional_journey],
        "emotional_trend": emotional_trend(session),
        "topics": session_topics(session),
        "average_message_length": (
            sum(len(m.content) for m in session.messages) / total if total else 0.0
        ),
    }


def conversation_statistics(sessions: Sequence[Session]) -> dict[str, Any]:
    total_sessions = len(sessions)
    total_messages = sum(len(s.messages) for s in sessions)
    total_duration = sum(duration_ms(s) or 0 for s in sessions)
    trends: list[dict[str, Any]] = []
    for session in sessions:
        trends.extend(dict(e) for e in session.emotional_journey)
    trends.sort(key=lambda entry: str(entry.get("timestamp") or ""))
    return {
        "total_sessions": total_sessions,
        "total_messages": total_messages,
        "average_messages_per_session": (
            total_messages / total_sessions if total_sessions else 0.0
        ),
        "total_duration": total_duration,
        "average_session_duration": total_duration / total_sessions if total_sessions else 0.0,
        "top_topics": topic_frequency(sessions).most_common(10),
        "emotional_trends": trends,
        "activity_streak": activity_streak(s.start_time for s in sessions),
    }


def activity_streak(timestamps: Iterable[str], today: dt.date | None = None) -> int:
    """Consecutive days, ending today, on which at least one timestamp falls."""

    days = set()
    for value in timestamps:
        parsed = parse_timestamp(value)
        if parsed is not None:
            days.add(parsed.date())
    current = today or dt.datetime.now(dt.UTC).date()
    streak = 0
    while current in days:
        streak += 1
        current -= dt.timedelta(days=1)
    return streak


def sentiment_state(score: float) -> str:
    if score > TREND_THRESHOLD:
        return "positive"
    if score < -TREND_THRESHOLD:
        return "negative"
    return "stable"


def sentiment_streak(scores: Iterable[float]) -> dict[str, Any]:
    streaks: dict[str, Any] = {"positive": 0, "negative": 0, "stable": 0, "current": "neutral"}
    for score in scores:
        state = sentiment_state(score)
        if state == streaks["current"]:
            streaks[state] += 1
        else:
            streaks["current"] = state
            streaks[state] = 1
    return streaks
