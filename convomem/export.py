from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from .errors import ValidationError
from .references.export import quote_csv
from .schema import Session, parse_timestamp, sentiment_score

SESSION_EXPORT_FORMATS = ("json", "csv", "txt")
SESSION_CSV_HEADER = "Session ID,Timestamp,Speaker,Message,Sentiment"


def session_export_data(
    sessions: Sequence[Session], *, user_id: str, exported_at: str, format: str = "json"
) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "export_date": exported_at,
        "format": format,
        "sessions": [session.to_dict() for session in sessions],
    }


def sessions_to_csv(sessions: Sequence[Session]) -> str:
    lines = [SESSION_CSV_HEADER]
    for session in sessions:
        for message in session.messages:
            score = sentiment_score(message.metadata.sentiment)
            lines.append(
                ",".join(
                    [
                        session.id,
                        message.timestamp,
                        "User" if message.is_user else "AI",
                        quote_csv(message.content),
                        "" if score is None else str(score),
                    ]
                )
            )
    return "\n".join(lines) + "\n"


def _clock(timestamp: str) -> str:
    parsed = parse_timestamp(timestamp)
    return parsed.strftime("%H:%M:%S") if parsed else timestamp


def sessions_to_text(sessions: Sequence[Session], *, user_id: str, exported_at: str) -> str:
    lines = ["Conversation Export", f"Export Date: {exported_at}", f"User ID: {user_id}", ""]
    for session in sessions:
        lines.append(f"=== {session.metadata.title} ===")
        lines.append(f"Session ID: {session.id}")
        lines.append(f"Start Time: {session.start_time}")
        if session.end_time:
            lines.append(f"End Time: {session.end_time}")
        lines.append("")
        for message in session.messages:
            speaker = "You" if message.is_user else "Assistant"
            lines.append(f"[{_clock(message.timestamp)}] {speaker}: {message.content}")
        lines.extend(["", ""])
    return "\n".join(lines)


def export_sessions(
    sessions: Sequence[Session], *, user_id: str, exported_at: str, format: str = "json"
) -> str:
    fmt = (format or "json").strip().lower()
    if fmt == "csv":
        return sessions_to_csv(sessions)
    if fmt in {"txt", "text"}:
        return sessions_to_text(sessions, user_id=user_id, exported_at=exported_at)
    if fmt == "json":
        data = session_export_data(sessions, user_id=user_id, exported_at=exported_at, format=fmt)
        return json.dumps(data, ensure_ascii=False, indent=2)
    raise ValidationError(
        f"Unsupported export format '{fmt}'. Allowed: {', '.join(SESSION_EXPORT_FORMATS)}"
    )


def write_export(output: str, payload: str) -> Path | None:
    """Write ``payload`` to ``output``; ``-`` means the caller prints it instead."""

    if output == "-":
        return None
    path = Path(output).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(payload, encoding="utf-8")
    return path
