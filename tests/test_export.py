import json
from pathlib import Path

import pytest

from convomem.errors import ValidationError
from convomem.export import SESSION_CSV_HEADER, export_sessions, write_export
from convomem.schema import Message, MessageMetadata, Session, SessionMetadata


def _session() -> Session:
    return Session(
        id="s1",
        start_time="2024-03-01T09:00:00+00:00",
        end_time="2024-03-01T09:30:00+00:00",
        metadata=SessionMetadata(title="Friday"),
        messages=[
            Message(
                id="m1",
                content='I said "no" today',
                is_user=True,
                timestamp="2024-03-01T09:01:02+00:00",
                metadata=MessageMetadata(sentiment={"score": 0.25}),
            ),
            Message(
                id="m2",
                content="That took courage",
                is_user=False,
                timestamp="2024-03-01T09:01:30+00:00",
            ),
        ],
    )


def test_export_sessions_csv() -> None:
    payload = export_sessions([_session()], user_id="u1", exported_at="now", format="csv")

    lines = payload.splitlines()
    assert lines[0] == SESSION_CSV_HEADER
    assert lines[1] == 's1,2024-03-01T09:01:02+00:00,User,"I said ""no"" today",0.25'
    assert lines[2] == 's1,2024-03-01T09:01:30+00:00,AI,"That took courage",'
    assert payload.endswith("\n")


def test_export_sessions_text() -> None:
    payload = export_sessions(
        [_session()], user_id="u1", exported_at="2024-03-02T00:00:00+00:00", format="txt"
    )

    assert payload.startswith("Conversation Export\nExport Date: 2024-03-02T00:00:00+00:00\n")
    assert "User ID: u1" in payload
    assert "=== Friday ===" in payload
    assert "End Time: 2024-03-01T09:30:00+00:00" in payload
    assert '[09:01:02] You: I said "no" today' in payload
    assert "[09:01:30] Assistant: That took courage" in payload


def test_export_sessions_json() -> None:
    payload = export_sessions([_session()], user_id="u1", exported_at="now")

    data = json.loads(payload)
    assert data["user_id"] == "u1"
    assert data["export_date"] == "now"
    assert data["format"] == "json"
    assert data["sessions"][0]["messages"][1]["is_user"] is False


def test_export_sessions_rejects_unknown_format() -> None:
    with pytest.raises(ValidationError, match="Unsupported export format"):
        export_sessions([], user_id="u1", exported_at="now", format="pdf")


def test_write_export(tmp_path: Path) -> None:
    target = tmp_path / "out" / "export.csv"

    assert write_export("-", "payload") is None
    assert write_export(str(target), "payload") == target
    assert target.read_text(encoding="utf-8") == "payload"
