from __future__ import annotations

import asyncio
import json

import typer
from rich import print

from ..export import SESSION_EXPORT_FORMATS, export_sessions, write_export
from ..history import SORT_ORDERS
from ..providers import context_as_json


def sessions_cmd(*, system_from_path, db_path: str | None, limit: int) -> None:
    system = system_from_path(db_path)
    try:
        recent = system.sessions.recent_sessions(limit)
    finally:
        system.close()
    if not recent:
        print("[yellow]No sessions recorded yet[/yellow]")
        return
    for session in recent:
        status = "open" if session.end_time is None else "ended"
        print(
            f"- {session.id} [dim]{session.start_time}[/dim] "
            f"{session.metadata.title} ({len(session.messages)} messages, {status})"
        )


def show_session_cmd(*, system_from_path, db_path: str | None, session_id: str) -> None:
    system = system_from_path(db_path)
    try:
        session = system.sessions.get_session(session_id)
    finally:
        system.close()
    if session is None:
        print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(session.to_dict(), ensure_ascii=False, indent=2))


def search_cmd(
    *,
    system_from_path,
    db_path: str | None,
    query: str,
    limit: int,
    sort_by: str,
    session_ids: list[str] | None,
) -> None:
    if sort_by not in SORT_ORDERS:
        print(f"[red]Unsupported sort: {sort_by}[/red]")
        raise typer.Exit(code=1)
    system = system_from_path(db_path)
    try:
        hits = system.sessions.search_conversations(
            query, session_ids=session_ids or None, sort_by=sort_by, limit=limit
        )
    finally:
        system.close()
    if not hits:
        print("[yellow]No matching messages[/yellow]")
        return
    for hit in hits:
        speaker = "user" if hit.message.is_user else "ai"
        typer.echo(
            f"{hit.relevance_score:.1f}  {hit.session_id}/{hit.message.id} "
            f"({hit.session_title}) {speaker}: {hit.message.content[:120]}"
        )


def stats_cmd(*, system_from_path, db_path: str | None) -> None:
    system = system_from_path(db_path)
    try:
        stats = system.sessions.get_statistics() or {}
        reference_stats = system.references.get_statistics()
    finally:
        system.close()

    print("[bold]Conversations[/bold]")
    print(f"- Sessions: {stats.get('total_sessions', 0)}")
    print(f"- Messages: {stats.get('total_messages', 0)}")
    print(f"- Avg messages/session: {stats.get('average_messages_per_session', 0.0):.1f}")
    print(f"- Activity streak: {stats.get('activity_streak', 0)} day(s)")
    top_topics = stats.get("top_topics") or []
    if top_topics:
        print("- Top topics: " + ", ".join(f"{topic} ({count})" for topic, count in top_topics))

    print("\n[bold]References[/bold]")
    print(f"- References: {reference_stats['total_references']}")
    print(f"- Bookmarks: {reference_stats['total_bookmarks']}")
    print(f"- Collections: {reference_stats['total_collections']}")
    print(f"- Tags: {reference_stats['total_tags']}")
    print(f"- Created in last 24h: {reference_stats['recent_activity']}")


def export_sessions_cmd(
    *,
    system_from_path,
    db_path: str | None,
    format: str,
    output: str,
    session_ids: list[str] | None,
) -> None:
    if format not in SESSION_EXPORT_FORMATS:
        print(f"[red]Unsupported format: {format}[/red]")
        raise typer.Exit(code=1)
    system = system_from_path(db_path)
    try:
        if session_ids:
            sessions = [s for s in (system.sessions.get_session(i) for i in session_ids) if s]
        else:
            sessions = list(system.sessions.sessions.values())
        payload = export_sessions(
            sessions,
            user_id=system.context.user_id,
            exported_at=system.context.now_iso(),
            format=format,
        )
    finally:
        system.close()
    path = write_export(output, payload)
    if path is None:
        typer.echo(payload)
        return
    print(f"[green]✓ Exported {len(sessions)} session(s) to {path}[/green]")


def context_cmd(*, system_from_path, db_path: str | None) -> None:
    system = system_from_path(db_path)
    try:
        user_context = system.memory.get_user_context()
    finally:
        system.close()
    typer.echo(context_as_json(user_context))


def end_session_cmd(*, system_from_path, db_path: str | None, session_id: str) -> None:
    system = system_from_path(db_path)
    try:
        session = system.sessions.get_session(session_id)
        if session is None:
            print(f"[red]Session not found: {session_id}[/red]")
            raise typer.Exit(code=1)
        asyncio.run(system.sessions.end_session(session_id))
        summary = session.summary or {}
    finally:
        system.close()
    print(f"[green]✓ Ended {session_id}[/green]")
    print(f"- Messages: {summary.get('message_count', 0)}")
    print(f"- Duration: {summary.get('duration', '0 minutes')}")
    print(f"- Emotional trend: {summary.get('emotional_trend', 'stable')}")
