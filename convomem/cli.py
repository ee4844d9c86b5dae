from __future__ import annotations

import asyncio
import logging

import typer
from rich import print

from . import __version__
from .commands.reference_cmds import (
    refs_export_cmd,
    refs_import_cmd,
    refs_search_cmd,
    refs_stats_cmd,
)
from .commands.session_cmds import (
    context_cmd,
    end_session_cmd,
    export_sessions_cmd,
    search_cmd,
    sessions_cmd,
    show_session_cmd,
    stats_cmd,
)
from .config import load_config
from .system import MemorySystem, open_system

app = typer.Typer(help="convomem: conversation and reference memory")
refs_app = typer.Typer(help="Inspect, search and export references")
app.add_typer(refs_app, name="refs")


@app.callback()
def _configure_logging() -> None:
    level = str(load_config().log_level or "WARNING").upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING))


def _system(db_path: str | None) -> MemorySystem:
    return asyncio.run(open_system(config=load_config(), db_path=db_path))


@app.command()
def sessions(
    limit: int = typer.Option(10, help="Max sessions"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List recent sessions, newest first."""
    sessions_cmd(system_from_path=_system, db_path=db_path, limit=limit)


@app.command("show-session")
def show_session(
    session_id: str, db_path: str = typer.Option(None, help="Path to SQLite database")
) -> None:
    """Print a session as JSON."""
    show_session_cmd(system_from_path=_system, db_path=db_path, session_id=session_id)


@app.command("end-session")
def end_session(
    session_id: str, db_path: str = typer.Option(None, help="Path to SQLite database")
) -> None:
    """Close a session and compute its summary."""
    end_session_cmd(system_from_path=_system, db_path=db_path, session_id=session_id)


@app.command()
def search(
    query: str,
    limit: int = typer.Option(10, help="Max results"),
    sort_by: str = typer.Option("relevance", "--sort", help="relevance, date or importance"),
    session: list[str] = typer.Option(None, help="Repeat to restrict to sessions"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Search messages across sessions."""
    search_cmd(
        system_from_path=_system,
        db_path=db_path,
        query=query,
        limit=limit,
        sort_by=sort_by,
        session_ids=session,
    )


@app.command()
def stats(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show conversation and reference statistics."""
    stats_cmd(system_from_path=_system, db_path=db_path)


@app.command("export-sessions")
def export_sessions(
    format: str = typer.Option("json", help="json, csv or txt"),
    output: str = typer.Option("-", help="Output file path or '-' for stdout"),
    session: list[str] = typer.Option(None, help="Repeat to export specific sessions"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Export sessions."""
    export_sessions_cmd(
        system_from_path=_system,
        db_path=db_path,
        format=format,
        output=output,
        session_ids=session,
    )


@app.command()
def context(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Print the user context bundle used for prompt assembly."""
    context_cmd(system_from_path=_system, db_path=db_path)


@refs_app.command("search")
def refs_search(
    query: str,
    tag: list[str] = typer.Option(None, help="Repeat for multiple tags (any match)"),
    type: str = typer.Option(None, help="Filter by reference type"),
    importance: str = typer.Option(None, help="Filter by importance"),
    sort_by: str = typer.Option("relevance", "--sort", help="relevance, date, importance, access"),
    limit: int = typer.Option(20, help="Max results"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Search references."""
    refs_search_cmd(
        system_from_path=_system,
        db_path=db_path,
        query=query,
        tags=tag,
        type=type,
        importance=importance,
        sort_by=sort_by,
        limit=limit,
    )


@refs_app.command("stats")
def refs_stats(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show reference statistics."""
    refs_stats_cmd(system_from_path=_system, db_path=db_path)


@refs_app.command("export")
def refs_export(
    format: str = typer.Option("json", help="json, csv or markdown"),
    output: str = typer.Option("-", help="Output file path or '-' for stdout"),
    include_collections: bool = typer.Option(True, help="Include collections"),
    include_bookmarks: bool = typer.Option(True, help="Include bookmarks"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Export references."""
    refs_export_cmd(
        system_from_path=_system,
        db_path=db_path,
        format=format,
        output=output,
        include_collections=include_collections,
        include_bookmarks=include_bookmarks,
    )


@refs_app.command("import")
def refs_import(
    input_file: str = typer.Argument(..., help="JSON export file or '-' for stdin"),
    replace: bool = typer.Option(False, help="Drop existing references first"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Import references from a JSON export."""
    refs_import_cmd(
        system_from_path=_system, db_path=db_path, input_file=input_file, replace=replace
    )


@app.command("version")
def version() -> None:
    """Print convomem version."""
    print(__version__)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
