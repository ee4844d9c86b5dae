from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import typer
from rich import print

from ..errors import ValidationError
from ..export import write_export
from ..references import SORT_ORDERS
from ..references.export import EXPORT_FORMATS


def refs_search_cmd(
    *,
    system_from_path,
    db_path: str | None,
    query: str,
    tags: list[str] | None,
    type: str | None,
    importance: str | None,
    sort_by: str,
    limit: int,
) -> None:
    if sort_by not in SORT_ORDERS:
        print(f"[red]Unsupported sort: {sort_by}[/red]")
        raise typer.Exit(code=1)
    system = system_from_path(db_path)
    try:
        results = system.references.search_references(
            query,
            tags=tags or None,
            type=type,
            importance=importance,
            sort_by=sort_by,
            limit=limit,
        )
    finally:
        system.close()
    if not results:
        print("[yellow]No matching references[/yellow]")
        return
    for ref in results:
        tag_text = ", ".join(ref.tags)
        typer.echo(f"{ref.id}  [{ref.type}/{ref.importance}] {ref.title}  ({tag_text})")


def refs_stats_cmd(*, system_from_path, db_path: str | None) -> None:
    system = system_from_path(db_path)
    try:
        stats = system.references.get_statistics()
    finally:
        system.close()
    print("[bold]References[/bold]")
    print(f"- Total: {stats['total_references']}")
    print(f"- Bookmarks: {stats['total_bookmarks']}")
    print(f"- Collections: {stats['total_collections']}")
    print(f"- Tags: {stats['total_tags']}")
    print(f"- Created in last 24h: {stats['recent_activity']}")
    if stats["type_distribution"]:
        print("\n[bold]By type[/bold]")
        for kind, count in stats["type_distribution"].items():
            print(f"- {kind}: {count}")
    if stats["importance_distribution"]:
        print("\n[bold]By importance[/bold]")
        for level, count in stats["importance_distribution"].items():
            print(f"- {level}: {count}")
    if stats["top_tags"]:
        print("\n[bold]Top tags[/bold]")
        for item in stats["top_tags"]:
            print(f"- {item['tag']}: {item['count']}")


def refs_export_cmd(
    *,
    system_from_path,
    db_path: str | None,
    format: str,
    output: str,
    include_collections: bool,
    include_bookmarks: bool,
) -> None:
    if format not in EXPORT_FORMATS:
        print(f"[red]Unsupported format: {format}[/red]")
        raise typer.Exit(code=1)
    system = system_from_path(db_path)
    try:
        payload = system.references.export_references(
            format,
            include_collections=include_collections,
            include_bookmarks=include_bookmarks,
        )
        count = len(system.references.references)
    finally:
        system.close()
    path = write_export(output, payload)
    if path is None:
        typer.echo(payload)
        return
    print(f"[green]✓ Exported {count} reference(s) to {path}[/green]")


def refs_import_cmd(
    *, system_from_path, db_path: str | None, input_file: str, replace: bool
) -> None:
    if input_file == "-":
        payload = sys.stdin.read()
    else:
        input_path = Path(input_file).expanduser()
        if not input_path.exists():
            print(f"[red]Input file not found: {input_path}[/red]")
            raise typer.Exit(code=1)
        payload = input_path.read_text(encoding="utf-8")

    system = system_from_path(db_path)
    try:
        imported = asyncio.run(system.references.import_references(payload, replace=replace))
    except ValidationError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        system.close()
    print(f"[green]✓ Imported {imported} reference(s)[/green]")
