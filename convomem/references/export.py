from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ..errors import ValidationError
from ..schema import Bookmark, Collection, Reference

EXPORT_VERSION = "1.0"
EXPORT_FORMATS = ("json", "csv", "markdown")
CSV_HEADER = ("ID", "Title", "Type", "Importance", "Tags", "Created", "Session")


@dataclass
class ReferenceExport:
    references: list[Reference]
    collections: list[Collection] = field(default_factory=list)
    bookmarks: list[Bookmark] = field(default_factory=list)
    exported_at: str = ""
    version: str = EXPORT_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "references": [r.to_dict() for r in self.references],
            "collections": [c.to_dict() for c in self.collections],
            "bookmarks": [b.to_dict() for b in self.bookmarks],
            "exported_at": self.exported_at,
            "version": self.version,
        }


def quote_csv(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def to_json(export: ReferenceExport) -> str:
    return json.dumps(export.to_dict(), ensure_ascii=False, indent=2)


def to_csv(export: ReferenceExport) -> str:
    rows = [",".join(CSV_HEADER)]
    for ref in export.references:
        rows.append(
            ",".join(
                [
                    ref.id,
                    quote_csv(ref.title),
                    ref.type,
                    ref.importance,
                    quote_csv(", ".join(ref.tags)),
                    ref.metadata.created_at,
                    ref.session_id,
                ]
            )
        )
    return "\n".join(rows)


def to_markdown(export: ReferenceExport) -> str:
    lines = ["# Chat References Export", "", f"Exported on: {export.exported_at}", ""]
    lines.extend(["## References", ""])
    for ref in export.references:
        lines.extend([f"### {ref.title}", ""])
        lines.append(f"- **Type:** {ref.type}")
        lines.append(f"- **Importance:** {ref.importance}")
        lines.append(f"- **Tags:** {', '.join(ref.tags)}")
        lines.append(f"- **Created:** {ref.metadata.created_at}")
        if ref.description:
            lines.append(f"- **Description:** {ref.description}")
        lines.append("")
    if export.collections:
        lines.extend(["## Collections", ""])
        for collection in export.collections:
            lines.extend([f"### {collection.name}", ""])
            lines.extend([collection.description, ""])
            lines.extend([f"**References:** {len(collection.reference_ids)}", ""])
    return "\n".join(lines) + "\n"


def render(export: ReferenceExport, format: str = "json") -> str:
    fmt = (format or "json").strip().lower()
    if fmt == "csv":
        return to_csv(export)
    if fmt in {"markdown", "md"}:
        return to_markdown(export)
    if fmt == "json":
        return to_json(export)
    raise ValidationError(f"Unsupported export format '{fmt}'. Allowed: {', '.join(EXPORT_FORMATS)}")


def parse_export(payload: str | dict[str, Any]) -> ReferenceExport:
    if isinstance(payload, str):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValidationError("reference export is not valid json") from exc
    else:
        data = payload
    if not isinstance(data, dict):
        raise ValidationError("reference export must be an object")
    references = data.get("references")
    if not isinstance(references, list):
        raise ValidationError("reference export is missing a references list")
    return ReferenceExport(
        references=[Reference.from_dict(r) for r in references if isinstance(r, dict)],
        collections=[
            Collection.from_dict(c) for c in data.get("collections") or [] if isinstance(c, dict)
        ],
        bookmarks=[
            Bookmark.from_dict(b) for b in data.get("bookmarks") or [] if isinstance(b, dict)
        ],
        exported_at=str(data.get("exported_at") or data.get("exportedAt") or ""),
        version=str(data.get("version") or EXPORT_VERSION),
    )
