from __future__ import annotations

from typing import Final

from .errors import ValidationError

REFERENCE_TYPES: Final[tuple[str, ...]] = (
    "message",
    "moment",
    "insight",
    "breakthrough",
    "goal",
)

IMPORTANCE_LEVELS: Final[tuple[str, ...]] = ("low", "medium", "high", "critical")

IMPORTANCE_ORDER: Final[dict[str, int]] = {"critical": 4, "high": 3, "medium": 2, "low": 1}


def normalize_kind(value: str) -> str:
    return (value or "").strip().lower()


def validate_reference_type(value: str) -> str:
    normalized = normalize_kind(value)
    if normalized in REFERENCE_TYPES:
        return normalized
    raise ValidationError(
        f"Invalid reference type '{normalized}'. Allowed types: {', '.join(REFERENCE_TYPES)}"
    )


def validate_importance(value: str) -> str:
    normalized = normalize_kind(value)
    if normalized in IMPORTANCE_LEVELS:
        return normalized
    raise ValidationError(
        f"Invalid importance '{normalized}'. Allowed levels: {', '.join(IMPORTANCE_LEVELS)}"
    )


def importance_rank(value: str) -> int:
    return IMPORTANCE_ORDER.get(normalize_kind(value), 0)
