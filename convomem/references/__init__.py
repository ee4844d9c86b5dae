from __future__ import annotations

from ._manager import ReferenceManager
from .export import ReferenceExport, parse_export
from .search import SORT_ORDERS

__all__ = ["ReferenceExport", "ReferenceManager", "SORT_ORDERS", "parse_export"]
