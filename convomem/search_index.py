from __future__ import annotations

import re
from collections.abc import Callable, Hashable, Iterable

_SPLIT_RE = re.compile(r"\W+")

MIN_TOKEN_LENGTH = 3


def tokenize(text: str | None) -> list[str]:
    if not text:
        return []
    return [token for token in _SPLIT_RE.split(text.lower()) if len(token) >= MIN_TOKEN_LENGTH]


class InvertedIndex:
    """Token -> set of opaque keys.

    There is no reverse map, so removal walks every bucket: O(index size) per delete.
    """

    def __init__(self) -> None:
        self._buckets: dict[str, set[Hashable]] = {}

    def add(self, key: Hashable, text: str | None) -> None:
        for token in tokenize(text):
            self._buckets.setdefault(token, set()).add(key)

    def remove(self, key: Hashable) -> int:
        return self.remove_where(lambda candidate: candidate == key)

    def remove_where(self, predicate: Callable[[Hashable], bool]) -> int:
        removed = 0
        for token in list(self._buckets):
            bucket = self._buckets[token]
            matches = [key for key in bucket if predicate(key)]
            for key in matches:
                bucket.discard(key)
            removed += len(matches)
            if not bucket:
                del self._buckets[token]
        return removed

    def rebuild_all(self, entities: Iterable[tuple[Hashable, str | None]]) -> None:
        self._buckets.clear()
        for key, text in entities:
            self.add(key, text)

    def lookup(self, token: str) -> set[Hashable]:
        return set(self._buckets.get((token or "").lower(), ()))

    def keys_for(self, tokens: Iterable[str]) -> set[Hashable]:
        found: set[Hashable] = set()
        for token in tokens:
            found |= self.lookup(token)
        return found

    def snapshot(self) -> dict[str, frozenset[Hashable]]:
        return {token: frozenset(keys) for token, keys in self._buckets.items()}

    def contains_key(self, key: Hashable) -> bool:
        return any(key in bucket for bucket in self._buckets.values())

    def clear(self) -> None:
        self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, token: object) -> bool:
        return token in self._buckets
