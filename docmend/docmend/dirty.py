from __future__ import annotations

from typing import AbstractSet, Iterable, Iterator, Protocol, Set

from .paths import PathLike, top_level


class ChangeTracking(Protocol):
    def mark_modified(self, field: str) -> None: ...


class DirtySet:
    """Top-level field names touched by a mutation sequence on one document.

    Invariant: every path recorded contributes its first segment, even when the
    write happened deep inside a nested value.
    """

    def __init__(self, fields: Iterable[str] = ()) -> None:
        self._fields: Set[str] = set(fields)

    def touch(self, path: PathLike) -> None:
        self._fields.add(top_level(path))

    def update(self, other: Iterable[str]) -> None:
        self._fields.update(other)

    @property
    def fields(self) -> frozenset:
        return frozenset(self._fields)

    def __contains__(self, field: object) -> bool:
        return field in self._fields

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._fields))

    def __len__(self) -> int:
        return len(self._fields)

    def __bool__(self) -> bool:
        return bool(self._fields)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, DirtySet):
            return self._fields == other._fields
        if isinstance(other, (set, frozenset)):
            return self._fields == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"DirtySet({sorted(self._fields)!r})"


def notify(document: ChangeTracking, fields: Iterable[str] | DirtySet) -> AbstractSet[str]:
    """Pass every dirty top-level field to the store's change hook exactly once.

    Returns the notified set; store handles take it as the mandatory field
    argument of ``save`` so a write cannot skip this step.
    """
    notified: Set[str] = set()
    for field in fields:
        if field in notified:
            continue
        document.mark_modified(field)
        notified.add(field)
    return frozenset(notified)
