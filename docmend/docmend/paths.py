from __future__ import annotations

"""Dotted-path resolution over schema-less documents.

A path is a dotted string (``"owner.address.city"``) or a list of segments.
Containers are anything implementing ``MutableMapping`` (addressed by key) or
``MutableSequence`` (addressed by decimal index or by an element identifier
given in the parallel ``ids`` list). Everything else is a scalar.

Invariant: resolution never raises for a missing intermediate on read; it
returns ``ABSENT`` and lets the caller decide whether absence is acceptable.
"""

from collections.abc import MutableMapping, MutableSequence
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Union

from .errors import InvalidOperation, NotFound, TypeMismatch
from .ids import ID_FIELD, element_id, ids_equal

PathLike = Union[str, Sequence[str]]
Key = Union[str, int]


class _Absent:
    _instance: Optional["_Absent"] = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()


def is_mapping(value: Any) -> bool:
    return isinstance(value, MutableMapping)


def is_sequence(value: Any) -> bool:
    return isinstance(value, MutableSequence)


def is_container(value: Any) -> bool:
    return is_mapping(value) or is_sequence(value)


def split_path(path: PathLike) -> List[str]:
    if isinstance(path, str):
        if path == "":
            raise InvalidOperation("path must be non-empty")
        segments = path.split(".")
    else:
        segments = [str(segment) for segment in path]
        if not segments:
            raise InvalidOperation("path must be non-empty")
    if any(segment == "" for segment in segments):
        raise InvalidOperation(f"path {path!r} contains an empty segment")
    return segments


def split_ids(ids: Union[None, str, Sequence[Any]]) -> List[Any]:
    """Normalize per-segment identifier selectors; empty entries mean 'no selector'."""
    if ids is None:
        return []
    if isinstance(ids, str):
        parts: List[Any] = ids.split(".") if ids else []
    else:
        parts = list(ids)
    return [None if part in ("", None) else part for part in parts]


def top_level(path: PathLike) -> str:
    return split_path(path)[0]


def join_path(segments: Sequence[Any]) -> str:
    return ".".join(str(segment) for segment in segments)


@dataclass
class Resolved:
    """Parent container plus final key, so callers read and write without re-resolving."""

    container: Any
    key: Key

    @property
    def exists(self) -> bool:
        if is_mapping(self.container):
            return self.key in self.container
        return isinstance(self.key, int) and 0 <= self.key < len(self.container)

    def get(self, default: Any = ABSENT) -> Any:
        if not self.exists:
            return default
        return self.container[self.key]

    def set(self, value: Any) -> None:
        if is_sequence(self.container) and isinstance(self.key, int) and self.key == len(self.container):
            self.container.append(value)
            return
        self.container[self.key] = value

    def delete(self) -> Any:
        if not self.exists:
            return ABSENT
        return self.container.pop(self.key)


def _find_by_id(sequence: Any, wanted: Any, segment: str, id_field: str) -> int:
    for index, element in enumerate(sequence):
        if ids_equal(element_id(element, id_field), wanted):
            return index
    raise NotFound(
        f"no element of {segment!r} has {id_field} {wanted!s}",
        {"field": segment, "id": str(wanted)},
    )


def _sequence_index(segment: str) -> Optional[int]:
    if not segment.isdigit():
        return None
    return int(segment)


def _step(current: Any, segment: str, selector: Any, id_field: str, *, strict: bool) -> Any:
    """Descend one segment. Returns ABSENT when the segment is missing."""
    if is_mapping(current):
        if segment not in current:
            return ABSENT
        value = current[segment]
    elif is_sequence(current):
        index = _sequence_index(segment)
        if index is None:
            if strict:
                raise TypeMismatch(f"cannot address array with non-numeric segment {segment!r}")
            return ABSENT
        if index >= len(current):
            return ABSENT
        value = current[index]
    else:
        if strict:
            raise TypeMismatch(f"cannot descend into scalar at {segment!r}")
        return ABSENT

    if selector is None:
        return value
    if not is_sequence(value):
        raise TypeMismatch(
            f"{segment!r} is addressed by identifier but is not an array",
            {"field": segment},
        )
    return value[_find_by_id(value, selector, segment, id_field)]


def resolve(
    document: Any,
    path: PathLike,
    ids: Union[None, str, Sequence[Any]] = None,
    *,
    id_field: str = ID_FIELD,
) -> Union[Resolved, _Absent]:
    """Resolve ``path`` to ``Resolved(container, final_key)`` or ``ABSENT``.

    ``ids`` selects, per segment, the array element whose identifier equals
    the selector (compound ``field.id.field.id`` addressing). A selector that
    matches nothing raises ``NotFound``. When the final segment carries a
    selector the result addresses the matched element inside its array.
    """
    segments = split_path(path)
    selectors = split_ids(ids)
    current = document
    for position, segment in enumerate(segments[:-1]):
        selector = selectors[position] if position < len(selectors) else None
        current = _step(current, segment, selector, id_field, strict=False)
        if current is ABSENT or not is_container(current):
            return ABSENT

    last = segments[-1]
    last_selector = selectors[len(segments) - 1] if len(selectors) >= len(segments) else None
    if last_selector is not None:
        target = _step(current, last, None, id_field, strict=False)
        if target is ABSENT:
            return ABSENT
        if not is_sequence(target):
            raise TypeMismatch(
                f"{last!r} is addressed by identifier but is not an array", {"field": last}
            )
        return Resolved(target, _find_by_id(target, last_selector, last, id_field))
    if is_sequence(current):
        index = _sequence_index(last)
        if index is None:
            return ABSENT
        return Resolved(current, index)
    return Resolved(current, last)


def resolve_for_write(
    document: Any,
    path: PathLike,
    *,
    create_missing: Optional[int] = 1,
    id_field: str = ID_FIELD,
) -> Resolved:
    """Resolve the parent of ``path`` for a write, materializing missing mappings.

    At most ``create_missing`` intermediate levels may be created (``None``
    means unlimited). Deeper absence raises ``NotFound``; an intermediate
    holding a scalar raises ``TypeMismatch``.
    """
    segments = split_path(path)
    current = document
    for position, segment in enumerate(segments[:-1]):
        nxt = _step(current, segment, None, id_field, strict=True)
        if nxt is ABSENT:
            missing = len(segments) - 1 - position
            if create_missing is not None and missing > create_missing:
                raise NotFound(
                    f"path {join_path(segments)!r} is missing {join_path(segments[: position + 1])!r}",
                    {"path": join_path(segments)},
                )
            # nothing below a missing level can exist, so build the whole chain
            key = _container_key(current, segment)
            for remaining in segments[position + 1 : -1]:
                nxt = {}
                Resolved(current, key).set(nxt)
                current, key = nxt, remaining
            leaf: dict = {}
            Resolved(current, key).set(leaf)
            return Resolved(leaf, segments[-1])
        if not is_container(nxt):
            raise TypeMismatch(
                f"{join_path(segments[: position + 1])!r} holds a scalar, cannot descend",
                {"path": join_path(segments)},
            )
        current = nxt
    return Resolved(current, _container_key(current, segments[-1]))


def _container_key(container: Any, segment: str) -> Key:
    if is_sequence(container):
        index = _sequence_index(segment)
        if index is None or index > len(container):
            raise TypeMismatch(f"invalid array index {segment!r}")
        return index
    return segment


def get_path(document: Any, path: PathLike, default: Any = None) -> Any:
    if not path:
        return document
    resolved = resolve(document, path)
    if resolved is ABSENT:
        return default
    return resolved.get(default)


def has_path(document: Any, path: PathLike) -> bool:
    resolved = resolve(document, path)
    return resolved is not ABSENT and resolved.exists
