from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Sequence, Union

from .changes import ChangeDescriptor, RawChanges, parse_changes
from .dirty import DirtySet
from .errors import InvalidOperation, MendError, TypeMismatch
from .ids import ID_FIELD, to_object_id
from .paths import ABSENT, is_sequence, resolve, resolve_for_write, split_path

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def status_record(code: Any, clock: Optional[Clock] = None) -> Dict[str, Any]:
    return {"code": code, "date": (clock or utcnow)()}


def _guard_identity(change: ChangeDescriptor, id_field: str) -> None:
    if split_path(change.path) == [id_field]:
        raise InvalidOperation(
            f"{change.operation} may not rewrite {id_field}; use SetIdentifier",
            {"path": change.path},
        )


def _set(document: Any, path: str, value: Any, id_field: str) -> None:
    resolve_for_write(document, path, create_missing=1, id_field=id_field).set(value)


def _append(document: Any, path: str, value: Any, id_field: str) -> None:
    resolved = resolve(document, path, id_field=id_field)
    if resolved is not ABSENT and resolved.exists:
        target = resolved.get()
        if not is_sequence(target):
            raise TypeMismatch(f"{path} is not an array", {"path": path})
        target.append(value)
        return
    resolve_for_write(document, path, create_missing=None, id_field=id_field).set([value])


def apply_change(
    document: Any,
    change: ChangeDescriptor,
    *,
    id_field: str = ID_FIELD,
    clock: Optional[Clock] = None,
) -> None:
    value = copy.deepcopy(change.value)
    if change.operation == "Set":
        _guard_identity(change, id_field)
        _set(document, change.path, value, id_field)
    elif change.operation == "SetIdentifier":
        _set(document, change.path, to_object_id(value), id_field)
    elif change.operation == "SetStatus":
        _guard_identity(change, id_field)
        _set(document, change.path, status_record(value, clock), id_field)
    elif change.operation == "Append":
        _guard_identity(change, id_field)
        _append(document, change.path, value, id_field)
    else:
        raise InvalidOperation(f"unrecognized operation {change.operation!r}", {"path": change.path})


def apply_changes(
    document: Any,
    changes: Union[RawChanges, Sequence[ChangeDescriptor]],
    *,
    id_field: str = ID_FIELD,
    clock: Optional[Clock] = None,
) -> DirtySet:
    """Apply change descriptors to ``document`` in order and return the Dirty Set.

    Not atomic: when a change fails the earlier ones stay applied and the
    error carries ``context["applied"]`` (how many succeeded) and
    ``context["dirty"]``. A document that failed here must not be persisted.
    """
    descriptors = parse_changes(changes)
    dirty = DirtySet()
    for applied, change in enumerate(descriptors):
        try:
            apply_change(document, change, id_field=id_field, clock=clock)
        except MendError as exc:
            exc.context.setdefault("applied", applied)
            exc.context.setdefault("dirty", sorted(dirty.fields))
            raise
        dirty.touch(change.path)
    return dirty


def delete_fields(document: Any, fields: Sequence[str], *, id_field: str = ID_FIELD) -> DirtySet:
    """Remove dotted ``fields``; absent ones are skipped but still reported dirty."""
    dirty = DirtySet()
    for path in fields:
        if split_path(path) == [id_field]:
            raise InvalidOperation(f"cannot delete {id_field}", {"path": path})
        resolved = resolve(document, path, id_field=id_field)
        if resolved is not ABSENT:
            resolved.delete()
        dirty.touch(path)
    return dirty


def move_value(document: Any, from_path: str, to_path: str, *, id_field: str = ID_FIELD) -> DirtySet:
    """Move the value at ``from_path`` to ``to_path``.

    The source is always removed. The destination is written only when its
    parent exists and the moved value is not ``None``.
    """
    for path in (from_path, to_path):
        if split_path(path) == [id_field]:
            raise InvalidOperation(f"cannot move {id_field}", {"path": path})
    dirty = DirtySet()
    dirty.touch(from_path)
    dirty.touch(to_path)

    source = resolve(document, from_path, id_field=id_field)
    value = source.delete() if source is not ABSENT else ABSENT
    if value is ABSENT or value is None:
        return dirty
    destination = resolve(document, to_path, id_field=id_field)
    if destination is not ABSENT:
        destination.set(value)
    return dirty
