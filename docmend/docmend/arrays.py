from __future__ import annotations

"""Edits scoped to one array-valued field of one document.

Every operation returns the Dirty Set of what it touched. Push and inject are
no-ops on an absent or non-array field; duplicate and deduplicate raise
``NotAnArray`` there because their callers expect a count back.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from .dirty import DirtySet
from .errors import InvalidOperation, MissingField, NotAnArray, NotFound, TypeMismatch
from .ids import ID_FIELD, id_key, ids_equal, new_object_id, to_object_id
from .paths import ABSENT, is_mapping, is_sequence, resolve, resolve_for_write, split_ids, split_path
from .schemas import FieldQueryStepV1, IdPathStepV1

# Injecting into this field wraps each scalar as localized text. Only this name.
ENUM_OPTIONS_FIELD = "enum_opts"

NEW_ID_MARKER = "newID"


@dataclass
class DuplicateReport:
    original_count: int
    unique_count: int
    duplicates: List[Any] = field(default_factory=list)
    unkeyed_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_count": self.original_count,
            "unique_count": self.unique_count,
            "duplicate_count": len(self.duplicates),
            "unkeyed_count": self.unkeyed_count,
            "duplicates": self.duplicates,
        }


def _array_at(document: Any, path: str, id_field: str) -> Any:
    resolved = resolve(document, path, id_field=id_field)
    if resolved is ABSENT:
        return ABSENT
    return resolved.get()


def _require_array(document: Any, path: str, id_field: str) -> List[Any]:
    array = _array_at(document, path, id_field)
    if not is_sequence(array):
        raise NotAnArray(f"{path} is not an array", {"field": path})
    return array


def push_value(
    document: Any,
    path: str,
    value: Any,
    id_values: Union[str, Sequence[str], None] = None,
    *,
    id_field: str = ID_FIELD,
) -> DirtySet:
    """Append ``value`` to the array at ``path``.

    ``id_values="object"`` converts the value itself to an identifier; a list
    of names converts those sub-fields of a mapping value.
    """
    array = _array_at(document, path, id_field)
    if not is_sequence(array):
        return DirtySet()

    value = copy.deepcopy(value)
    if id_values == "object":
        value = to_object_id(value)
    elif id_values:
        if not is_mapping(value):
            raise TypeMismatch("id_values names sub-fields but the value is not an object")
        for name in id_values:
            if name not in value:
                raise MissingField(f"value has no {name} to convert", {"field": name})
            value[name] = to_object_id(value[name])

    array.append(value)
    dirty = DirtySet()
    dirty.touch(path)
    return dirty


def localized_text(text: Any, language: str) -> List[Dict[str, Any]]:
    return [{"text": text, "language": language}]


def inject(
    document: Any,
    path: str,
    ids: Union[str, Sequence[Any], None],
    data: Sequence[Any],
    *,
    language: str = "en",
    id_field: str = ID_FIELD,
) -> DirtySet:
    """Append ``data`` to a nested array reached by alternating field/identifier steps.

    ``path="sections.questions.answers"`` with ``ids="s1.q7"`` descends into the
    section whose identifier is ``s1``, then its question ``q7``, and appends to
    that question's ``answers``.
    """
    segments = split_path(path)
    selectors = split_ids(ids)
    if len(selectors) >= len(segments) and selectors[len(segments) - 1] is not None:
        raise InvalidOperation("inject target must be an array field, not an element", {"path": path})

    resolved = resolve(document, segments, selectors, id_field=id_field)
    if resolved is ABSENT:
        return DirtySet()
    target = resolved.get()
    if not is_sequence(target):
        return DirtySet()

    items = [copy.deepcopy(item) for item in data]
    if segments[-1] == ENUM_OPTIONS_FIELD:
        items = [localized_text(item, language) for item in items]
    target.extend(items)

    dirty = DirtySet()
    dirty.touch(segments)
    return dirty


def duplicate_elements(document: Any, path: str, *, id_field: str = ID_FIELD) -> Tuple[DirtySet, int]:
    """Append a deep copy of every element, doubling the array. Returns the new length."""
    array = _require_array(document, path, id_field)
    array.extend([copy.deepcopy(element) for element in array])
    dirty = DirtySet()
    dirty.touch(path)
    return dirty, len(array)


def element_key(element: Any, key_field: Optional[str] = None, id_field: str = ID_FIELD) -> Optional[str]:
    if key_field is None:
        if is_mapping(element):
            return id_key(element.get(id_field))
        return id_key(element)
    if is_mapping(element):
        return id_key(element.get(key_field))
    return None


def _scan(array: Sequence[Any], key_field: Optional[str], id_field: str) -> Tuple[List[Any], DuplicateReport]:
    seen: Set[str] = set()
    kept: List[Any] = []
    report = DuplicateReport(original_count=len(array), unique_count=0)
    for element in array:
        key = element_key(element, key_field, id_field)
        if key is None:
            report.unkeyed_count += 1
            kept.append(element)
        elif key in seen:
            report.duplicates.append(element)
        else:
            seen.add(key)
            kept.append(element)
    report.unique_count = len(seen)
    return kept, report


def find_duplicates(
    document: Any, path: str, key_field: Optional[str] = None, *, id_field: str = ID_FIELD
) -> DuplicateReport:
    array = _require_array(document, path, id_field)
    _, report = _scan(array, key_field, id_field)
    return report


def remove_duplicates(
    document: Any, path: str, key_field: Optional[str] = None, *, id_field: str = ID_FIELD
) -> Tuple[DirtySet, DuplicateReport]:
    """Keep the first element per key in original order; unkeyed elements always stay."""
    array = _require_array(document, path, id_field)
    kept, report = _scan(array, key_field, id_field)
    array[:] = kept
    dirty = DirtySet()
    dirty.touch(path)
    return dirty, report


def add_unique_ids(
    document: Any, path: str, id_values: Sequence[Any], *, id_field: str = ID_FIELD
) -> Tuple[DirtySet, List[Any]]:
    """Append each identifier not already present in the id array at ``path``."""
    converted = [to_object_id(value) for value in id_values]
    array = _array_at(document, path, id_field)
    created = array is ABSENT
    if created:
        array = []
        resolve_for_write(document, path, create_missing=None, id_field=id_field).set(array)
    elif not is_sequence(array):
        raise TypeMismatch(f"{path} is not an array", {"path": path})

    added: List[Any] = []
    for oid in converted:
        if any(ids_equal(existing, oid) for existing in array):
            continue
        array.append(oid)
        added.append(oid)
    dirty = DirtySet()
    if added or created:
        dirty.touch(path)
    return dirty, added


def remove_by_id_path(
    document: Any, steps: Sequence[IdPathStepV1], *, id_field: str = ID_FIELD
) -> Tuple[DirtySet, Any]:
    """Descend by field/identifier steps and remove the final element from its array."""
    if not steps:
        raise MissingField("by_id_path needs at least one step", {"field": "by_id_path"})
    path = [step.field for step in steps]
    ids = [step.id for step in steps]
    resolved = resolve(document, path, ids, id_field=id_field)
    if resolved is ABSENT or not resolved.exists:
        raise NotFound(f"nothing at {'.'.join(path)}", {"path": ".".join(path)})
    if not is_sequence(resolved.container):
        raise TypeMismatch(
            f"cannot remove {'.'.join(path)}: parent container is not an array",
            {"path": ".".join(path)},
        )
    removed = resolved.delete()
    dirty = DirtySet()
    dirty.touch(path)
    return dirty, removed


def clear_array(document: Any, path: str, *, id_field: str = ID_FIELD) -> DirtySet:
    if split_path(path) == [id_field]:
        raise InvalidOperation(f"cannot clear {id_field}", {"path": path})
    resolve_for_write(document, path, create_missing=1, id_field=id_field).set([])
    dirty = DirtySet()
    dirty.touch(path)
    return dirty


def _matches(element: Any, step: FieldQueryStepV1) -> bool:
    if not is_mapping(element):
        return False
    return ids_equal(element.get(step.test_array_field), step.test_array_value)


def modify_array_value(
    document: Any, field_query: Sequence[FieldQueryStepV1], *, id_field: str = ID_FIELD
) -> DirtySet:
    """Walk ``field_query``; steps without ``new_value`` descend, steps with one edit.

    An editing step picks the element of the current array whose
    ``test_array_field`` equals ``test_array_value`` and sets its ``field``.
    """
    if not field_query:
        raise MissingField("field_query must list at least one step", {"field": "field_query"})

    current = document
    walked: List[str] = []
    for step in field_query:
        if step.new_value is None:
            if not is_mapping(current) or step.field not in current:
                raise NotFound(f"no field {step.field!r} under {'.'.join(walked) or '<root>'}")
            current = current[step.field]
            walked.append(step.field)
            continue

        if not is_sequence(current):
            raise TypeMismatch(f"{'.'.join(walked) or '<root>'} is not an array")
        target = next((element for element in current if _matches(element, step)), None)
        if target is None:
            raise NotFound(
                f"no element of {'.'.join(walked)} has {step.test_array_field} == {step.test_array_value!s}",
                {"path": ".".join(walked), "field": step.test_array_field},
            )
        if step.new_value == NEW_ID_MARKER:
            target[step.field] = new_object_id()
        elif step.object_id:
            target[step.field] = to_object_id(step.new_value)
        else:
            target[step.field] = copy.deepcopy(step.new_value)

    dirty = DirtySet()
    dirty.touch(field_query[0].field)
    return dirty
