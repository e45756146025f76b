from __future__ import annotations

from typing import Any, Dict, List, Literal, Mapping, Sequence, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .errors import InvalidOperation, MissingField
from .paths import split_path

OperationTag = Literal["Set", "SetIdentifier", "SetStatus", "Append"]

OPERATION_ALIASES: Dict[str, str] = {
    "Set": "Set",
    "SetIdentifier": "SetIdentifier",
    "SetStatus": "SetStatus",
    "Append": "Append",
    "$set": "Set",
    "$setid": "SetIdentifier",
    "$setstatus": "SetStatus",
    "$push": "Append",
}


class ChangeDescriptor(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str
    operation: OperationTag
    value: Any

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        try:
            split_path(value)
        except InvalidOperation as exc:
            raise ValueError(exc.message) from exc
        return value


RawChanges = Union[Mapping[str, Any], Sequence[Any], None]


def _descriptor_from_pair(path: str, change: Any) -> ChangeDescriptor:
    if not isinstance(change, Mapping) or len(change) != 1:
        raise InvalidOperation(
            f"bad change value for {path}: expected exactly one operation/value pair",
            {"path": path},
        )
    tag, value = next(iter(change.items()))
    operation = OPERATION_ALIASES.get(tag)
    if operation is None:
        raise InvalidOperation(f"unrecognized operation {tag!r} for {path}", {"path": path})
    return _build(path=path, operation=operation, value=value)


def _build(**fields: Any) -> ChangeDescriptor:
    try:
        return ChangeDescriptor.model_validate(fields)
    except ValidationError as exc:
        raise request_error(exc) from exc


def parse_changes(raw: RawChanges) -> List[ChangeDescriptor]:
    """Normalize caller input into an ordered list of change descriptors.

    Accepts the compact mapping form ``{"tags": {"$push": "c"}}`` (insertion
    order is application order) or a list whose items are descriptors or
    ``{"path": ..., "operation": ..., "value": ...}`` mappings. Operation tags
    may use either the canonical names or the ``$``-prefixed aliases.
    """
    if raw is None:
        raise MissingField("changes are required", {"field": "changes"})
    if isinstance(raw, Mapping):
        return [_descriptor_from_pair(path, change) for path, change in raw.items()]

    out: List[ChangeDescriptor] = []
    for item in raw:
        if isinstance(item, ChangeDescriptor):
            out.append(item)
            continue
        if not isinstance(item, Mapping):
            raise InvalidOperation("each change must be an object")
        if "path" not in item:
            raise MissingField("change is missing path", {"field": "path"})
        if "operation" not in item:
            raise InvalidOperation(f"change for {item['path']} has no operation", {"path": item["path"]})
        operation = OPERATION_ALIASES.get(item["operation"])
        if operation is None:
            raise InvalidOperation(
                f"unrecognized operation {item['operation']!r} for {item['path']}",
                {"path": item["path"]},
            )
        out.append(_build(**{**item, "operation": operation}))
    return out


def request_error(exc: ValidationError) -> Union[MissingField, InvalidOperation]:
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(item) for item in first.get("loc", ())]
    reason = str(first.get("msg", "validation error"))[:200]
    context = {"field_path": loc, "reason": reason}
    if first.get("type") == "missing":
        return MissingField(f"missing required field {'.'.join(loc)}", context)
    return InvalidOperation(f"invalid request: {reason}", context)
