from __future__ import annotations

from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId

from .errors import InvalidIdentifier

ID_FIELD = "_id"


def to_object_id(value: Any) -> ObjectId:
    """Convert ``value`` to the store identifier type.

    Accepts an existing ``ObjectId``, a 24-char hex string or 12 raw bytes.
    Anything else raises ``InvalidIdentifier``.
    """
    if isinstance(value, ObjectId):
        return value
    if value is None:
        # ObjectId(None) would mint a fresh id
        raise InvalidIdentifier("identifier value is missing", {"value": "None"})
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as exc:
        raise InvalidIdentifier(
            f"cannot convert {value!r} to an identifier", {"value": repr(value)}
        ) from exc


def new_object_id() -> ObjectId:
    return ObjectId()


def is_identifier(value: Any) -> bool:
    return isinstance(value, ObjectId)


def id_key(value: Any) -> Optional[str]:
    """Stringified comparison key, ``None`` when the value carries no key."""
    if value is None:
        return None
    return str(value)


def ids_equal(left: Any, right: Any) -> bool:
    # ObjectId("...") == "..." is False, so compare through the string form
    if left is None or right is None:
        return False
    if is_identifier(left) or is_identifier(right):
        return str(left) == str(right)
    return left == right


def element_id(element: Any, id_field: str = ID_FIELD) -> Any:
    if isinstance(element, dict):
        return element.get(id_field)
    return None
