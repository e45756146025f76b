# docmend/docmend/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


def failure(kind: str, message: str, *, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"kind": kind, "message": message}
    if context:
        payload["context"] = context
    return payload


class MendError(Exception):
    """Base class for all errors raised by the mutation engine."""

    kind = "MendError"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    def to_failure(self) -> Dict[str, Any]:
        return failure(self.kind, self.message, context=self.context)

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class MissingQuery(MendError):
    kind = "MissingQuery"


class MissingField(MendError):
    """A required request field is absent."""

    kind = "MissingField"


class NotFound(MendError):
    """Zero documents (or array elements) matched where one was required."""

    kind = "NotFound"


class TypeMismatch(MendError):
    kind = "TypeMismatch"


class InvalidOperation(MendError):
    kind = "InvalidOperation"


class InvalidIdentifier(MendError):
    kind = "InvalidIdentifier"


class NotAnArray(MendError):
    kind = "NotAnArray"


class PersistenceFailure(MendError):
    """The store rejected a save. The store exception is kept as ``__cause__``."""

    kind = "PersistenceFailure"

    def __init__(self, message: str, cause: BaseException, context: Optional[Dict[str, Any]] = None):
        merged = dict(context or {})
        merged["cause"] = repr(cause)
        super().__init__(message, merged)
        self.__cause__ = cause


ERROR_KINDS = {
    cls.kind: cls
    for cls in (
        MissingQuery,
        MissingField,
        NotFound,
        TypeMismatch,
        InvalidOperation,
        InvalidIdentifier,
        NotAnArray,
        PersistenceFailure,
    )
}
