from __future__ import annotations

import pytest
from bson import ObjectId

from docmend.errors import ERROR_KINDS, InvalidIdentifier, NotFound, PersistenceFailure
from docmend.ids import ids_equal, to_object_id


def test_to_object_id_accepts_hex_and_object_ids():
    oid = ObjectId()
    assert to_object_id(oid) is oid
    assert to_object_id(str(oid)) == oid


@pytest.mark.parametrize("value", ["xyz", 42, None, "65f00000000000000000000"])
def test_to_object_id_rejects_junk(value):
    with pytest.raises(InvalidIdentifier):
        to_object_id(value)


def test_ids_equal_across_string_and_object_id():
    oid = ObjectId()
    assert ids_equal(oid, str(oid))
    assert ids_equal("a", "a")
    assert not ids_equal(None, None)


def test_error_payloads():
    err = NotFound("no such form", {"query": "{}"})
    assert err.to_failure() == {"kind": "NotFound", "message": "no such form", "context": {"query": "{}"}}
    assert str(err) == "NotFound: no such form"
    assert set(ERROR_KINDS) >= {"MissingQuery", "NotAnArray", "PersistenceFailure"}


def test_persistence_failure_keeps_cause():
    cause = TimeoutError("store timed out")
    err = PersistenceFailure("save failed", cause)
    assert err.__cause__ is cause
    assert err.context["cause"] == repr(cause)
