from __future__ import annotations

import pytest
from bson import ObjectId

from docmend.errors import InvalidOperation, MissingField, MissingQuery
from docmend.store import MemoryCollection
from docmend.transfer import transfer

ORG_A = ObjectId("65f0000000000000000000a1")
ORG_B = ObjectId("65f0000000000000000000b1")


def _base_sources() -> MemoryCollection:
    return MemoryCollection(
        "orgs",
        [
            {"_id": ORG_A, "code": "north", "branding": {"logo": "north.png"}},
            {"_id": ORG_B, "code": "south", "branding": {"logo": "south.png"}},
            {"_id": ObjectId(), "branding": {"logo": "orphan.png"}},
        ],
    )


def _base_targets(**kwargs) -> MemoryCollection:
    return MemoryCollection(
        "forms",
        [
            {"_id": ObjectId("65f0000000000000000000c1"), "code": "north"},
            {"_id": ObjectId("65f0000000000000000000c2"), "code": "north"},
            {"_id": ObjectId("65f0000000000000000000c3"), "code": "south"},
        ],
        **kwargs,
    )


def test_transfer_copies_into_every_linked_document():
    forms = _base_targets()
    report = transfer(_base_sources(), {}, "code", "branding.logo", forms, "style.logo", persist=True)
    assert report.ok
    assert report.sources == 3
    assert report.links == 3
    assert report.saved == 3
    assert len(report.skipped_sources) == 1
    logos = sorted(doc["style"]["logo"] for doc in forms.all())
    assert logos == ["north.png", "north.png", "south.png"]


def test_transfer_defaults_to_dry_run():
    forms = _base_targets()
    report = transfer(_base_sources(), {"code": "south"}, "code", "branding.logo", forms, "logo")
    assert report.saved == 0
    assert [doc["logo"] for doc in report.previews] == ["south.png"]
    assert forms.save_calls == 0
    assert report.to_dict()["status"] == "ok"


def test_failed_save_is_recorded_and_others_continue():
    reject = ObjectId("65f0000000000000000000c1")
    forms = _base_targets(fail_on_save=lambda document: document.id == reject)
    report = transfer(_base_sources(), {}, "code", "branding.logo", forms, "logo", persist=True)
    assert not report.ok
    assert report.saved == 2
    assert report.failures[0]["stage"] == "save"
    assert report.failures[0]["link"] == str(reject)
    assert report.to_dict()["status"] == "partial"


def test_unwritable_target_is_recorded():
    forms = MemoryCollection("forms", [{"_id": ObjectId(), "code": "north", "style": 7}])
    report = transfer(_base_sources(), {"code": "north"}, "code", "branding.logo", forms, "style.logo")
    assert report.failures[0]["stage"] == "apply"
    assert report.failures[0]["error"]["kind"] == "TypeMismatch"


def test_transfer_requires_query_and_fields():
    with pytest.raises(MissingQuery):
        transfer(_base_sources(), None, "code", "branding.logo", _base_targets(), "logo")
    with pytest.raises(MissingField):
        transfer(_base_sources(), {}, "", "branding.logo", _base_targets(), "logo")


def test_transfer_refuses_identifier_target():
    forms = _base_targets()
    with pytest.raises(InvalidOperation):
        transfer(_base_sources(), {}, "code", "branding.logo", forms, "_id", persist=True)
    assert forms.save_calls == 0


def test_transfer_uses_target_identifier_field():
    forms = MemoryCollection("forms", [{"uid": "f1", "code": "north"}], id_field="uid")
    with pytest.raises(InvalidOperation):
        transfer(_base_sources(), {}, "code", "branding.logo", forms, "uid")
    report = transfer(_base_sources(), {"code": "north"}, "code", "branding.logo", forms, "_id", persist=True)
    assert report.saved == 1
    assert forms.get("f1")["_id"] == "north.png"
