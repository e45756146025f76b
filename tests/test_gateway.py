from __future__ import annotations

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from docmend.errors import InvalidOperation, MissingField, MissingQuery, NotAnArray, NotFound, TypeMismatch
from docmend.gateway import Gateway
from docmend.store import MemoryCollection

FORM_ID = ObjectId("65f0000000000000000000aa")
OTHER_ID = ObjectId("65f0000000000000000000bb")
SECTION_ID = ObjectId("65f000000000000000000001")
QUESTION_ID = ObjectId("65f000000000000000000002")
FIXED_NOW = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)


class _RecordingCollection(MemoryCollection):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.saved_fields = []

    def save(self, document, fields):
        self.saved_fields.append(sorted(fields))
        return super().save(document, fields)


def _base_forms(**kwargs) -> _RecordingCollection:
    return _RecordingCollection(
        "forms",
        [
            {
                "_id": FORM_ID,
                "title": "Intake",
                "tags": ["a", "b"],
                "count": 5,
                "items": [{"k": 1}, {"k": 2}, {"k": 1}],
                "sections": [
                    {"_id": SECTION_ID, "questions": [{"_id": QUESTION_ID, "answers": [], "enum_opts": []}]}
                ],
                "meta": {"rank": 2},
            },
            {"_id": OTHER_ID, "title": "Exit", "tags": [], "meta": {"rank": 1}},
        ],
        **kwargs,
    )


def _gateway() -> Gateway:
    return Gateway(clock=lambda: FIXED_NOW)


def test_append_persists_and_reports_dirty_field():
    forms = _base_forms()
    result = _gateway().execute(forms, {"_id": FORM_ID}, {"tags": {"Append": "c"}}, persist=True)
    assert result.status == "ok"
    assert result.persisted
    assert result.document["tags"] == ["a", "b", "c"]
    assert result.dirty == ["tags"]
    assert forms.get(FORM_ID)["tags"] == ["a", "b", "c"]
    assert forms.saved_fields == [["tags"]]


def test_dry_run_never_saves():
    forms = _base_forms()
    result = _gateway().execute(forms, {"_id": FORM_ID}, {"title": {"Set": "Renamed"}})
    assert result.status == "ok"
    assert not result.persisted
    assert result.document["title"] == "Renamed"
    assert forms.save_calls == 0
    assert forms.get(FORM_ID)["title"] == "Intake"


def test_persistence_failure_still_returns_mutated_document():
    forms = _base_forms(fail_on_save=lambda document: True)
    result = _gateway().execute(forms, {"_id": FORM_ID}, {"title": {"Set": "Renamed"}}, persist=True)
    assert result.status == "failed"
    assert not result.persisted
    assert result.failure["kind"] == "PersistenceFailure"
    assert result.document["title"] == "Renamed"
    assert forms.get(FORM_ID)["title"] == "Intake"


def test_only_dirty_fields_reach_the_store():
    forms = _base_forms()
    _gateway().execute(
        forms,
        {"_id": FORM_ID},
        [
            {"path": "meta.rank", "operation": "Set", "value": 9},
            {"path": "sections.0.questions.0.answers", "operation": "Append", "value": "yes"},
        ],
        persist=True,
    )
    assert forms.saved_fields == [["meta", "sections"]]
    stored = forms.get(FORM_ID)
    assert stored["meta"]["rank"] == 9
    assert stored["sections"][0]["questions"][0]["answers"] == ["yes"]


def test_set_status_on_every_match():
    forms = _base_forms()
    result = _gateway().set_status(forms, {}, "status", "archived", persist=True)
    assert [doc["status"] for doc in result.documents] == [{"code": "archived", "date": FIXED_NOW}] * 2
    assert forms.get(OTHER_ID)["status"]["code"] == "archived"


def test_set_status_on_empty_document():
    blank = MemoryCollection("forms", [{"_id": FORM_ID}])
    result = _gateway().set_status(blank, {"_id": FORM_ID}, "status", "new")
    assert result.document == {"_id": FORM_ID, "status": {"code": "new", "date": FIXED_NOW}}


def test_append_to_scalar_fails_without_saving():
    forms = _base_forms()
    with pytest.raises(TypeMismatch):
        _gateway().execute(forms, {"_id": FORM_ID}, {"count": {"Append": 1}}, persist=True)
    assert forms.save_calls == 0
    assert forms.get(FORM_ID)["count"] == 5


def test_missing_query_and_no_match():
    forms = _base_forms()
    with pytest.raises(MissingQuery):
        _gateway().execute(forms, None, {"title": {"Set": "x"}})
    with pytest.raises(NotFound):
        _gateway().execute(forms, {"title": "nope"}, {"title": {"Set": "x"}})


def test_dedupe_by_key_persists():
    forms = _base_forms()
    result = _gateway().dedupe(forms, {"_id": FORM_ID}, "items", "k", persist=True)
    assert result.document["items"] == [{"k": 1}, {"k": 2}]
    assert result.report["duplicate_count"] == 1
    assert forms.get(FORM_ID)["items"] == [{"k": 1}, {"k": 2}]


def test_find_duplicates_is_read_only():
    forms = _base_forms()
    result = _gateway().find_duplicates(forms, {"_id": FORM_ID}, "items", "k")
    assert result.report["duplicates"] == [{"k": 1}]
    assert forms.save_calls == 0
    with pytest.raises(NotAnArray):
        _gateway().find_duplicates(forms, {"_id": FORM_ID}, "title", "k")


def test_duplicate_reports_new_length():
    forms = _base_forms()
    result = _gateway().duplicate(forms, {"_id": FORM_ID}, "tags", persist=True)
    assert result.report == {"count": 4, "saved": [str(FORM_ID)]}
    assert forms.get(FORM_ID)["tags"] == ["a", "b", "a", "b"]


def test_push_with_identifier_conversion():
    forms = _base_forms()
    member = str(ObjectId())
    result = _gateway().push(forms, {"_id": FORM_ID}, "tags", {"user": member}, ["user"], persist=True)
    assert result.document["tags"][-1] == {"user": ObjectId(member)}


def test_push_to_missing_array_is_clean_noop():
    forms = _base_forms()
    result = _gateway().push(forms, {"_id": FORM_ID}, "nothing", 1, persist=True)
    assert result.status == "ok"
    assert result.dirty == []
    assert forms.save_calls == 0


def test_add_ids_reports_added():
    forms = _base_forms()
    fresh = ObjectId()
    result = _gateway().add_ids(forms, {"_id": FORM_ID}, "members", [str(fresh), str(fresh)], persist=True)
    assert result.report["added"] == [str(fresh)]
    assert forms.get(FORM_ID)["members"] == [fresh]


def test_inject_enum_options_uses_default_language():
    forms = _base_forms()
    result = _gateway().inject(
        forms, {"_id": FORM_ID}, "sections.questions.enum_opts", [str(SECTION_ID), str(QUESTION_ID)], "Blue"
    )
    question = result.document["sections"][0]["questions"][0]
    assert question["enum_opts"] == [[{"text": "Blue", "language": "en"}]]


def test_modify_array_accepts_plain_steps():
    forms = _base_forms()
    result = _gateway().modify_array(
        forms,
        {"_id": FORM_ID},
        [{"field": "items"}, {"field": "label", "new_value": "first", "test_array_field": "k", "test_array_value": 2}],
        persist=True,
    )
    assert result.document["items"][1] == {"k": 2, "label": "first"}
    with pytest.raises(MissingField):
        _gateway().modify_array(forms, {"_id": FORM_ID}, [])


def test_delete_fields_and_array_element():
    forms = _base_forms()
    gateway = _gateway()
    gateway.delete(forms, {"_id": FORM_ID}, fields=["meta.rank", "count"], persist=True)
    stored = forms.get(FORM_ID)
    assert stored["meta"] == {}
    assert "count" not in stored

    result = gateway.delete(
        forms,
        {"_id": FORM_ID},
        by_id_path=[{"field": "sections", "id": str(SECTION_ID)}, {"field": "questions", "id": str(QUESTION_ID)}],
        persist=True,
    )
    assert result.report["removed"]["_id"] == QUESTION_ID
    assert forms.get(FORM_ID)["sections"][0]["questions"] == []


def test_delete_clear_array_and_whole_document():
    forms = _base_forms()
    gateway = _gateway()
    gateway.delete(forms, {"_id": FORM_ID}, clear_array="tags", persist=True)
    assert forms.get(FORM_ID)["tags"] == []

    preview = gateway.delete(forms, {"_id": OTHER_ID}, whole=True)
    assert not preview.persisted
    assert forms.get(OTHER_ID) is not None
    gateway.delete(forms, {"_id": OTHER_ID}, whole=True, persist=True)
    assert forms.get(OTHER_ID) is None


def test_delete_needs_exactly_one_target():
    forms = _base_forms()
    with pytest.raises(InvalidOperation):
        _gateway().delete(forms, {"_id": FORM_ID})
    with pytest.raises(InvalidOperation):
        _gateway().delete(forms, {"_id": FORM_ID}, fields=["title"], clear_array="tags")


def test_translate_moves_on_every_match():
    forms = _base_forms()
    _gateway().translate(forms, {}, [{"from_field": "title", "to_field": "name"}], persist=True)
    assert forms.get(FORM_ID)["name"] == "Intake"
    assert "title" not in forms.get(OTHER_ID)
    with pytest.raises(MissingField):
        _gateway().translate(forms, {}, [])


def test_get_projects_selected_fields():
    forms = _base_forms()
    result = _gateway().get(forms, {"title": "Exit"}, ["meta.rank"])
    assert result.documents == [{"_id": OTHER_ID, "meta": {"rank": 1}}]


def test_unique_values():
    forms = _base_forms()
    assert _gateway().unique_values(forms, {}, "meta.rank").report == {"values": [1, 2]}
    with pytest.raises(MissingField):
        _gateway().unique_values(forms, {}, None)


def test_get_refs_follows_reference_field():
    users = MemoryCollection("users", [{"_id": FORM_ID, "name": "ref"}, {"_id": ObjectId(), "name": "other"}])
    links = MemoryCollection("links", [{"_id": ObjectId(), "user": FORM_ID}, {"_id": ObjectId()}])
    result = _gateway().get_refs(links, {}, "user", users, {})
    assert [doc["name"] for doc in result.documents] == ["ref"]


def test_create_dry_run_and_persist():
    forms = _base_forms()
    preview = _gateway().create(forms, {"title": "New"})
    assert isinstance(preview.document["_id"], ObjectId)
    assert forms.get(preview.document["_id"]) is None

    result = _gateway().create(forms, [{"title": "New"}], persist=True)
    assert result.persisted
    assert forms.get(result.document["_id"])["title"] == "New"


def test_dry_run_matches_persisted_result_on_fresh_fetch():
    changes = [
        {"path": "tags", "operation": "Append", "value": "c"},
        {"path": "meta.rank", "operation": "Set", "value": 7},
        {"path": "status", "operation": "SetStatus", "value": "checked"},
    ]
    preview = _gateway().execute(_base_forms(), {"_id": FORM_ID}, changes)
    forms = _base_forms()
    saved = _gateway().execute(forms, {"_id": FORM_ID}, changes, persist=True)
    assert preview.documents == saved.documents
    assert preview.dirty == saved.dirty
    assert forms.get(FORM_ID) == preview.document


def test_add_ids_creating_empty_array_persists_like_preview():
    preview = _gateway().add_ids(_base_forms(), {"_id": OTHER_ID}, "members", [])
    assert preview.document["members"] == []
    assert preview.dirty == ["members"]

    forms = _base_forms()
    _gateway().add_ids(forms, {"_id": OTHER_ID}, "members", [], persist=True)
    assert forms.get(OTHER_ID)["members"] == []


def test_status_and_clear_array_refuse_identifier():
    forms = _base_forms()
    with pytest.raises(InvalidOperation):
        _gateway().set_status(forms, {"_id": FORM_ID}, "_id", "x", persist=True)
    with pytest.raises(InvalidOperation):
        _gateway().delete(forms, {"_id": FORM_ID}, clear_array="_id", persist=True)
    assert forms.save_calls == 0
    assert len(forms.all()) == 2
    assert forms.get(FORM_ID)["_id"] == FORM_ID


def test_set_identifier_on_id_rekeys_instead_of_copying():
    forms = _base_forms()
    new_id = ObjectId("65f0000000000000000000cc")
    result = _gateway().execute(forms, {"_id": FORM_ID}, {"_id": {"SetIdentifier": str(new_id)}}, persist=True)
    assert result.status == "ok"
    assert len(forms.all()) == 2
    assert forms.get(FORM_ID) is None
    assert forms.get(new_id)["title"] == "Intake"


def test_set_identifier_onto_taken_id_is_persistence_failure():
    forms = _base_forms()
    result = _gateway().execute(forms, {"_id": FORM_ID}, {"_id": {"SetIdentifier": str(OTHER_ID)}}, persist=True)
    assert result.status == "failed"
    assert result.failure["kind"] == "PersistenceFailure"
    assert forms.get(FORM_ID)["title"] == "Intake"
    assert forms.get(OTHER_ID)["title"] == "Exit"


def test_partial_multi_document_save_reports_saved_ids():
    forms = _base_forms(fail_on_save=lambda document: document.id == OTHER_ID)
    result = _gateway().execute(forms, {}, {"x": {"Set": 1}}, persist=True, many=True)
    assert result.status == "partial"
    assert not result.persisted
    assert result.report["saved"] == [str(FORM_ID)]
    assert len(result.report["failures"]) == 1
    assert result.report["failures"][0]["context"]["id"] == str(OTHER_ID)
    assert forms.get(FORM_ID)["x"] == 1
    assert "x" not in forms.get(OTHER_ID)


def test_every_save_failing_is_failed_not_partial():
    forms = _base_forms(fail_on_save=lambda document: True)
    result = _gateway().execute(forms, {}, {"x": {"Set": 1}}, persist=True, many=True)
    assert result.status == "failed"
    assert result.report["saved"] == []
    assert len(result.report["failures"]) == 2
