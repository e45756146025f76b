from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Set, Union

from pydantic import BaseModel, ConfigDict

from . import arrays
from .apply import Clock, apply_changes, delete_fields, move_value
from .changes import RawChanges, parse_changes
from .config import Settings
from .dirty import DirtySet, notify
from .errors import (
    InvalidOperation,
    MendError,
    MissingField,
    MissingQuery,
    NotFound,
    PersistenceFailure,
)
from .ids import id_key, new_object_id
from .paths import ABSENT, get_path
from .schemas import FieldQueryStepV1, IdPathStepV1, MoveV1, Query, parse_request
from .store import CollectionHandle, TrackedDocument, project

logger = logging.getLogger(__name__)

Edit = Callable[[Dict[str, Any]], DirtySet]


ResultStatus = Literal["ok", "partial", "failed"]


class GatewayResult(BaseModel):
    """Outcome of one gateway call.

    ``persisted`` is true only when every write landed. A ``partial`` status
    means some documents were saved; ``report["saved"]`` lists their ids.
    """

    model_config = ConfigDict(extra="forbid")

    status: ResultStatus
    persisted: bool
    documents: List[Dict[str, Any]]
    dirty: List[str]
    failure: Optional[Dict[str, Any]] = None
    report: Optional[Dict[str, Any]] = None

    @property
    def document(self) -> Dict[str, Any]:
        if len(self.documents) != 1:
            raise ValueError(f"result holds {len(self.documents)} documents, not one")
        return self.documents[0]


def _as_list(value: Union[Sequence[Any], Any]) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _steps(model: Any, raw: Sequence[Any]) -> List[Any]:
    return [item if isinstance(item, model) else parse_request(model, item) for item in raw]


class Gateway:
    """Resolve target documents, run one edit on each, and persist or preview.

    Every operation takes ``persist``; when it is false the store's write path
    is never called and the in-memory result is returned as a preview.
    """

    def __init__(self, settings: Optional[Settings] = None, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings or Settings()
        self.clock = clock

    @property
    def id_field(self) -> str:
        return self.settings.id_field

    # -------------------------------------------------------------------------
    # core
    # -------------------------------------------------------------------------
    def _targets(self, collection: CollectionHandle, query: Optional[Query], many: bool) -> List[TrackedDocument]:
        if query is None:
            raise MissingQuery("missing query")
        if many:
            return collection.find(query)
        document = collection.find_one(query)
        if document is None:
            raise NotFound(f"no document in {collection.name} matches the query", {"query": repr(query)})
        return [document]

    def _run(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        edit: Edit,
        *,
        persist: bool,
        many: bool = False,
        report: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult:
        documents = self._targets(collection, query, many)
        # every edit completes before anything is written
        dirty_sets = [edit(document.data) for document in documents]
        touched: Set[str] = set()
        for dirty in dirty_sets:
            touched.update(dirty.fields)

        if not persist:
            logger.info(
                "dry run on %s: %d document(s), dirty=%s", collection.name, len(documents), sorted(touched)
            )
            return GatewayResult(
                status="ok",
                persisted=False,
                documents=[document.to_dict() for document in documents],
                dirty=sorted(touched),
                report=report,
            )

        failures: List[Dict[str, Any]] = []
        saved: List[str] = []
        for document, dirty in zip(documents, dirty_sets):
            if not dirty:
                continue
            failure = self._save(collection, document, dirty)
            if failure is not None:
                failures.append(failure.to_failure())
            else:
                saved.append(str(document.id))

        report = dict(report or {})
        report["saved"] = saved
        if failures:
            report["failures"] = failures
        status: ResultStatus = "ok"
        if failures:
            status = "partial" if saved else "failed"
        return GatewayResult(
            status=status,
            persisted=not failures,
            documents=[document.to_dict() for document in documents],
            dirty=sorted(touched),
            failure=failures[0] if failures else None,
            report=report,
        )

    def _save(
        self, collection: CollectionHandle, document: TrackedDocument, dirty: DirtySet
    ) -> Optional[PersistenceFailure]:
        fields = notify(document, dirty)
        try:
            collection.save(document, fields)
        except MendError:
            raise
        except Exception as exc:
            logger.error("save of %s %s failed: %r", collection.name, document.id, exc)
            return PersistenceFailure(
                f"saving {collection.name} {document.id!s} failed",
                exc,
                {"collection": collection.name, "id": str(document.id), "fields": sorted(fields)},
            )
        return None

    def execute(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        changes: RawChanges,
        persist: bool = False,
        *,
        many: bool = False,
    ) -> GatewayResult:
        """Apply change descriptors to the matched document (or every match when ``many``)."""
        descriptors = parse_changes(changes)

        def edit(data: Dict[str, Any]) -> DirtySet:
            return apply_changes(data, descriptors, id_field=self.id_field, clock=self.clock)

        return self._run(collection, query, edit, persist=persist, many=many)

    def set_status(
        self, collection: CollectionHandle, query: Optional[Query], path: str, code: Any, persist: bool = False
    ) -> GatewayResult:
        return self.execute(
            collection,
            query,
            [{"path": path, "operation": "SetStatus", "value": code}],
            persist,
            many=True,
        )

    # -------------------------------------------------------------------------
    # array operations
    # -------------------------------------------------------------------------
    def push(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        field: str,
        value: Any,
        id_values: Union[str, Sequence[str], None] = None,
        persist: bool = False,
    ) -> GatewayResult:
        def edit(data: Dict[str, Any]) -> DirtySet:
            return arrays.push_value(data, field, value, id_values, id_field=self.id_field)

        return self._run(collection, query, edit, persist=persist)

    def add_ids(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        field: str,
        id_values: Sequence[Any],
        persist: bool = False,
    ) -> GatewayResult:
        report: Dict[str, Any] = {}

        def edit(data: Dict[str, Any]) -> DirtySet:
            dirty, added = arrays.add_unique_ids(data, field, id_values, id_field=self.id_field)
            report["added"] = [str(oid) for oid in added]
            return dirty

        return self._run(collection, query, edit, persist=persist, report=report)

    def inject(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        field: str,
        field_ids: Union[str, Sequence[Any], None],
        data: Any,
        persist: bool = False,
    ) -> GatewayResult:
        items = _as_list(data)

        def edit(doc: Dict[str, Any]) -> DirtySet:
            return arrays.inject(
                doc, field, field_ids, items, language=self.settings.default_language, id_field=self.id_field
            )

        return self._run(collection, query, edit, persist=persist)

    def duplicate(
        self, collection: CollectionHandle, query: Optional[Query], array_field: str, persist: bool = False
    ) -> GatewayResult:
        report: Dict[str, Any] = {}

        def edit(data: Dict[str, Any]) -> DirtySet:
            dirty, count = arrays.duplicate_elements(data, array_field, id_field=self.id_field)
            report["count"] = count
            return dirty

        return self._run(collection, query, edit, persist=persist, report=report)

    def dedupe(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        array_field: str,
        unique_field: Optional[str] = None,
        persist: bool = False,
    ) -> GatewayResult:
        report: Dict[str, Any] = {}

        def edit(data: Dict[str, Any]) -> DirtySet:
            dirty, found = arrays.remove_duplicates(data, array_field, unique_field, id_field=self.id_field)
            report.update(found.to_dict())
            return dirty

        return self._run(collection, query, edit, persist=persist, report=report)

    def find_duplicates(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        array_field: str,
        unique_field: Optional[str] = None,
    ) -> GatewayResult:
        """Report duplicates without mutating; never writes."""
        document = self._targets(collection, query, many=False)[0]
        found = arrays.find_duplicates(document.data, array_field, unique_field, id_field=self.id_field)
        return GatewayResult(
            status="ok", persisted=False, documents=[], dirty=[], report=found.to_dict()
        )

    def modify_array(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        field_query: Sequence[Union[FieldQueryStepV1, Dict[str, Any]]],
        persist: bool = False,
    ) -> GatewayResult:
        if not field_query:
            raise MissingField("field_query must list at least one step", {"field": "field_query"})
        steps = _steps(FieldQueryStepV1, field_query)

        def edit(data: Dict[str, Any]) -> DirtySet:
            return arrays.modify_array_value(data, steps, id_field=self.id_field)

        return self._run(collection, query, edit, persist=persist)

    # -------------------------------------------------------------------------
    # field edits
    # -------------------------------------------------------------------------
    def delete(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        *,
        fields: Optional[Sequence[str]] = None,
        by_id_path: Optional[Sequence[Union[IdPathStepV1, Dict[str, Any]]]] = None,
        clear_array: Optional[str] = None,
        whole: bool = False,
        persist: bool = False,
    ) -> GatewayResult:
        """Delete exactly one kind of target from the matched document."""
        selected = [name for name, value in (
            ("fields", fields), ("by_id_path", by_id_path), ("clear_array", clear_array), ("whole", whole)
        ) if value]
        if not selected:
            raise InvalidOperation("nothing to delete")
        if len(selected) > 1:
            raise InvalidOperation(f"delete takes one target, got {', '.join(selected)}")

        if whole:
            return self._delete_document(collection, query, persist)

        report: Dict[str, Any] = {}
        if fields:
            def edit(data: Dict[str, Any]) -> DirtySet:
                return delete_fields(data, fields, id_field=self.id_field)
        elif by_id_path:
            steps = _steps(IdPathStepV1, by_id_path)

            def edit(data: Dict[str, Any]) -> DirtySet:
                dirty, removed = arrays.remove_by_id_path(data, steps, id_field=self.id_field)
                report["removed"] = copy.deepcopy(removed)
                return dirty
        else:
            def edit(data: Dict[str, Any]) -> DirtySet:
                return arrays.clear_array(data, clear_array, id_field=self.id_field)

        return self._run(collection, query, edit, persist=persist, report=report if by_id_path else None)

    def _delete_document(
        self, collection: CollectionHandle, query: Optional[Query], persist: bool
    ) -> GatewayResult:
        document = self._targets(collection, query, many=False)[0]
        snapshot = document.to_dict()
        if not persist:
            return GatewayResult(status="ok", persisted=False, documents=[snapshot], dirty=[])
        try:
            collection.delete(document)
        except Exception as exc:
            logger.error("delete of %s %s failed: %r", collection.name, document.id, exc)
            failure = PersistenceFailure(f"deleting {collection.name} {document.id!s} failed", exc)
            return GatewayResult(
                status="failed", persisted=False, documents=[snapshot], dirty=[], failure=failure.to_failure()
            )
        return GatewayResult(status="ok", persisted=True, documents=[snapshot], dirty=[])

    def translate(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        moves: Sequence[Union[MoveV1, Dict[str, Any]]],
        persist: bool = False,
    ) -> GatewayResult:
        """Move values between dotted paths on every matching document."""
        if not moves:
            raise MissingField("moves must list at least one move", {"field": "moves"})
        steps = _steps(MoveV1, moves)

        def edit(data: Dict[str, Any]) -> DirtySet:
            dirty = DirtySet()
            for move in steps:
                dirty.update(move_value(data, move.from_field, move.to_field, id_field=self.id_field))
            return dirty

        return self._run(collection, query, edit, persist=persist, many=True)

    # -------------------------------------------------------------------------
    # reads and inserts
    # -------------------------------------------------------------------------
    def get(
        self, collection: CollectionHandle, query: Optional[Query], select: Optional[Sequence[str]] = None
    ) -> GatewayResult:
        documents = self._targets(collection, query, many=True)
        return GatewayResult(
            status="ok",
            persisted=False,
            documents=[project(document.data, select, self.id_field) for document in documents],
            dirty=[],
        )

    def unique_values(
        self, collection: CollectionHandle, query: Optional[Query], selection: Optional[str]
    ) -> GatewayResult:
        if not selection:
            raise MissingField("missing selection", {"field": "selection"})
        documents = self._targets(collection, query, many=True)
        seen: Dict[str, Any] = {}
        for document in documents:
            value = get_path(document.data, selection)
            seen.setdefault(repr(value), value)
        values = sorted(seen.values(), key=lambda value: (value is not None, type(value).__name__, str(value)))
        return GatewayResult(status="ok", persisted=False, documents=[], dirty=[], report={"values": values})

    def get_refs(
        self,
        collection: CollectionHandle,
        query: Optional[Query],
        ref_field: Optional[str],
        ref_collection: CollectionHandle,
        ref_query: Optional[Query],
    ) -> GatewayResult:
        if not ref_field:
            raise MissingField("missing ref_field", {"field": "ref_field"})
        if ref_query is None:
            raise MissingField("missing ref_query", {"field": "ref_query"})
        documents = self._targets(collection, query, many=True)
        refs: Dict[str, Any] = {}
        for document in documents:
            value = get_path(document.data, ref_field, ABSENT)
            if value is ABSENT or value is None:
                continue
            refs.setdefault(id_key(value), value)
        combined = dict(ref_query)
        combined[ref_collection.id_field] = {"$in": list(refs.values())}
        return self.get(ref_collection, combined)

    def create(
        self,
        collection: CollectionHandle,
        documents: Union[Dict[str, Any], Sequence[Dict[str, Any]]],
        persist: bool = False,
    ) -> GatewayResult:
        payload = [copy.deepcopy(doc) for doc in _as_list(documents)]
        if not payload:
            raise MissingField("no documents to create", {"field": "documents"})
        for doc in payload:
            if doc.get(self.id_field) is None:
                doc[self.id_field] = new_object_id()
        if not persist:
            return GatewayResult(status="ok", persisted=False, documents=payload, dirty=[])
        try:
            created = collection.create(payload)
        except Exception as exc:
            logger.error("create in %s failed: %r", collection.name, exc)
            failure = PersistenceFailure(f"creating documents in {collection.name} failed", exc)
            return GatewayResult(
                status="failed", persisted=False, documents=payload, dirty=[], failure=failure.to_failure()
            )
        return GatewayResult(
            status="ok", persisted=True, documents=[document.to_dict() for document in created], dirty=[]
        )
