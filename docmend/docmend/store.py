from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import (
    AbstractSet,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Set,
    Union,
    runtime_checkable,
)

from bson import json_util

from .ids import ID_FIELD, id_key, ids_equal, new_object_id
from .paths import ABSENT, get_path, is_sequence, resolve

logger = logging.getLogger(__name__)

Filter = Mapping[str, Any]


class StoreError(Exception):
    """Raised by a collection handle when a write is rejected."""


class TrackedDocument:
    """A fetched document plus the top-level fields flagged as changed.

    The store cannot see in-place edits (array splices, nested rewrites) on its
    own; anything not flagged through ``mark_modified`` is not written.
    """

    def __init__(self, data: Dict[str, Any], id_field: str = ID_FIELD) -> None:
        self.data = data
        self.id_field = id_field
        # identity the store knows the document by, even after SetIdentifier
        self.original_id = data.get(id_field)
        self._modified: Set[str] = set()

    @property
    def id(self) -> Any:
        return self.data.get(self.id_field)

    def mark_modified(self, field: str) -> None:
        self._modified.add(field)

    def is_modified(self, field: str) -> bool:
        return field in self._modified

    @property
    def modified_fields(self) -> frozenset:
        return frozenset(self._modified)

    def clear_modified(self) -> None:
        self._modified.clear()

    @property
    def id_changed(self) -> bool:
        return self.original_id is not None and not ids_equal(self.original_id, self.id)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)

    def __repr__(self) -> str:
        return f"TrackedDocument({self.id_field}={self.id!s})"


@runtime_checkable
class CollectionHandle(Protocol):
    name: str
    id_field: str

    def find(self, filter: Filter) -> List[TrackedDocument]: ...

    def find_one(self, filter: Filter) -> Optional[TrackedDocument]: ...

    def save(self, document: TrackedDocument, fields: AbstractSet[str]) -> TrackedDocument: ...

    def create(self, documents: Iterable[Dict[str, Any]]) -> List[TrackedDocument]: ...

    def delete(self, document: TrackedDocument) -> None: ...


# =========================
# Filter evaluation
# =========================
def _values_equal(actual: Any, expected: Any) -> bool:
    if is_sequence(actual) and not is_sequence(expected):
        return any(ids_equal(item, expected) for item in actual)
    return ids_equal(actual, expected) or actual == expected


def _eval_operator(actual: Any, op: str, arg: Any) -> bool:
    if op == "$eq":
        return _values_equal(actual, arg)
    if op == "$ne":
        return not _values_equal(actual, arg)
    if op == "$in":
        return any(_values_equal(actual, item) for item in arg)
    if op == "$nin":
        return not any(_values_equal(actual, item) for item in arg)
    if op == "$exists":
        return (actual is not ABSENT) == bool(arg)
    raise ValueError(f"unsupported filter operator: {op}")


def matches(document: Mapping[str, Any], filter: Filter) -> bool:
    """Evaluate an operator filter against a plain document.

    Supports dotted-path equality (array fields match by membership), the
    ``$eq``/``$ne``/``$in``/``$nin``/``$exists`` operators, and ``$and``/``$or``.
    """
    for key, cond in filter.items():
        if key == "$and":
            if not all(matches(document, clause) for clause in cond):
                return False
            continue
        if key == "$or":
            if not any(matches(document, clause) for clause in cond):
                return False
            continue
        resolved = resolve(document, key)
        actual = resolved.get() if resolved is not ABSENT else ABSENT
        if isinstance(cond, Mapping) and cond and all(str(op).startswith("$") for op in cond):
            if not all(_eval_operator(actual, op, arg) for op, arg in cond.items()):
                return False
        elif actual is ABSENT or not _values_equal(actual, cond):
            return False
    return True


# =========================
# In-memory collection
# =========================
class MemoryCollection:
    """Dict-backed collection handle.

    Reads and writes deep-copy, so a dry-run edit of a fetched document never
    reaches the stored copy. ``save`` writes only the fields it is given.
    """

    def __init__(
        self,
        name: str,
        documents: Iterable[Dict[str, Any]] = (),
        *,
        id_field: str = ID_FIELD,
        fail_on_save: Optional[Callable[[TrackedDocument], bool]] = None,
        on_change: Optional[Callable[["MemoryCollection"], None]] = None,
    ) -> None:
        self.name = name
        self.id_field = id_field
        self.fail_on_save = fail_on_save
        self.on_change = on_change
        self.save_calls = 0
        self._docs: Dict[str, Dict[str, Any]] = {}
        for doc in documents:
            self._insert(copy.deepcopy(doc))

    def _insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        if doc.get(self.id_field) is None:
            doc[self.id_field] = new_object_id()
        key = id_key(doc[self.id_field])
        if key in self._docs:
            raise StoreError(f"duplicate {self.id_field} {key} in {self.name}")
        self._docs[key] = doc
        return doc

    def _rekey(self, key: str, new_id: Any) -> None:
        new_key = id_key(new_id)
        if new_key in self._docs:
            raise StoreError(f"duplicate {self.id_field} {new_key} in {self.name}")
        stored = self._docs.pop(key)
        stored[self.id_field] = copy.deepcopy(new_id)
        self._docs[new_key] = stored

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def all(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self._docs.values()]

    def get(self, doc_id: Any) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(id_key(doc_id))
        return copy.deepcopy(doc) if doc is not None else None

    def find(self, filter: Filter) -> List[TrackedDocument]:
        return [
            TrackedDocument(copy.deepcopy(doc), self.id_field)
            for doc in self._docs.values()
            if matches(doc, filter)
        ]

    def find_one(self, filter: Filter) -> Optional[TrackedDocument]:
        for doc in self._docs.values():
            if matches(doc, filter):
                return TrackedDocument(copy.deepcopy(doc), self.id_field)
        return None

    def save(self, document: TrackedDocument, fields: AbstractSet[str]) -> TrackedDocument:
        self.save_calls += 1
        if self.fail_on_save is not None and self.fail_on_save(document):
            raise StoreError(f"save rejected for {self.id_field} {document.id!s}")
        key = id_key(document.original_id if document.original_id is not None else document.id)
        stored = self._docs.get(key)
        if stored is None:
            stored = self._insert(document.to_dict())
        else:
            if self.id_field in fields and document.id_changed:
                self._rekey(key, document.id)
            for field in fields:
                if field == self.id_field:
                    continue
                if field in document.data:
                    stored[field] = copy.deepcopy(document.data[field])
                else:
                    stored.pop(field, None)
        document.clear_modified()
        document.original_id = stored[self.id_field]
        self._changed()
        return TrackedDocument(copy.deepcopy(stored), self.id_field)

    def create(self, documents: Iterable[Dict[str, Any]]) -> List[TrackedDocument]:
        created = [self._insert(copy.deepcopy(doc)) for doc in documents]
        self._changed()
        return [TrackedDocument(copy.deepcopy(doc), self.id_field) for doc in created]

    def delete(self, document: TrackedDocument) -> None:
        self._docs.pop(id_key(document.id), None)
        self._changed()


class JsonFileDatabase:
    """A directory of ``<collection>.json`` files, each loaded as a ``MemoryCollection``.

    Files use MongoDB extended JSON so identifiers and dates survive a round
    trip. Every write flushes the affected collection back to disk.
    """

    def __init__(self, root: Union[str, Path], *, id_field: str = ID_FIELD) -> None:
        self.root = Path(root)
        self.id_field = id_field
        self._collections: Dict[str, MemoryCollection] = {}

    def _file(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def collection_names(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(path.stem for path in self.root.glob("*.json"))

    def collection(self, name: str) -> MemoryCollection:
        if name not in self._collections:
            path = self._file(name)
            documents: List[Dict[str, Any]] = []
            if path.exists():
                documents = json_util.loads(path.read_text(encoding="utf-8"))
            self._collections[name] = MemoryCollection(
                name, documents, id_field=self.id_field, on_change=self._flush
            )
        return self._collections[name]

    def _flush(self, collection: MemoryCollection) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        text = json_util.dumps(collection.all(), indent=2, json_options=json_util.RELAXED_JSON_OPTIONS)
        self._file(collection.name).write_text(text + "\n", encoding="utf-8")
        logger.debug("flushed %s to %s", collection.name, self._file(collection.name))


# =========================
# pymongo-backed collection
# =========================
class MongoCollection:
    """Collection handle over a ``pymongo.collection.Collection``.

    ``save`` turns the notified fields into a targeted ``$set``/``$unset``
    update, so a field that was changed in memory but never notified is not
    written. Changing ``_id`` raises ``StoreError``. pymongo errors (including
    timeouts) propagate unchanged.
    """

    def __init__(self, collection: Any, *, id_field: str = ID_FIELD) -> None:
        self._collection = collection
        self.name = collection.name
        self.id_field = id_field

    def find(self, filter: Filter) -> List[TrackedDocument]:
        return [TrackedDocument(doc, self.id_field) for doc in self._collection.find(dict(filter))]

    def find_one(self, filter: Filter) -> Optional[TrackedDocument]:
        doc = self._collection.find_one(dict(filter))
        return TrackedDocument(doc, self.id_field) if doc is not None else None

    def save(self, document: TrackedDocument, fields: AbstractSet[str]) -> TrackedDocument:
        if self.id_field in fields and document.id_changed and self.id_field == "_id":
            # MongoDB treats _id as immutable
            raise StoreError(
                f"cannot change _id of {self.name} {document.original_id!s} to {document.id!s}"
            )
        update: Dict[str, Dict[str, Any]] = {}
        for field in sorted(fields):
            if field == self.id_field and not document.id_changed:
                continue
            if field in document.data:
                update.setdefault("$set", {})[field] = document.data[field]
            else:
                update.setdefault("$unset", {})[field] = ""
        if update:
            key = document.original_id if document.original_id is not None else document.id
            self._collection.update_one({self.id_field: key}, update)
        document.clear_modified()
        document.original_id = document.id
        return document

    def create(self, documents: Iterable[Dict[str, Any]]) -> List[TrackedDocument]:
        docs = [copy.deepcopy(doc) for doc in documents]
        for doc in docs:
            if doc.get(self.id_field) is None:
                doc[self.id_field] = new_object_id()
        if docs:
            self._collection.insert_many(docs)
        return [TrackedDocument(doc, self.id_field) for doc in docs]

    def delete(self, document: TrackedDocument) -> None:
        self._collection.delete_one({self.id_field: document.id})


def project(document: Mapping[str, Any], select: Optional[Iterable[str]], id_field: str = ID_FIELD) -> Dict[str, Any]:
    """Keep only the selected dotted paths (and the identifier)."""
    if not select:
        return copy.deepcopy(dict(document))
    out: Dict[str, Any] = {}
    if id_field in document:
        out[id_field] = copy.deepcopy(document[id_field])
    for path in select:
        value = get_path(document, path, ABSENT)
        if value is ABSENT:
            continue
        cursor = out
        segments = path.split(".")
        for segment in segments[:-1]:
            cursor = cursor.setdefault(segment, {})
        cursor[segments[-1]] = copy.deepcopy(value)
    return out
