from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .dirty import DirtySet, notify
from .errors import InvalidOperation, MendError, MissingField, MissingQuery
from .paths import ABSENT, get_path, resolve_for_write, split_path
from .schemas import Query
from .store import CollectionHandle

logger = logging.getLogger(__name__)


@dataclass
class TransferReport:
    persisted: bool
    sources: int = 0
    links: int = 0
    saved: int = 0
    skipped_sources: List[str] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    previews: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "ok" if self.ok else "partial",
            "persisted": self.persisted,
            "sources": self.sources,
            "links": self.links,
            "saved": self.saved,
            "skipped_sources": list(self.skipped_sources),
            "failures": list(self.failures),
            "previews": list(self.previews),
        }


def transfer(
    from_collection: CollectionHandle,
    from_query: Optional[Query],
    link_field: str,
    from_field: str,
    to_collection: CollectionHandle,
    to_field: str,
    *,
    persist: bool = False,
) -> TransferReport:
    """Copy ``from_field`` of each source into ``to_field`` of every linked document.

    Linked documents are those in ``to_collection`` whose ``link_field`` equals
    the source's. Each one is saved on its own; a failed lookup or save is
    logged, recorded in the report and skipped. Nothing is saved unless
    ``persist`` is set.
    """
    if from_query is None:
        raise MissingQuery("missing from_query")
    for name, value in (("link_field", link_field), ("from_field", from_field), ("to_field", to_field)):
        if not value:
            raise MissingField(f"missing {name}", {"field": name})
    if split_path(to_field) == [to_collection.id_field]:
        raise InvalidOperation(f"cannot transfer into {to_field}", {"path": to_field})

    report = TransferReport(persisted=persist)
    for source in from_collection.find(from_query):
        report.sources += 1
        link_value = get_path(source.data, link_field, ABSENT)
        if link_value is ABSENT:
            logger.warning("%s %s has no %s, skipped", from_collection.name, source.id, link_field)
            report.skipped_sources.append(str(source.id))
            continue
        value = get_path(source.data, from_field)

        try:
            links = to_collection.find({link_field: link_value})
        except Exception as exc:
            logger.error("link lookup for %s %s failed: %r", from_collection.name, source.id, exc)
            report.failures.append({"source": str(source.id), "stage": "find", "error": repr(exc)})
            continue

        for link in links:
            report.links += 1
            try:
                resolve_for_write(
                    link.data, to_field, create_missing=1, id_field=to_collection.id_field
                ).set(copy.deepcopy(value))
            except MendError as exc:
                logger.error("cannot write %s on %s %s: %s", to_field, to_collection.name, link.id, exc)
                report.failures.append(
                    {"source": str(source.id), "link": str(link.id), "stage": "apply", "error": exc.to_failure()}
                )
                continue
            dirty = DirtySet()
            dirty.touch(to_field)
            logger.debug("transfer %s -> %s %s.%s", source.id, to_collection.name, link.id, to_field)
            if not persist:
                report.previews.append(link.to_dict())
                continue
            try:
                to_collection.save(link, notify(link, dirty))
            except Exception as exc:
                logger.error("saving linked %s %s failed: %r", to_collection.name, link.id, exc)
                report.failures.append(
                    {"source": str(source.id), "link": str(link.id), "stage": "save", "error": repr(exc)}
                )
                continue
            report.saved += 1
    return report
