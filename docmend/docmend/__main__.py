from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Tuple, Type

from bson import json_util
from pydantic import BaseModel, ValidationError

from . import __version__ as _engine_version
from .config import Settings
from .errors import MendError
from .gateway import Gateway
from .schemas import (
    AddIdsRequestV1,
    ArrayFieldRequestV1,
    ChangeRequestV1,
    CreateRequestV1,
    DeleteRequestV1,
    GetRequestV1,
    InjectRequestV1,
    ModifyArrayRequestV1,
    PushRequestV1,
    StatusRequestV1,
    TransferRequestV1,
    TranslateRequestV1,
    UniqueRequestV1,
    parse_request,
)
from .stats_cache import CollectionStatistics
from .store import JsonFileDatabase, MemoryCollection
from .transfer import transfer

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

Handler = Callable[[Gateway, MemoryCollection, Any, argparse.Namespace], Any]


class RequestError(ValueError):
    pass


def _read_request(source: str) -> Any:
    if source == "-":
        text = sys.stdin.read()
    else:
        path = Path(source)
        if not path.exists():
            raise RequestError(f"request file not found: {path}")
        text = path.read_text(encoding="utf-8")
    try:
        return json_util.loads(text)
    except ValueError as exc:
        raise RequestError(f"invalid json in request: {exc}") from exc


def _emit(payload: Any) -> None:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    print(json_util.dumps(payload, indent=2, json_options=json_util.RELAXED_JSON_OPTIONS))


def _transfer(gateway: Gateway, collection: MemoryCollection, req: TransferRequestV1, args: argparse.Namespace) -> Any:
    to_collection = args.database.collection(args.to_collection)
    return transfer(
        collection,
        req.from_query,
        req.link_field,
        req.from_field,
        to_collection,
        req.to_field,
        persist=args.save,
    ).to_dict()


COMMANDS: Dict[str, Tuple[Type[BaseModel], Handler, str]] = {
    "get": (
        GetRequestV1,
        lambda gw, col, req, args: gw.get(col, req.query, req.select),
        "Fetch matching documents (read-only)",
    ),
    "unique": (
        UniqueRequestV1,
        lambda gw, col, req, args: gw.unique_values(col, req.query, req.selection),
        "Distinct values at a dotted path across matches",
    ),
    "create": (
        CreateRequestV1,
        lambda gw, col, req, args: gw.create(col, req.documents, persist=args.save),
        "Insert documents",
    ),
    "change": (
        ChangeRequestV1,
        lambda gw, col, req, args: gw.execute(col, req.query, req.changes, persist=args.save),
        "Apply Set/SetIdentifier/SetStatus/Append changes to one document",
    ),
    "status": (
        StatusRequestV1,
        lambda gw, col, req, args: gw.set_status(col, req.query, req.path, req.code, persist=args.save),
        "Write a {code, date} status record on every match",
    ),
    "push": (
        PushRequestV1,
        lambda gw, col, req, args: gw.push(col, req.query, req.field, req.value, req.id_values, persist=args.save),
        "Append a value to an array, converting identifier sub-fields",
    ),
    "add-ids": (
        AddIdsRequestV1,
        lambda gw, col, req, args: gw.add_ids(col, req.query, req.field, req.id_values, persist=args.save),
        "Append identifiers not already in an id array",
    ),
    "inject": (
        InjectRequestV1,
        lambda gw, col, req, args: gw.inject(col, req.query, req.field, req.field_ids, req.data, persist=args.save),
        "Append elements to a nested array addressed by field/identifier steps",
    ),
    "duplicate": (
        ArrayFieldRequestV1,
        lambda gw, col, req, args: gw.duplicate(col, req.query, req.array_field, persist=args.save),
        "Append a deep copy of every array element",
    ),
    "dedupe": (
        ArrayFieldRequestV1,
        lambda gw, col, req, args: gw.dedupe(col, req.query, req.array_field, req.unique_field, persist=args.save),
        "Remove array elements with a repeated key",
    ),
    "duplicates": (
        ArrayFieldRequestV1,
        lambda gw, col, req, args: gw.find_duplicates(col, req.query, req.array_field, req.unique_field),
        "Report array elements with a repeated key (read-only)",
    ),
    "delete": (
        DeleteRequestV1,
        lambda gw, col, req, args: gw.delete(
            col,
            req.query,
            fields=req.fields,
            by_id_path=req.by_id_path,
            clear_array=req.clear_array,
            whole=req.whole,
            persist=args.save,
        ),
        "Delete fields, an array element, an array's contents or the document",
    ),
    "translate": (
        TranslateRequestV1,
        lambda gw, col, req, args: gw.translate(col, req.query, req.moves, persist=args.save),
        "Move values between dotted paths on every match",
    ),
    "modify-array": (
        ModifyArrayRequestV1,
        lambda gw, col, req, args: gw.modify_array(col, req.query, req.field_query, persist=args.save),
        "Set a field on the array element matching a test value",
    ),
    "transfer": (
        TransferRequestV1,
        _transfer,
        "Copy a field from matches into linked documents of another collection",
    ),
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docmend", description="Inspect and repair schema-less documents")
    parser.add_argument("--version", action="version", version=f"%(prog)s {_engine_version}")

    store = argparse.ArgumentParser(add_help=False)
    store.add_argument("--store", required=True, help="Directory of <collection>.json files")
    store.add_argument("--config", default=None, help="Settings JSON file (overrides DOCMEND_* environment)")

    common = argparse.ArgumentParser(add_help=False, parents=[store])
    common.add_argument("--collection", required=True, help="Collection to operate on")
    common.add_argument("--request", required=True, help="Request JSON file, or - for stdin")
    common.add_argument("--save", action="store_true", default=False, help="Persist changes (default: dry run)")

    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, (_, _, help_text) in COMMANDS.items():
        sub = subparsers.add_parser(name, help=help_text, parents=[common])
        if name == "transfer":
            sub.add_argument("--to-collection", required=True, help="Collection receiving the copied field")
    subparsers.add_parser("stats", help="Document totals per collection", parents=[store])
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_file(args.config) if args.config else Settings.from_env()
    except (OSError, ValueError, ValidationError) as exc:
        print(f"failed: invalid settings: {exc}", file=sys.stderr)
        return EXIT_USAGE
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")

    args.database = JsonFileDatabase(args.store, id_field=settings.id_field)
    if args.command == "stats":
        collections = [args.database.collection(name) for name in args.database.collection_names()]
        _emit(CollectionStatistics(collections, settings=settings).report())
        return EXIT_OK

    model, handler, _ = COMMANDS[args.command]
    gateway = Gateway(settings)
    try:
        request = parse_request(model, _read_request(args.request))
        collection = args.database.collection(args.collection)
        result = handler(gateway, collection, request, args)
    except RequestError as exc:
        print(f"failed: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except MendError as exc:
        _emit(exc.to_failure())
        return EXIT_FAILED

    _emit(result)
    status = getattr(result, "status", None)
    if status is None and isinstance(result, dict):
        status = result.get("status")
    return EXIT_OK if status in (None, "ok") else EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
