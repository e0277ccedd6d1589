import argparse
import json
import sys
from pathlib import Path
from typing import Any, List, Optional, Sequence

from . import __version__
from .document import read_source
from .env import LOG_LEVELS, load_env, load_settings
from .errors import IOFailure, MalformedInput, McrunError
from .identifier import resolve
from .logger import get_logger
from .normalize import PropertySet, merge, normalize_batch, pairs
from .schema import JOB_SCHEMA, Schema, load_schema, normalize_name
from .serialize import diff, dump_to_path, load_from_path, read_dump
from .store import RecordStore, init_store, open_store

logger = get_logger()

# Exit code when a store and its dump disagree
EXIT_OUT_OF_SYNC = 4


def _lookup(props: PropertySet, key: str) -> Optional[str]:
    found = None
    for k, v in pairs(props):
        if isinstance(k, str) and normalize_name(k) == key and v is not None:
            found = v
    return found


def _schema(args: argparse.Namespace) -> Schema:
    path = args.schema or args.settings.schema_path
    return load_schema(Path(path)) if path else JOB_SCHEMA


def _open(args: argparse.Namespace) -> RecordStore:
    return open_store(args.db, lock_retries=args.settings.lock_retries)


def collect_property_sets(
    sources: Sequence[Path], schema: Schema, explicit_id: Optional[str] = None
) -> List[list]:
    """
    Read property sets from sources and fill in identifier fields.

    Priority, lowest first: identifier guessed from the document's own id or
    its file name, the document's properties, then an explicit --id.
    """
    if explicit_id and len(sources) != 1:
        raise MalformedInput("--id can only be used with a single source")
    manual = resolve(explicit_id).as_properties() if explicit_id else []
    property_sets = []
    for path in sources:
        sets = read_source(path)
        for props in sets:
            hint = explicit_id or _lookup(props, schema.key) or (str(path) if len(sets) == 1 else None)
            guessed = resolve(hint).as_properties() if hint else []
            property_sets.append(merge(guessed, props, manual))
    return property_sets


def cmd_init_store(args: argparse.Namespace) -> None:
    schema = _schema(args)
    with init_store(args.db, schema, destructive=args.destructive, lock_retries=args.settings.lock_retries):
        pass
    print(f"Store ready: {args.db} ({', '.join(schema.names)})")


def cmd_insert(args: argparse.Namespace) -> None:
    with _open(args) as store:
        sources = [Path(s) for s in args.sources]
        property_sets = collect_property_sets(sources, store.schema, explicit_id=args.id)
        rows = normalize_batch(property_sets, store.schema)
        written = store.insert_batch(rows)
    print(f"Inserted {written} row(s) into {args.db}")


def cmd_dump_store(args: argparse.Namespace) -> None:
    with _open(args) as store:
        rows = dump_to_path(store, Path(args.path))
    print(f"Dumped {rows} row(s) to {args.path}")


def cmd_load_store(args: argparse.Namespace) -> None:
    if Path(args.db).exists() and not args.force:
        raise IOFailure(f"{args.db} already exists; pass --force to replace it")
    with load_from_path(Path(args.path), Path(args.db), lock_retries=args.settings.lock_retries) as store:
        count = store.count()
    print(f"Loaded {count} row(s) into {args.db}")


def _parse_where(items: Sequence[str]) -> dict:
    where: dict = {}
    for item in items:
        if "=" not in item:
            raise MalformedInput(f"Expected COLUMN=VALUE, got {item!r}")
        k, v = item.split("=", 1)
        where[k.strip()] = v
    return where


def _print_row(row: Optional[dict]) -> None:
    print(json.dumps(row, ensure_ascii=False))


def cmd_query(args: argparse.Namespace) -> None:
    with _open(args) as store:
        if args.current:
            if not args.id:
                raise MalformedInput("--current needs --id")
            row = store.current(args.id)
            if row is not None:
                _print_row(row)
            return
        where = _parse_where(args.where or [])
        if args.id:
            where[store.schema.key] = args.id
        rows = store.query(where=where, present=args.present or [], absent=args.absent or [])
    for row in rows:
        _print_row(row)


def cmd_resolve(args: argparse.Namespace) -> None:
    prompt = input if sys.stdin.isatty() else None
    ident = resolve(args.hint, prompt=prompt)
    print(json.dumps({"id": ident.id, "project": ident.project, "run": ident.run}))


def cmd_verify_store(args: argparse.Namespace) -> None:
    with _open(args) as store:
        result = diff(store, read_dump(Path(args.path)))
    if result["in_sync"]:
        print(f"{args.db} matches {args.path}")
        return
    if not result["schema_match"]:
        print("Schemas differ")
    for label in ("only_in_store", "only_in_dump"):
        rows: List[Any] = result[label]
        if rows:
            print(f"{label.replace('_', ' ').capitalize()}: {len(rows)} row(s)")
            for row in rows[:5]:
                print(f"  {json.dumps(row, ensure_ascii=False)}")
            if len(rows) > 5:
                print(f"  ... and {len(rows) - 5} more")
    raise SystemExit(EXIT_OUT_OF_SYNC)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mcrun", description="Job metadata store")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help="Path to SQLite store (default: $MCRUN_DB or data/jobs.db)")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Console log level (default: $MCRUN_LOG_LEVEL or INFO)",
    )
    parser.add_argument("--log-dir", help="Also write a daily log file here (default: $MCRUN_LOG_DIR)")

    subparsers = parser.add_subparsers(dest="command")

    ini = subparsers.add_parser("init-store", help="Create the job table for a schema")
    ini.add_argument("--schema", help="Schema JSON file (default: $MCRUN_SCHEMA or built-in job schema)")
    ini.add_argument("--destructive", action="store_true", help="Drop and recreate an existing store")
    ini.set_defaults(func=cmd_init_store)

    ins = subparsers.add_parser("insert", help="Insert job properties from documents (.org, .html, .json)")
    ins.add_argument("sources", nargs="+", help="Job documents or JSON property files")
    ins.add_argument("--id", help="Job identifier (default: from the document or its file name)")
    ins.set_defaults(func=cmd_insert)

    dmp = subparsers.add_parser("dump-store", help="Write the store as deterministic text")
    dmp.add_argument("path", help="Output file")
    dmp.set_defaults(func=cmd_dump_store)

    lod = subparsers.add_parser("load-store", help="Rebuild the store from a dump")
    lod.add_argument("path", help="Dump file")
    lod.add_argument("--force", action="store_true", help="Replace an existing store")
    lod.set_defaults(func=cmd_load_store)

    qry = subparsers.add_parser("query", help="Print matching rows as JSON lines")
    qry.add_argument("--id", help="Match the key column")
    qry.add_argument("--where", action="append", metavar="COL=VALUE", help="Column equality (repeatable)")
    qry.add_argument("--present", action="append", metavar="COL", help="Column must have a value (repeatable)")
    qry.add_argument("--absent", action="append", metavar="COL", help="Column must be absent (repeatable)")
    qry.add_argument("--current", action="store_true", help="Only the latest revision of --id")
    qry.set_defaults(func=cmd_query)

    res = subparsers.add_parser("resolve", help="Decompose a job identifier or file name")
    res.add_argument("hint", nargs="?", help="Identifier or file name (prompted for if omitted)")
    res.set_defaults(func=cmd_resolve)

    ver = subparsers.add_parser("verify-store", help="Check the store against a dump")
    ver.add_argument("path", help="Dump file")
    ver.set_defaults(func=cmd_verify_store)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    load_env()
    settings = load_settings()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    args.settings = settings
    args.db = Path(args.db) if args.db else settings.db_path
    logger.set_level(args.log_level or settings.log_level)
    log_dir = args.log_dir or settings.log_dir
    if log_dir:
        logger.add_file_handler(Path(log_dir))

    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        args.func(args)
    except McrunError as e:
        logger.error(f"{type(e).__name__}: {e}")
        raise SystemExit(e.exit_code)
    finally:
        logger.debug("Session metrics", **logger.get_metrics())


if __name__ == "__main__":
    main()
