"""
Text form of a record store.

The dump is JSON Lines: a header object describing the schema, then one
object per row with its columns in schema order and its revision. Rows are
sorted by (key, revision), so two dumps of the same data are byte-identical
and a changed store shows up as a line-level diff in version control.
"""

import json
import os
import tempfile
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .errors import IOFailure, MalformedInput, SchemaConflict
from .logger import get_logger
from .schema import Schema
from .store import RecordStore, init_store

logger = get_logger()

FORMAT_TAG = "mcrun-store"
FORMAT_VERSION = 1
REVISION_FIELD = "_revision"

Record = Tuple[Dict[str, Any], int]


def _value_key(value: Any) -> Tuple[int, Any]:
    # None sorts first, then booleans, integers and text
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, int):
        return (2, value)
    return (3, str(value))


def _sort_key(schema: Schema, record: Record):
    row, revision = record
    return (
        _value_key(row[schema.key]),
        revision,
        tuple(_value_key(row[name]) for name in schema.names),
    )


def _encode(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False)


def dump(store: RecordStore) -> str:
    """Serialize the whole store deterministically."""
    schema = store.schema
    header = {"format": FORMAT_TAG, "version": FORMAT_VERSION, **schema.to_dict()}
    lines = [_encode(header)]
    for row, revision in sorted(store.records(), key=lambda rec: _sort_key(schema, rec)):
        obj = {name: row[name] for name in schema.names}
        obj[REVISION_FIELD] = revision
        lines.append(_encode(obj))
    return "\n".join(lines) + "\n"


def parse(text: str) -> Tuple[Schema, List[Record]]:
    """
    Parse and validate a dump without touching any store.

    Raises:
        MalformedInput: Unparsable lines, bad header or revisions
        SchemaConflict: Record columns differ from the header's schema
        TypeMismatch: A value does not fit its column kind
    """
    # Only "\n" ends a record; text values may hold other line separators
    lines = [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]
    if not lines or not lines[0].strip():
        raise MalformedInput("Store dump is empty")
    try:
        header = json.loads(lines[0])
    except json.JSONDecodeError as e:
        raise MalformedInput(f"Line 1: header is not valid JSON: {e}") from e
    if not isinstance(header, dict) or header.get("format") != FORMAT_TAG:
        raise MalformedInput(f"Line 1: not a {FORMAT_TAG} header")
    if header.get("version") != FORMAT_VERSION:
        raise MalformedInput(f"Unsupported dump version: {header.get('version')!r}")
    schema = Schema.from_dict({k: v for k, v in header.items() if k in ("key", "unique", "columns")})

    expected = set(schema.names) | {REVISION_FIELD}
    records: List[Record] = []
    seen = set()
    for lineno, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            raise MalformedInput(f"Line {lineno}: not valid JSON: {e}") from e
        if not isinstance(obj, dict):
            raise MalformedInput(f"Line {lineno}: expected an object")
        if set(obj) != expected:
            extra = sorted(set(obj) - expected)
            missing = sorted(expected - set(obj))
            raise SchemaConflict(
                f"Line {lineno}: columns do not match the schema (extra={extra}, missing={missing})"
            )
        revision = obj.pop(REVISION_FIELD)
        if isinstance(revision, bool) or not isinstance(revision, int) or revision < 1:
            raise MalformedInput(f"Line {lineno}: invalid revision {revision!r}")
        row = {name: schema.column(name).coerce(obj[name]) for name in schema.names}
        ident = (_value_key(row[schema.key]), revision)
        if ident in seen:
            raise MalformedInput(
                f"Line {lineno}: revision {revision} of {row[schema.key]!r} appears twice"
            )
        seen.add(ident)
        records.append((row, revision))
    return schema, records


def load(text: str, db_path: Path, lock_retries: int = 3) -> RecordStore:
    """
    Rebuild a store at db_path from a dump.

    The store is built in a temporary file next to db_path and moved into
    place only once complete; on failure db_path is left as it was.
    """
    schema, records = parse(text)
    db_path = Path(db_path)
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{db_path.name}.", suffix=".tmp", dir=db_path.parent)
        os.close(fd)
    except OSError as e:
        raise IOFailure(f"Cannot stage store next to {db_path}: {e}") from e

    tmp_path = Path(tmp_name)
    replaced = False
    try:
        with init_store(tmp_path, schema, destructive=True, lock_retries=lock_retries) as staging:
            staging.restore(records)
        os.replace(tmp_path, db_path)
        replaced = True
    except OSError as e:
        raise IOFailure(f"Cannot move rebuilt store into {db_path}: {e}") from e
    finally:
        if not replaced:
            tmp_path.unlink(missing_ok=True)

    logger.info("Store loaded", db=str(db_path), rows=len(records))
    return RecordStore(db_path, schema, lock_retries=lock_retries)


def dump_to_path(store: RecordStore, path: Path) -> int:
    """Write a dump to path atomically. Returns the number of rows written."""
    text = dump(store)
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise IOFailure(f"Cannot write dump to {path}: {e}") from e
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)
    rows = text.count("\n") - 1
    logger.info("Store dumped", db=str(store.db_path), path=str(path), rows=rows)
    return rows


def read_dump(path: Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise IOFailure(f"Cannot read dump {path}: {e}") from e


def load_from_path(path: Path, db_path: Path, lock_retries: int = 3) -> RecordStore:
    return load(read_dump(path), db_path, lock_retries=lock_retries)


def diff(store: RecordStore, text: str) -> Dict[str, Any]:
    """
    Compare a store against a dump.

    Returns:
        Dict with schema_match, only_in_store and only_in_dump (rows with
        their "_revision"), and in_sync when nothing differs
    """
    dump_schema, dump_records = parse(text)

    def _tally(schema: Schema, records: List[Record]) -> Counter:
        return Counter(
            _encode({**{n: row[n] for n in schema.names}, REVISION_FIELD: rev})
            for row, rev in records
        )

    ours = _tally(store.schema, store.records())
    theirs = _tally(dump_schema, dump_records)
    only_in_store = [json.loads(line) for line in sorted((ours - theirs).elements())]
    only_in_dump = [json.loads(line) for line in sorted((theirs - ours).elements())]
    schema_match = store.schema == dump_schema
    return {
        "schema_match": schema_match,
        "only_in_store": only_in_store,
        "only_in_dump": only_in_dump,
        "in_sync": schema_match and not only_in_store and not only_in_dump,
    }
