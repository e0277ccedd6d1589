"""
Record store: one append-only table of job metadata rows.

Uses SQLite with SQLAlchemy Core. The table layout follows the Schema the
store was initialized with; that schema is kept in a metadata table so an
existing store can be reopened and checked for compatibility.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    func,
    inspect,
    select,
)
from sqlalchemy import exc as sa_exc

from .errors import IntegrityError, IOFailure, McrunError, SchemaConflict
from .logger import get_logger
from .retry import RetryError, exponential_backoff, is_transient_error
from .schema import BOOLEAN, INTEGER, Schema

logger = get_logger()

TABLE_NAME = "jobs"
META_TABLE_NAME = "_mcrun_schema"
FORMAT_VERSION = "1"

# Seconds sqlite waits on a locked database before reporting it busy
BUSY_TIMEOUT = 5.0

Row = Dict[str, Any]

_SA_TYPES = {BOOLEAN: Boolean, INTEGER: Integer}


def _meta_table(metadata: MetaData) -> Table:
    return Table(
        META_TABLE_NAME,
        metadata,
        Column("key", String, primary_key=True),
        Column("value", String, nullable=False),
    )


def _build_tables(schema: Schema) -> Tuple[MetaData, Table, Table]:
    metadata = MetaData()
    columns = [
        Column("_seq", Integer, primary_key=True, autoincrement=True),
        Column("_revision", Integer, nullable=False),
    ]
    for col in schema.columns:
        columns.append(
            Column(col.name, _SA_TYPES.get(col.kind, String), nullable=True, index=col.name == schema.key)
        )
    for name in schema.unique:
        columns.append(UniqueConstraint(name, name=f"uq_{TABLE_NAME}_{name}"))
    table = Table(TABLE_NAME, metadata, *columns)
    return metadata, table, _meta_table(metadata)


def _create_engine(db_path: Path):
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"timeout": BUSY_TIMEOUT})

    # Take over transaction control from pysqlite so every transaction
    # starts with BEGIN IMMEDIATE and holds the write lock throughout.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def _read_schema(conn) -> Optional[Schema]:
    if META_TABLE_NAME not in inspect(conn).get_table_names():
        return None
    meta = _meta_table(MetaData())
    value = conn.execute(select(meta.c.value).where(meta.c.key == "schema")).scalar()
    if value is None:
        return None
    try:
        return Schema.from_dict(json.loads(value))
    except json.JSONDecodeError as e:
        raise SchemaConflict(f"Stored schema is unreadable: {e}") from e


class RecordStore:
    """
    Append-only store of job rows.

    Every insertion is a new physical row; rows sharing a key value are
    numbered by _revision so corrections never overwrite history.
    """

    def __init__(self, db_path: Path, schema: Schema, lock_retries: int = 3):
        self.db_path = Path(db_path)
        self.schema = schema
        self.lock_retries = lock_retries
        self.metadata, self.table, self.meta = _build_tables(schema)
        self.engine = _create_engine(self.db_path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.engine.dispose()

    # Setup

    def initialize(self, destructive: bool = False) -> "RecordStore":
        """
        Create the table for this store's schema.

        Args:
            destructive: Drop and recreate existing tables

        Raises:
            SchemaConflict: If a table exists with a different or unknown schema
        """
        def _init():
            with self.engine.begin() as conn:
                existing_tables = set(inspect(conn).get_table_names())
                if destructive:
                    for name in (TABLE_NAME, META_TABLE_NAME):
                        if name in existing_tables:
                            conn.exec_driver_sql(f'DROP TABLE "{name}"')
                    logger.info("Dropped existing store tables", db=str(self.db_path))
                elif TABLE_NAME in existing_tables or META_TABLE_NAME in existing_tables:
                    existing = _read_schema(conn)
                    if existing is None:
                        raise SchemaConflict(
                            f"{self.db_path} has a '{TABLE_NAME}' table without a recorded schema"
                        )
                    if existing != self.schema:
                        raise SchemaConflict(
                            f"{self.db_path} was initialized with a different schema: "
                            f"{existing.names} (key={existing.key}, unique={list(existing.unique)})"
                        )
                    self.metadata.create_all(conn)
                    logger.debug("Store already initialized", db=str(self.db_path))
                    return
                self.metadata.create_all(conn)
                conn.execute(
                    self.meta.insert(),
                    [
                        {"key": "schema", "value": json.dumps(self.schema.to_dict())},
                        {"key": "format_version", "value": FORMAT_VERSION},
                    ],
                )
            logger.info("Store initialized", db=str(self.db_path), columns=self.schema.names)

        self._run_write(_init)
        return self

    # Writes

    def _prepare(self, row: Mapping[str, Any]) -> Row:
        """Check a row has exactly the schema's columns and coerce its values."""
        if not isinstance(row, Mapping):
            raise SchemaConflict(f"Row must be a mapping, got {type(row).__name__}")
        values: Row = {}
        for key, value in row.items():
            pos = self.schema.position(key) if isinstance(key, str) else None
            if pos is None:
                raise SchemaConflict(f"Row has a column not in the schema: {key!r}")
            col = self.schema.columns[pos]
            if col.name in values:
                raise SchemaConflict(f"Row has column '{col.name}' more than once")
            values[col.name] = col.coerce(value)
        missing = [name for name in self.schema.names if name not in values]
        if missing:
            raise SchemaConflict(f"Row is missing columns: {', '.join(missing)}")
        return values

    def _key_filter(self, value):
        col = self.table.c[self.schema.key]
        return col.is_(None) if value is None else col == value

    def _write_rows(self, rows: Sequence[Row], revisions: Optional[Sequence[int]] = None) -> int:
        params = []
        with self.engine.begin() as conn:
            next_revision: Dict[Any, int] = {}
            for i, values in enumerate(rows):
                if revisions is not None:
                    revision = revisions[i]
                else:
                    key_value = values[self.schema.key]
                    if key_value not in next_revision:
                        latest = conn.execute(
                            select(func.max(self.table.c._revision)).where(self._key_filter(key_value))
                        ).scalar()
                        next_revision[key_value] = latest or 0
                    next_revision[key_value] += 1
                    revision = next_revision[key_value]
                params.append({**values, "_revision": revision})
            if params:
                conn.execute(self.table.insert(), params)
        return len(params)

    def _run_write(self, operation, *args):
        """Run a write with lock retries, translating storage errors."""
        guarded = exponential_backoff(
            max_retries=self.lock_retries,
            exceptions=(sa_exc.OperationalError,),
            should_retry=is_transient_error,
            on_retry=lambda attempt, e, delay: logger.warning(
                "Store is locked, retrying", attempt=attempt, delay=delay
            ),
        )(operation)
        try:
            return guarded(*args)
        except sa_exc.IntegrityError as e:
            logger.record_rollback("IntegrityError")
            logger.error("Write rolled back", db=str(self.db_path), error=str(e.orig))
            raise IntegrityError(str(e.orig)) from e
        except (sa_exc.DatabaseError, RetryError) as e:
            logger.record_rollback("IOFailure")
            logger.error("Store unavailable", db=str(self.db_path), error=str(e))
            raise IOFailure(f"Cannot write to {self.db_path}: {e}") from e
        except McrunError as e:
            logger.record_rollback(type(e).__name__)
            raise

    def insert(self, row: Mapping[str, Any]) -> int:
        """Insert one row. Returns the number of rows written (1)."""
        return self.insert_batch([row])

    def insert_batch(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """
        Insert rows atomically, in order.

        Every row is validated before the transaction starts and all rows are
        written in one transaction, so on any error nothing is committed.

        Raises:
            SchemaConflict: Row columns differ from the schema
            TypeMismatch: A value does not fit its column kind
            IntegrityError: A unique column would be duplicated
            IOFailure: The database cannot be written
        """
        try:
            prepared = [self._prepare(row) for row in rows]
        except McrunError as e:
            logger.record_rollback(type(e).__name__)
            logger.error("Batch rejected", db=str(self.db_path), error=str(e))
            raise
        written = self._run_write(self._write_rows, prepared)
        logger.record_commit(written)
        logger.info("Rows committed", db=str(self.db_path), rows=written)
        return written

    def restore(self, records: Sequence[Tuple[Mapping[str, Any], int]]) -> int:
        """Insert (row, revision) pairs as given, in one transaction."""
        prepared = [self._prepare(row) for row, _ in records]
        revisions = [revision for _, revision in records]
        written = self._run_write(self._write_rows, prepared, revisions)
        logger.record_commit(written)
        return written

    # Reads

    def _select(self, *extra):
        return select(*[self.table.c[name] for name in self.schema.names], *extra)

    def _fetch(self, stmt) -> List[Row]:
        try:
            with self.engine.connect() as conn:
                return [dict(r._mapping) for r in conn.execute(stmt)]
        except sa_exc.DatabaseError as e:
            raise IOFailure(f"Cannot read {self.db_path}: {e}") from e

    def query(
        self,
        where: Optional[Mapping[str, Any]] = None,
        present: Iterable[str] = (),
        absent: Iterable[str] = (),
    ) -> List[Row]:
        """
        Select rows in insertion order.

        Args:
            where: Column equality predicates; a None value matches absent values
            present: Columns that must hold a value
            absent: Columns that must be absent

        Raises:
            SchemaConflict: A predicate names an unknown column
            TypeMismatch: An equality value does not fit its column kind
        """
        stmt = self._select()
        for name, value in (where or {}).items():
            col = self.schema.column(name)
            value = col.coerce(value)
            c = self.table.c[col.name]
            stmt = stmt.where(c.is_(None) if value is None else c == value)
        for name in present:
            stmt = stmt.where(self.table.c[self.schema.column(name).name].is_not(None))
        for name in absent:
            stmt = stmt.where(self.table.c[self.schema.column(name).name].is_(None))
        stmt = stmt.order_by(self.table.c._seq)
        logger.debug("Query", where=dict(where or {}), present=list(present), absent=list(absent))
        return self._fetch(stmt)

    def history(self, key_value: Any) -> List[Row]:
        """All rows recorded for one key, oldest revision first."""
        key_value = self.schema.column(self.schema.key).coerce(key_value)
        stmt = self._select().where(self._key_filter(key_value)).order_by(self.table.c._revision)
        return self._fetch(stmt)

    def current(self, key_value: Any) -> Optional[Row]:
        """The latest revision recorded for one key, or None."""
        key_value = self.schema.column(self.schema.key).coerce(key_value)
        stmt = (
            self._select()
            .where(self._key_filter(key_value))
            .order_by(self.table.c._revision.desc())
            .limit(1)
        )
        rows = self._fetch(stmt)
        return rows[0] if rows else None

    def rows(self) -> List[Row]:
        return self._fetch(self._select().order_by(self.table.c._seq))

    def records(self) -> List[Tuple[Row, int]]:
        """All rows with their revision numbers, in insertion order."""
        out = []
        for r in self._fetch(self._select(self.table.c._revision).order_by(self.table.c._seq)):
            revision = r.pop("_revision")
            out.append((r, revision))
        return out

    def count(self) -> int:
        try:
            with self.engine.connect() as conn:
                return conn.execute(select(func.count()).select_from(self.table)).scalar()
        except sa_exc.DatabaseError as e:
            raise IOFailure(f"Cannot read {self.db_path}: {e}") from e


def init_store(db_path: Path, schema: Schema, destructive: bool = False, lock_retries: int = 3) -> RecordStore:
    """
    Initialize a store at db_path and return it.

    Args:
        db_path: Path to SQLite database file
        schema: Column layout of the store
        destructive: Drop and recreate an existing store
        lock_retries: Retries when another writer holds the lock
    """
    db_path = Path(db_path)
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IOFailure(f"Cannot create directory for {db_path}: {e}") from e
    store = RecordStore(db_path, schema, lock_retries=lock_retries)
    try:
        store.initialize(destructive=destructive)
    except McrunError:
        store.close()
        raise
    return store


def open_store(db_path: Path, lock_retries: int = 3) -> RecordStore:
    """
    Open an initialized store, taking its schema from the database.

    Raises:
        IOFailure: If the database file does not exist or cannot be read
        SchemaConflict: If the database was not initialized by mcrun
    """
    db_path = Path(db_path)
    if not db_path.is_file():
        raise IOFailure(f"Store not found: {db_path}")
    engine = _create_engine(db_path)
    try:
        with engine.connect() as conn:
            schema = _read_schema(conn)
    except sa_exc.DatabaseError as e:
        raise IOFailure(f"Cannot read {db_path}: {e}") from e
    finally:
        engine.dispose()
    if schema is None:
        raise SchemaConflict(f"{db_path} is not an initialized store")
    return RecordStore(db_path, schema, lock_retries=lock_retries)
