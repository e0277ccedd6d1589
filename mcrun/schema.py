import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import IOFailure, SchemaConflict, TypeMismatch

TEXT = "text"
INTEGER = "integer"
BOOLEAN = "boolean"
KINDS = (TEXT, INTEGER, BOOLEAN)

TRUE_STRINGS = {"true", "yes", "t", "y", "1", "on"}
FALSE_STRINGS = {"false", "no", "f", "n", "0", "off"}

_INT_RE = re.compile(r"^[+-]?[0-9]+$")

# SQLite stores INTEGER as a signed 64-bit value
INT_MIN = -(2 ** 63)
INT_MAX = 2 ** 63 - 1

DEFAULT_KEY = "id"


def normalize_name(name: str) -> str:
    return name.strip().lower()


@dataclass(frozen=True)
class Column:
    name: str
    kind: str = TEXT

    def coerce(self, value: Any) -> Any:
        """Convert value to this column's kind; None always passes through."""
        if value is None:
            return None
        if self.kind == TEXT:
            if isinstance(value, str):
                return value
        elif self.kind == INTEGER:
            number = None
            if isinstance(value, int) and not isinstance(value, bool):
                number = value
            elif isinstance(value, str) and _INT_RE.match(value.strip()):
                number = int(value.strip())
            if number is not None and INT_MIN <= number <= INT_MAX:
                return number
        elif self.kind == BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                folded = value.strip().lower()
                if folded in TRUE_STRINGS:
                    return True
                if folded in FALSE_STRINGS:
                    return False
        raise TypeMismatch(self.name, self.kind, value)


@dataclass(frozen=True)
class Schema:
    """
    Ordered, immutable column set a record store enforces.

    Column names are lower-cased on definition and looked up
    case-insensitively through an index built once per schema.
    """

    columns: Tuple[Column, ...]
    key: str = DEFAULT_KEY
    unique: Tuple[str, ...] = ()
    _index: Dict[str, int] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        index: Dict[str, int] = {}
        for pos, col in enumerate(self.columns):
            if not col.name:
                raise SchemaConflict("Column names must be non-empty")
            if col.name.startswith("_"):
                raise SchemaConflict(f"Column name '{col.name}' is reserved (leading underscore)")
            if col.kind not in KINDS:
                raise SchemaConflict(f"Column '{col.name}' has unknown kind '{col.kind}'")
            if col.name in index:
                raise SchemaConflict(f"Duplicate column name: {col.name}")
            index[col.name] = pos
        if not index:
            raise SchemaConflict("Schema must define at least one column")
        if self.key not in index:
            raise SchemaConflict(f"Key column '{self.key}' is not part of the schema")
        for name in self.unique:
            if name not in index:
                raise SchemaConflict(f"Unique column '{name}' is not part of the schema")
        object.__setattr__(self, "_index", index)

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.columns]

    def position(self, name: str) -> Optional[int]:
        return self._index.get(normalize_name(name))

    def column(self, name: str) -> Column:
        pos = self.position(name)
        if pos is None:
            raise SchemaConflict(f"Unknown column: {name}")
        return self.columns[pos]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "unique": list(self.unique),
            "columns": [{"name": c.name, "kind": c.kind} for c in self.columns],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Schema":
        if not isinstance(data, dict) or not isinstance(data.get("columns"), list):
            raise SchemaConflict("Schema description must be an object with a 'columns' list")
        columns = []
        for entry in data["columns"]:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                raise SchemaConflict(f"Invalid column description: {entry!r}")
            columns.append((entry["name"], entry.get("kind", TEXT)))
        return define(columns, key=data.get("key", DEFAULT_KEY), unique=data.get("unique") or ())


ColumnSpec = Union[Column, Tuple[str, str], Sequence[str]]


def define(
    columns: Iterable[ColumnSpec],
    key: str = DEFAULT_KEY,
    unique: Iterable[str] = (),
) -> Schema:
    """
    Build a schema from (name, kind) pairs or Column objects.

    Names and kinds are case-folded. Raises SchemaConflict on duplicate,
    empty or reserved names and unknown kinds.
    """
    cols: List[Column] = []
    for entry in columns:
        if isinstance(entry, Column):
            name, kind = entry.name, entry.kind
        elif isinstance(entry, str):
            name, kind = entry, TEXT
        else:
            try:
                name, kind = entry
            except (TypeError, ValueError):
                raise SchemaConflict(f"Invalid column definition: {entry!r}")
        if not isinstance(name, str) or not isinstance(kind, str):
            raise SchemaConflict(f"Invalid column definition: {entry!r}")
        cols.append(Column(normalize_name(name), normalize_name(kind)))
    return Schema(
        columns=tuple(cols),
        key=normalize_name(key),
        unique=tuple(normalize_name(u) for u in unique),
    )


def load_schema(path: Path) -> Schema:
    """Read a schema description from a JSON file."""
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise IOFailure(f"Cannot read schema file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise SchemaConflict(f"Schema file {path} is not valid JSON: {e}") from e
    return Schema.from_dict(data)


# Columns every job record carries unless a schema file says otherwise
JOB_COLUMNS = [
    ("id", TEXT),
    ("project", TEXT),
    ("run", TEXT),
    ("formula", TEXT),
    ("method", TEXT),
    ("basis", TEXT),
    ("status", TEXT),
    ("complete", BOOLEAN),
    ("cores", INTEGER),
]

JOB_SCHEMA = define(JOB_COLUMNS)
