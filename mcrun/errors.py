"""
Error taxonomy for mcrun.

Every error carries the CLI exit code it maps to, so the command line
layer can translate failures without knowing where they came from.
"""


class McrunError(Exception):
    """Base class for all mcrun failures."""

    exit_code = 1


class SchemaConflict(McrunError):
    """Operation attempted against an incompatible or malformed schema."""

    exit_code = 2


class TypeMismatch(McrunError):
    """A row value cannot be stored in its column's declared kind."""

    exit_code = 3

    def __init__(self, column: str, kind: str, value):
        self.column = column
        self.kind = kind
        self.value = value
        super().__init__(
            f"Column '{column}' expects {kind}, got {type(value).__name__}: {value!r}"
        )


class IntegrityError(McrunError):
    """A uniqueness or other store-level constraint was violated."""

    exit_code = 3


class MalformedInput(McrunError):
    """A property source could not be parsed into key/value pairs."""

    exit_code = 4


class IOFailure(McrunError):
    """Underlying storage is unreachable or unwritable."""

    exit_code = 1
