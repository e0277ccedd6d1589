from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .logger import get_logger
from .schema import Schema, normalize_name

logger = get_logger()

Pair = Tuple[str, Optional[str]]
PropertySet = Union[Mapping[str, Optional[str]], Iterable[Pair]]
Row = Dict[str, Any]


def pairs(properties: PropertySet) -> Iterable[Pair]:
    """Iterate a property set as (key, value) pairs; mappings yield their items."""
    if isinstance(properties, Mapping):
        return properties.items()
    return properties


def normalize(properties: PropertySet, schema: Schema) -> Row:
    """
    Map a property set onto a row with exactly one entry per schema column.

    Keys match columns case-insensitively and the last matching key wins.
    Unknown keys are dropped, missing columns are None. Values are passed
    through untouched; kind checks happen in the store.
    """
    row: Row = {name: None for name in schema.names}
    dropped = []
    for key, value in pairs(properties):
        pos = schema.position(key) if isinstance(key, str) else None
        if pos is None:
            dropped.append(key)
            continue
        row[schema.columns[pos].name] = value
    if dropped:
        logger.debug("Dropped properties not in schema", keys=[str(k) for k in dropped])
    return row


def normalize_batch(property_sets: Sequence[PropertySet], schema: Schema) -> List[Row]:
    return [normalize(p, schema) for p in property_sets]


def merge(*property_sets: PropertySet) -> List[Pair]:
    """
    Combine property sources, lowest priority first.

    A None value never overrides a value supplied by an earlier source.
    """
    merged: List[Pair] = []
    seen = set()
    for props in property_sets:
        for key, value in pairs(props):
            folded = normalize_name(key) if isinstance(key, str) else key
            if value is None and folded in seen:
                continue
            seen.add(folded)
            merged.append((key, value))
    return merged
