"""Read job property blocks out of job documents."""

import json
import re
from pathlib import Path
from typing import Any, List, Optional, Tuple

from bs4 import BeautifulSoup

from .errors import IOFailure, MalformedInput

DRAWER_MARKER = ":PROPERTIES:"
DRAWER_END = ":END:"
HTML_MARKER = "Properties"

_PROPERTY_LINE_RE = re.compile(r"^:(?P<key>[^:\s][^:]*):(?:\s+(?P<value>.*?))?\s*$")
_SECTION_NUMBER_RE = re.compile(r"^[\d.]+\s*")
_HEADINGS = ("h1", "h2", "h3", "h4", "h5", "h6")

Pairs = List[Tuple[str, Optional[str]]]


def read_drawer(text: str, marker: str = DRAWER_MARKER) -> Pairs:
    """Collect ``:KEY: value`` lines between the marker line and ``:END:``."""
    lines = text.splitlines()
    start = None
    for i, line in enumerate(lines):
        if line.strip().upper() == marker.upper():
            start = i
            break
    if start is None:
        raise MalformedInput(f"No {marker} block found")

    pairs: Pairs = []
    for lineno, line in enumerate(lines[start + 1:], start=start + 2):
        s = line.strip()
        if s.upper() == DRAWER_END:
            return pairs
        if not s:
            continue
        m = _PROPERTY_LINE_RE.match(s)
        if not m:
            raise MalformedInput(f"Line {lineno}: not a property line: {s!r}")
        pairs.append((m.group("key").strip(), m.group("value") or None))
    raise MalformedInput(f"{marker} block is not closed with {DRAWER_END}")


def _heading_text(tag) -> str:
    return _SECTION_NUMBER_RE.sub("", tag.get_text(" ", strip=True)).strip().lower()


def read_html_table(html: str, marker: str = HTML_MARKER) -> Pairs:
    """
    Read the key/value table that follows the marker heading in an exported
    job document. Header rows and rows without a key are skipped.
    """
    soup = BeautifulSoup(html, "html.parser")
    heading = soup.find(lambda tag: tag.name in _HEADINGS and _heading_text(tag) == marker.lower())
    if heading is None:
        raise MalformedInput(f"No '{marker}' heading found")
    table = heading.find_next("table")
    if table is None:
        raise MalformedInput(f"No table follows the '{marker}' heading")

    pairs: Pairs = []
    for tr in table.find_all("tr"):
        cells = tr.find_all(["td", "th"])
        if len(cells) < 2 or all(c.name == "th" for c in cells):
            continue
        key = cells[0].get_text(strip=True)
        if not key:
            continue
        pairs.append((key, cells[1].get_text(strip=True) or None))
    return pairs


def _text(key: str, value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise MalformedInput(f"Property '{key}' has a nested value: {value!r}")


def read_json(text: str) -> List[Pairs]:
    """A JSON object is one property set, a list of objects is several."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedInput(f"Invalid JSON: {e}") from e
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(d, dict) for d in data):
        raise MalformedInput("Expected a JSON object or a list of objects")
    return [[(k, _text(k, v)) for k, v in d.items()] for d in data]


def read_source(path: Path) -> List[Pairs]:
    """
    Read property sets from a file, choosing the reader by suffix.

    Raises:
        IOFailure: If the file cannot be read
        MalformedInput: If no property block can be parsed
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise MalformedInput(f"{path} is not UTF-8 text: {e}") from e
    except OSError as e:
        raise IOFailure(f"Cannot read {path}: {e}") from e

    suffix = path.suffix.lower()
    if suffix == ".json":
        return read_json(text)
    if suffix in (".html", ".htm"):
        return [read_html_table(text)]
    return [read_drawer(text)]
