"""
Job identifier resolution.

A job identifier is conventionally a project tag followed by a run index,
e.g. ``ZAO001``. Identifiers come either from the user or from the stem of
the job document's file name.
"""

import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import Callable, List, Optional, Tuple

from .errors import MalformedInput

_PROJECT_RE = re.compile(r"^[A-Za-z]+")
_RUN_RE = re.compile(r"[0-9]+$")


@dataclass(frozen=True)
class Identifier:
    id: str
    project: Optional[str] = None
    run: Optional[str] = None

    def as_properties(self) -> List[Tuple[str, Optional[str]]]:
        return [("id", self.id), ("project", self.project), ("run", self.run)]


def _looks_like_path(hint: str) -> bool:
    p = PurePath(hint)
    return len(p.parts) > 1 or bool(p.suffix)


def decompose(token: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a token into (project, run).

    project is the leading run of letters, run the trailing run of digits.
    An all-letter token is a bare name and yields (None, None).
    """
    if token.isalpha():
        return None, None
    project = _PROJECT_RE.match(token)
    run = _RUN_RE.search(token)
    return (
        project.group(0) if project else None,
        run.group(0) if run else None,
    )


def resolve(hint: Optional[str], prompt: Optional[Callable[[str], str]] = None) -> Identifier:
    """
    Resolve a job identifier from an explicit id or a file name.

    Args:
        hint: Identifier string or path to a job document (its stem is used)
        prompt: Callable asked for an identifier when hint is empty, e.g. input

    Raises:
        MalformedInput: If no identifier is available from hint or prompt
    """
    if hint is not None and _looks_like_path(hint.strip()):
        hint = PurePath(hint.strip()).stem
    if hint is None or not hint.strip():
        if prompt is None:
            raise MalformedInput("No job identifier given and no way to ask for one")
        hint = prompt("Job identifier: ")
        if hint is None or not hint.strip():
            raise MalformedInput("No job identifier entered")
    token = hint.strip()
    project, run = decompose(token)
    return Identifier(id=token, project=project, run=run)
