"""
Pytest configuration and shared fixtures.
"""

import pytest
from pathlib import Path
from typing import List, Tuple

from mcrun.schema import BOOLEAN, INTEGER, TEXT, define
from mcrun.store import init_store


@pytest.fixture
def small_schema():
    """Schema used by the end-to-end example: id, formula, complete."""
    return define([("id", TEXT), ("formula", TEXT), ("complete", BOOLEAN)])


@pytest.fixture
def job_schema():
    """A fuller job schema with every column kind."""
    return define([
        ("id", TEXT),
        ("project", TEXT),
        ("run", TEXT),
        ("formula", TEXT),
        ("method", TEXT),
        ("complete", BOOLEAN),
        ("cores", INTEGER),
    ])


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "data" / "jobs.db"


@pytest.fixture
def store(db_path, small_schema):
    """An initialized, empty store using small_schema."""
    s = init_store(db_path, small_schema, lock_retries=0)
    yield s
    s.close()


@pytest.fixture
def zao_properties() -> List[Tuple[str, str]]:
    """Property set as extracted from a job document."""
    return [
        ("ID", "ZAO001"),
        ("Formula", "ZnSb2O4"),
        ("METHOD", "PBE0"),
        ("Complete", "yes"),
        ("Cores", "64"),
        ("Walltime", "12:00:00"),
    ]


@pytest.fixture
def org_document() -> str:
    """A job document carrying a property drawer."""
    return """#+TITLE: ZnSb2O4 relaxation

* Job
:PROPERTIES:
:ID: ZAO001
:FORMULA: ZnSb2O4
:METHOD: PBE0
:COMPLETE: t
:CORES: 64
:NOTES:
:END:

Relaxation of the spinel cell.
"""


@pytest.fixture
def html_document() -> str:
    """An exported job document with a property table."""
    return """
    <html>
    <head><title>ZAO002</title></head>
    <body>
        <h2 id="orgheadline1"><span class="section-number-2">1.</span> Notes</h2>
        <table><tr><td>unrelated</td><td>table</td></tr></table>
        <h2 id="orgheadline2"><span class="section-number-2">2.</span> Properties</h2>
        <table>
            <tr><th>Property</th><th>Value</th></tr>
            <tr><td>ID</td><td>ZAO002</td></tr>
            <tr><td>Formula</td><td>ZnAl2O4</td></tr>
            <tr><td>Complete</td><td></td></tr>
        </table>
    </body>
    </html>
    """
