"""
Commit message phase classification.

Prefixes are matched case-sensitively at the very start of the message, in
order. Every input maps to exactly one Phase.
"""

import re
from typing import Iterable, Optional, Tuple

from shared.models import Phase

TIDY_PREFIXES = ("tidy:", "test(tidy):")

PHASE_PREFIXES: Tuple[Tuple[Phase, Tuple[str, ...]], ...] = (
    (Phase.RED, ("test:",)),
    (Phase.GREEN, ("feat:", "impl:")),
    (Phase.REFACTOR, ("struct:", "refactor:")),
)

_TEST_DIRS = {"test", "tests", "testfixtures", "__tests__", "spec", "specs"}
_TEST_FILE = re.compile(
    r"^(test_.+|.+_test\.[^.]+|.+Tests?\.[^.]+|.+\.(test|spec)\.[^.]+|conftest\.py)$"
)


def is_production_path(path: str) -> bool:
    """True unless the path lives in a test tree or is a test file."""
    parts = [p for p in path.replace("\\", "/").split("/") if p]
    if not parts:
        return False
    if any(part.lower() in _TEST_DIRS for part in parts[:-1]):
        return False
    return not _TEST_FILE.match(parts[-1])


def touches_only_non_production(paths: Iterable[str]) -> bool:
    return not any(is_production_path(path) for path in paths)


def classify(message: str, changed_paths: Optional[Iterable[str]] = None) -> Phase:
    """Map a commit message (and optionally its changed paths) to a Phase.

    A tidy-labeled commit is TIDY only while it stays out of production
    code; one that touches production paths is OTHER. Without path
    information the label is trusted.
    """
    if not isinstance(message, str):
        return Phase.OTHER

    if message.startswith(TIDY_PREFIXES):
        if changed_paths is None or touches_only_non_production(changed_paths):
            return Phase.TIDY
        return Phase.OTHER

    for phase, prefixes in PHASE_PREFIXES:
        if message.startswith(prefixes):
            return phase
    return Phase.OTHER
