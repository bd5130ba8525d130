"""flowcodegen test bootstrap.

Tests are usually run from a checkout without an editable install; make sure
`flowcodegen` resolves to the package in this repository rather than to any
copy installed in the active environment.
"""

from __future__ import annotations

import sys
from pathlib import Path


def _prepend_sys_path(path: Path) -> None:
    p = str(path)
    if p and p not in sys.path:
        sys.path.insert(0, p)


HERE = Path(__file__).resolve()
PROJECT_ROOT = HERE.parents[1]

_prepend_sys_path(PROJECT_ROOT)
