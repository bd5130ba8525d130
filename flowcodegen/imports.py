"""Default import manager for the Python target.

The orchestrator hands every `import` fragment to an import manager as one
batch; this one merges `from x import a, b` statements per module, drops
duplicates and sorts the result so the block is stable across runs.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Protocol

from .ir.models import CodeFragment


_FROM_IMPORT = re.compile(r"^from\s+([\w.]+)\s+import\s+(.+)$")
_PLAIN_IMPORT = re.compile(r"^import\s+([\w.]+(?:\s+as\s+\w+)?(?:\s*,\s*[\w.]+(?:\s+as\s+\w+)?)*)$")


class ImportFormatter(Protocol):
    def format(self, fragments: Iterable[CodeFragment]) -> str: ...


def _split_names(names: str) -> List[str]:
    names = names.strip()
    if names.startswith("(") and names.endswith(")"):
        names = names[1:-1]
    return [n.strip() for n in names.split(",") if n.strip()]


def _logical_lines(content: str) -> List[str]:
    """Join parenthesized multi-line imports into single lines."""
    out: List[str] = []
    buf = ""
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        buf = f"{buf} {stripped}".strip() if buf else stripped
        if buf.count("(") <= buf.count(")"):
            out.append(buf)
            buf = ""
    if buf:
        out.append(buf)
    return out


class ImportManager:
    def format(self, fragments: Iterable[CodeFragment]) -> str:
        plain: Dict[str, None] = {}
        from_imports: Dict[str, Dict[str, None]] = {}
        other: Dict[str, None] = {}

        for fragment in fragments:
            for line in _logical_lines(fragment.content):
                m = _FROM_IMPORT.match(line)
                if m:
                    symbols = from_imports.setdefault(m.group(1), {})
                    for name in _split_names(m.group(2)):
                        symbols[name] = None
                    continue
                m = _PLAIN_IMPORT.match(line)
                if m:
                    for name in _split_names(m.group(1)):
                        plain[f"import {name}"] = None
                    continue
                other[line] = None

        lines = sorted(plain)
        for module in sorted(from_imports):
            names = sorted(from_imports[module])
            lines.append(f"from {module} import {', '.join(names)}")
        lines.extend(other)
        return "\n".join(lines)
