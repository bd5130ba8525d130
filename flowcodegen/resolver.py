"""Job-scoped reference resolution and declaration ordering.

A `ReferenceResolver` answers two questions for one conversion job:
- which identifier holds node X's generated value (`resolve_reference`)
- in which order node declarations must appear (`get_topological_order`)

Its dependency graph is separate from the flow's connections: a converter may
depend on another node's value without a visual wire (implicit defaults), and
a wire does not always imply a code-level reference.

Construct one resolver per job. A resolver shared between jobs must be used
through `exclusive()`, which locks it and clears it on both ends.
"""

from __future__ import annotations

import heapq
import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Set

from .errors import CircularDependencyError
from .ir.models import NodeCategory

logger = logging.getLogger(__name__)


FALLBACK_PREFIX = "unresolved_"


@dataclass(frozen=True)
class NodeIdentity:
    node_id: str
    name: str
    category: NodeCategory


def fallback_identifier(node_id: str) -> str:
    """Deterministic identifier used for ids that were never registered.

    `unresolved_` followed by the id with every non-identifier character
    replaced by `_` (e.g. `chatOpenAI-0` -> `unresolved_chatOpenAI_0`).
    """
    return FALLBACK_PREFIX + re.sub(r"[^0-9A-Za-z_]", "_", str(node_id))


class ReferenceResolver:
    def __init__(self) -> None:
        self._identities: Dict[str, NodeIdentity] = {}
        self._dependencies: Dict[str, Dict[str, None]] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._identities)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._identities

    def register_node(
        self,
        node_id: str,
        name: str,
        category: NodeCategory | str,
        *,
        overwrite: bool = False,
    ) -> NodeIdentity:
        """Record the identifier holding a node's value (first write wins)."""
        existing = self._identities.get(node_id)
        if existing is not None and not overwrite:
            return existing
        identity = NodeIdentity(node_id=node_id, name=name, category=NodeCategory(category))
        # Overwrites keep the original registration slot so ordering stays stable.
        self._identities[node_id] = identity
        return identity

    def is_registered(self, node_id: str) -> bool:
        return node_id in self._identities

    def node_ids(self) -> List[str]:
        """Registered ids, in registration order."""
        return list(self._identities)

    def identity(self, node_id: str) -> Optional[NodeIdentity]:
        return self._identities.get(node_id)

    def add_dependency(self, dependent: str, depends_on: str) -> None:
        """Record that `dependent`'s declaration needs `depends_on` declared first."""
        self._dependencies.setdefault(dependent, {})[depends_on] = None

    def dependencies_of(self, node_id: str) -> List[str]:
        return list(self._dependencies.get(node_id, {}))

    def resolve_reference(self, node_id: str) -> str:
        """Return the identifier for `node_id`, or its fallback when unregistered."""
        identity = self._identities.get(node_id)
        if identity is None:
            return fallback_identifier(node_id)
        return identity.name

    def nodes_by_category(self, category: NodeCategory | str) -> List[NodeIdentity]:
        cat = NodeCategory(category)
        return [i for i in self._identities.values() if i.category == cat]

    def find_cycle(self, node_id: str) -> Optional[List[str]]:
        """Return a dependency cycle reachable from `node_id`, or None.

        The chain starts and ends with the same id, e.g. ["X", "Y", "Z", "X"].
        """
        path: List[str] = [node_id]
        on_path: Set[str] = {node_id}
        done: Set[str] = set()
        stack = [(node_id, iter(self._dependencies.get(node_id, {})))]

        while stack:
            current, deps = stack[-1]
            for dep in deps:
                if dep in on_path:
                    return path[path.index(dep):] + [dep]
                if dep not in done:
                    path.append(dep)
                    on_path.add(dep)
                    stack.append((dep, iter(self._dependencies.get(dep, {}))))
                    break
            else:
                stack.pop()
                path.pop()
                on_path.discard(current)
                done.add(current)
        return None

    def has_circular_dependency(self, node_id: str) -> bool:
        """True when a dependency cycle is reachable from `node_id`."""
        return self.find_cycle(node_id) is not None

    def get_topological_order(self, exclude: Iterable[str] = ()) -> List[str]:
        """Linearize registered nodes so dependencies come first.

        Kahn's algorithm; among ready nodes the earliest registered wins, so
        identical input always yields identical order. Edges to unregistered
        ids do not constrain the order.

        Raises:
            CircularDependencyError: when some registered nodes cannot be ordered.
        """
        skipped = set(exclude)
        order = [nid for nid in self._identities if nid not in skipped]
        index = {nid: i for i, nid in enumerate(order)}

        indegree: Dict[str, int] = {nid: 0 for nid in order}
        dependents: Dict[str, List[str]] = {nid: [] for nid in order}
        for nid in order:
            for dep in self._dependencies.get(nid, {}):
                if dep not in index:
                    continue
                indegree[nid] += 1
                dependents[dep].append(nid)

        ready = [index[nid] for nid in order if indegree[nid] == 0]
        heapq.heapify(ready)
        out: List[str] = []
        while ready:
            nid = order[heapq.heappop(ready)]
            out.append(nid)
            for dependent in dependents[nid]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, index[dependent])

        if len(out) < len(order):
            emitted = set(out)
            blocked = [nid for nid in order if nid not in emitted]
            chain: List[str] = []
            for nid in blocked:
                cycle = self.find_cycle(nid)
                if cycle:
                    chain = cycle
                    break
            raise CircularDependencyError(chain or blocked, blocked)

        logger.debug(f"Declaration order: {out}")
        return out

    def initialization_order(self) -> List[NodeIdentity]:
        return [self._identities[nid] for nid in self.get_topological_order()]

    def reset(self) -> None:
        """Clear every registration and dependency."""
        self._identities.clear()
        self._dependencies.clear()

    @contextmanager
    def exclusive(self) -> Iterator["ReferenceResolver"]:
        """Hold this resolver for one job: lock it and start/finish from a clean state."""
        with self._lock:
            self.reset()
            try:
                yield self
            finally:
                self.reset()
