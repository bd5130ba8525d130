"""Read-only analysis of canonical flow graphs.

Every function here is pure: it never mutates the graph it is given, so it can
be called repeatedly on the same graph and always returns the same answer.

Flow-level cycles found here are *not* fatal. They usually mean iterative
control flow (a supervisor re-invoking workers) and are reported as warnings.
Declaration-order cycles are a different concern, handled by
`flowcodegen.resolver.ReferenceResolver` over its own dependency graph.
"""

from __future__ import annotations

import heapq
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

import networkx as nx
from pydantic import BaseModel, Field

from .models import (
    Complexity,
    ConversionIssue,
    GraphAnalysis,
    IRGraph,
    IssueKind,
    NodeCategory,
)


# Metadata key marking connections kept across a subgraph boundary.
BOUNDARY_CONNECTIONS_KEY = "boundary_connections"


@dataclass(frozen=True)
class ComplexityPolicy:
    """Fixed thresholds for complexity classification.

    simple:   node count <= simple_max_nodes and no cycles
    moderate: node count <= moderate_max_nodes and either no cycles or one
              cycle no longer than shallow_cycle_max_length
    complex:  anything else
    """

    simple_max_nodes: int = 9
    moderate_max_nodes: int = 30
    shallow_cycle_max_length: int = 3


DEFAULT_COMPLEXITY_POLICY = ComplexityPolicy()


class GraphStats(BaseModel):
    node_count: int
    connection_count: int
    average_degree: float
    max_depth: int
    complexity: Complexity
    node_types: Dict[str, int] = Field(default_factory=dict)
    categories: Dict[str, int] = Field(default_factory=dict)
    entry_points: List[str] = Field(default_factory=list)
    exit_points: List[str] = Field(default_factory=list)
    isolated_nodes: List[str] = Field(default_factory=list)
    bottlenecks: List[str] = Field(default_factory=list)


def _node_ids(graph: IRGraph) -> List[str]:
    return [n.id for n in graph.nodes]


def _successors(graph: IRGraph) -> Dict[str, List[str]]:
    """Return {node_id: [successor ids]} over in-graph nodes, de-duplicated, in connection order."""
    ids = set(_node_ids(graph))
    adj: Dict[str, List[str]] = {nid: [] for nid in _node_ids(graph)}
    for c in graph.connections:
        if c.source not in ids or c.target not in ids:
            continue
        if c.target not in adj[c.source]:
            adj[c.source].append(c.target)
    return adj


def find_entry_points(graph: IRGraph) -> List[str]:
    has_incoming = {c.target for c in graph.connections}
    return [n.id for n in graph.nodes if n.id not in has_incoming]


def find_exit_points(graph: IRGraph) -> List[str]:
    has_outgoing = {c.source for c in graph.connections}
    return [n.id for n in graph.nodes if n.id not in has_outgoing]


def find_isolated_nodes(graph: IRGraph) -> List[str]:
    connected = {c.source for c in graph.connections} | {c.target for c in graph.connections}
    return [n.id for n in graph.nodes if n.id not in connected]


def direct_dependencies(graph: IRGraph) -> Dict[str, List[str]]:
    """Return {node_id: [direct predecessor ids]} (not the transitive closure)."""
    deps: Dict[str, List[str]] = {nid: [] for nid in _node_ids(graph)}
    for c in graph.connections:
        preds = deps.get(c.target)
        if preds is not None and c.source not in preds:
            preds.append(c.source)
    return deps


def _digraph(graph: IRGraph) -> "nx.DiGraph":
    g = nx.DiGraph()
    g.add_nodes_from(_node_ids(graph))
    for source, targets in _successors(graph).items():
        g.add_edges_from((source, target) for target in targets)
    return g


def find_cycles(graph: IRGraph) -> List[List[str]]:
    """Return every elementary cycle of the connection graph.

    Each cycle starts at its earliest node (graph insertion order) and does not
    repeat that node at the end. A self-loop is reported as a one-node cycle.
    Cycles are sorted by the insertion positions of their nodes.
    """
    index = {nid: i for i, nid in enumerate(_node_ids(graph))}
    cycles: List[List[str]] = []
    for cycle in nx.simple_cycles(_digraph(graph)):
        first = min(range(len(cycle)), key=lambda i: index[cycle[i]])
        cycles.append(cycle[first:] + cycle[:first])
    cycles.sort(key=lambda c: [index[nid] for nid in c])
    return cycles


def classify_complexity(
    node_count: int,
    cycles: List[List[str]],
    policy: Optional[ComplexityPolicy] = None,
) -> Complexity:
    p = policy or DEFAULT_COMPLEXITY_POLICY
    if not cycles and node_count <= p.simple_max_nodes:
        return Complexity.SIMPLE
    shallow_single = len(cycles) == 1 and len(cycles[0]) <= p.shallow_cycle_max_length
    if node_count <= p.moderate_max_nodes and (not cycles or shallow_single):
        return Complexity.MODERATE
    return Complexity.COMPLEX


def _structural_errors(graph: IRGraph) -> List[ConversionIssue]:
    errors: List[ConversionIssue] = []
    seen: Set[str] = set()
    for n in graph.nodes:
        if n.id in seen:
            errors.append(
                ConversionIssue(kind=IssueKind.STRUCTURAL, node_id=n.id, message=f"Duplicate node id: {n.id}")
            )
        seen.add(n.id)

    boundary = set(graph.metadata.settings.get(BOUNDARY_CONNECTIONS_KEY) or [])
    for c in graph.connections:
        if c.id in boundary:
            continue
        for end, node_id in (("source", c.source), ("target", c.target)):
            if node_id not in seen:
                errors.append(
                    ConversionIssue(
                        kind=IssueKind.STRUCTURAL,
                        node_id=node_id,
                        connection_id=c.id,
                        message=f"Connection {c.id} references missing {end} node: {node_id}",
                    )
                )
    return errors


def analyze(graph: IRGraph, policy: Optional[ComplexityPolicy] = None) -> GraphAnalysis:
    """Compute the analysis report for a graph (pure, idempotent)."""
    errors = _structural_errors(graph)
    cycles = find_cycles(graph)
    warnings = [
        ConversionIssue(
            kind=IssueKind.FLOW_CYCLE,
            node_id=cycle[0],
            message=f"Flow cycle detected: {' -> '.join(cycle + [cycle[0]])}",
            chain=list(cycle),
        )
        for cycle in cycles
    ]
    return GraphAnalysis(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        complexity=classify_complexity(len(graph.nodes), cycles, policy),
        entry_points=find_entry_points(graph),
        exit_points=find_exit_points(graph),
        isolated_nodes=find_isolated_nodes(graph),
        cycles=cycles,
        dependencies=direct_dependencies(graph),
    )


def flow_order(graph: IRGraph, dependencies: Optional[Dict[str, List[str]]] = None) -> List[str]:
    """Order node ids so predecessors come first where the flow allows it.

    Kahn's algorithm over the direct-dependency map; ready nodes are taken in
    graph insertion order. Nodes stuck on a cycle are appended afterwards, in
    insertion order.
    """
    deps = dependencies if dependencies is not None else direct_dependencies(graph)
    order = _node_ids(graph)
    index = {nid: i for i, nid in enumerate(order)}

    indegree: Dict[str, int] = {nid: 0 for nid in order}
    dependents: Dict[str, List[str]] = {nid: [] for nid in order}
    for nid in order:
        for pred in deps.get(nid, []):
            if pred not in index or pred == nid:
                continue
            indegree[nid] += 1
            dependents[pred].append(nid)

    ready = [index[nid] for nid in order if indegree[nid] == 0]
    heapq.heapify(ready)
    out: List[str] = []
    while ready:
        nid = order[heapq.heappop(ready)]
        out.append(nid)
        for dep in dependents[nid]:
            indegree[dep] -= 1
            if indegree[dep] == 0:
                heapq.heappush(ready, index[dep])

    emitted = set(out)
    out.extend(nid for nid in order if nid not in emitted)
    return out


def extract_subgraph(graph: IRGraph, node_ids: Iterable[str], include_boundary: bool = False) -> IRGraph:
    """Return the subgraph induced by `node_ids`.

    With `include_boundary`, connections with exactly one endpoint in the set
    are kept for traceability; nodes outside the set are never pulled in.
    """
    wanted = set(node_ids)
    nodes = [n for n in graph.nodes if n.id in wanted]
    connections = []
    boundary: List[str] = []
    for c in graph.connections:
        inside = (c.source in wanted, c.target in wanted)
        if all(inside):
            connections.append(c)
        elif include_boundary and any(inside):
            connections.append(c)
            boundary.append(c.id)

    settings = dict(graph.metadata.settings)
    settings["extracted_from"] = graph.metadata.name
    settings[BOUNDARY_CONNECTIONS_KEY] = boundary
    metadata = graph.metadata.model_copy(
        update={"name": f"{graph.metadata.name} (Subgraph)", "description": "Extracted subgraph", "settings": settings}
    )
    return IRGraph(metadata=metadata, nodes=nodes, connections=connections)


def find_path(graph: IRGraph, start: str, end: str) -> Optional[List[str]]:
    """Shortest path (BFS) from `start` to `end`, or None."""
    if start == end:
        return [start]
    adj = _successors(graph)
    visited = {start}
    queue = deque([[start]])
    while queue:
        path = queue.popleft()
        for nxt in adj.get(path[-1], []):
            if nxt == end:
                return path + [nxt]
            if nxt not in visited:
                visited.add(nxt)
                queue.append(path + [nxt])
    return None


def max_depth(graph: IRGraph) -> int:
    """Longest forward chain length (edges), ignoring edges that close a cycle."""
    order = flow_order(graph)
    position = {nid: i for i, nid in enumerate(order)}
    depth = {nid: 0 for nid in order}
    adj = _successors(graph)
    for nid in order:
        for nxt in adj.get(nid, []):
            if position[nxt] > position[nid]:
                depth[nxt] = max(depth[nxt], depth[nid] + 1)
    return max(depth.values(), default=0)


def graph_stats(graph: IRGraph, policy: Optional[ComplexityPolicy] = None) -> GraphStats:
    node_types: Dict[str, int] = {}
    categories: Dict[str, int] = {}
    for n in graph.nodes:
        node_types[n.type] = node_types.get(n.type, 0) + 1
        categories[n.category.value] = categories.get(n.category.value, 0) + 1

    bottlenecks = []
    for n in graph.nodes:
        if len(graph.incoming(n.id)) > 1 or len(graph.outgoing(n.id)) > 1:
            bottlenecks.append(n.id)

    return GraphStats(
        node_count=len(graph.nodes),
        connection_count=len(graph.connections),
        average_degree=(len(graph.connections) * 2) / max(len(graph.nodes), 1),
        max_depth=max_depth(graph),
        complexity=classify_complexity(len(graph.nodes), find_cycles(graph), policy),
        node_types=node_types,
        categories=categories,
        entry_points=find_entry_points(graph),
        exit_points=find_exit_points(graph),
        isolated_nodes=find_isolated_nodes(graph),
        bottlenecks=bottlenecks,
    )


_CATEGORY_COLORS: Dict[NodeCategory, str] = {
    NodeCategory.LLM: "#E3F2FD",
    NodeCategory.CHAIN: "#F3E5F5",
    NodeCategory.AGENT: "#E8F5E8",
    NodeCategory.TOOL: "#FFF3E0",
    NodeCategory.MEMORY: "#FCE4EC",
    NodeCategory.VECTORSTORE: "#E0F2F1",
    NodeCategory.EMBEDDING: "#F1F8E9",
    NodeCategory.PROMPT: "#FFF8E1",
    NodeCategory.RETRIEVER: "#E8EAF6",
}


def _dot_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def to_dot(graph: IRGraph) -> str:
    """Render the graph in Graphviz DOT format."""
    lines = [f'digraph "{_dot_escape(graph.metadata.name)}" {{', "  rankdir=TB;", "  node [shape=box, style=rounded];", ""]
    for n in graph.nodes:
        label = f"{_dot_escape(n.label or n.id)}\\n({_dot_escape(n.type)})"
        color = _CATEGORY_COLORS.get(n.category, "#F5F5F5")
        lines.append(f'  "{_dot_escape(n.id)}" [label="{label}", fillcolor="{color}", style="filled,rounded"];')
    lines.append("")
    for c in graph.connections:
        attrs = f' [label="{_dot_escape(c.label)}"]' if c.label else ""
        lines.append(f'  "{_dot_escape(c.source)}" -> "{_dot_escape(c.target)}"{attrs};')
    lines.append("}")
    return "\n".join(lines) + "\n"
