"""Generation orchestrator: canonical graph -> ordered code fragments.

A job runs in two passes over one `ReferenceResolver`:

1. register: every convertible node gets an identifier, every connection
   becomes a declaration dependency (target depends on source), and each
   converter's `prepare()` hook may add code-level dependencies of its own.
2. emit: nodes are converted in the resolver's topological order.

Nodes whose declarations cannot be linearized (a dependency cycle), together
with the rest of their dependency component, are left out and reported as a
`declaration_order` error. Per-node converter failures become `NodeOutcome`
errors; the default policy keeps going, `fail_fast=True` stops at the first.
"""

from __future__ import annotations

import heapq
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import CircularDependencyError, ConverterError
from .imports import ImportFormatter, ImportManager
from .ir.graph import analyze, flow_order
from .ir.models import (
    FRAGMENT_KIND_ORDER,
    CodeFragment,
    ConversionIssue,
    FragmentKind,
    GraphAnalysis,
    IRGraph,
    IRNode,
    IssueKind,
)
from .registry import ConverterLookup, GenerationContext, NodeConverter, to_identifier
from .resolver import ReferenceResolver

logger = logging.getLogger(__name__)


@dataclass
class NodeOutcome:
    """Result of converting one node: fragments, or an error (never both)."""

    node_id: str
    fragments: List[CodeFragment] = field(default_factory=list)
    packages: List[str] = field(default_factory=list)
    error: Optional[ConversionIssue] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, node_id: str, exc: BaseException) -> "NodeOutcome":
        if isinstance(exc, ConverterError):
            issue = exc.to_issue()
        else:
            issue = ConversionIssue(
                kind=IssueKind.CONVERTER_FAILURE,
                node_id=node_id,
                message=f"{type(exc).__name__}: {exc}",
            )
        return cls(node_id=node_id, error=issue)


@dataclass
class GenerationResult:
    fragments: List[CodeFragment] = field(default_factory=list)
    errors: List[ConversionIssue] = field(default_factory=list)
    warnings: List[ConversionIssue] = field(default_factory=list)
    packages: List[str] = field(default_factory=list)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors and not self.aborted

    @property
    def fatal(self) -> bool:
        """True when the output cannot be trusted as a whole."""
        return self.aborted or any(e.kind == IssueKind.DECLARATION_ORDER for e in self.errors)


@dataclass(frozen=True)
class GeneratedCode:
    """The persisted artifact: assembled code plus the package manifest."""

    code: str
    packages: List[str]


@dataclass
class _Plan:
    context: GenerationContext
    converters: Dict[str, NodeConverter]
    emit_order: List[str]
    errors: List[ConversionIssue] = field(default_factory=list)
    warnings: List[ConversionIssue] = field(default_factory=list)
    aborted: bool = False


def _sort_key(kind: FragmentKind) -> int:
    return FRAGMENT_KIND_ORDER.index(kind)


def _order_group(group: List[CodeFragment]) -> Tuple[List[CodeFragment], List[ConversionIssue]]:
    """Reorder one kind group so intra-group `depends_on` entries come first.

    Ties (and everything unconstrained) keep the incoming order. Fragments on
    a `depends_on` cycle, and those waiting on one, are left out of the
    returned list and reported as a `declaration_order` issue.
    """
    by_id: Dict[str, int] = {}
    by_node: Dict[str, List[int]] = {}
    for i, f in enumerate(group):
        by_id.setdefault(f.id, i)
        if f.node_id:
            by_node.setdefault(f.node_id, []).append(i)

    preds: Dict[int, Set[int]] = {i: set() for i in range(len(group))}
    for i, f in enumerate(group):
        for dep in f.depends_on:
            if dep == f.node_id:
                continue
            targets = [by_id[dep]] if dep in by_id else by_node.get(dep, [])
            for j in targets:
                if j != i:
                    preds[i].add(j)

    if not any(preds.values()):
        return group, []

    succs: Dict[int, List[int]] = {i: [] for i in preds}
    indegree = {i: len(p) for i, p in preds.items()}
    for i, p in preds.items():
        for j in p:
            succs[j].append(i)

    ready = [i for i, d in indegree.items() if d == 0]
    heapq.heapify(ready)
    out: List[int] = []
    while ready:
        i = heapq.heappop(ready)
        out.append(i)
        for k in succs[i]:
            indegree[k] -= 1
            if indegree[k] == 0:
                heapq.heappush(ready, k)

    issues: List[ConversionIssue] = []
    if len(out) < len(group):
        placed = set(out)
        stuck = [i for i in range(len(group)) if i not in placed]
        chain = [group[i].id for i in stuck]
        issues.append(
            ConversionIssue(
                kind=IssueKind.DECLARATION_ORDER,
                node_id=group[stuck[0]].node_id,
                message=f"Circular fragment dependency among: {', '.join(chain)}",
                chain=chain,
            )
        )
    return [group[i] for i in out], issues


def order_fragments(fragments: Sequence[Tuple[int, CodeFragment]]) -> Tuple[List[CodeFragment], List[ConversionIssue]]:
    """Group by kind, stable-sort by (order, visitation index), honor depends_on.

    `fragments` pairs each fragment with the visitation index of its node.
    When a group cannot be linearized, the blocked fragments and every other
    fragment of their nodes are dropped.
    """
    indexed = [(seq, local, f) for local, (seq, f) in enumerate(fragments)]
    indexed.sort(key=lambda t: (_sort_key(t[2].kind), t[2].order, t[0], t[1]))

    ordered: List[CodeFragment] = []
    issues: List[ConversionIssue] = []
    for kind in FRAGMENT_KIND_ORDER:
        group = [f for _, _, f in indexed if f.kind == kind]
        group, group_issues = _order_group(group)
        ordered.extend(group)
        issues.extend(group_issues)

    if issues:
        placed = {f.id for f in ordered}
        blocked_nodes = {f.node_id for _, _, f in indexed if f.id not in placed and f.node_id}
        ordered = [f for f in ordered if f.node_id not in blocked_nodes]
        logger.warning(f"Fragment dependency cycle; dropping fragments of nodes {sorted(blocked_nodes)}")
    return ordered, issues


def assemble(result: GenerationResult, import_manager: Optional[ImportFormatter] = None) -> GeneratedCode:
    """Concatenate fragments into one code unit (imports go through the import manager)."""
    manager = import_manager or ImportManager()
    sections: List[str] = []
    for kind in FRAGMENT_KIND_ORDER:
        group = [f for f in result.fragments if f.kind == kind]
        if not group:
            continue
        if kind == FragmentKind.IMPORT:
            block = manager.format(group)
        else:
            block = "\n".join(f.content.rstrip("\n") for f in group)
        if block.strip():
            sections.append(block)
    code = "\n\n".join(sections)
    return GeneratedCode(code=code + "\n" if code else "", packages=list(result.packages))


def _dependency_components(resolver: ReferenceResolver, seeds: Iterable[str]) -> Set[str]:
    """Every registered id weakly connected to `seeds` in the resolver's dependency graph."""
    registered = set(resolver.node_ids())
    neighbours: Dict[str, Set[str]] = {nid: set() for nid in registered}
    for nid in registered:
        for dep in resolver.dependencies_of(nid):
            if dep in registered:
                neighbours[nid].add(dep)
                neighbours[dep].add(nid)

    seen: Set[str] = set()
    stack = [s for s in seeds if s in registered]
    while stack:
        cur = stack.pop()
        if cur in seen:
            continue
        seen.add(cur)
        stack.extend(n for n in neighbours[cur] if n not in seen)
    return seen


def _cycle_issues(resolver: ReferenceResolver, blocked: Iterable[str]) -> List[ConversionIssue]:
    issues: List[ConversionIssue] = []
    reported: Set[frozenset] = set()
    for nid in blocked:
        cycle = resolver.find_cycle(nid)
        if not cycle:
            continue
        key = frozenset(cycle)
        if key in reported:
            continue
        reported.add(key)
        issues.append(CircularDependencyError(cycle).to_issue())
    return issues


def _coerce_fragments(node: IRNode, produced: Any) -> List[CodeFragment]:
    if produced is None:
        return []
    if not isinstance(produced, (list, tuple)):
        raise ConverterError(node.id, f"convert() must return a list of fragments (got {type(produced).__name__})")
    fragments: List[CodeFragment] = []
    for item in produced:
        if isinstance(item, dict):
            item = CodeFragment.model_validate(item)
        if not isinstance(item, CodeFragment):
            raise ConverterError(node.id, f"convert() returned a non-fragment item: {type(item).__name__}")
        if item.node_id is None:
            item = item.model_copy(update={"node_id": node.id})
        fragments.append(item)
    return fragments


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        fail_fast: bool = False,
        target: str = "python",
        options: Optional[Dict[str, Any]] = None,
    ):
        self.fail_fast = fail_fast
        self.target = target
        self.options = dict(options or {})

    def generate(
        self,
        graph: IRGraph,
        analysis: Optional[GraphAnalysis],
        resolver: ReferenceResolver,
        converter_lookup: ConverterLookup,
    ) -> GenerationResult:
        """Convert every node and return fragments in final emission order."""
        plan = self._register(graph, analysis, resolver, converter_lookup)
        outcomes: List[NodeOutcome] = []
        if not plan.aborted:
            for nid in plan.emit_order:
                outcome = self._convert_node(plan, nid)
                outcomes.append(outcome)
                if self.fail_fast and not outcome.ok:
                    break
        return self._collect(plan, outcomes)

    async def agenerate(
        self,
        graph: IRGraph,
        analysis: Optional[GraphAnalysis],
        resolver: ReferenceResolver,
        converter_lookup: ConverterLookup,
    ) -> GenerationResult:
        """Like `generate()`, awaiting converters that return awaitables.

        Nodes are still converted one at a time, in resolver order.
        """
        plan = self._register(graph, analysis, resolver, converter_lookup)
        outcomes: List[NodeOutcome] = []
        if not plan.aborted:
            for nid in plan.emit_order:
                outcome = await self._aconvert_node(plan, nid)
                outcomes.append(outcome)
                if self.fail_fast and not outcome.ok:
                    break
        return self._collect(plan, outcomes)

    def _register(
        self,
        graph: IRGraph,
        analysis: Optional[GraphAnalysis],
        resolver: ReferenceResolver,
        converter_lookup: ConverterLookup,
    ) -> _Plan:
        analysis = analysis or analyze(graph)
        context = GenerationContext(graph=graph, resolver=resolver, target=self.target, options=dict(self.options))
        plan = _Plan(context=context, converters={}, emit_order=[])
        nodes = graph.node_map()
        visit = flow_order(graph, analysis.dependencies)
        logger.info(f"Generating '{graph.metadata.name}': {len(visit)} nodes")

        used_names = {i.name for i in (resolver.identity(n) for n in resolver.node_ids()) if i is not None}
        for nid in visit:
            node = nodes[nid]
            converter = converter_lookup(node.type)
            if converter is None or not converter.can_convert(node):
                plan.warnings.append(
                    ConversionIssue(
                        kind=IssueKind.UNSUPPORTED_NODE,
                        node_id=nid,
                        message=f"No converter for node type '{node.type}'; node skipped",
                    )
                )
                logger.warning(f"Skipping node '{nid}': no converter for type '{node.type}'")
                continue
            plan.converters[nid] = converter

            # Helper identifiers a converter derives from its node's name ("<name>_<suffix>").
            suffixes = tuple(getattr(converter, "local_suffixes", ()) or ())
            if not resolver.is_registered(nid):
                naming = getattr(converter, "variable_name", None)
                base = naming(node) if callable(naming) else to_identifier(nid)
                name, n = base, 2
                while name in used_names or any(f"{name}_{s}" in used_names for s in suffixes):
                    name, n = f"{base}_{n}", n + 1
                resolver.register_node(nid, name, node.category)
            name = resolver.resolve_reference(nid)
            used_names.add(name)
            used_names.update(f"{name}_{s}" for s in suffixes)

        # Every wire between convertible nodes is a declaration dependency, so a
        # flow cycle among them is also a declaration cycle.
        for c in graph.connections:
            if c.source in plan.converters and c.target in plan.converters:
                resolver.add_dependency(c.target, c.source)

        for nid in visit:
            converter = plan.converters.get(nid)
            prepare = getattr(converter, "prepare", None)
            if not callable(prepare):
                continue
            try:
                prepare(nodes[nid], context.for_node(nodes[nid]))
            except Exception as e:
                outcome = NodeOutcome.failed(nid, e)
                plan.errors.append(outcome.error)
                plan.converters.pop(nid, None)
                logger.warning(f"Converter prepare() failed for node '{nid}': {outcome.error.message}")
                if self.fail_fast:
                    plan.aborted = True
                    return plan

        try:
            order = resolver.get_topological_order()
        except CircularDependencyError as exc:
            plan.errors.extend(_cycle_issues(resolver, sorted(exc.blocked, key=resolver.node_ids().index)))
            excluded = _dependency_components(resolver, exc.blocked)
            logger.warning(f"Declaration cycle; excluding nodes {sorted(excluded)}")
            if self.fail_fast:
                plan.aborted = True
                return plan
            order = resolver.get_topological_order(exclude=excluded)

        plan.emit_order = [nid for nid in order if nid in plan.converters]
        return plan

    def _convert_node(self, plan: _Plan, nid: str) -> NodeOutcome:
        node = plan.context.graph.node_map()[nid]
        converter = plan.converters[nid]
        ctx = plan.context.for_node(node)
        try:
            produced = converter.convert(node, ctx)
            if inspect.isawaitable(produced):
                if inspect.iscoroutine(produced):
                    produced.close()
                raise ConverterError(nid, "converter is asynchronous; use agenerate()")
            fragments = _coerce_fragments(node, produced)
            packages = list(converter.get_dependencies(node, ctx) or [])
        except Exception as e:
            return NodeOutcome.failed(nid, e)
        return NodeOutcome(node_id=nid, fragments=fragments, packages=packages)

    async def _aconvert_node(self, plan: _Plan, nid: str) -> NodeOutcome:
        node = plan.context.graph.node_map()[nid]
        converter = plan.converters[nid]
        ctx = plan.context.for_node(node)
        try:
            produced = converter.convert(node, ctx)
            if inspect.isawaitable(produced):
                produced = await produced
            fragments = _coerce_fragments(node, produced)
            packages = converter.get_dependencies(node, ctx)
            if inspect.isawaitable(packages):
                packages = await packages
        except Exception as e:
            return NodeOutcome.failed(nid, e)
        return NodeOutcome(node_id=nid, fragments=fragments, packages=list(packages or []))

    def _collect(self, plan: _Plan, outcomes: List[NodeOutcome]) -> GenerationResult:
        errors = list(plan.errors)
        warnings = list(plan.warnings)

        failed = [o for o in outcomes if not o.ok]
        for o in failed:
            errors.append(o.error)
            logger.warning(f"Converter failed for node '{o.node_id}': {o.error.message}")

        if plan.aborted or (self.fail_fast and failed):
            logger.info("Generation aborted (fail-fast)")
            return GenerationResult(errors=errors, warnings=warnings, aborted=True)

        visit_index = {nid: i for i, nid in enumerate(plan.emit_order)}
        tagged: List[Tuple[int, CodeFragment]] = []
        for o in outcomes:
            if o.ok:
                tagged.extend((visit_index[o.node_id], f) for f in o.fragments)

        fragments, order_issues = order_fragments(tagged)
        errors.extend(order_issues)

        # Nodes whose fragments were dropped contribute no packages.
        emitted = {f.node_id for f in fragments}
        packages: Dict[str, None] = {}
        for o in outcomes:
            if o.ok and (o.node_id in emitted or not o.fragments):
                for p in o.packages:
                    packages[p] = None
        logger.info(f"Generated {len(fragments)} fragments ({len(errors)} errors, {len(warnings)} warnings)")
        return GenerationResult(
            fragments=fragments,
            errors=errors,
            warnings=warnings,
            packages=sorted(packages),
        )
