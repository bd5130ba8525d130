"""Tests for the two-pass generation orchestrator."""

from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

from flowcodegen.errors import ConverterError
from flowcodegen.imports import ImportManager
from flowcodegen.ir.graph import analyze
from flowcodegen.ir.models import (
    FRAGMENT_KIND_ORDER,
    CodeFragment,
    FragmentKind,
    IRConnection,
    IRGraph,
    IRNode,
    IssueKind,
    NodeCategory,
)
from flowcodegen.orchestrator import GenerationOrchestrator, assemble, order_fragments
from flowcodegen.registry import BaseConverter, ConverterRegistry, GenerationContext
from flowcodegen.resolver import ReferenceResolver


class _Stub(BaseConverter):
    """Emits an import, a declaration that references every wired source, and an export."""

    def __init__(self, node_type: str, category: NodeCategory = NodeCategory.UTILITY, package: str = "stub-pkg"):
        self.node_type = node_type
        self.category = category
        self.packages = [package]

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        var = context.resolver.resolve_reference(node.id)
        refs = [context.get_reference(c.source) for c in context.graph.incoming(node.id)]
        args = ", ".join(r.exported_as for r in refs)
        return [
            self.fragment(node, FragmentKind.IMPORT, f"from stubs import {node.type.title()}"),
            self.fragment(
                node,
                FragmentKind.DECLARATION,
                f"{var} = {node.type.title()}({args})",
                depends_on=[r.fragment_id for r in refs],
            ),
            self.fragment(node, FragmentKind.EXPORT, f"__all__.append({var!r})"),
        ]


class _Failing(BaseConverter):
    node_type = "broken"

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        raise ConverterError(node.id, "cannot convert this node")


class _Crashing(BaseConverter):
    node_type = "crashing"

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        raise KeyError("boom")


class _Async(BaseConverter):
    node_type = "remote"

    async def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        await asyncio.sleep(0)
        var = context.resolver.resolve_reference(node.id)
        return [self.fragment(node, FragmentKind.DECLARATION, f"{var} = fetch_remote()")]


def _registry() -> ConverterRegistry:
    return ConverterRegistry(
        [
            _Stub("model", NodeCategory.LLM, "model-pkg"),
            _Stub("tool", NodeCategory.TOOL, "tool-pkg"),
            _Stub("agent", NodeCategory.AGENT, "agent-pkg"),
            _Stub("step", NodeCategory.CHAIN),
            _Failing(),
            _Crashing(),
            _Async(),
        ]
    )


def _graph(nodes: List[Tuple[str, str]], edges: List[Tuple[str, str]]) -> IRGraph:
    return IRGraph(
        nodes=[IRNode(id=nid, type=ntype) for nid, ntype in nodes],
        connections=[IRConnection(id=f"{s}->{t}", source=s, target=t) for s, t in edges],
    )


def _generate(graph: IRGraph, *, fail_fast: bool = False, registry: Optional[ConverterRegistry] = None):
    registry = registry or _registry()
    return GenerationOrchestrator(fail_fast=fail_fast).generate(graph, analyze(graph), ReferenceResolver(), registry.get)


def _agent_graph() -> IRGraph:
    return _graph([("A", "model"), ("B", "tool"), ("C", "agent")], [("B", "C"), ("A", "C")])


def test_fragments_are_grouped_by_kind_in_emission_order() -> None:
    result = _generate(_agent_graph())
    assert result.ok is True
    assert result.errors == []

    kinds = [FRAGMENT_KIND_ORDER.index(f.kind) for f in result.fragments]
    assert kinds == sorted(kinds)

    declarations = [f.node_id for f in result.fragments if f.kind == FragmentKind.DECLARATION]
    assert declarations == ["A", "B", "C"]
    [agent] = [f for f in result.fragments if f.id == "C:declaration"]
    assert agent.content == "c = Agent(b, a)"
    assert result.packages == ["agent-pkg", "model-pkg", "tool-pkg"]


def test_generation_is_deterministic() -> None:
    first = _generate(_agent_graph())
    second = _generate(_agent_graph())
    assert [f.model_dump() for f in first.fragments] == [f.model_dump() for f in second.fragments]
    assert first.packages == second.packages


def test_declaration_depends_on_reorders_within_the_group() -> None:
    tagged = [
        (0, CodeFragment(id="late:declaration", kind=FragmentKind.DECLARATION, content="late = early", depends_on=["early:declaration"], node_id="late")),
        (1, CodeFragment(id="early:declaration", kind=FragmentKind.DECLARATION, content="early = 1", node_id="early")),
        (1, CodeFragment(id="early:import", kind=FragmentKind.IMPORT, content="import os", node_id="early")),
    ]
    ordered, issues = order_fragments(tagged)
    assert issues == []
    assert [f.id for f in ordered] == ["early:import", "early:declaration", "late:declaration"]


def test_best_effort_collects_failures_and_keeps_going() -> None:
    graph = _graph([("bad", "broken"), ("A", "model"), ("oops", "crashing"), ("C", "agent")], [("A", "C")])

    result = _generate(graph)
    assert result.aborted is False
    assert result.ok is False
    assert [(e.kind, e.node_id) for e in result.errors] == [
        (IssueKind.CONVERTER_FAILURE, "bad"),
        (IssueKind.CONVERTER_FAILURE, "oops"),
    ]
    assert result.errors[0].message == "cannot convert this node"
    assert result.errors[1].message.startswith("KeyError")
    assert {f.node_id for f in result.fragments} == {"A", "C"}


def test_fail_fast_stops_at_the_first_failure() -> None:
    graph = _graph([("bad", "broken"), ("A", "model"), ("C", "agent")], [("A", "C")])

    result = _generate(graph, fail_fast=True)
    assert result.aborted is True
    assert result.fatal is True
    assert result.fragments == []
    assert [e.node_id for e in result.errors] == ["bad"]


def test_unknown_node_is_skipped_with_a_warning() -> None:
    graph = _graph([("A", "model"), ("C", "agent"), ("x", "mysteryNode")], [("A", "C")])

    result = _generate(graph)
    assert result.errors == []
    [warning] = result.warnings
    assert warning.kind == IssueKind.UNSUPPORTED_NODE
    assert warning.node_id == "x"
    assert {f.node_id for f in result.fragments} == {"A", "C"}


def test_declaration_cycle_excludes_its_component_only() -> None:
    graph = _graph(
        [("X", "step"), ("Y", "step"), ("Z", "step"), ("W", "model")],
        [("X", "Y"), ("Y", "Z"), ("Z", "X")],
    )

    result = _generate(graph)
    assert result.fatal is True
    [error] = result.errors
    assert error.kind == IssueKind.DECLARATION_ORDER
    assert set(error.chain) == {"X", "Y", "Z"}
    assert error.chain[0] == error.chain[-1]
    assert {f.node_id for f in result.fragments} == {"W"}


def test_declaration_cycle_with_fail_fast_aborts() -> None:
    graph = _graph([("X", "step"), ("Y", "step")], [("X", "Y"), ("Y", "X")])

    result = _generate(graph, fail_fast=True)
    assert result.aborted is True
    assert result.fragments == []
    assert [e.kind for e in result.errors] == [IssueKind.DECLARATION_ORDER]


def test_preregistered_names_are_kept() -> None:
    graph = _agent_graph()
    resolver = ReferenceResolver()
    resolver.register_node("A", "shared_model", "llm")

    result = GenerationOrchestrator().generate(graph, None, resolver, _registry().get)
    [agent] = [f for f in result.fragments if f.id == "C:declaration"]
    assert agent.content == "c = Agent(b, shared_model)"


def test_colliding_identifiers_get_a_suffix() -> None:
    graph = _graph([("chat-model", "model"), ("chat_model", "model")], [])

    result = _generate(graph)
    contents = [f.content for f in result.fragments if f.kind == FragmentKind.DECLARATION]
    assert contents == ["chat_model = Model()", "chat_model_2 = Model()"]


def test_async_converters_need_agenerate() -> None:
    graph = _graph([("r", "remote"), ("A", "model")], [])
    registry = _registry()

    sync_result = GenerationOrchestrator().generate(graph, None, ReferenceResolver(), registry.get)
    [error] = sync_result.errors
    assert error.node_id == "r"
    assert "agenerate" in error.message

    async_result = asyncio.run(GenerationOrchestrator().agenerate(graph, None, ReferenceResolver(), registry.get))
    assert async_result.errors == []
    assert "r = fetch_remote()" in [f.content for f in async_result.fragments]


def test_assemble_merges_imports_and_joins_sections() -> None:
    result = _generate(_agent_graph())
    code = assemble(result, ImportManager()).code

    assert code.startswith("from stubs import Agent, Model, Tool\n\n")
    assert "a = Model()\nb = Tool()\nc = Agent(b, a)" in code
    assert code.endswith("__all__.append('c')\n")


class _WithHelper(_Stub):
    """Also declares `<var>_helper` at module level."""

    local_suffixes = ("helper",)


def _helper_registry() -> ConverterRegistry:
    registry = _registry()
    registry.register(_WithHelper("helped"))
    return registry


def test_helper_names_are_reserved_for_their_node() -> None:
    graph = _graph([("a_helper", "model"), ("a", "helped")], [])
    result = _generate(graph, registry=_helper_registry())
    contents = [f.content for f in result.fragments if f.kind == FragmentKind.DECLARATION]
    assert contents == ["a_helper = Model()", "a_2 = Helped()"]

    graph = _graph([("a", "helped"), ("a_helper", "model")], [])
    result = _generate(graph, registry=_helper_registry())
    contents = [f.content for f in result.fragments if f.kind == FragmentKind.DECLARATION]
    assert contents == ["a = Helped()", "a_helper_2 = Model()"]


def test_fragment_cycle_drops_every_fragment_of_the_blocked_nodes() -> None:
    tagged = [
        (0, CodeFragment(id="na:import", kind=FragmentKind.IMPORT, content="import a", node_id="na")),
        (0, CodeFragment(id="a", kind=FragmentKind.DECLARATION, content="a = b", depends_on=["b"], node_id="na")),
        (1, CodeFragment(id="b", kind=FragmentKind.DECLARATION, content="b = a", depends_on=["a"], node_id="nb")),
        (2, CodeFragment(id="c", kind=FragmentKind.DECLARATION, content="c = 1", node_id="nc")),
    ]
    ordered, issues = order_fragments(tagged)
    assert [f.id for f in ordered] == ["c"]
    [issue] = issues
    assert issue.kind == IssueKind.DECLARATION_ORDER
    assert issue.chain == ["a", "b"]


class _Tangled(BaseConverter):
    """Two fragments of one node that wait on each other."""

    node_type = "tangled"
    packages = ["tangled-pkg"]

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        first = self.fragment(node, FragmentKind.DECLARATION, "x = y", suffix="x", depends_on=[f"{node.id}:declaration:y"])
        second = self.fragment(node, FragmentKind.DECLARATION, "y = x", suffix="y", depends_on=[f"{node.id}:declaration:x"])
        return [self.fragment(node, FragmentKind.IMPORT, "import tangled"), first, second]


def test_fragment_cycle_is_not_emitted_and_contributes_no_packages() -> None:
    registry = _registry()
    registry.register(_Tangled())
    graph = _graph([("T", "tangled"), ("A", "model")], [])

    result = _generate(graph, registry=registry)
    assert [e.kind for e in result.errors] == [IssueKind.DECLARATION_ORDER]
    assert {f.node_id for f in result.fragments} == {"A"}
    assert result.packages == ["model-pkg"]


def test_flow_cycle_between_convertible_nodes_is_also_a_declaration_cycle() -> None:
    graph = _graph([("sup", "agent"), ("w1", "step"), ("w2", "step"), ("A", "model")], [("sup", "w1"), ("w1", "sup"), ("sup", "w2")])
    analysis = analyze(graph)
    assert [w.kind for w in analysis.warnings] == [IssueKind.FLOW_CYCLE]

    result = GenerationOrchestrator().generate(graph, analysis, ReferenceResolver(), _registry().get)
    assert [e.kind for e in result.errors] == [IssueKind.DECLARATION_ORDER]
    assert result.errors[0].chain[0] == result.errors[0].chain[-1]
    assert {f.node_id for f in result.fragments} == {"A"}
