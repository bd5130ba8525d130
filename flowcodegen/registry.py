"""Converter contract, generation context and the converter registry.

A converter turns one `IRNode` into zero or more `CodeFragment`s. Converters
are looked up by `node.type` in a `ConverterRegistry`; supporting a new node
type means registering one more converter, never adding branches elsewhere.
"""

from __future__ import annotations

import keyword
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from .ir.models import CodeFragment, FragmentKind, IRGraph, IRNode, NodeCategory
from .resolver import ReferenceResolver


@dataclass(frozen=True)
class Reference:
    """How generated code refers to another node's value."""

    node_id: str
    exported_as: str
    fragment_id: str
    resolved: bool


def declaration_fragment_id(node_id: str) -> str:
    return f"{node_id}:{FragmentKind.DECLARATION.value}"


@dataclass
class GenerationContext:
    """What a converter may consult while converting a node.

    One context is shared by a job; `for_node()` returns a copy bound to the
    node currently being converted, so port lookups and `depends_on()` know
    which node they are about.
    """

    graph: IRGraph
    resolver: ReferenceResolver
    target: str = "python"
    options: Dict[str, Any] = field(default_factory=dict)
    node: Optional[IRNode] = None

    def for_node(self, node: IRNode) -> "GenerationContext":
        return replace(self, node=node)

    def _sources_for_port(self, port: str) -> List[str]:
        if self.node is None:
            return []
        return [c.source for c in self.graph.incoming(self.node.id) if c.target_port == port]

    def _reference_to(self, node_id: str) -> Reference:
        return Reference(
            node_id=node_id,
            exported_as=self.resolver.resolve_reference(node_id),
            fragment_id=declaration_fragment_id(node_id),
            resolved=self.resolver.is_registered(node_id),
        )

    def get_reference(self, ref: str) -> Reference:
        """Resolve `ref`, an input port of the current node or a node id.

        A port name resolves to the first node wired into that port. Anything
        else is treated as a node id. Unknown ids resolve to the resolver's
        fallback identifier with `resolved=False`.
        """
        sources = self._sources_for_port(ref)
        return self._reference_to(sources[0] if sources else ref)

    def get_references(self, port: str) -> List[Reference]:
        """Resolve every node wired into `port` (list-valued inputs such as tools)."""
        return [self._reference_to(src) for src in self._sources_for_port(port)]

    def is_connected(self, port: str) -> bool:
        return bool(self._sources_for_port(port))

    def depends_on(self, node_id: str) -> None:
        """Declare a code-level dependency of the current node on `node_id`."""
        if self.node is None:
            raise RuntimeError("depends_on() requires a node-bound context")
        self.resolver.add_dependency(self.node.id, node_id)

    def find_nodes(self, category: NodeCategory | str) -> List[IRNode]:
        cat = NodeCategory(category)
        return [n for n in self.graph.nodes if n.category == cat]


@runtime_checkable
class NodeConverter(Protocol):
    """Capability interface every converter implements."""

    def can_convert(self, node: IRNode) -> bool: ...

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]: ...

    def get_dependencies(self, node: IRNode, context: GenerationContext) -> List[str]: ...


ConverterLookup = Callable[[str], Optional[NodeConverter]]


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def to_identifier(text: str) -> str:
    """Turn an arbitrary id/label into a snake_case Python identifier."""
    s = _CAMEL_BOUNDARY.sub("_", str(text or ""))
    s = re.sub(r"[^0-9A-Za-z]+", "_", s).strip("_").lower()
    s = re.sub(r"_+", "_", s)
    if not s:
        s = "node"
    if s[0].isdigit():
        s = f"n_{s}"
    if keyword.iskeyword(s):
        s = f"{s}_"
    return s


class BaseConverter(ABC):
    """Common helpers for converters.

    Subclasses set `node_type` and `category` and implement `convert()`.
    `prepare()` runs during the registration pass, before any fragment is
    emitted, and is the place to declare code-level dependencies.
    A converter that declares extra module-level names must build them as
    `f"{var}_{suffix}"` and list each suffix in `local_suffixes`, so the
    orchestrator keeps other nodes off those names.
    """

    node_type: str = ""
    category: NodeCategory = NodeCategory.UTILITY
    packages: List[str] = ["langchain-core"]
    local_suffixes: Tuple[str, ...] = ()

    def can_convert(self, node: IRNode) -> bool:
        return node.type == self.node_type

    @abstractmethod
    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        raise NotImplementedError

    def get_dependencies(self, node: IRNode, context: GenerationContext) -> List[str]:
        return list(self.packages)

    def prepare(self, node: IRNode, context: GenerationContext) -> None:
        return None

    def variable_name(self, node: IRNode) -> str:
        return to_identifier(node.id)

    def fragment(
        self,
        node: IRNode,
        kind: FragmentKind,
        content: str,
        *,
        suffix: str = "",
        depends_on: Optional[Iterable[str]] = None,
        order: int = 0,
    ) -> CodeFragment:
        fid = f"{node.id}:{kind.value}" + (f":{suffix}" if suffix else "")
        return CodeFragment(
            id=fid,
            kind=kind,
            content=content,
            depends_on=list(depends_on or []),
            order=order,
            node_id=node.id,
        )

    @staticmethod
    def format_value(value: Any) -> str:
        """Render a parameter value as a Python literal."""
        return repr(value)


class ConverterRegistry:
    """Table mapping node type tags to converters."""

    def __init__(self, converters: Optional[Iterable[NodeConverter]] = None):
        self._converters: Dict[str, NodeConverter] = {}
        for converter in converters or []:
            self.register(converter)

    def register(self, converter: NodeConverter, *, node_type: Optional[str] = None, aliases: Iterable[str] = ()) -> None:
        key = node_type or getattr(converter, "node_type", "")
        if not key:
            raise ValueError("Converter must declare a node_type (or pass node_type=...)")
        self._converters[key] = converter
        for alias in aliases:
            self._converters[alias] = converter

    def unregister(self, node_type: str) -> None:
        self._converters.pop(node_type, None)

    def get(self, node_type: str) -> Optional[NodeConverter]:
        return self._converters.get(node_type)

    def has(self, node_type: str) -> bool:
        return node_type in self._converters

    def types(self) -> List[str]:
        return list(self._converters)

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._converters

    def __len__(self) -> int:
        return len(self._converters)
