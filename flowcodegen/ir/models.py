"""Pydantic models for the canonical flow graph (IR).

These models are the single shape every stage of the pipeline agrees on:
the transformer produces them, the analyzer reads them, and the orchestrator
hands `IRNode` instances to converters.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NodeCategory(str, Enum):
    """Semantic category of a flow node."""

    LLM = "llm"
    CHAIN = "chain"
    AGENT = "agent"
    TOOL = "tool"
    MEMORY = "memory"
    VECTORSTORE = "vectorstore"
    EMBEDDING = "embedding"
    PROMPT = "prompt"
    RETRIEVER = "retriever"
    OUTPUT_PARSER = "output_parser"
    TEXT_SPLITTER = "text_splitter"
    LOADER = "loader"
    UTILITY = "utility"
    CONTROL_FLOW = "control_flow"


class ParameterType(str, Enum):
    """Semantic type of a node parameter value."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    OBJECT = "object"
    ARRAY = "array"
    CODE = "code"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class FragmentKind(str, Enum):
    """Kinds of generated code, in emission order."""

    IMPORT = "import"
    DECLARATION = "declaration"
    INITIALIZATION = "initialization"
    EXECUTION = "execution"
    EXPORT = "export"


FRAGMENT_KIND_ORDER: List[FragmentKind] = [
    FragmentKind.IMPORT,
    FragmentKind.DECLARATION,
    FragmentKind.INITIALIZATION,
    FragmentKind.EXECUTION,
    FragmentKind.EXPORT,
]


class Position(BaseModel):
    """2D position on canvas (layout only)."""

    model_config = ConfigDict(frozen=True)

    x: float = 0.0
    y: float = 0.0


class IRParameter(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    value: Any = None
    type: ParameterType = ParameterType.STRING


class IRPort(BaseModel):
    """A named connection point on a node."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str = ""
    type: str = ""


class IRNode(BaseModel):
    """One flow element in canonical form."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    category: NodeCategory = NodeCategory.UTILITY
    label: str = ""
    parameters: List[IRParameter] = Field(default_factory=list)
    inputs: List[IRPort] = Field(default_factory=list)
    outputs: List[IRPort] = Field(default_factory=list)
    position: Position = Field(default_factory=Position)
    version: Optional[float] = None

    def parameter(self, name: str) -> Optional[IRParameter]:
        for p in self.parameters:
            if p.name == name:
                return p
        return None

    def get_value(self, name: str, default: Any = None) -> Any:
        """Return a parameter value, or `default` when absent or None."""
        p = self.parameter(name)
        if p is None or p.value is None:
            return default
        return p.value


class IRConnection(BaseModel):
    """A directed edge between two node ports."""

    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    source_port: str = ""
    target: str
    target_port: str = ""
    label: Optional[str] = None


class GraphMetadata(BaseModel):
    name: str = "Untitled Flow"
    description: str = ""
    version: str = "1.0.0"
    flow_version: str = "unknown"  # detected raw schema: "1.x", "2.x", "ir"
    settings: Dict[str, Any] = Field(default_factory=dict)


class IssueKind(str, Enum):
    """Taxonomy of problems reported to callers."""

    STRUCTURAL = "structural"
    UNSUPPORTED_NODE = "unsupported_node"
    FLOW_CYCLE = "flow_cycle"
    DECLARATION_ORDER = "declaration_order"
    CONVERTER_FAILURE = "converter_failure"


class ConversionIssue(BaseModel):
    """A structured error or warning (never a bare string)."""

    kind: IssueKind
    node_id: Optional[str] = None
    message: str
    connection_id: Optional[str] = None
    chain: List[str] = Field(default_factory=list)


class GraphAnalysis(BaseModel):
    """Derived analysis report; always recomputed, never authoritative input."""

    is_valid: bool = True
    errors: List[ConversionIssue] = Field(default_factory=list)
    warnings: List[ConversionIssue] = Field(default_factory=list)
    complexity: Complexity = Complexity.SIMPLE
    entry_points: List[str] = Field(default_factory=list)
    exit_points: List[str] = Field(default_factory=list)
    isolated_nodes: List[str] = Field(default_factory=list)
    cycles: List[List[str]] = Field(default_factory=list)
    # node id -> direct predecessors, de-duplicated, in connection order
    dependencies: Dict[str, List[str]] = Field(default_factory=dict)


class IRGraph(BaseModel):
    """A complete canonical flow graph."""

    metadata: GraphMetadata = Field(default_factory=GraphMetadata)
    nodes: List[IRNode] = Field(default_factory=list)
    connections: List[IRConnection] = Field(default_factory=list)
    analysis: Optional[GraphAnalysis] = None

    def node_map(self) -> Dict[str, IRNode]:
        return {n.id: n for n in self.nodes}

    def get_node(self, node_id: str) -> Optional[IRNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def incoming(self, node_id: str) -> List[IRConnection]:
        return [c for c in self.connections if c.target == node_id]

    def outgoing(self, node_id: str) -> List[IRConnection]:
        return [c for c in self.connections if c.source == node_id]


class CodeFragment(BaseModel):
    """One unit of generated output produced by a converter.

    `content` is target-language text and is never interpreted here.
    `depends_on` lists fragment ids or node ids that must be emitted earlier.
    """

    id: str
    kind: FragmentKind
    content: str
    depends_on: List[str] = Field(default_factory=list)
    order: int = 0
    node_id: Optional[str] = None
