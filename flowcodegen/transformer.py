"""Raw flow JSON -> canonical `IRGraph`.

The transformer accepts the schema variants found in the wild and normalizes
them into one shape:

- 2.x (current Flowise export): the node's type tag is `data.name`, parameter
  type hints live in `data.inputParams`, values in `data.inputs`, ports in
  `data.inputAnchors` / `data.outputAnchors`.
- 1.x (legacy export): same `data` envelope, but values only in
  `data.inputs` with no type hints (anchors are optional).
- ir: nodes already carry a top-level `parameters` list of
  `{name, value, type}` (e.g. a graph dumped by this package).

Structural problems (malformed collections, duplicate ids, dangling
connections) are fatal: the result has `graph=None` and `is_valid=False`.
Unknown node types are kept and only produce a warning, so the rest of the
flow can still be converted.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .ir.graph import ComplexityPolicy, analyze
from .ir.models import (
    ConversionIssue,
    GraphMetadata,
    IRConnection,
    IRGraph,
    IRNode,
    IRParameter,
    IRPort,
    IssueKind,
    NodeCategory,
    ParameterType,
    Position,
)

logger = logging.getLogger(__name__)


# Explicit type hints (Flowise inputParam.type) -> semantic type.
_HINT_TYPES: Dict[str, ParameterType] = {
    "string": ParameterType.STRING,
    "password": ParameterType.STRING,
    "options": ParameterType.STRING,
    "asyncOptions": ParameterType.STRING,
    "credential": ParameterType.STRING,
    "file": ParameterType.STRING,
    "number": ParameterType.NUMBER,
    "boolean": ParameterType.BOOLEAN,
    "json": ParameterType.JSON,
    "code": ParameterType.CODE,
    "array": ParameterType.ARRAY,
    "list": ParameterType.ARRAY,
    "object": ParameterType.OBJECT,
}

_CODE_MARKERS = ("def ", "return ", "function", "=>", "import ", "class ")

# Raw Flowise category labels -> canonical category.
_CATEGORY_TABLE: Dict[str, NodeCategory] = {
    "chat models": NodeCategory.LLM,
    "llms": NodeCategory.LLM,
    "llm": NodeCategory.LLM,
    "chains": NodeCategory.CHAIN,
    "chain": NodeCategory.CHAIN,
    "agents": NodeCategory.AGENT,
    "agent": NodeCategory.AGENT,
    "multi agents": NodeCategory.AGENT,
    "tools": NodeCategory.TOOL,
    "tool": NodeCategory.TOOL,
    "memory": NodeCategory.MEMORY,
    "vector stores": NodeCategory.VECTORSTORE,
    "vectorstore": NodeCategory.VECTORSTORE,
    "embeddings": NodeCategory.EMBEDDING,
    "embedding": NodeCategory.EMBEDDING,
    "prompts": NodeCategory.PROMPT,
    "prompt": NodeCategory.PROMPT,
    "retrievers": NodeCategory.RETRIEVER,
    "retriever": NodeCategory.RETRIEVER,
    "output parsers": NodeCategory.OUTPUT_PARSER,
    "output_parser": NodeCategory.OUTPUT_PARSER,
    "text splitters": NodeCategory.TEXT_SPLITTER,
    "text_splitter": NodeCategory.TEXT_SPLITTER,
    "document loaders": NodeCategory.LOADER,
    "loader": NodeCategory.LOADER,
    "utilities": NodeCategory.UTILITY,
    "utility": NodeCategory.UTILITY,
    "agent flows": NodeCategory.CONTROL_FLOW,
    "sequential agents": NodeCategory.CONTROL_FLOW,
    "control_flow": NodeCategory.CONTROL_FLOW,
}

_NODE_REFERENCE = re.compile(r"^\{\{\s*[^{}]+\.data\.instance\s*\}\}$")
_HANDLE = re.compile(r"^.+?-(input|output)-([^-]+)-.*$")


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: List[ConversionIssue] = field(default_factory=list)
    warnings: List[ConversionIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Report shape consumed by callers (CLI/API)."""
        return {
            "isValid": self.is_valid,
            "errors": [_issue_dict(e) for e in self.errors],
            "warnings": [_issue_dict(w) for w in self.warnings],
        }


def _issue_dict(issue: ConversionIssue) -> Dict[str, Any]:
    out: Dict[str, Any] = {"kind": issue.kind.value, "nodeId": issue.node_id, "message": issue.message}
    if issue.connection_id:
        out["connectionId"] = issue.connection_id
    if issue.chain:
        out["chain"] = list(issue.chain)
    return out


@dataclass(frozen=True)
class TransformMetrics:
    duration_ms: float
    node_count: int
    connection_count: int


@dataclass
class TransformResult:
    graph: Optional[IRGraph]
    validation: ValidationResult
    metrics: TransformMetrics


def infer_parameter_type(value: Any, hint: Optional[str] = None, *, is_list: bool = False) -> ParameterType:
    """Decide a parameter's semantic type (explicit hints win over value shape)."""
    if is_list:
        return ParameterType.ARRAY
    if hint and hint in _HINT_TYPES:
        return _HINT_TYPES[hint]

    if isinstance(value, bool):
        return ParameterType.BOOLEAN
    if isinstance(value, (int, float)):
        return ParameterType.NUMBER
    if isinstance(value, (list, tuple)):
        return ParameterType.ARRAY
    if isinstance(value, dict):
        return ParameterType.OBJECT
    if not isinstance(value, str):
        return ParameterType.STRING

    stripped = value.strip()
    if stripped[:1] in ("{", "["):
        try:
            parsed = json.loads(stripped)
        except ValueError:
            parsed = None
        if isinstance(parsed, (dict, list)):
            return ParameterType.JSON
    if "\n" in value and any(marker in value for marker in _CODE_MARKERS):
        return ParameterType.CODE
    return ParameterType.STRING


def coerce_value(value: Any, ptype: ParameterType) -> Any:
    """Convert string-encoded numbers/booleans when the type says so (editors store "0.7")."""
    if not isinstance(value, str) or not value.strip():
        return value
    text = value.strip()
    if ptype == ParameterType.NUMBER:
        try:
            number = float(text)
        except ValueError:
            return value
        return int(number) if number.is_integer() and "." not in text else number
    if ptype == ParameterType.BOOLEAN and text.lower() in ("true", "false"):
        return text.lower() == "true"
    return value


def normalize_category(raw: Any) -> NodeCategory:
    if isinstance(raw, NodeCategory):
        return raw
    key = str(raw or "").strip().lower()
    if key in _CATEGORY_TABLE:
        return _CATEGORY_TABLE[key]
    try:
        return NodeCategory(key)
    except ValueError:
        return NodeCategory.UTILITY


def port_name_from_handle(handle: Any) -> str:
    """Extract a port name from a Flowise handle (`<node>-input-<name>-<types>`)."""
    h = str(handle or "")
    m = _HANDLE.match(h)
    return m.group(2) if m else h


def detect_flow_version(raw_nodes: List[Any]) -> str:
    """Detect the raw schema variant from the first node (as the editor exports it)."""
    if not raw_nodes or not isinstance(raw_nodes[0], dict):
        return "unknown"
    first = raw_nodes[0]
    if isinstance(first.get("parameters"), list):
        return "ir"
    data = first.get("data") if isinstance(first.get("data"), dict) else {}
    version = data.get("version")
    if isinstance(version, (int, float)) and not isinstance(version, bool):
        if version >= 2:
            return "2.x"
        if version == 1:
            return "1.x"
    if isinstance(data.get("inputParams"), list):
        return "2.x"
    return "1.x"


def _ports(raw: Any) -> List[IRPort]:
    ports: List[IRPort] = []
    if not isinstance(raw, list):
        return ports
    for p in raw:
        if not isinstance(p, dict):
            continue
        name = p.get("name") or p.get("id")
        if not isinstance(name, str) or not name:
            continue
        ports.append(IRPort(name=name, label=str(p.get("label") or ""), type=str(p.get("type") or "")))
    return ports


def _is_wiring_value(value: Any) -> bool:
    if isinstance(value, str):
        return bool(_NODE_REFERENCE.match(value.strip()))
    if isinstance(value, list) and value:
        return all(isinstance(v, str) and _NODE_REFERENCE.match(v.strip()) for v in value)
    return False


def _position(raw: Any) -> Position:
    if isinstance(raw, dict):
        try:
            return Position(x=float(raw.get("x", 0) or 0), y=float(raw.get("y", 0) or 0))
        except (TypeError, ValueError):
            pass
    return Position()


class FlowTransformer:
    """Normalize raw flow JSON into a validated canonical graph.

    `known_types` is the set of node type tags that have a converter; nodes of
    other types are kept but reported as unsupported. When None, every type is
    considered known.
    """

    def __init__(
        self,
        known_types: Optional[Iterable[str]] = None,
        *,
        complexity: Optional[ComplexityPolicy] = None,
    ):
        self.known_types = set(known_types) if known_types is not None else None
        self.complexity = complexity

    def transform(self, raw_flow: Any) -> TransformResult:
        started = time.perf_counter()
        validation = ValidationResult()

        def _done(graph: Optional[IRGraph], nodes: int = 0, connections: int = 0) -> TransformResult:
            validation.is_valid = not validation.errors
            metrics = TransformMetrics(
                duration_ms=(time.perf_counter() - started) * 1000.0,
                node_count=nodes,
                connection_count=connections,
            )
            return TransformResult(graph=graph if validation.is_valid else None, validation=validation, metrics=metrics)

        data = self._load(raw_flow, validation)
        if data is None:
            return _done(None)

        raw_nodes = data.get("nodes")
        raw_edges = data.get("edges", data.get("connections"))
        if not isinstance(raw_nodes, list):
            self._fatal(validation, "Flow must contain a 'nodes' list")
        if not isinstance(raw_edges, list):
            self._fatal(validation, "Flow must contain an 'edges' (or 'connections') list")
        if validation.errors:
            return _done(None)

        flow_version = detect_flow_version(raw_nodes)
        nodes = self._transform_nodes(raw_nodes, flow_version, validation)
        node_ids = {n.id for n in nodes}
        connections = self._transform_edges(raw_edges, node_ids, validation)
        if validation.errors:
            logger.warning(f"Flow rejected with {len(validation.errors)} structural error(s)")
            return _done(None, len(nodes), len(connections))

        for n in nodes:
            if self.known_types is not None and n.type not in self.known_types:
                validation.warnings.append(
                    ConversionIssue(
                        kind=IssueKind.UNSUPPORTED_NODE,
                        node_id=n.id,
                        message=f"Unsupported node type '{n.type}'",
                    )
                )
                logger.warning(f"Node '{n.id}' has unsupported type '{n.type}'")

        graph = IRGraph(
            metadata=self._metadata(data, flow_version),
            nodes=nodes,
            connections=connections,
        )
        graph.analysis = analyze(graph, self.complexity)
        logger.info(f"Transformed flow '{graph.metadata.name}': {len(nodes)} nodes, {len(connections)} connections")
        return _done(graph, len(nodes), len(connections))

    @staticmethod
    def _fatal(validation: ValidationResult, message: str, **kwargs: Any) -> None:
        validation.errors.append(ConversionIssue(kind=IssueKind.STRUCTURAL, message=message, **kwargs))

    def _load(self, raw_flow: Any, validation: ValidationResult) -> Optional[Mapping[str, Any]]:
        if isinstance(raw_flow, (str, bytes)):
            try:
                raw_flow = json.loads(raw_flow)
            except ValueError as e:
                self._fatal(validation, f"Invalid JSON: {e}")
                return None
        if hasattr(raw_flow, "model_dump"):
            raw_flow = raw_flow.model_dump(mode="json")
        if not isinstance(raw_flow, Mapping):
            self._fatal(validation, f"Flow must be a JSON object (got {type(raw_flow).__name__})")
            return None
        # Exports sometimes wrap the graph: {"chatflow": {..., "flowData": "<json>"}}.
        if "nodes" not in raw_flow and isinstance(raw_flow.get("flowData"), str):
            try:
                inner = json.loads(raw_flow["flowData"])
            except ValueError as e:
                self._fatal(validation, f"Invalid flowData JSON: {e}")
                return None
            if isinstance(inner, dict):
                return {**{k: v for k, v in raw_flow.items() if k != "flowData"}, **inner}
        return raw_flow

    def _metadata(self, data: Mapping[str, Any], flow_version: str) -> GraphMetadata:
        chatflow = data.get("chatflow") if isinstance(data.get("chatflow"), dict) else {}
        meta = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        name = meta.get("name") or data.get("name") or chatflow.get("name") or "Untitled Flow"
        description = meta.get("description") or data.get("description") or chatflow.get("description") or ""
        settings = meta.get("settings") if isinstance(meta.get("settings"), dict) else {}
        return GraphMetadata(
            name=str(name),
            description=str(description),
            version=str(meta.get("version") or data.get("version") or "1.0.0"),
            flow_version=flow_version,
            settings=dict(settings),
        )

    def _transform_nodes(self, raw_nodes: List[Any], flow_version: str, validation: ValidationResult) -> List[IRNode]:
        nodes: List[IRNode] = []
        seen: set[str] = set()
        for i, raw in enumerate(raw_nodes):
            if not isinstance(raw, dict):
                self._fatal(validation, f"Node at index {i} is not an object")
                continue
            node_id = raw.get("id")
            if not isinstance(node_id, str) or not node_id.strip():
                self._fatal(validation, f"Node at index {i} has no id")
                continue
            if node_id in seen:
                self._fatal(validation, f"Duplicate node id: {node_id}", node_id=node_id)
                continue
            seen.add(node_id)
            try:
                nodes.append(self._transform_node(raw, flow_version))
            except (TypeError, ValueError) as e:
                self._fatal(validation, f"Malformed node '{node_id}': {e}", node_id=node_id)
        return nodes

    def _transform_node(self, raw: Dict[str, Any], flow_version: str) -> IRNode:
        if isinstance(raw.get("parameters"), list):
            return self._transform_ir_node(raw)

        data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
        node_type = data.get("name") or data.get("type") or raw.get("type")
        if not isinstance(node_type, str) or not node_type:
            raise ValueError("node type is missing")

        inputs = _ports(data.get("inputAnchors"))
        outputs = _ports(data.get("outputAnchors"))
        anchor_names = {p.name for p in inputs}

        hints: Dict[str, Tuple[Optional[str], bool, Any]] = {}
        for p in data.get("inputParams") or []:
            if isinstance(p, dict) and isinstance(p.get("name"), str):
                hints[p["name"]] = (p.get("type"), bool(p.get("list")), p.get("default"))

        values = data.get("inputs") if isinstance(data.get("inputs"), dict) else {}
        parameters: List[IRParameter] = []
        # inputParams order first (2.x), then any extra raw input values.
        names = list(hints) + [k for k in values if k not in hints]
        for name in names:
            if name in anchor_names:
                continue
            hint, is_list, default = hints.get(name, (None, False, None))
            value = values.get(name, default)
            if _is_wiring_value(value):
                continue
            if value == "" and default is not None:
                value = default
            ptype = infer_parameter_type(value, hint, is_list=is_list)
            parameters.append(IRParameter(name=name, value=coerce_value(value, ptype), type=ptype))

        version = data.get("version")
        return IRNode(
            id=raw["id"],
            type=node_type,
            category=normalize_category(data.get("category") or raw.get("category")),
            label=str(data.get("label") or raw.get("label") or node_type),
            parameters=parameters,
            inputs=inputs,
            outputs=outputs,
            position=_position(raw.get("position")),
            version=float(version) if isinstance(version, (int, float)) and not isinstance(version, bool) else None,
        )

    def _transform_ir_node(self, raw: Dict[str, Any]) -> IRNode:
        parameters: List[IRParameter] = []
        for p in raw["parameters"]:
            if not isinstance(p, dict) or not isinstance(p.get("name"), str):
                raise ValueError("parameters must be objects with a name")
            value = p.get("value")
            ptype = infer_parameter_type(value, p.get("type"))
            parameters.append(IRParameter(name=p["name"], value=coerce_value(value, ptype), type=ptype))
        node_type = raw.get("type")
        if not isinstance(node_type, str) or not node_type:
            raise ValueError("node type is missing")
        return IRNode(
            id=raw["id"],
            type=node_type,
            category=normalize_category(raw.get("category")),
            label=str(raw.get("label") or node_type),
            parameters=parameters,
            inputs=_ports(raw.get("inputs")),
            outputs=_ports(raw.get("outputs")),
            position=_position(raw.get("position")),
        )

    def _transform_edges(
        self, raw_edges: List[Any], node_ids: set[str], validation: ValidationResult
    ) -> List[IRConnection]:
        connections: List[IRConnection] = []
        for i, raw in enumerate(raw_edges):
            if not isinstance(raw, dict):
                self._fatal(validation, f"Connection at index {i} is not an object")
                continue
            edge_id = str(raw.get("id") or f"edge-{i}")
            source, target = raw.get("source"), raw.get("target")
            if not isinstance(source, str) or not isinstance(target, str) or not source or not target:
                self._fatal(validation, f"Connection {edge_id} is missing source or target", connection_id=edge_id)
                continue
            missing = False
            for end, node_id in (("source", source), ("target", target)):
                if node_id not in node_ids:
                    missing = True
                    self._fatal(
                        validation,
                        f"Connection {edge_id} references missing {end} node: {node_id}",
                        node_id=node_id,
                        connection_id=edge_id,
                    )
            if missing:
                continue

            edge_data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
            label = raw.get("label") or edge_data.get("label")
            connections.append(
                IRConnection(
                    id=edge_id,
                    source=source,
                    source_port=port_name_from_handle(raw.get("sourceHandle", raw.get("source_port"))),
                    target=target,
                    target_port=port_name_from_handle(raw.get("targetHandle", raw.get("target_port"))),
                    label=str(label) if label else None,
                )
            )
        return connections
