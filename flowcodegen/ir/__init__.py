"""Canonical flow graph (IR) models and analysis."""

from .graph import ComplexityPolicy, GraphStats, analyze, extract_subgraph, find_cycles, flow_order, graph_stats, to_dot
from .models import (
    CodeFragment,
    Complexity,
    ConversionIssue,
    FragmentKind,
    GraphAnalysis,
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

__all__ = [
    "CodeFragment",
    "Complexity",
    "ComplexityPolicy",
    "ConversionIssue",
    "FragmentKind",
    "GraphAnalysis",
    "GraphMetadata",
    "GraphStats",
    "IRConnection",
    "IRGraph",
    "IRNode",
    "IRParameter",
    "IRPort",
    "IssueKind",
    "NodeCategory",
    "ParameterType",
    "Position",
    "analyze",
    "extract_subgraph",
    "find_cycles",
    "flow_order",
    "graph_stats",
    "to_dot",
]
