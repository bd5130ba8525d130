"""flowcodegen: convert visual LLM flows (Flowise exports) into LangChain code.

Pipeline: raw flow JSON -> `FlowTransformer` (canonical graph + validation)
-> graph analysis -> `GenerationOrchestrator` (per-node converters, one
`ReferenceResolver` per job) -> assembled code + package manifest.
`FlowConverter` runs the whole pipeline for callers that don't need the stages.
"""

__version__ = "0.1.0"

from .builtins import BUILTIN_CONVERTERS, default_registry
from .config import Settings
from .converter import AnalysisReport, ConversionResult, FlowConverter
from .errors import CircularDependencyError, ConverterError, FlowCodegenError, InvalidFlowError
from .imports import ImportManager
from .ir import (
    CodeFragment,
    ConversionIssue,
    FragmentKind,
    GraphAnalysis,
    IRConnection,
    IRGraph,
    IRNode,
    IssueKind,
    NodeCategory,
    analyze,
    extract_subgraph,
)
from .orchestrator import GeneratedCode, GenerationOrchestrator, GenerationResult, NodeOutcome, assemble
from .registry import BaseConverter, ConverterRegistry, GenerationContext, Reference
from .resolver import ReferenceResolver
from .transformer import FlowTransformer, TransformResult, ValidationResult

__all__ = [
    "AnalysisReport",
    "BUILTIN_CONVERTERS",
    "BaseConverter",
    "CircularDependencyError",
    "CodeFragment",
    "ConversionIssue",
    "ConversionResult",
    "ConverterError",
    "ConverterRegistry",
    "FlowCodegenError",
    "FlowConverter",
    "FlowTransformer",
    "FragmentKind",
    "GeneratedCode",
    "GenerationContext",
    "GenerationOrchestrator",
    "GenerationResult",
    "GraphAnalysis",
    "IRConnection",
    "IRGraph",
    "IRNode",
    "ImportManager",
    "InvalidFlowError",
    "IssueKind",
    "NodeCategory",
    "NodeOutcome",
    "Reference",
    "ReferenceResolver",
    "Settings",
    "TransformResult",
    "ValidationResult",
    "analyze",
    "assemble",
    "default_registry",
    "extract_subgraph",
]
