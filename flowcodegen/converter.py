"""End-to-end conversion: raw flow -> generated code.

`FlowConverter` wires the pipeline stages together for one job at a time:
transform, analyze, generate (with a fresh `ReferenceResolver` per job),
assemble. Hosts that need finer control can call the stages directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .builtins import default_registry
from .config import Settings
from .errors import InvalidFlowError
from .imports import ImportFormatter, ImportManager
from .ir.graph import GraphStats, graph_stats
from .ir.models import ConversionIssue, GraphAnalysis, IRGraph, IssueKind
from .orchestrator import GeneratedCode, GenerationOrchestrator, GenerationResult, assemble
from .registry import ConverterRegistry
from .resolver import ReferenceResolver
from .transformer import FlowTransformer, TransformMetrics, TransformResult, ValidationResult

logger = logging.getLogger(__name__)


@dataclass
class AnalysisReport:
    validation: ValidationResult
    metrics: TransformMetrics
    analysis: Optional[GraphAnalysis] = None
    stats: Optional[GraphStats] = None


@dataclass
class ConversionResult:
    graph: IRGraph
    validation: ValidationResult
    analysis: GraphAnalysis
    generation: GenerationResult
    output: Optional[GeneratedCode]
    metrics: TransformMetrics

    @property
    def ok(self) -> bool:
        return self.generation.ok

    @property
    def code(self) -> str:
        return self.output.code if self.output is not None else ""

    def issues(self) -> Dict[str, List[ConversionIssue]]:
        """All errors and warnings of the job, de-duplicated, grouped by severity."""
        errors = _unique(self.validation.errors + self.generation.errors)
        warnings = _unique(self.validation.warnings + self.analysis.warnings + self.generation.warnings)
        return {"errors": errors, "warnings": warnings}


def _unique(issues: List[ConversionIssue]) -> List[ConversionIssue]:
    seen: set = set()
    out: List[ConversionIssue] = []
    for issue in issues:
        # The transformer and the orchestrator both flag unsupported nodes.
        message = "" if issue.kind == IssueKind.UNSUPPORTED_NODE else issue.message
        key = (issue.kind, issue.node_id, message)
        if key in seen:
            continue
        seen.add(key)
        out.append(issue)
    return out


class FlowConverter:
    def __init__(
        self,
        registry: Optional[ConverterRegistry] = None,
        *,
        settings: Optional[Settings] = None,
        import_manager: Optional[ImportFormatter] = None,
        options: Optional[Dict[str, Any]] = None,
    ):
        self.registry = registry if registry is not None else default_registry()
        self.settings = settings or Settings()
        self.import_manager = import_manager or ImportManager()
        self.options = dict(options or {})

    def _transformer(self) -> FlowTransformer:
        return FlowTransformer(self.registry.types(), complexity=self.settings.complexity)

    def _orchestrator(self, fail_fast: Optional[bool]) -> GenerationOrchestrator:
        return GenerationOrchestrator(
            fail_fast=self.settings.fail_fast if fail_fast is None else fail_fast,
            target=self.settings.target,
            options=self.options,
        )

    def transform(self, raw_flow: Any) -> TransformResult:
        return self._transformer().transform(raw_flow)

    def validate(self, raw_flow: Any) -> ValidationResult:
        return self.transform(raw_flow).validation

    def analyze(self, raw_flow: Any) -> AnalysisReport:
        result = self.transform(raw_flow)
        report = AnalysisReport(validation=result.validation, metrics=result.metrics)
        if result.graph is not None:
            report.analysis = result.graph.analysis
            report.stats = graph_stats(result.graph, self.settings.complexity)
        return report

    def _transform_valid(self, raw_flow: Any) -> TransformResult:
        result = self.transform(raw_flow)
        if result.graph is None or not result.validation.is_valid:
            raise InvalidFlowError(result.validation)
        return result

    def _finish(self, transformed: TransformResult, generation: GenerationResult) -> ConversionResult:
        graph = transformed.graph
        output = None if generation.aborted else assemble(generation, self.import_manager)
        logger.info(
            f"Converted '{graph.metadata.name}' in {transformed.metrics.duration_ms:.1f}ms transform time "
            f"({len(generation.errors)} errors)"
        )
        return ConversionResult(
            graph=graph,
            validation=transformed.validation,
            analysis=graph.analysis,
            generation=generation,
            output=output,
            metrics=transformed.metrics,
        )

    def convert(self, raw_flow: Any, *, fail_fast: Optional[bool] = None) -> ConversionResult:
        """Run the whole pipeline for one flow.

        Raises:
            InvalidFlowError: when the raw flow has structural errors.
        """
        transformed = self._transform_valid(raw_flow)
        graph = transformed.graph
        generation = self._orchestrator(fail_fast).generate(
            graph, graph.analysis, ReferenceResolver(), self.registry.get
        )
        return self._finish(transformed, generation)

    async def aconvert(self, raw_flow: Any, *, fail_fast: Optional[bool] = None) -> ConversionResult:
        """Async variant of `convert()` for converters that await external work."""
        transformed = self._transform_valid(raw_flow)
        graph = transformed.graph
        generation = await self._orchestrator(fail_fast).agenerate(
            graph, graph.analysis, ReferenceResolver(), self.registry.get
        )
        return self._finish(transformed, generation)
