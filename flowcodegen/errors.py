"""Exceptions raised by flowcodegen.

Inside a conversion job problems are collected as `ConversionIssue` records;
these exceptions exist for the seams where a caller needs to stop (converter
failures, unsatisfiable declaration order, invalid input at the facade).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List, Optional

from .ir.models import ConversionIssue, IssueKind

if TYPE_CHECKING:
    from .transformer import ValidationResult


class FlowCodegenError(Exception):
    """Base class for all flowcodegen errors."""


class ConverterError(FlowCodegenError):
    """A per-node converter could not produce fragments."""

    def __init__(self, node_id: str, message: str):
        super().__init__(f"Node '{node_id}': {message}")
        self.node_id = node_id
        self.message = message

    def to_issue(self) -> ConversionIssue:
        return ConversionIssue(kind=IssueKind.CONVERTER_FAILURE, node_id=self.node_id, message=self.message)


class CircularDependencyError(FlowCodegenError):
    """No linear declaration order exists for the resolver's dependency graph."""

    def __init__(self, chain: List[str], blocked: Optional[Iterable[str]] = None):
        self.chain = list(chain)
        self.blocked = set(blocked or self.chain)
        super().__init__(f"Circular declaration dependency: {' -> '.join(self.chain)}")

    def to_issue(self) -> ConversionIssue:
        return ConversionIssue(
            kind=IssueKind.DECLARATION_ORDER,
            node_id=self.chain[0] if self.chain else None,
            message=str(self),
            chain=list(self.chain),
        )


class InvalidFlowError(FlowCodegenError):
    """Raised by the facade when the raw flow has structural errors."""

    def __init__(self, validation: "ValidationResult"):
        self.validation = validation
        messages = ", ".join(e.message for e in validation.errors) or "unknown error"
        super().__init__(f"Invalid flow: {messages}")
