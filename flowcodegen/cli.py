"""Command-line interface for flowcodegen.

Commands:
- convert: flow JSON -> generated Python code (stdout or --out)
- validate: print the validation report (JSON)
- analyze: print graph analysis + statistics (JSON), or Graphviz DOT
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional

from .config import LOG_LEVELS, Settings
from .converter import FlowConverter
from .errors import InvalidFlowError
from .ir.graph import to_dot


def _build_parser(settings: Settings) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="flowcodegen", add_help=True)
    p.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=settings.log_level,
        help="Logging level (default: FLOWCODEGEN_LOG_LEVEL or WARNING)",
    )
    sub = p.add_subparsers(dest="command")

    conv = sub.add_parser("convert", help="Generate code from a flow JSON file")
    conv.add_argument("flow", help="Path to the flow JSON export")
    conv.add_argument("--out", default=None, help="Write generated code here (default: stdout)")
    conv.add_argument("--manifest", default=None, help="Write the package manifest (JSON) here")
    conv.add_argument("--fail-fast", action="store_true", default=settings.fail_fast, help="Abort on the first converter failure")

    val = sub.add_parser("validate", help="Validate a flow JSON file")
    val.add_argument("flow", help="Path to the flow JSON export")

    ana = sub.add_parser("analyze", help="Analyze a flow JSON file")
    ana.add_argument("flow", help="Path to the flow JSON export")
    ana.add_argument("--dot", action="store_true", help="Print the graph in Graphviz DOT format instead")

    return p


def _read_flow(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _print_issues(issues: List[Any], label: str) -> None:
    for issue in issues:
        where = f" [{issue.node_id}]" if issue.node_id else ""
        sys.stderr.write(f"{label} {issue.kind.value}{where}: {issue.message}\n")


def main(args: Optional[List[str]] = None) -> int:
    if args is None:
        args = sys.argv[1:]

    try:
        settings = Settings.from_env()
    except ValueError as e:
        sys.stderr.write(f"Invalid environment: {e}\n")
        return 2
    parser = _build_parser(settings)
    ns = parser.parse_args(args)

    logging.basicConfig(level=ns.log_level, format="%(levelname)s %(name)s: %(message)s")

    if ns.command is None:
        parser.print_help()
        return 0

    try:
        raw = _read_flow(ns.flow)
    except (OSError, ValueError) as e:
        sys.stderr.write(f"Failed to read flow '{ns.flow}': {e}\n")
        return 2

    if ns.command == "validate":
        validation = FlowConverter(settings=settings).validate(raw)
        sys.stdout.write(json.dumps(validation.to_dict(), indent=2, ensure_ascii=False) + "\n")
        return 0 if validation.is_valid else 1

    if ns.command == "analyze":
        converter = FlowConverter(settings=settings)
        if ns.dot:
            transformed = converter.transform(raw)
            if transformed.graph is None:
                _print_issues(transformed.validation.errors, "error")
                return 1
            sys.stdout.write(to_dot(transformed.graph))
            return 0
        report = converter.analyze(raw)
        payload = {
            "validation": report.validation.to_dict(),
            "metrics": {
                "durationMs": report.metrics.duration_ms,
                "nodeCount": report.metrics.node_count,
                "connectionCount": report.metrics.connection_count,
            },
            "analysis": report.analysis.model_dump(mode="json") if report.analysis else None,
            "stats": report.stats.model_dump(mode="json") if report.stats else None,
        }
        sys.stdout.write(json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
        return 0 if report.validation.is_valid else 1

    if ns.command == "convert":
        converter = FlowConverter(settings=replace(settings, fail_fast=bool(ns.fail_fast)))
        try:
            result = converter.convert(raw)
        except InvalidFlowError as e:
            _print_issues(e.validation.errors, "error")
            return 2

        issues = result.issues()
        _print_issues(issues["warnings"], "warning")
        _print_issues(issues["errors"], "error")

        if result.output is not None:
            if ns.out:
                Path(ns.out).write_text(result.output.code, encoding="utf-8")
            else:
                sys.stdout.write(result.output.code)
            if ns.manifest:
                manifest = {"name": result.graph.metadata.name, "dependencies": result.output.packages}
                Path(ns.manifest).write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")
        return 0 if result.ok else 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
