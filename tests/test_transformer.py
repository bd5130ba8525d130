"""Tests for raw flow -> canonical graph normalization."""

from __future__ import annotations

import json

import pytest

from flowcodegen.ir.models import IssueKind, NodeCategory, ParameterType
from flowcodegen.transformer import (
    FlowTransformer,
    coerce_value,
    detect_flow_version,
    infer_parameter_type,
    normalize_category,
    port_name_from_handle,
)


def _flowise_chat_model(node_id: str = "chatOpenAI_0") -> dict:
    return {
        "id": node_id,
        "position": {"x": 10, "y": 20},
        "type": "customNode",
        "data": {
            "id": node_id,
            "name": "chatOpenAI",
            "label": "ChatOpenAI",
            "version": 6,
            "category": "Chat Models",
            "inputParams": [
                {"name": "modelName", "type": "options", "default": "gpt-4o-mini"},
                {"name": "temperature", "type": "number"},
                {"name": "streaming", "type": "boolean"},
            ],
            "inputAnchors": [{"id": f"{node_id}-input-cache-BaseCache", "name": "cache", "type": "BaseCache"}],
            "outputAnchors": [
                {
                    "id": f"{node_id}-output-chatOpenAI-ChatOpenAI|BaseChatModel",
                    "name": "chatOpenAI",
                    "type": "ChatOpenAI | BaseChatModel",
                }
            ],
            "inputs": {"modelName": "gpt-4o", "temperature": "0.7", "streaming": True, "cache": ""},
        },
    }


def _flowise_chain(node_id: str = "llmChain_0") -> dict:
    return {
        "id": node_id,
        "position": {"x": 300, "y": 20},
        "data": {
            "id": node_id,
            "name": "llmChain",
            "label": "LLM Chain",
            "version": 3,
            "category": "Chains",
            "inputParams": [{"name": "chainName", "type": "string"}],
            "inputAnchors": [
                {"name": "model", "type": "BaseLanguageModel"},
                {"name": "prompt", "type": "BasePromptTemplate"},
            ],
            "inputs": {"chainName": "", "model": "{{chatOpenAI_0.data.instance}}", "prompt": ""},
        },
    }


def _edge(edge_id: str, source: str, target: str, port: str) -> dict:
    return {
        "id": edge_id,
        "source": source,
        "sourceHandle": f"{source}-output-{source}-Out",
        "target": target,
        "targetHandle": f"{target}-input-{port}-In",
    }


def test_transform_flowise_2x_export() -> None:
    raw = {
        "name": "Simple chain",
        "nodes": [_flowise_chat_model(), _flowise_chain()],
        "edges": [_edge("e1", "chatOpenAI_0", "llmChain_0", "model")],
    }

    result = FlowTransformer().transform(raw)
    assert result.validation.is_valid is True
    assert result.validation.errors == []
    graph = result.graph
    assert graph is not None
    assert graph.metadata.name == "Simple chain"
    assert graph.metadata.flow_version == "2.x"

    chat = graph.get_node("chatOpenAI_0")
    assert chat.type == "chatOpenAI"
    assert chat.category == NodeCategory.LLM
    assert chat.label == "ChatOpenAI"
    assert chat.version == 6.0
    assert chat.position.x == 10.0
    assert [p.name for p in chat.inputs] == ["cache"]
    assert [p.name for p in chat.outputs] == ["chatOpenAI"]

    # Anchor-backed inputs are wiring, not parameters.
    assert chat.parameter("cache") is None
    assert chat.parameter("modelName").value == "gpt-4o"
    assert chat.parameter("temperature").type == ParameterType.NUMBER
    assert chat.parameter("temperature").value == 0.7
    assert chat.parameter("streaming").type == ParameterType.BOOLEAN

    chain = graph.get_node("llmChain_0")
    assert chain.category == NodeCategory.CHAIN
    assert chain.parameter("model") is None

    [conn] = graph.connections
    assert (conn.source, conn.target) == ("chatOpenAI_0", "llmChain_0")
    assert conn.source_port == "chatOpenAI_0"
    assert conn.target_port == "model"

    assert result.metrics.node_count == 2
    assert result.metrics.connection_count == 1
    assert result.metrics.duration_ms >= 0.0


def test_transform_legacy_1x_export_infers_types_from_values() -> None:
    raw = {
        "nodes": [
            {
                "id": "agent_0",
                "data": {
                    "name": "toolAgent",
                    "category": "Agents",
                    "inputs": {
                        "maxIterations": 5,
                        "systemMessage": "You are helpful.",
                        "tools": ["{{serpAPI_0.data.instance}}"],
                        "config": '{"verbose": true}',
                    },
                },
            }
        ],
        "edges": [],
    }

    result = FlowTransformer().transform(raw)
    assert result.validation.is_valid is True
    assert result.graph.metadata.flow_version == "1.x"

    node = result.graph.get_node("agent_0")
    assert node.category == NodeCategory.AGENT
    assert node.label == "toolAgent"
    assert node.parameter("maxIterations").type == ParameterType.NUMBER
    assert node.parameter("systemMessage").type == ParameterType.STRING
    assert node.parameter("config").type == ParameterType.JSON
    assert node.parameter("tools") is None


def test_transform_ir_variant_uses_connections_key() -> None:
    raw = {
        "metadata": {"name": "IR dump", "version": "2.0.0"},
        "nodes": [
            {
                "id": "p",
                "type": "promptTemplate",
                "category": "prompt",
                "parameters": [{"name": "template", "value": "Hi {name}", "type": "string"}],
            },
            {"id": "m", "type": "chatOpenAI", "category": "llm", "parameters": []},
        ],
        "connections": [{"id": "c1", "source": "p", "target": "m", "source_port": "out", "target_port": "prompt"}],
    }

    result = FlowTransformer().transform(raw)
    assert result.validation.is_valid is True
    graph = result.graph
    assert graph.metadata.flow_version == "ir"
    assert graph.metadata.name == "IR dump"
    assert graph.metadata.version == "2.0.0"
    assert graph.get_node("p").get_value("template") == "Hi {name}"
    assert graph.connections[0].target_port == "prompt"


def test_transform_accepts_json_text_and_flowdata_wrapper() -> None:
    inner = {"nodes": [_flowise_chat_model()], "edges": []}

    from_text = FlowTransformer().transform(json.dumps(inner))
    assert from_text.validation.is_valid is True

    wrapped = FlowTransformer().transform({"name": "Wrapped", "flowData": json.dumps(inner)})
    assert wrapped.validation.is_valid is True
    assert wrapped.graph.metadata.name == "Wrapped"
    assert [n.id for n in wrapped.graph.nodes] == ["chatOpenAI_0"]


def test_unknown_node_type_is_a_single_warning() -> None:
    raw = {
        "nodes": [
            {"id": "a", "type": "chatOpenAI", "parameters": []},
            {"id": "b", "type": "llmChain", "parameters": []},
            {"id": "x", "type": "mysteryNode", "parameters": []},
        ],
        "edges": [{"id": "e1", "source": "a", "target": "b"}],
    }

    result = FlowTransformer(known_types={"chatOpenAI", "llmChain"}).transform(raw)
    assert result.validation.is_valid is True
    assert result.validation.errors == []
    assert len(result.validation.warnings) == 1
    warning = result.validation.warnings[0]
    assert warning.kind == IssueKind.UNSUPPORTED_NODE
    assert warning.node_id == "x"
    assert result.graph.get_node("x") is not None


def test_dangling_connection_is_fatal() -> None:
    raw = {
        "nodes": [{"id": "a", "type": "chatOpenAI", "parameters": []}],
        "edges": [{"id": "e1", "source": "a", "target": "ghost"}],
    }

    result = FlowTransformer().transform(raw)
    assert result.validation.is_valid is False
    assert result.graph is None
    [error] = result.validation.errors
    assert error.kind == IssueKind.STRUCTURAL
    assert error.connection_id == "e1"
    assert error.node_id == "ghost"


def test_duplicate_node_ids_are_fatal() -> None:
    raw = {
        "nodes": [
            {"id": "a", "type": "chatOpenAI", "parameters": []},
            {"id": "a", "type": "llmChain", "parameters": []},
        ],
        "edges": [],
    }

    result = FlowTransformer().transform(raw)
    assert result.validation.is_valid is False
    assert result.graph is None
    assert any(e.node_id == "a" and "Duplicate" in e.message for e in result.validation.errors)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        [1, 2, 3],
        {"nodes": {}, "edges": []},
        {"nodes": []},
        {"nodes": ["oops"], "edges": []},
        {"nodes": [{"id": "a", "data": {}}], "edges": []},
    ],
)
def test_malformed_input_is_rejected(raw) -> None:
    result = FlowTransformer().transform(raw)
    assert result.validation.is_valid is False
    assert result.graph is None
    assert all(e.kind == IssueKind.STRUCTURAL for e in result.validation.errors)


def test_validation_report_shape() -> None:
    raw = {"nodes": [{"id": "a", "type": "x", "parameters": []}], "edges": []}
    report = FlowTransformer(known_types=[]).transform(raw).validation.to_dict()
    assert report["isValid"] is True
    assert report["errors"] == []
    assert report["warnings"] == [
        {"kind": "unsupported_node", "nodeId": "a", "message": "Unsupported node type 'x'"}
    ]

    raw["edges"] = [{"id": "e1", "source": "a", "target": "b"}]
    report = FlowTransformer().transform(raw).validation.to_dict()
    assert report["isValid"] is False
    assert report["errors"][0]["nodeId"] == "b"
    assert report["errors"][0]["connectionId"] == "e1"


@pytest.mark.parametrize(
    "value,hint,is_list,expected",
    [
        ("hello", None, False, ParameterType.STRING),
        (3, None, False, ParameterType.NUMBER),
        (0.5, None, False, ParameterType.NUMBER),
        (True, None, False, ParameterType.BOOLEAN),
        ([1, 2], None, False, ParameterType.ARRAY),
        ({"a": 1}, None, False, ParameterType.OBJECT),
        ('{"a": 1}', None, False, ParameterType.JSON),
        ("[1, 2]", None, False, ParameterType.JSON),
        ("{not json", None, False, ParameterType.STRING),
        ("def run(x):\n    return x", None, False, ParameterType.CODE),
        ("12", None, False, ParameterType.STRING),
        ("12", "number", False, ParameterType.NUMBER),
        ("secret", "password", False, ParameterType.STRING),
        ("x", "code", False, ParameterType.CODE),
        ("a", "string", True, ParameterType.ARRAY),
        (None, None, False, ParameterType.STRING),
    ],
)
def test_infer_parameter_type_decision_table(value, hint, is_list, expected) -> None:
    assert infer_parameter_type(value, hint, is_list=is_list) == expected


def test_coerce_value_only_touches_typed_strings() -> None:
    assert coerce_value("0.7", ParameterType.NUMBER) == 0.7
    assert coerce_value("42", ParameterType.NUMBER) == 42
    assert coerce_value("abc", ParameterType.NUMBER) == "abc"
    assert coerce_value("TRUE", ParameterType.BOOLEAN) is True
    assert coerce_value("42", ParameterType.STRING) == "42"


def test_helpers_for_categories_handles_and_versions() -> None:
    assert normalize_category("Chat Models") == NodeCategory.LLM
    assert normalize_category("vectorstore") == NodeCategory.VECTORSTORE
    assert normalize_category("Something New") == NodeCategory.UTILITY
    assert normalize_category(None) == NodeCategory.UTILITY

    assert port_name_from_handle("llmChain_0-input-model-BaseLanguageModel") == "model"
    assert port_name_from_handle("model") == "model"

    assert detect_flow_version([]) == "unknown"
    assert detect_flow_version([{"id": "a", "parameters": []}]) == "ir"
    assert detect_flow_version([{"id": "a", "data": {"version": 2}}]) == "2.x"
    assert detect_flow_version([{"id": "a", "data": {"version": 1}}]) == "1.x"
    assert detect_flow_version([{"id": "a", "data": {"inputParams": []}}]) == "2.x"
