"""Built-in converters for common LangChain node types.

This is a small catalog, not the full one: enough to convert typical chat,
chain and tool-calling agent flows to Python. Each converter only knows its
own node type; cross-node references always go through the generation
context, never through another converter.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional, Tuple

from .errors import ConverterError
from .ir.models import CodeFragment, FragmentKind, IRNode, NodeCategory
from .registry import BaseConverter, ConverterRegistry, GenerationContext, Reference


def _kwargs(pairs: Iterable[Tuple[str, Any]]) -> str:
    """Render keyword arguments, skipping None values."""
    return ", ".join(f"{k}={BaseConverter.format_value(v)}" for k, v in pairs if v is not None)


def _model_reference(node: IRNode, context: GenerationContext) -> Optional[Reference]:
    """The model wired into `model`, else the flow's first chat model (implicit default)."""
    if context.is_connected("model"):
        return context.get_reference("model")
    fallback = [n for n in context.find_nodes(NodeCategory.LLM) if n.id != node.id]
    if fallback:
        return context.get_reference(fallback[0].id)
    return None


class _ModelConsumer(BaseConverter):
    """Base for nodes that need a chat model, wired or not."""

    def prepare(self, node: IRNode, context: GenerationContext) -> None:
        if not context.is_connected("model"):
            ref = _model_reference(node, context)
            if ref is not None:
                context.depends_on(ref.node_id)

    def require_model(self, node: IRNode, context: GenerationContext) -> Reference:
        ref = _model_reference(node, context)
        if ref is None:
            raise ConverterError(node.id, "a chat model must be connected to 'model'")
        return ref


class ChatOpenAIConverter(BaseConverter):
    node_type = "chatOpenAI"
    category = NodeCategory.LLM
    packages = ["langchain-openai"]

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        var = context.resolver.resolve_reference(node.id)
        args = _kwargs(
            [
                ("model", node.get_value("modelName", "gpt-4o-mini")),
                ("temperature", node.get_value("temperature")),
                ("max_tokens", node.get_value("maxTokens")),
                ("streaming", node.get_value("streaming")),
            ]
        )
        return [
            self.fragment(node, FragmentKind.IMPORT, "from langchain_openai import ChatOpenAI"),
            self.fragment(node, FragmentKind.DECLARATION, f"{var} = ChatOpenAI({args})"),
        ]


class ChatAnthropicConverter(BaseConverter):
    node_type = "chatAnthropic"
    category = NodeCategory.LLM
    packages = ["langchain-anthropic"]

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        var = context.resolver.resolve_reference(node.id)
        args = _kwargs(
            [
                ("model", node.get_value("modelName", "claude-3-5-sonnet-latest")),
                ("temperature", node.get_value("temperature")),
                ("max_tokens", node.get_value("maxTokensToSample")),
            ]
        )
        return [
            self.fragment(node, FragmentKind.IMPORT, "from langchain_anthropic import ChatAnthropic"),
            self.fragment(node, FragmentKind.DECLARATION, f"{var} = ChatAnthropic({args})"),
        ]


class OpenAIEmbeddingsConverter(BaseConverter):
    node_type = "openAIEmbeddings"
    category = NodeCategory.EMBEDDING
    packages = ["langchain-openai"]

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        var = context.resolver.resolve_reference(node.id)
        args = _kwargs([("model", node.get_value("modelName", "text-embedding-3-small"))])
        return [
            self.fragment(node, FragmentKind.IMPORT, "from langchain_openai import OpenAIEmbeddings"),
            self.fragment(node, FragmentKind.DECLARATION, f"{var} = OpenAIEmbeddings({args})"),
        ]


class BufferMemoryConverter(BaseConverter):
    node_type = "bufferMemory"
    category = NodeCategory.MEMORY
    packages = ["langchain"]

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        var = context.resolver.resolve_reference(node.id)
        args = _kwargs(
            [
                ("memory_key", node.get_value("memoryKey", "chat_history")),
                ("input_key", node.get_value("inputKey")),
                ("return_messages", True),
            ]
        )
        return [
            self.fragment(node, FragmentKind.IMPORT, "from langchain.memory import ConversationBufferMemory"),
            self.fragment(node, FragmentKind.DECLARATION, f"{var} = ConversationBufferMemory({args})"),
        ]


class PromptTemplateConverter(BaseConverter):
    node_type = "promptTemplate"
    category = NodeCategory.PROMPT

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        var = context.resolver.resolve_reference(node.id)
        template = node.get_value("template")
        if not template:
            raise ConverterError(node.id, "promptTemplate requires a non-empty 'template'")
        return [
            self.fragment(node, FragmentKind.IMPORT, "from langchain_core.prompts import PromptTemplate"),
            self.fragment(node, FragmentKind.DECLARATION, f"{var} = PromptTemplate.from_template({template!r})"),
        ]


class ChatPromptTemplateConverter(BaseConverter):
    node_type = "chatPromptTemplate"
    category = NodeCategory.PROMPT

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        var = context.resolver.resolve_reference(node.id)
        messages = []
        system = node.get_value("systemMessagePrompt")
        if system:
            messages.append(("system", system))
        messages.append(("human", node.get_value("humanMessagePrompt", "{input}")))
        return [
            self.fragment(node, FragmentKind.IMPORT, "from langchain_core.prompts import ChatPromptTemplate"),
            self.fragment(node, FragmentKind.DECLARATION, f"{var} = ChatPromptTemplate.from_messages({messages!r})"),
        ]


class SerpAPIConverter(BaseConverter):
    node_type = "serpAPI"
    category = NodeCategory.TOOL
    packages = ["langchain-community", "google-search-results"]

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        var = context.resolver.resolve_reference(node.id)
        args = _kwargs(
            [
                ("name", node.get_value("name", "search")),
                ("description", node.get_value("description", "Search the web for current information.")),
            ]
        )
        return [
            self.fragment(node, FragmentKind.IMPORT, "from langchain_community.utilities import SerpAPIWrapper"),
            self.fragment(node, FragmentKind.IMPORT, "from langchain_core.tools import Tool", suffix="tool"),
            self.fragment(node, FragmentKind.DECLARATION, f"{var} = Tool({args}, func=SerpAPIWrapper().run)"),
        ]


class LLMChainConverter(_ModelConsumer):
    node_type = "llmChain"
    category = NodeCategory.CHAIN

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        var = context.resolver.resolve_reference(node.id)
        model = self.require_model(node, context)
        if not context.is_connected("prompt"):
            raise ConverterError(node.id, "a prompt must be connected to 'prompt'")
        prompt = context.get_reference("prompt")

        steps = [prompt, model]
        if context.is_connected("outputParser"):
            steps.append(context.get_reference("outputParser"))
        chain = " | ".join(r.exported_as for r in steps)
        return [
            self.fragment(
                node,
                FragmentKind.DECLARATION,
                f"{var} = {chain}",
                depends_on=[r.fragment_id for r in steps],
            ),
            self.fragment(
                node,
                FragmentKind.EXPORT,
                f"def invoke_{var}(inputs):\n    return {var}.invoke(inputs)\n",
            ),
        ]


class ToolAgentConverter(_ModelConsumer):
    """Tool-calling agent wrapped in an AgentExecutor."""

    node_type = "toolAgent"
    category = NodeCategory.AGENT
    packages = ["langchain"]
    local_suffixes = ("prompt",)

    def convert(self, node: IRNode, context: GenerationContext) -> List[CodeFragment]:
        var = context.resolver.resolve_reference(node.id)
        model = self.require_model(node, context)
        tools = context.get_references("tools")
        tool_list = "[" + ", ".join(t.exported_as for t in tools) + "]"
        memory = context.get_reference("memory") if context.is_connected("memory") else None

        system = node.get_value("systemMessage", "You are a helpful AI assistant.")
        messages = [("system", system)]
        if memory is not None:
            messages.append(("placeholder", "{chat_history}"))
        messages += [("human", "{input}"), ("placeholder", "{agent_scratchpad}")]

        executor_args = [
            f"agent=create_tool_calling_agent({model.exported_as}, {tool_list}, {var}_prompt)",
            f"tools={tool_list}",
        ]
        if memory is not None:
            executor_args.append(f"memory={memory.exported_as}")
        extra = _kwargs([("max_iterations", node.get_value("maxIterations")), ("verbose", node.get_value("verbose"))])
        if extra:
            executor_args.append(extra)

        return [
            self.fragment(
                node, FragmentKind.IMPORT, "from langchain.agents import AgentExecutor, create_tool_calling_agent"
            ),
            self.fragment(node, FragmentKind.IMPORT, "from langchain_core.prompts import ChatPromptTemplate", suffix="prompt"),
            self.fragment(node, FragmentKind.DECLARATION, f"{var}_prompt = ChatPromptTemplate.from_messages({messages!r})"),
            self.fragment(
                node,
                FragmentKind.INITIALIZATION,
                f"{var} = AgentExecutor({', '.join(executor_args)})",
                depends_on=[model.fragment_id] + [t.fragment_id for t in tools],
            ),
            self.fragment(
                node,
                FragmentKind.EXPORT,
                f"def invoke_{var}(inputs):\n    return {var}.invoke(inputs)\n",
            ),
        ]


BUILTIN_CONVERTERS: List[BaseConverter] = [
    ChatOpenAIConverter(),
    ChatAnthropicConverter(),
    OpenAIEmbeddingsConverter(),
    BufferMemoryConverter(),
    PromptTemplateConverter(),
    ChatPromptTemplateConverter(),
    SerpAPIConverter(),
    LLMChainConverter(),
    ToolAgentConverter(),
]


def default_registry() -> ConverterRegistry:
    """Return a fresh registry holding the built-in converters."""
    return ConverterRegistry(BUILTIN_CONVERTERS)
