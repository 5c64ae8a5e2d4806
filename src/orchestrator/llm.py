"""LLM integration layer using LlamaIndex.

A provider handle exposes one capability interface, `generate` and
`stream`, whatever vendor sits behind it. The factory dispatches on the
provider tag:
- anthropic: Anthropic API
- openai: OpenAI API
- bedrock: Amazon Bedrock Converse API
- deepseek: DeepSeek's OpenAI-compatible endpoint

Credentials are handed to the factory once; request handling never reads
the environment.
"""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from shared.config import ProviderCredentials
from shared.errors import BadRequestError, InternalError, UpstreamError
from shared.logging import get_logger
from shared.models import (
    Chunk,
    ChunkType,
    Completion,
    GenerationOptions,
    Message,
    MessageRole,
    ToolCall,
    ToolDescriptor,
)
from orchestrator.provider_catalog import normalize_provider

logger = get_logger(__name__)


class UnsupportedProviderError(BadRequestError):
    """The provider tag is not one the factory can build."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unsupported LLM provider: {provider}", step="provider build")
        self.provider = provider


class MissingCredentialError(InternalError):
    """The provider's credential is not configured."""

    def __init__(self, credential: str) -> None:
        super().__init__(f"{credential} is required", step="provider build")
        self.credential = credential


class ProviderInvocationError(UpstreamError):
    """The remote provider call failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, step="provider invoke")


class LLMProvider(ABC):
    """
    Capability interface every provider handle implements.

    LLM Integration Rules:
    - The provider receives only the tools the orchestrator offers
    - It returns text and/or requested tool calls, never executes tools
    """

    provider_tag: str = ""
    model_id: str = ""

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        options: GenerationOptions,
        tools: Optional[list[ToolDescriptor]] = None
    ) -> Completion:
        """
        Generate a completion.

        Args:
            messages: Provider input in conversation order
            options: Sampling options
            tools: Tools the model may call

        Returns:
            Completion with text, token counts and requested tool calls
        """

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        options: GenerationOptions,
        tools: Optional[list[ToolDescriptor]] = None
    ) -> AsyncIterator[Chunk]:
        """
        Stream a completion as text deltas, tool-call announcements and a
        terminal DONE chunk with the aggregated token counts.

        The iterator may be closed early; implementations release the
        underlying connection when that happens.
        """


def _llama_tool(descriptor: ToolDescriptor):
    """Expose a catalog tool to LlamaIndex with its JSON schema untouched."""
    from llama_index.core.tools import BaseTool, ToolMetadata, ToolOutput

    @dataclass
    class _SchemaToolMetadata(ToolMetadata):
        parameters: dict[str, Any] = field(default_factory=dict)

        def get_parameters_dict(self) -> dict:
            return self.parameters

    class _CatalogTool(BaseTool):
        # Declaration only; calls are dispatched through the tool catalog
        def __init__(self, metadata: ToolMetadata) -> None:
            self._metadata = metadata

        @property
        def metadata(self) -> ToolMetadata:
            return self._metadata

        def __call__(self, input: Any) -> ToolOutput:
            raise RuntimeError("catalog tools are invoked by the orchestrator")

    return _CatalogTool(_SchemaToolMetadata(
        description=descriptor.description or descriptor.name,
        name=descriptor.name,
        fn_schema=None,
        parameters=descriptor.input_schema,
    ))


def _openai_tool_call(call: ToolCall) -> dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
    }


def _anthropic_tool_call(call: ToolCall) -> dict[str, Any]:
    return {"id": call.id, "name": call.name, "input": call.arguments, "type": "tool_use"}


def _bedrock_tool_call(call: ToolCall) -> dict[str, Any]:
    return {"toolUseId": call.id, "name": call.name, "input": call.arguments}


_TOOL_CALL_FORMATS: dict[str, Callable[[ToolCall], dict[str, Any]]] = {
    "anthropic": _anthropic_tool_call,
    "openai": _openai_tool_call,
    "bedrock": _bedrock_tool_call,
    "deepseek": _openai_tool_call,
}

# Sampling options each vendor accepts beyond temperature and max_tokens
_SAMPLING_OPTIONS: dict[str, frozenset[str]] = {
    "anthropic": frozenset({"top_p", "top_k"}),
    "openai": frozenset({"top_p"}),
    "bedrock": frozenset(),
    "deepseek": frozenset({"top_p"}),
}


def unsupported_options(provider_tag: str, options: GenerationOptions) -> list[str]:
    """Names of options that are set but the vendor cannot accept."""
    supported = _SAMPLING_OPTIONS.get(provider_tag, frozenset())
    return [
        name for name in ("top_p", "top_k")
        if getattr(options, name) is not None and name not in supported
    ]


def _log_dropped_options(provider_tag: str, model_id: str, options: GenerationOptions) -> None:
    dropped = unsupported_options(provider_tag, options)
    if dropped:
        logger.debug(
            "Provider ignores sampling options",
            provider=provider_tag,
            model=model_id,
            options=dropped
        )


def _usage_value(usage: Any, *keys: str) -> int:
    for key in keys:
        value = usage.get(key) if isinstance(usage, dict) else getattr(usage, key, None)
        if value:
            return int(value)
    return 0


def token_usage(response: Any) -> tuple[int, int]:
    """Extract (input, output) token counts from a LlamaIndex chat response."""
    if response is None:
        return 0, 0

    kwargs = getattr(response, "additional_kwargs", None) or {}
    if "prompt_tokens" in kwargs or "completion_tokens" in kwargs:
        return (
            _usage_value(kwargs, "prompt_tokens"),
            _usage_value(kwargs, "completion_tokens"),
        )

    raw = getattr(response, "raw", None)
    if raw is None:
        return 0, 0
    usage = raw.get("usage") if isinstance(raw, dict) else getattr(raw, "usage", None)
    if usage is None:
        return 0, 0
    return (
        _usage_value(usage, "input_tokens", "prompt_tokens", "inputTokens"),
        _usage_value(usage, "output_tokens", "completion_tokens", "outputTokens"),
    )


class LlamaIndexProvider(LLMProvider):
    """Provider handle backed by a LlamaIndex function-calling LLM."""

    def __init__(
        self,
        provider_tag: str,
        model_id: str,
        llm_builder: Callable[[GenerationOptions], Any]
    ) -> None:
        """
        Args:
            provider_tag: Canonical provider tag
            model_id: Vendor model id
            llm_builder: Creates a LlamaIndex LLM for the given options
        """
        self.provider_tag = provider_tag
        self.model_id = model_id
        self._llm_builder = llm_builder
        self._format_tool_call = _TOOL_CALL_FORMATS[provider_tag]

    def _convert_messages(self, messages: list[Message]) -> list:
        """Convert internal messages to LlamaIndex format."""
        from llama_index.core.llms import ChatMessage, MessageRole as LlamaRole

        role_map = {
            MessageRole.USER: LlamaRole.USER,
            MessageRole.ASSISTANT: LlamaRole.ASSISTANT,
            MessageRole.SYSTEM: LlamaRole.SYSTEM,
            MessageRole.TOOL: LlamaRole.TOOL,
        }

        result = []
        for msg in messages:
            if msg.role == MessageRole.TOOL:
                # One provider message per tool result
                for tool_result in msg.tool_results or []:
                    result.append(ChatMessage(
                        role=LlamaRole.TOOL,
                        content=tool_result.content,
                        additional_kwargs={
                            "tool_call_id": tool_result.call_id,
                            "name": tool_result.name,
                        },
                    ))
                continue

            chat_msg = ChatMessage(role=role_map[msg.role], content=msg.text)
            if msg.tool_calls:
                chat_msg.additional_kwargs = {
                    "tool_calls": [self._format_tool_call(c) for c in msg.tool_calls]
                }
            result.append(chat_msg)

        return result

    def _tool_calls(self, llm: Any, response: Any) -> list[ToolCall]:
        selections = llm.get_tool_calls_from_response(response, error_on_no_tool_call=False)
        return [
            ToolCall(id=s.tool_id, name=s.tool_name, arguments=dict(s.tool_kwargs or {}))
            for s in selections
        ]

    async def generate(
        self,
        messages: list[Message],
        options: GenerationOptions,
        tools: Optional[list[ToolDescriptor]] = None
    ) -> Completion:
        """Generate a completion, offering tools when given."""
        llm = self._llm_builder(options)
        chat_messages = self._convert_messages(messages)
        started = time.perf_counter()

        try:
            if tools:
                response = await llm.achat_with_tools(
                    [_llama_tool(t) for t in tools],
                    chat_history=chat_messages,
                    allow_parallel_tool_calls=True,
                )
                tool_calls = self._tool_calls(llm, response)
            else:
                response = await llm.achat(chat_messages)
                tool_calls = []
        except Exception as e:
            logger.error(
                "LLM completion failed",
                provider=self.provider_tag,
                model=self.model_id,
                error=str(e)
            )
            raise ProviderInvocationError(f"{self.provider_tag} completion failed: {e}") from e

        input_tokens, output_tokens = token_usage(response)
        return Completion(
            text=(response.message.content or "") if response.message else "",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            elapsed_ms=(time.perf_counter() - started) * 1000,
            tool_calls=tool_calls,
        )

    async def stream(
        self,
        messages: list[Message],
        options: GenerationOptions,
        tools: Optional[list[ToolDescriptor]] = None
    ) -> AsyncIterator[Chunk]:
        """Stream a completion chunk by chunk."""
        llm = self._llm_builder(options)
        chat_messages = self._convert_messages(messages)

        try:
            if tools:
                responses = await llm.astream_chat_with_tools(
                    [_llama_tool(t) for t in tools],
                    chat_history=chat_messages,
                    allow_parallel_tool_calls=True,
                )
            else:
                responses = await llm.astream_chat(chat_messages)
        except Exception as e:
            raise ProviderInvocationError(f"{self.provider_tag} stream failed: {e}") from e

        last = None
        try:
            async for response in responses:
                last = response
                if response.delta:
                    yield Chunk(type=ChunkType.TEXT, delta=response.delta)
        except Exception as e:
            raise ProviderInvocationError(f"{self.provider_tag} stream failed: {e}") from e
        finally:
            aclose = getattr(responses, "aclose", None)
            if aclose is not None:
                await aclose()

        if tools and last is not None:
            for call in self._tool_calls(llm, last):
                yield Chunk(type=ChunkType.TOOL_CALL, tool_call=call)

        input_tokens, output_tokens = token_usage(last)
        yield Chunk(type=ChunkType.DONE, input_tokens=input_tokens, output_tokens=output_tokens)


class MockLLMProvider(LLMProvider):
    """Mock provider for testing without API calls."""

    def __init__(self, provider_tag: str = "mock", model_id: str = "mock-model") -> None:
        self.provider_tag = provider_tag
        self.model_id = model_id
        self.call_history: list[dict[str, Any]] = []
        self._responses: list[Completion] = []

    def set_next_response(self, response: Completion) -> None:
        """Queue a response; queued responses are returned in order."""
        self._responses.append(response)

    def _next(self) -> Completion:
        if self._responses:
            return self._responses.pop(0)
        return Completion(text="This is a mock response.", input_tokens=10, output_tokens=5)

    async def generate(
        self,
        messages: list[Message],
        options: GenerationOptions,
        tools: Optional[list[ToolDescriptor]] = None
    ) -> Completion:
        """Return the next queued response."""
        self.call_history.append({
            "messages": list(messages),
            "options": options,
            "tools": tools,
        })
        return self._next()

    async def stream(
        self,
        messages: list[Message],
        options: GenerationOptions,
        tools: Optional[list[ToolDescriptor]] = None
    ) -> AsyncIterator[Chunk]:
        """Replay the next queued response word by word."""
        self.call_history.append({
            "messages": list(messages),
            "options": options,
            "tools": tools,
        })
        completion = self._next()

        words = completion.text.split(" ") if completion.text else []
        for i, word in enumerate(words):
            yield Chunk(type=ChunkType.TEXT, delta=word if i == 0 else " " + word)
        for call in completion.tool_calls:
            yield Chunk(type=ChunkType.TOOL_CALL, tool_call=call)
        yield Chunk(
            type=ChunkType.DONE,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )


class LLMProviderFactory:
    """
    Builds provider handles from a (provider, model) pair.

    Stateless apart from the credentials captured at construction.
    """

    def __init__(
        self,
        credentials: Optional[ProviderCredentials] = None,
        request_timeout: float = 120.0
    ) -> None:
        self.credentials = credentials or ProviderCredentials()
        self.request_timeout = request_timeout
        self._builders: dict[str, Callable[[str], Callable[[GenerationOptions], Any]]] = {
            "anthropic": self._anthropic,
            "openai": self._openai,
            "bedrock": self._bedrock,
            "deepseek": self._deepseek,
        }

    def build(self, provider: str, model_id: str) -> LLMProvider:
        """
        Create a provider handle.

        Args:
            provider: Provider tag (case-insensitive; display names accepted)
            model_id: Vendor model id, validated by the vendor

        Returns:
            Provider handle

        Raises:
            UnsupportedProviderError: If the tag is unknown
            MissingCredentialError: If the provider's credential is not set
        """
        tag = normalize_provider(provider)
        builder = self._builders.get(tag) if tag else None
        if builder is None:
            raise UnsupportedProviderError(provider)

        llm_builder = builder(model_id)
        logger.debug("Creating LLM provider", provider=tag, model=model_id)
        return LlamaIndexProvider(tag, model_id, llm_builder)

    def _require(self, value: Optional[str], name: str) -> str:
        if not value:
            raise MissingCredentialError(name)
        return value

    def _anthropic(self, model_id: str) -> Callable[[GenerationOptions], Any]:
        api_key = self._require(self.credentials.anthropic_api_key, "ANTHROPIC_API_KEY")

        def make(options: GenerationOptions):
            from llama_index.llms.anthropic import Anthropic

            extra = {}
            if options.top_p is not None:
                extra["top_p"] = options.top_p
            if options.top_k is not None:
                extra["top_k"] = options.top_k
            return Anthropic(
                model=model_id,
                api_key=api_key,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                timeout=self.request_timeout,
                additional_kwargs=extra,
            )

        return make

    def _openai(self, model_id: str) -> Callable[[GenerationOptions], Any]:
        api_key = self._require(self.credentials.openai_api_key, "OPENAI_API_KEY")

        def make(options: GenerationOptions):
            from llama_index.llms.openai import OpenAI

            _log_dropped_options("openai", model_id, options)
            extra = {"top_p": options.top_p} if options.top_p is not None else {}
            return OpenAI(
                model=model_id,
                api_key=api_key,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                timeout=self.request_timeout,
                additional_kwargs=extra,
            )

        return make

    def _bedrock(self, model_id: str) -> Callable[[GenerationOptions], Any]:
        # Requests are signed with the ambient AWS credential chain
        self._require(self.credentials.amazon_bedrock_api_key, "AMAZON_BEDROCK_API_KEY")
        region = self.credentials.aws_region

        def make(options: GenerationOptions):
            from llama_index.llms.bedrock_converse import BedrockConverse

            _log_dropped_options("bedrock", model_id, options)
            kwargs: dict[str, Any] = {}
            if region:
                kwargs["region_name"] = region
            return BedrockConverse(
                model=model_id,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                timeout=self.request_timeout,
                **kwargs,
            )

        return make

    def _deepseek(self, model_id: str) -> Callable[[GenerationOptions], Any]:
        api_key = self._require(self.credentials.deepseek_api_key, "DEEPSEEK_API_KEY")

        def make(options: GenerationOptions):
            from llama_index.llms.deepseek import DeepSeek

            _log_dropped_options("deepseek", model_id, options)
            extra = {"top_p": options.top_p} if options.top_p is not None else {}
            return DeepSeek(
                model=model_id,
                api_key=api_key,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                timeout=self.request_timeout,
                additional_kwargs=extra,
            )

        return make
