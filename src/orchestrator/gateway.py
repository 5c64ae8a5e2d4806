"""Request orchestrator: drives one user turn end to end.

The orchestrator coordinates:
- Request validation and conversation resolution
- Prompt templates fetched over MCP
- Provider construction and invocation (blocking or streaming)
- The tool-use loop through the tool catalog
- Persistence of every message of the turn

The user message is persisted before any external call, so a failed turn
never loses the user's input.
"""

import asyncio
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from opentelemetry.trace import Span

from shared.errors import BadRequestError, GatewayError, InternalError, UpstreamError
from shared.logging import bind_context, get_logger
from shared.metrics import GatewayMetrics
from shared.models import (
    AskRequest,
    AskResponse,
    Chunk,
    ChunkType,
    Completion,
    GenerationOptions,
    Message,
    MessageRole,
    ModelSettings,
    StreamEvent,
    ToolCall,
    ToolCallResult,
    ToolDescriptor,
)
from shared.tracing import TracingService
from mcp_client.catalog import ToolCatalog, UnknownToolError
from mcp_client.prompts import TEMPLATE_GENERAL, TEMPLATE_WITH_TOOLS, PromptTemplateClient
from orchestrator.conversation import ConversationStore, truncate_history
from orchestrator.llm import LLMProvider, LLMProviderFactory
from orchestrator.provider_catalog import is_supported, normalize_provider

logger = get_logger(__name__)

DEFAULT_MAX_TOOL_ITERATIONS = 8
TRUNCATION_NOTICE = (
    "[Stopped after {budget} tool-use iterations; the answer may be incomplete.]"
)


@dataclass
class Turn:
    """State of one user turn after validation."""
    conversation_id: uuid.UUID
    question: str
    provider_tag: str
    model_id: str
    options: GenerationOptions
    use_tools: bool
    selected_tools: Optional[list[str]]
    history: list[Message] = field(default_factory=list)


@dataclass
class TurnTotals:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens


class StreamHandle:
    """Events of a streaming turn whose conversation is already resolved."""

    def __init__(self, chat_id: uuid.UUID, events: AsyncIterator[StreamEvent]) -> None:
        self.chat_id = chat_id
        self._events = events

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._events

    async def aclose(self) -> None:
        await self._events.aclose()


class RequestOrchestrator:
    """
    Per-turn state machine.

    validate -> resolve conversation -> record user turn -> compose options
    -> fetch template -> build provider -> invoke (tool-use loop)
    -> record assistant turn -> reply
    """

    def __init__(
        self,
        store: ConversationStore,
        templates: PromptTemplateClient,
        catalog: ToolCatalog,
        provider_factory: LLMProviderFactory,
        tracer: Optional[TracingService] = None,
        metrics: Optional[GatewayMetrics] = None,
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
        max_history_messages: int = 20,
        default_options: Optional[GenerationOptions] = None
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            store: Conversation history
            templates: Prompt template client
            catalog: Tool catalog, passed down to the tool-use loop
            provider_factory: Builds provider handles per turn
            tracer: Tracing service (disabled when omitted)
            metrics: Metric families (private registry when omitted)
            max_tool_iterations: Tool-use iteration budget per turn
            max_history_messages: Prior messages sent to the provider
            default_options: Generation defaults before per-request overrides
        """
        self.store = store
        self.templates = templates
        self.catalog = catalog
        self.provider_factory = provider_factory
        self.tracer = tracer or TracingService()
        self.metrics = metrics or GatewayMetrics()
        self.max_tool_iterations = max_tool_iterations
        self.max_history_messages = max_history_messages
        self.default_options = default_options or GenerationOptions()

    # Public operations

    async def ask(self, request: AskRequest) -> AskResponse:
        """
        Run a blocking turn.

        Args:
            request: Validated HTTP request body

        Returns:
            Final answer with the conversation id and summed token counts

        Raises:
            GatewayError: Any failure, with the status the client should see
        """
        with self.tracer.start_span("orchestrator.ask") as span:
            try:
                turn = await self._begin_turn(request, span)
            except GatewayError as e:
                self.tracer.record_error(span, e)
                raise

            try:
                answer, totals = await self._run_blocking(turn)
            except GatewayError as e:
                await self._record_failure(turn, e, span)
                raise
            except Exception as e:
                error = InternalError(str(e), step="invoke")
                await self._record_failure(turn, error, span)
                raise error from e

            self.tracer.add_attribute(span, "input_token", totals.input_tokens)
            self.tracer.add_attribute(span, "output_token", totals.output_tokens)

        logger.info(
            "Turn completed",
            chat_uuid=str(turn.conversation_id),
            input_token=totals.input_tokens,
            output_token=totals.output_tokens
        )
        return AskResponse(
            chat_uuid=turn.conversation_id,
            answer=answer,
            input_token=totals.input_tokens,
            output_token=totals.output_tokens,
        )

    async def ask_stream(self, request: AskRequest) -> StreamHandle:
        """
        Start a streaming turn.

        Validation and conversation resolution happen here, so their errors
        reach the client as ordinary HTTP errors. Everything after the user
        message is recorded runs inside the returned event stream.
        """
        with self.tracer.start_span("orchestrator.ask_stream") as span:
            try:
                turn = await self._begin_turn(request, span)
            except GatewayError as e:
                self.tracer.record_error(span, e)
                raise

        return StreamHandle(turn.conversation_id, self._stream_turn(turn))

    def compose_options(self, settings: Optional[ModelSettings]) -> GenerationOptions:
        """Apply per-request overrides that are explicitly set (non-zero)."""
        options = self.default_options.model_copy()
        if settings is None:
            return options

        if settings.max_tokens:
            options.max_tokens = settings.max_tokens
        if settings.temperature:
            options.temperature = settings.temperature
        if settings.top_p:
            options.top_p = settings.top_p
        if settings.top_k:
            options.top_k = settings.top_k
        return options

    # Turn setup (states 1-4)

    def _validate(self, request: AskRequest) -> tuple[str, str]:
        if not request.question.strip():
            raise BadRequestError("question cannot be empty", step="validate")

        provider = request.llm_provider.provider.strip()
        model_id = request.llm_provider.model_id.strip()
        if not provider or not model_id:
            raise BadRequestError("LLM provider is required", step="validate")
        if not is_supported(provider, model_id):
            raise BadRequestError("LLM provider or model is not supported", step="validate")

        return normalize_provider(provider), model_id

    @staticmethod
    def _parse_chat_id(raw: Optional[str]) -> Optional[uuid.UUID]:
        """Absent or all-zero ids mean a new conversation."""
        if raw is None or not raw.strip():
            return None
        try:
            chat_id = uuid.UUID(raw.strip())
        except ValueError:
            raise BadRequestError("Invalid chat ID", step="validate")
        return None if chat_id.int == 0 else chat_id

    async def _begin_turn(self, request: AskRequest, span: Span) -> Turn:
        provider_tag, model_id = self._validate(request)
        chat_id = self._parse_chat_id(request.chat_uuid)

        if chat_id is None:
            conversation = await self.store.create()
        else:
            conversation = await self.store.get(chat_id)

        bind_context(chat_uuid=str(conversation.id))
        self.tracer.add_attribute(span, "chat_uuid", str(conversation.id))
        self.tracer.add_attribute(span, "llm.provider", provider_tag)
        self.tracer.add_attribute(span, "llm.model", model_id)
        self.tracer.add_attribute(span, "use_tools", request.use_tools)

        # The user's input is durable before any external call
        await self.store.append(conversation.id, Message(role=MessageRole.USER, text=request.question))

        return Turn(
            conversation_id=conversation.id,
            question=request.question,
            provider_tag=provider_tag,
            model_id=model_id,
            options=self.compose_options(request.model_settings),
            use_tools=request.use_tools,
            selected_tools=request.selected_tools,
            history=truncate_history(conversation.messages, self.max_history_messages),
        )

    # States 5-6

    async def _prepare(self, turn: Turn) -> tuple[LLMProvider, list[Message], list[ToolDescriptor]]:
        template_name = TEMPLATE_WITH_TOOLS if turn.use_tools else TEMPLATE_GENERAL
        with self.tracer.start_span("template.render", template=template_name):
            prompt = await self.templates.render(template_name, {"question": turn.question})

        with self.tracer.start_span("provider.build", provider=turn.provider_tag, model=turn.model_id):
            provider = self.provider_factory.build(turn.provider_tag, turn.model_id)

        tools: list[ToolDescriptor] = []
        if turn.use_tools:
            tools = await self._offered_tools(turn.selected_tools)
            self.metrics.tools_enabled.labels(turn.provider_tag, turn.model_id).inc()

        return provider, [*turn.history, *prompt], tools

    async def _offered_tools(self, selected: Optional[list[str]]) -> list[ToolDescriptor]:
        """Tools offered to the model; listing failures degrade to none."""
        try:
            tools = await self.catalog.list_tools()
        except GatewayError as e:
            logger.warning("Failed to list tools, continuing without tools", error=str(e))
            return []

        if selected:
            wanted = set(selected)
            tools = [t for t in tools if t.name in wanted]
        return tools

    # State 7, blocking

    async def _run_blocking(self, turn: Turn) -> tuple[str, TurnTotals]:
        provider, messages, tools = await self._prepare(turn)
        totals = TurnTotals()

        completion = await self._generate(provider, messages, turn.options, tools)
        totals.add(completion.input_tokens, completion.output_tokens)

        iterations = 0
        answer = completion.text
        while tools and completion.tool_calls:
            if iterations >= self.max_tool_iterations:
                answer = self._with_truncation_notice(completion.text)
                logger.warning(
                    "Tool iteration budget exhausted",
                    chat_uuid=str(turn.conversation_id),
                    iterations=iterations
                )
                break
            iterations += 1

            await self._record_tool_round(turn, messages, completion.text, completion.tool_calls)

            completion = await self._generate(provider, messages, turn.options, tools)
            totals.add(completion.input_tokens, completion.output_tokens)
            answer = completion.text

        await self.store.append(turn.conversation_id, Message(
            role=MessageRole.ASSISTANT,
            text=answer,
            input_tokens=totals.input_tokens,
            output_tokens=totals.output_tokens,
        ))
        return answer, totals

    async def _generate(
        self,
        provider: LLMProvider,
        messages: list[Message],
        options: GenerationOptions,
        tools: list[ToolDescriptor]
    ) -> Completion:
        labels = (provider.provider_tag, provider.model_id)
        in_flight = self.metrics.completion_in_flight.labels(*labels)
        in_flight.inc()
        started = time.perf_counter()
        status = "error"
        completion: Optional[Completion] = None

        try:
            with self.tracer.start_span("llm.generate", provider=labels[0], model=labels[1]) as span:
                try:
                    completion = await provider.generate(messages, options, tools or None)
                except GatewayError as e:
                    self.tracer.record_error(span, e)
                    raise
                except Exception as e:
                    error = UpstreamError(str(e), step="provider invoke")
                    self.tracer.record_error(span, error)
                    raise error from e
                status = "success"
        finally:
            in_flight.dec()
            self.metrics.observe_completion(
                *labels,
                status=status,
                duration_seconds=time.perf_counter() - started,
                input_tokens=completion.input_tokens if completion else 0,
                output_tokens=completion.output_tokens if completion else 0,
            )
        return completion

    # Tool-use loop

    async def _record_tool_round(
        self,
        turn: Turn,
        messages: list[Message],
        text: str,
        tool_calls: list[ToolCall]
    ) -> None:
        """Run the assistant's tool calls, then persist the calls and results together."""
        results = [await self._execute_tool_call(call) for call in tool_calls]

        assistant = Message(role=MessageRole.ASSISTANT, text=text, tool_calls=tool_calls)
        tool_message = Message(role=MessageRole.TOOL, tool_results=results)
        # A call is never stored without its results, even if the turn is cancelled here
        await asyncio.shield(self._append_round(turn.conversation_id, assistant, tool_message))
        messages.extend([assistant, tool_message])

    async def _append_round(
        self,
        conversation_id: uuid.UUID,
        assistant: Message,
        tool_message: Message
    ) -> None:
        await self.store.append(conversation_id, assistant)
        await self.store.append(conversation_id, tool_message)

    async def _execute_tool_call(self, call: ToolCall) -> ToolCallResult:
        """Invoke one tool; failures become tool-level results the model can read."""
        logger.info("Executing tool", tool=call.name, call_id=call.id)

        with self.tracer.start_span("tool.invoke", tool=call.name) as span:
            try:
                result = await self.catalog.invoke(call.name, call.arguments)
            except UnknownToolError as e:
                self.tracer.record_error(span, e)
                self.metrics.tool_usage.labels(call.name, "unknown_tool").inc()
                return ToolCallResult(
                    call_id=call.id,
                    name=call.name,
                    content=f"Tool error (unknown_tool): {e.message}",
                    is_error=True,
                )
            except GatewayError as e:
                self.tracer.record_error(span, e)
                self.metrics.tool_usage.labels(call.name, "error").inc()
                return ToolCallResult(
                    call_id=call.id,
                    name=call.name,
                    content=f"Tool error (invocation_error): {e.message}",
                    is_error=True,
                )

        self.metrics.tool_usage.labels(call.name, "success").inc()
        return ToolCallResult(
            call_id=call.id,
            name=call.name,
            content=result.content or "Tool executed successfully.",
        )

    def _with_truncation_notice(self, text: str) -> str:
        notice = TRUNCATION_NOTICE.format(budget=self.max_tool_iterations)
        return f"{text}\n\n{notice}" if text else notice

    # State 7, streaming

    async def _stream_turn(self, turn: Turn) -> AsyncIterator[StreamEvent]:
        with self.tracer.start_span(
            "orchestrator.stream", current=False, chat_uuid=str(turn.conversation_id)
        ) as span:
            try:
                provider, messages, tools = await self._prepare(turn)
                totals = TurnTotals()
                iterations = 0

                while True:
                    parts: list[str] = []
                    tool_calls: list[ToolCall] = []

                    async with aclosing(self._stream_once(provider, messages, turn.options, tools)) as chunks:
                        async for chunk in chunks:
                            if chunk.type == ChunkType.TEXT:
                                parts.append(chunk.delta)
                                yield StreamEvent(event="message", data={"delta": chunk.delta})
                            elif chunk.type == ChunkType.TOOL_CALL:
                                tool_calls.append(chunk.tool_call)
                            else:
                                totals.add(chunk.input_tokens, chunk.output_tokens)

                    text = "".join(parts)
                    if not (tools and tool_calls):
                        break
                    if iterations >= self.max_tool_iterations:
                        notice = TRUNCATION_NOTICE.format(budget=self.max_tool_iterations)
                        delta = f"\n\n{notice}" if text else notice
                        yield StreamEvent(event="message", data={"delta": delta})
                        text += delta
                        break
                    iterations += 1

                    await self._record_tool_round(turn, messages, text, tool_calls)

                await self.store.append(turn.conversation_id, Message(
                    role=MessageRole.ASSISTANT,
                    text=text,
                    input_tokens=totals.input_tokens,
                    output_tokens=totals.output_tokens,
                ))

            except GatewayError as e:
                self.tracer.record_error(span, e)
                logger.error("Streaming turn failed", step=e.step, error=str(e))
                yield StreamEvent(event="error", data={"error": e.public_message})
                return
            except Exception as e:
                self.tracer.record_error(span, e)
                logger.error("Streaming turn failed", error=str(e), exc_info=True)
                yield StreamEvent(event="error", data={"error": InternalError(str(e)).public_message})
                return

        logger.info(
            "Streaming turn completed",
            chat_uuid=str(turn.conversation_id),
            input_token=totals.input_tokens,
            output_token=totals.output_tokens
        )
        yield StreamEvent(event="done", data={
            "chat_uuid": str(turn.conversation_id),
            "input_token": totals.input_tokens,
            "output_token": totals.output_tokens,
        })

    async def _stream_once(
        self,
        provider: LLMProvider,
        messages: list[Message],
        options: GenerationOptions,
        tools: list[ToolDescriptor]
    ) -> AsyncIterator[Chunk]:
        """One provider stream, with metrics around it."""
        labels = (provider.provider_tag, provider.model_id)
        in_flight = self.metrics.completion_in_flight.labels(*labels)
        in_flight.inc()
        started = time.perf_counter()
        status = "error"
        input_tokens = output_tokens = 0

        try:
            async with aclosing(provider.stream(messages, options, tools or None)) as chunks:
                async for chunk in chunks:
                    if chunk.type == ChunkType.DONE:
                        input_tokens, output_tokens = chunk.input_tokens, chunk.output_tokens
                    yield chunk
            status = "success"
        except GatewayError:
            raise
        except Exception as e:
            raise UpstreamError(str(e), step="provider invoke") from e
        finally:
            in_flight.dec()
            self.metrics.observe_completion(
                *labels,
                status=status,
                duration_seconds=time.perf_counter() - started,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

    # Failure bookkeeping

    async def _record_failure(self, turn: Turn, error: GatewayError, span: Span) -> None:
        """Record the error text as the assistant turn of a failed blocking request."""
        self.tracer.record_error(span, error)
        logger.error(
            "Turn failed",
            chat_uuid=str(turn.conversation_id),
            step=error.step,
            error=str(error)
        )
        await self.store.append(turn.conversation_id, Message(
            role=MessageRole.ASSISTANT,
            text=f"Error: {error.public_message}",
        ))
