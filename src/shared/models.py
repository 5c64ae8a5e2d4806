"""Core data models for the tool gateway.

Conversations and their messages, prompt templates, tool descriptors,
LLM request/response shapes and OAuth token records shared by every
package.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Timezone-aware wall clock used for every timestamp."""
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Author of a conversation message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""
    id: str = Field(..., description="Provider-assigned call id")
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolCallResult(BaseModel):
    """Outcome of one tool call, keyed by the call id."""
    call_id: str
    content: str
    name: Optional[str] = None
    is_error: bool = False


class Message(BaseModel):
    """A single message in a conversation."""
    role: MessageRole
    text: str = ""
    tool_calls: Optional[list[ToolCall]] = None
    tool_results: Optional[list[ToolCallResult]] = None
    generated_at: datetime = Field(default_factory=utc_now)
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class Conversation(BaseModel):
    """Ordered, append-only message log identified by a UUID."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    created_at: datetime = Field(default_factory=utc_now)
    messages: list[Message] = Field(default_factory=list)


class PromptArgument(BaseModel):
    """Declared argument of a prompt template."""
    name: str
    description: Optional[str] = None
    required: bool = False


class PromptTemplate(BaseModel):
    """A named template published by the MCP server."""
    name: str
    description: Optional[str] = None
    arguments: list[PromptArgument] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)


class ToolResult(BaseModel):
    """Structured result returned by the tool catalog."""
    tool_name: str
    content: str = ""
    structured: Optional[Any] = None
    execution_time_ms: float = 0


class ToolDescriptor(BaseModel):
    """A tool advertised by the MCP server."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)
    invoker: Optional[Callable[[dict[str, Any]], Awaitable[ToolResult]]] = Field(
        default=None, exclude=True, repr=False
    )


class GenerationOptions(BaseModel):
    """Sampling options handed to a provider."""
    max_tokens: int = 1000
    temperature: float = 0.5
    top_p: Optional[float] = None
    top_k: Optional[int] = None


class Completion(BaseModel):
    """Blocking provider response."""
    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    elapsed_ms: float = 0
    tool_calls: list[ToolCall] = Field(default_factory=list)


class ChunkType(str, Enum):
    """Kinds of streamed provider output."""
    TEXT = "text"
    TOOL_CALL = "tool_call"
    DONE = "done"


class Chunk(BaseModel):
    """One element of a streamed provider response."""
    type: ChunkType
    delta: str = ""
    tool_call: Optional[ToolCall] = None
    input_tokens: int = 0
    output_tokens: int = 0


class StreamEvent(BaseModel):
    """A named server-sent event produced by a streaming turn."""
    event: str
    data: dict[str, Any] = Field(default_factory=dict)


# HTTP request/response shapes shared by /ask and /ask-stream

class ModelSettings(BaseModel):
    """Per-request generation overrides; zero or absent keeps the default."""
    model_config = ConfigDict(populate_by_name=True)

    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")
    top_p: Optional[float] = Field(default=None, alias="topP")
    top_k: Optional[int] = Field(default=None, alias="topK")


class ProviderSelection(BaseModel):
    """Provider tag and model id chosen by the client."""
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    provider: str = ""
    model_id: str = Field(default="", alias="modelId")


class AskRequest(BaseModel):
    """Body of /ask and /ask-stream."""
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    chat_uuid: Optional[str] = None
    question: str = ""
    use_tools: bool = Field(default=False, alias="useTools")
    selected_tools: Optional[list[str]] = Field(default=None, alias="selectedTools")
    model_settings: Optional[ModelSettings] = Field(default=None, alias="modelSettings")
    llm_provider: ProviderSelection = Field(default_factory=ProviderSelection, alias="llmProvider")


class AskResponse(BaseModel):
    """Body returned by /ask."""
    chat_uuid: uuid.UUID
    answer: str
    input_token: int
    output_token: int


class OAuthToken(BaseModel):
    """OAuth2 access token with its refresh material."""
    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None

    def is_expired(self, leeway_seconds: float = 10) -> bool:
        """True when the token expires within `leeway_seconds`."""
        if self.expiry is None:
            return False
        return utc_now() + timedelta(seconds=leeway_seconds) >= self.expiry


class OAuthTokenRecord(BaseModel):
    """Persisted token plus the provider configuration it was minted for."""
    token: OAuthToken
    config_json: str = ""
