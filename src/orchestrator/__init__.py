"""Orchestrator / API gateway.

Drives user turns end to end: conversation history, prompt templates,
LLM providers via LlamaIndex, the tool-use loop and SSE streaming.
"""

from orchestrator.conversation import ConversationStore, InMemoryConversationStore
from orchestrator.gateway import RequestOrchestrator, StreamHandle
from orchestrator.llm import LLMProvider, LLMProviderFactory, MockLLMProvider

__all__ = [
    "ConversationStore",
    "InMemoryConversationStore",
    "RequestOrchestrator",
    "StreamHandle",
    "LLMProvider",
    "LLMProviderFactory",
    "MockLLMProvider",
]
