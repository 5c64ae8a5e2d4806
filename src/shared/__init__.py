"""Shared configuration, logging, errors and data models for the tool gateway."""

from shared.models import (
    AskRequest,
    AskResponse,
    Completion,
    Conversation,
    Message,
    MessageRole,
    ToolCall,
    ToolDescriptor,
    ToolResult,
)
from shared.config import Settings, get_settings
from shared.errors import GatewayError
from shared.logging import get_logger, setup_logging

__all__ = [
    "AskRequest",
    "AskResponse",
    "Completion",
    "Conversation",
    "Message",
    "MessageRole",
    "ToolCall",
    "ToolDescriptor",
    "ToolResult",
    "Settings",
    "get_settings",
    "GatewayError",
    "get_logger",
    "setup_logging",
]
