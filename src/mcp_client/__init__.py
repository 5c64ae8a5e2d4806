"""MCP client: the shared server connection, tool catalog and prompt templates.

The connection is long-lived and reconnects on its own; the catalog and
template client are thin, cached views over it used by the orchestrator.
"""

from mcp_client.connection import (
    MCPClientError,
    MCPConnection,
    MCPConnectionError,
    MCPTimeoutError,
)
from mcp_client.catalog import ToolCatalog, ToolInvocationError, UnknownToolError
from mcp_client.prompts import PromptTemplateClient, TemplateError

__all__ = [
    "MCPClientError",
    "MCPConnection",
    "MCPConnectionError",
    "MCPTimeoutError",
    "ToolCatalog",
    "ToolInvocationError",
    "UnknownToolError",
    "PromptTemplateClient",
    "TemplateError",
]
