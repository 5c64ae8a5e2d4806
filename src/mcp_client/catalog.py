"""Tool catalog backed by the MCP server.

Provides cached tool listings and forwards invocations. The cache is short
lived and is dropped whenever a lookup or the server reports an unknown
tool.
"""

import asyncio
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from mcp import types

from shared.errors import NotFoundError, UpstreamError
from shared.logging import get_logger
from shared.models import ToolDescriptor, ToolResult
from shared.schema import normalize_input_schema, validate_arguments
from mcp_client.connection import MCPClientError, MCPConnection

logger = get_logger(__name__)

_UNKNOWN_TOOL_MARKERS = ("unknown tool", "tool not found", "no such tool")


class UnknownToolError(NotFoundError):
    """The named tool is not advertised by the MCP server."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"unknown tool: {tool_name}", step="tool invoke")
        self.tool_name = tool_name


class ToolInvocationError(UpstreamError):
    """A tool call failed on the server or was rejected before dispatch."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message, step="tool invoke")
        self.tool_name = tool_name


def extract_text(content: list[Any]) -> str:
    """Flatten MCP content blocks into plain text."""
    parts = []
    for item in content:
        if isinstance(item, types.TextContent):
            parts.append(item.text)
        elif isinstance(item, types.ImageContent):
            parts.append(f"[image: {item.mimeType}]")
        elif isinstance(item, types.EmbeddedResource):
            resource = item.resource
            if isinstance(resource, types.TextResourceContents):
                parts.append(resource.text)
            else:
                parts.append(f"[resource: {resource.uri}]")
        else:
            text = getattr(item, "text", None)
            if text:
                parts.append(text)
    return "\n".join(parts)


class ToolCatalog:
    """
    Cached view of the tools published by the MCP server.

    Provides:
    - Cached tool listings (short TTL)
    - Lookup by name with refresh on miss
    - Argument validation and invocation
    """

    def __init__(
        self,
        connection: MCPConnection,
        cache_ttl_seconds: float = 30
    ) -> None:
        """
        Initialize the tool catalog.

        Args:
            connection: Shared MCP connection
            cache_ttl_seconds: Cache time-to-live in seconds
        """
        self.connection = connection
        self.cache_ttl = timedelta(seconds=cache_ttl_seconds)

        self._by_name: dict[str, ToolDescriptor] = {}
        self._cache_time: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def _is_cache_valid(self) -> bool:
        if self._cache_time is None:
            return False
        return datetime.now(timezone.utc) - self._cache_time < self.cache_ttl

    async def _refresh_cache(self) -> None:
        """Refresh the tool cache from the MCP server."""
        async with self._lock:
            # Double-check after acquiring lock
            if self._is_cache_valid():
                return

            tools = await self.connection.list_tools()
            self._by_name = {
                tool.name: self._describe(tool) for tool in tools
            }
            self._cache_time = datetime.now(timezone.utc)

            logger.info("Tool cache refreshed", tool_count=len(tools))

    def _describe(self, tool: types.Tool) -> ToolDescriptor:
        name = tool.name

        async def invoker(arguments: dict[str, Any]) -> ToolResult:
            return await self.invoke(name, arguments)

        return ToolDescriptor(
            name=name,
            description=tool.description or "",
            input_schema=normalize_input_schema(tool.inputSchema),
            invoker=invoker,
        )

    async def list_tools(self, force_refresh: bool = False) -> list[ToolDescriptor]:
        """
        Get all tools currently advertised by the server.

        Args:
            force_refresh: Bypass the cache

        Returns:
            Tool descriptors, read-only to callers
        """
        if force_refresh or not self._is_cache_valid():
            await self._refresh_cache()
        return list(self._by_name.values())

    async def get(self, name: str) -> Optional[ToolDescriptor]:
        """Look up a tool, refreshing once if it is not cached."""
        if not self._is_cache_valid():
            await self._refresh_cache()

        descriptor = self._by_name.get(name)
        if descriptor is None:
            self.invalidate_cache()
            await self._refresh_cache()
            descriptor = self._by_name.get(name)
        return descriptor

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """
        Invoke a tool on the MCP server.

        Args:
            name: Tool name as advertised
            arguments: Structured arguments produced by the model

        Returns:
            Tool result with flattened text content

        Raises:
            UnknownToolError: If the tool is not advertised
            ToolInvocationError: If arguments are invalid or the call fails
        """
        descriptor = await self.get(name)
        if descriptor is None:
            raise UnknownToolError(name)

        errors = validate_arguments(arguments, descriptor.input_schema)
        if errors:
            raise ToolInvocationError(name, "invalid arguments: " + "; ".join(errors))

        started = time.perf_counter()
        try:
            result = await self.connection.call_tool(name, arguments)
        except MCPClientError as e:
            if _mentions_unknown_tool(e.message):
                self.invalidate_cache()
                raise UnknownToolError(name) from e
            raise ToolInvocationError(name, e.message) from e

        elapsed_ms = (time.perf_counter() - started) * 1000
        text = extract_text(result.content)

        if result.isError:
            if _mentions_unknown_tool(text):
                self.invalidate_cache()
                raise UnknownToolError(name)
            raise ToolInvocationError(name, text or "tool reported an error")

        structured = getattr(result, "structuredContent", None)
        if not text and structured is not None:
            text = json.dumps(structured, default=str)

        logger.info("Tool executed", tool=name, execution_time_ms=round(elapsed_ms, 1))

        return ToolResult(
            tool_name=name,
            content=text,
            structured=structured,
            execution_time_ms=elapsed_ms,
        )

    def invalidate_cache(self) -> None:
        """Invalidate the tool cache."""
        self._cache_time = None
        self._by_name = {}
        logger.debug("Tool cache invalidated")


def _mentions_unknown_tool(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _UNKNOWN_TOOL_MARKERS)
