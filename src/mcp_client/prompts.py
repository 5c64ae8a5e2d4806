"""Prompt templates fetched from the MCP server.

Templates are rendered server-side and then scanned for `{{argument}}`
placeholders, which are substituted from the caller's arguments.
Placeholders without a matching argument are left untouched.
"""

import asyncio
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from mcp import types

from shared.errors import UpstreamError
from shared.logging import get_logger
from shared.models import Message, MessageRole, PromptArgument, PromptTemplate
from mcp_client.catalog import extract_text
from mcp_client.connection import MCPClientError, MCPConnection

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

TEMPLATE_WITH_TOOLS = "llm_with_tools"
TEMPLATE_GENERAL = "llm_general"


class TemplateError(UpstreamError):
    """A template could not be fetched or rendered."""

    def __init__(self, message: str) -> None:
        super().__init__(message, step="template fetch")


def substitute_placeholders(text: str, arguments: dict[str, Any]) -> str:
    """Replace `{{name}}` with `arguments[name]`; unknown names stay as written."""
    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key in arguments:
            return str(arguments[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace, text)


class PromptTemplateClient:
    """Fetches and renders named prompt templates."""

    def __init__(
        self,
        connection: MCPConnection,
        cache_ttl_seconds: float = 300
    ) -> None:
        self.connection = connection
        self.cache_ttl = timedelta(seconds=cache_ttl_seconds)

        self._descriptors: dict[str, PromptTemplate] = {}
        self._cache_time: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def _is_cache_valid(self) -> bool:
        if self._cache_time is None:
            return False
        return datetime.now(timezone.utc) - self._cache_time < self.cache_ttl

    async def describe(self, name: str) -> PromptTemplate:
        """
        Get the descriptor (name, description, arguments) of a template.

        Raises:
            TemplateError: If the template is unknown or the listing fails
        """
        if not self._is_cache_valid() or name not in self._descriptors:
            async with self._lock:
                if not self._is_cache_valid() or name not in self._descriptors:
                    await self._load_descriptors()

        descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise TemplateError(f"unknown prompt template: {name}")
        return descriptor

    async def _load_descriptors(self) -> None:
        try:
            prompts = await self.connection.list_prompts()
        except MCPClientError as e:
            raise TemplateError(f"failed to list prompt templates: {e.message}") from e

        self._descriptors = {
            prompt.name: PromptTemplate(
                name=prompt.name,
                description=prompt.description,
                arguments=[
                    PromptArgument(
                        name=arg.name,
                        description=arg.description,
                        required=bool(arg.required),
                    )
                    for arg in (prompt.arguments or [])
                ],
            )
            for prompt in prompts
        }
        self._cache_time = datetime.now(timezone.utc)
        logger.debug("Prompt templates loaded", count=len(self._descriptors))

    async def render(self, name: str, arguments: dict[str, Any]) -> list[Message]:
        """
        Render a template into role-tagged messages.

        Args:
            name: Template name
            arguments: Values for the template's placeholders

        Returns:
            Ordered messages carrying the roles declared by the template

        Raises:
            TemplateError: On a missing required argument or any MCP failure
        """
        descriptor = await self.describe(name)

        missing = [
            arg.name for arg in descriptor.arguments
            if arg.required and arguments.get(arg.name) in (None, "")
        ]
        if missing:
            raise TemplateError(
                f"missing required argument(s) for {name}: {', '.join(missing)}"
            )

        try:
            result = await self.connection.get_prompt(
                name, {k: str(v) for k, v in arguments.items()}
            )
        except MCPClientError as e:
            raise TemplateError(f"failed to fetch prompt {name}: {e.message}") from e

        return [self._to_message(m, arguments) for m in result.messages]

    def _to_message(self, message: types.PromptMessage, arguments: dict[str, Any]) -> Message:
        try:
            role = MessageRole(message.role)
        except ValueError:
            role = MessageRole.USER
        text = extract_text([message.content])
        return Message(role=role, text=substitute_placeholders(text, arguments))
