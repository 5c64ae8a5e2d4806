"""Long-lived connection to the MCP server.

One connection is opened at process start and shared by every request.
A background runner owns the SSE transport and the MCP session: it
connects with bounded exponential backoff, pings the server on an
interval, and reconnects when a health check fails. Callers never see
the reconnect loop; while the session is down their operations fail
fast with an UpstreamError subclass.
"""

import asyncio
from contextlib import AbstractAsyncContextManager, AsyncExitStack
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from mcp import ClientSession, McpError, types
from mcp.client.sse import sse_client
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.errors import UpstreamError
from shared.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TransportFactory = Callable[[], AbstractAsyncContextManager[tuple[Any, Any]]]
SessionFactory = Callable[[Any, Any], AbstractAsyncContextManager[ClientSession]]


class MCPClientError(UpstreamError):
    """Base exception for MCP client errors."""
    pass


class MCPConnectionError(MCPClientError):
    """The MCP server is unreachable or the session dropped."""
    pass


class MCPTimeoutError(MCPClientError):
    """An MCP request exceeded its deadline."""
    pass


_RETRYABLE = (OSError, httpx.HTTPError, asyncio.TimeoutError, McpError, MCPConnectionError)


class MCPConnection:
    """
    Shared client for the MCP server.

    Provides:
    - Prompt listing and retrieval
    - Tool listing and invocation
    - Liveness pings

    All operations are bounded by the per-request timeout.
    """

    def __init__(
        self,
        server_url: str = "http://localhost:8080/events",
        max_retries: int = 5,
        retry_delay: float = 3.0,
        health_check_interval: float = 15.0,
        connection_timeout: float = 60.0,
        request_timeout: float = 120.0,
        client_name: str = "tool-gateway",
        transport_factory: Optional[TransportFactory] = None,
        session_factory: Optional[SessionFactory] = None
    ) -> None:
        """
        Initialize the connection; nothing is opened until `connect`.

        Args:
            server_url: MCP SSE endpoint
            max_retries: Connection attempts per reconnect cycle
            retry_delay: Base delay for exponential backoff, in seconds
            health_check_interval: Seconds between pings
            connection_timeout: Deadline for establishing a session
            request_timeout: Deadline for each MCP request
            client_name: Client name announced during initialization
            transport_factory: Override for the SSE transport (tests)
            session_factory: Override for the MCP session (tests)
        """
        self.server_url = server_url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.health_check_interval = health_check_interval
        self.connection_timeout = connection_timeout
        self.request_timeout = request_timeout
        self.client_name = client_name

        self._transport_factory = transport_factory or self._default_transport
        self._session_factory = session_factory or self._default_session

        self._session: Optional[ClientSession] = None
        self._connected = asyncio.Event()
        self._closing = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None

    def _default_transport(self) -> AbstractAsyncContextManager[tuple[Any, Any]]:
        return sse_client(
            self.server_url,
            timeout=self.connection_timeout,
            sse_read_timeout=self.request_timeout,
        )

    def _default_session(self, read_stream: Any, write_stream: Any) -> AbstractAsyncContextManager[ClientSession]:
        return ClientSession(
            read_stream,
            write_stream,
            read_timeout_seconds=timedelta(seconds=self.request_timeout),
            client_info=types.Implementation(name=self.client_name, version="0.1.0"),
        )

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self._connected.is_set()

    async def connect(self) -> bool:
        """
        Start the background runner and wait for the first session.

        Returns:
            True if a session was established within the connection timeout.
            The runner keeps retrying in the background either way.
        """
        if self._runner is None or self._runner.done():
            self._closing.clear()
            self._runner = asyncio.create_task(self._run(), name="mcp-connection")

        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self.connection_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "MCP server not reachable yet",
                server_url=self.server_url,
                timeout=self.connection_timeout
            )
            return False
        return True

    async def close(self) -> None:
        """Stop the runner and close the session."""
        self._closing.set()
        if self._runner is not None:
            try:
                await asyncio.wait_for(self._runner, timeout=self.connection_timeout)
            except asyncio.TimeoutError:
                self._runner.cancel()
                try:
                    await self._runner
                except asyncio.CancelledError:
                    pass
            self._runner = None
        logger.info("MCP connection closed", server_url=self.server_url)

    async def __aenter__(self) -> "MCPConnection":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(
                multiplier=self.retry_delay,
                min=self.retry_delay,
                max=self.retry_delay * 2 ** (self.max_retries - 1)
            ),
            retry=retry_if_exception_type(_RETRYABLE),
            reraise=True,
        )

    async def _run(self) -> None:
        """Connect, serve until the session is lost, and reconnect."""
        while not self._closing.is_set():
            try:
                async for attempt in self._retrying():
                    with attempt:
                        if attempt.retry_state.attempt_number > 1:
                            logger.info(
                                "Reconnecting to MCP server",
                                attempt=attempt.retry_state.attempt_number
                            )
                        await self._serve_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "MCP connection attempts exhausted",
                    server_url=self.server_url,
                    error=str(e)
                )
                await self._sleep_unless_closing(self.health_check_interval)

    async def _serve_once(self) -> None:
        """
        Open one session and hold it until closing or a failed health check.

        Raises only while establishing the session, so retries apply to
        connection attempts and not to the lifetime of a healthy session.
        """
        async with AsyncExitStack() as stack:
            read_stream, write_stream = await stack.enter_async_context(self._transport_factory())
            session = await stack.enter_async_context(
                self._session_factory(read_stream, write_stream)
            )
            await asyncio.wait_for(session.initialize(), timeout=self.connection_timeout)

            self._session = session
            self._connected.set()
            logger.info("Connected to MCP server", server_url=self.server_url)

            try:
                await self._monitor(session)
            finally:
                self._session = None
                self._connected.clear()

    async def _monitor(self, session: ClientSession) -> None:
        """Ping on an interval; return when closing or when a ping fails."""
        while not self._closing.is_set():
            await self._sleep_unless_closing(self.health_check_interval)
            if self._closing.is_set():
                return
            try:
                await asyncio.wait_for(session.send_ping(), timeout=self.request_timeout)
            except Exception as e:
                logger.warning("MCP health check failed", error=str(e))
                return

    async def _sleep_unless_closing(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _request(self, operation: str, call: Callable[[ClientSession], Awaitable[T]]) -> T:
        """Run one MCP request against the live session."""
        session = self._session
        if session is None or not self._connected.is_set():
            raise MCPConnectionError("MCP server is not connected", step=operation)

        try:
            return await asyncio.wait_for(call(session), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise MCPTimeoutError(
                f"request timed out after {self.request_timeout:g}s", step=operation
            )
        except McpError as e:
            raise MCPClientError(e.error.message, step=operation)
        except (OSError, httpx.HTTPError) as e:
            raise MCPConnectionError(f"transport failure: {e}", step=operation)

    async def ping(self) -> bool:
        """Return True if the server answers a ping."""
        try:
            await self._request("ping", lambda s: s.send_ping())
            return True
        except MCPClientError:
            return False

    async def list_tools(self) -> list[types.Tool]:
        result = await self._request("list tools", lambda s: s.list_tools())
        return list(result.tools)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        return await self._request("tool invoke", lambda s: s.call_tool(name, arguments))

    async def list_prompts(self) -> list[types.Prompt]:
        result = await self._request("list prompts", lambda s: s.list_prompts())
        return list(result.prompts)

    async def get_prompt(self, name: str, arguments: dict[str, str]) -> types.GetPromptResult:
        return await self._request("template fetch", lambda s: s.get_prompt(name, arguments))
