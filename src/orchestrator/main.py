"""Orchestrator - FastAPI Application.

The API server provides:
- Blocking and streaming chat turns (/ask, /ask-stream)
- Conversation history (/chats)
- Tool and LLM provider listings
- Third-party OAuth handshakes (/oauth)
- Liveness, health and Prometheus metrics
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers, MutableHeaders
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from shared.config import Settings, get_settings
from shared.errors import GatewayError, InternalError, UpstreamError
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.metrics import GatewayMetrics
from shared.models import AskRequest, AskResponse, Conversation, GenerationOptions
from shared.tracing import TracingService
from mcp_client.catalog import ToolCatalog
from mcp_client.connection import MCPConnection
from mcp_client.prompts import PromptTemplateClient
from auth.oauth import OAuthTokenBroker
from auth.router import router as oauth_router
from auth.storage import FileTokenStorage, InMemoryTokenStorage
from auth.validator import AuthTokenValidator, extract_bearer
from orchestrator.conversation import ConversationStore, InMemoryConversationStore
from orchestrator.gateway import RequestOrchestrator
from orchestrator.llm import LLMProviderFactory
from orchestrator.provider_catalog import catalog_payload
from orchestrator.streaming import StreamingResponder

logger = get_logger(__name__)


# Global instances
_settings: Optional[Settings] = None
_connection: Optional[MCPConnection] = None
_catalog: Optional[ToolCatalog] = None
_store: Optional[ConversationStore] = None
_orchestrator: Optional[RequestOrchestrator] = None
_validator: Optional[AuthTokenValidator] = None
_tracer: Optional[TracingService] = None
_metrics: GatewayMetrics = GatewayMetrics()
_responder = StreamingResponder()


def build_oauth_broker(settings: Settings) -> Optional[OAuthTokenBroker]:
    """Create the third-party OAuth broker when it is configured."""
    if not settings.google.enabled:
        return None

    if settings.google.token_source_file:
        storage = FileTokenStorage(settings.google.token_source_file)
    else:
        storage = InMemoryTokenStorage()
    return OAuthTokenBroker(settings.google, storage)


def build_validator(settings: Settings) -> Optional[AuthTokenValidator]:
    """Create the bearer validator when auth is enabled; keys stay cached for five minutes."""
    if not settings.auth.enabled:
        return None
    return AuthTokenValidator(
        domain=settings.auth.domain,
        audience=settings.auth.audience,
        timeout=settings.auth.token_ttl,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _settings, _connection, _catalog, _store, _orchestrator, _validator, _tracer

    # Startup
    _settings = get_settings()
    setup_logging(_settings.log_level, json_output=_settings.environment == "production")
    logger.info("Starting API server", port=_settings.api_server_port)

    _tracer = TracingService(_settings.tracing)
    _tracer.initialize()

    client_settings = _settings.mcp_client
    _connection = MCPConnection(
        server_url=_settings.mcp_server_url,
        max_retries=client_settings.max_retries,
        retry_delay=client_settings.retry_delay,
        health_check_interval=client_settings.health_check_interval,
        connection_timeout=client_settings.connection_timeout,
        request_timeout=client_settings.request_timeout,
        client_name=client_settings.client_name,
    )
    if not await _connection.connect():
        # The connection keeps retrying in the background
        logger.warning("MCP server not reachable at startup", url=_settings.mcp_server_url)

    _catalog = ToolCatalog(_connection, cache_ttl_seconds=client_settings.tool_cache_ttl)
    _store = InMemoryConversationStore()

    _orchestrator = RequestOrchestrator(
        store=_store,
        templates=PromptTemplateClient(_connection),
        catalog=_catalog,
        provider_factory=LLMProviderFactory(
            _settings.credentials,
            request_timeout=_settings.orchestrator.request_timeout,
        ),
        tracer=_tracer,
        metrics=_metrics,
        max_tool_iterations=_settings.orchestrator.max_tool_iterations,
        max_history_messages=_settings.orchestrator.max_history_messages,
        default_options=GenerationOptions(),
    )

    _validator = build_validator(_settings)

    app.state.oauth_broker = build_oauth_broker(_settings)

    logger.info(
        "API server started",
        mcp_server=_settings.mcp_server_url,
        auth_enabled=_settings.auth.enabled,
        tracing_enabled=_tracer.enabled
    )

    yield

    # Shutdown: MCP (a no-op if GatewayServer closed it), then flush traces
    logger.info("Shutting down API server")
    await _connection.close()
    _tracer.shutdown()


class RequestContextMiddleware:
    """Bind a request id to every log line emitted while handling a request."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        clear_context()
        request_id = Headers(scope=scope).get("X-Request-ID") or str(uuid.uuid4())
        bind_context(request_id=request_id, method=scope["method"], path=scope["path"])

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers.append("X-Request-ID", request_id)
            await send(message)

        await self.app(scope, receive, send_with_request_id)


# Create FastAPI app
app = FastAPI(
    title="Tool Gateway",
    description="API gateway brokering LLM providers, MCP tools and OAuth services",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().orchestrator.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestContextMiddleware)
app.include_router(oauth_router)


# Error handlers

@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    if exc.status_code >= 500:
        logger.error("Request failed", step=exc.step, error=str(exc))
    else:
        logger.info("Request rejected", step=exc.step, error=str(exc))
    return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request body") if errors else "Invalid request body"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", error=str(exc), exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": InternalError(str(exc)).public_message},
    )


# Dependencies

def get_orchestrator() -> RequestOrchestrator:
    if _orchestrator is None:
        raise InternalError("Orchestrator not initialized")
    return _orchestrator


def get_store() -> ConversationStore:
    if _store is None:
        raise InternalError("Conversation store not initialized")
    return _store


def get_catalog() -> ToolCatalog:
    if _catalog is None:
        raise InternalError("Tool catalog not initialized")
    return _catalog


async def require_bearer(request: Request) -> Optional[dict[str, Any]]:
    """Validate the bearer token when auth is enabled; returns the claims."""
    if _settings is None or not _settings.auth.enabled:
        return None
    if _validator is None:
        raise InternalError("Token validator not initialized")

    token = extract_bearer(request.headers.get("Authorization"))
    claims = await _validator.validate(token)
    bind_context(subject=claims.get("sub"))
    return claims


async def require_bearer_for_ask(request: Request) -> Optional[dict[str, Any]]:
    if _settings is None or not _settings.auth.protect_ask:
        return None
    return await require_bearer(request)


def parse_chat_id(chat_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(chat_id)
    except ValueError:
        raise StarletteHTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid chat ID")


def chat_payload(conversation: Conversation) -> dict[str, Any]:
    return {
        "uuid": str(conversation.id),
        "created_at": conversation.created_at.isoformat(),
        "messages": [
            m.model_dump(mode="json", exclude_none=True) for m in conversation.messages
        ],
    }


# System

@app.get("/ping", tags=["System"])
async def ping():
    return {"ping": "Pong"}


@app.get("/health", tags=["System"])
async def health_check():
    """Report MCP connectivity and the number of advertised tools."""
    connected = _connection is not None and _connection.is_connected
    tool_count = 0
    if connected and _catalog is not None:
        try:
            tool_count = len(await _catalog.list_tools())
        except GatewayError as e:
            logger.warning("Health check could not list tools", error=str(e))

    return {
        "status": "healthy" if connected else "degraded",
        "mcp_server": "connected" if connected else "disconnected",
        "tool_count": tool_count,
    }


@app.get("/metrics", tags=["System"])
async def metrics():
    return Response(content=_metrics.render(), media_type=_metrics.content_type)


@app.get("/llm-providers", tags=["LLM"])
async def llm_providers():
    return catalog_payload()


# Chat

@app.post("/ask", response_model=AskResponse, tags=["Chat"])
async def ask(
    request: AskRequest,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
    _claims: Optional[dict[str, Any]] = Depends(require_bearer_for_ask)
):
    """Run a blocking turn and return the final answer."""
    timeout = _settings.orchestrator.request_timeout if _settings else None
    try:
        return await asyncio.wait_for(orchestrator.ask(request), timeout=timeout)
    except asyncio.TimeoutError:
        raise UpstreamError(f"request exceeded {timeout}s deadline", step="invoke")


@app.post("/ask-stream", tags=["Chat"])
async def ask_stream(
    body: AskRequest,
    request: Request,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
    _claims: Optional[dict[str, Any]] = Depends(require_bearer_for_ask)
):
    """Run a streaming turn as Server-Sent Events."""
    handle = await orchestrator.ask_stream(body)
    return _responder.response(request, handle)


# Conversations

@app.get("/chats", tags=["Conversations"])
async def list_chats(
    store: ConversationStore = Depends(get_store),
    _claims: Optional[dict[str, Any]] = Depends(require_bearer)
):
    conversations = await store.list()
    conversations.sort(key=lambda c: c.created_at, reverse=True)
    return {"chats": [chat_payload(c) for c in conversations]}


@app.get("/chats/{chat_id}", tags=["Conversations"])
async def get_chat(chat_id: str, store: ConversationStore = Depends(get_store)):
    conversation = await store.get(parse_chat_id(chat_id))
    return chat_payload(conversation)


@app.delete("/chats/{chat_id}", tags=["Conversations"])
async def delete_chat(
    chat_id: str,
    store: ConversationStore = Depends(get_store),
    _claims: Optional[dict[str, Any]] = Depends(require_bearer)
):
    await store.delete(parse_chat_id(chat_id))
    return {"status": "deleted"}


# Tools

@app.get("/api/tools", tags=["Tools"])
async def list_tools(catalog: ToolCatalog = Depends(get_catalog)):
    """List tools advertised by the MCP server."""
    tools = await catalog.list_tools()
    return [{"name": t.name, "description": t.description} for t in tools]


class GatewayServer(uvicorn.Server):
    """Uvicorn server that disconnects from MCP before it stops accepting requests."""

    async def shutdown(self, sockets=None) -> None:
        if _connection is not None:
            logger.info("Disconnecting MCP before draining HTTP connections")
            await _connection.close()
        await super().shutdown(sockets=sockets)


def main():
    """Run the API server."""
    settings = get_settings()
    reload = settings.environment == "development" and settings.debug

    if reload:
        uvicorn.run(
            "orchestrator.main:app",
            host=settings.api_server_host,
            port=settings.api_server_port,
            reload=True,
            timeout_graceful_shutdown=settings.orchestrator.shutdown_timeout,
        )
        return

    config = uvicorn.Config(
        app,
        host=settings.api_server_host,
        port=settings.api_server_port,
        timeout_graceful_shutdown=settings.orchestrator.shutdown_timeout,
    )
    GatewayServer(config).run()


if __name__ == "__main__":
    main()
