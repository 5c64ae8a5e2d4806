"""Server-Sent Events rendering for streaming turns.

Each StreamEvent becomes one SSE frame:

    event: message
    data: {"delta":"..."}

Data is compact JSON on a single line. The stream stops as soon as the
client disconnects, and the upstream generator is closed so the provider
connection is released.
"""

import json
from typing import Any, AsyncIterator, Optional

from fastapi import Request
from fastapi.responses import StreamingResponse

from shared.logging import get_logger
from shared.models import StreamEvent
from orchestrator.gateway import StreamHandle

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_format(
    data: Any,
    event: Optional[str] = None,
    id: Optional[str] = None,
    retry: Optional[int] = None,
) -> str:
    """
    Format data as one Server-Sent Event frame.

    Args:
        data: Payload; JSON-encoded without whitespace unless already a string
        event: Event name (message, done, error)
        id: Optional event id
        retry: Optional client reconnect interval in milliseconds

    Returns:
        Frame terminated by a blank line
    """
    lines = []
    if event:
        lines.append(f"event: {event}")
    if id:
        lines.append(f"id: {id}")
    if retry is not None:
        lines.append(f"retry: {retry}")

    if isinstance(data, str):
        data_str = data
    else:
        data_str = json.dumps(data, separators=(",", ":"), ensure_ascii=False)

    for line in data_str.split("\n"):
        lines.append(f"data: {line}")

    return "\n".join(lines) + "\n\n"


def encode_event(event: StreamEvent) -> str:
    return sse_format(event.data, event=event.event)


class StreamingResponder:
    """Adapts a streaming turn to a text/event-stream HTTP response."""

    def response(self, request: Request, handle: StreamHandle) -> StreamingResponse:
        return StreamingResponse(
            self.frames(request, handle),
            media_type="text/event-stream",
            headers=dict(SSE_HEADERS),
        )

    async def frames(self, request: Request, handle: StreamHandle) -> AsyncIterator[str]:
        """
        Yield SSE frames until the turn ends or the client goes away.

        Args:
            request: Incoming request, polled for disconnects
            handle: Streaming turn returned by the orchestrator
        """
        try:
            async for event in handle:
                if await request.is_disconnected():
                    logger.info("Client disconnected from SSE stream", chat_uuid=str(handle.chat_id))
                    break
                yield encode_event(event)
        finally:
            await handle.aclose()
