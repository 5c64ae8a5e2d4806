"""Client-visible error kinds.

Every component error derives from one of these classes; the HTTP layer
maps `status_code` onto the response and renders `{"error": message}`.
"""

from typing import Optional


class GatewayError(Exception):
    """Base exception for all gateway errors."""
    status_code: int = 500

    def __init__(self, message: str, step: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step

    @property
    def public_message(self) -> str:
        """Message safe to return to clients."""
        return self.message

    def __str__(self) -> str:
        if self.step:
            return f"{self.step}: {self.message}"
        return self.message


class BadRequestError(GatewayError):
    """Validation failure or unsupported input."""
    status_code = 400


class UnauthorizedError(GatewayError):
    """Missing or invalid bearer token."""
    status_code = 401


class NotFoundError(GatewayError):
    """Requested resource does not exist."""
    status_code = 404


class UpstreamError(GatewayError):
    """MCP, template or LLM provider failure after validation."""
    status_code = 502


class InternalError(GatewayError):
    """Unexpected condition; details stay in logs and traces."""
    status_code = 500

    @property
    def public_message(self) -> str:
        return "Internal server error"


class StorageError(InternalError):
    """A persistent backend failed."""
    pass
