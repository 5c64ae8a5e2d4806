"""OAuth token storage backends.

A record holds the token plus a JSON snapshot of the provider
configuration it was minted for, so a stored token can be refreshed after
a restart.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiofiles
from pydantic import ValidationError

from shared.errors import NotFoundError, StorageError
from shared.logging import get_logger
from shared.models import OAuthTokenRecord

logger = get_logger(__name__)


class NoTokenAvailableError(NotFoundError):
    """No OAuth token has been stored yet."""

    def __init__(self) -> None:
        super().__init__("no token available", step="token source")


class TokenStorage(ABC):
    """Storage contract shared by every token backend."""

    @abstractmethod
    async def save(self, record: OAuthTokenRecord) -> None:
        """Persist a record, replacing any previous one."""

    @abstractmethod
    async def load(self) -> OAuthTokenRecord:
        """
        Load the stored record.

        Raises:
            NoTokenAvailableError: If nothing has been stored
        """

    @abstractmethod
    async def delete(self) -> None:
        """Forget the stored record, if any."""


class InMemoryTokenStorage(TokenStorage):
    """Single-process storage guarded by a lock."""

    def __init__(self) -> None:
        self._record: Optional[OAuthTokenRecord] = None
        self._lock = asyncio.Lock()

    async def save(self, record: OAuthTokenRecord) -> None:
        async with self._lock:
            self._record = record.model_copy(deep=True)

    async def load(self) -> OAuthTokenRecord:
        async with self._lock:
            if self._record is None:
                raise NoTokenAvailableError()
            return self._record.model_copy(deep=True)

    async def delete(self) -> None:
        async with self._lock:
            self._record = None


class FileTokenStorage(TokenStorage):
    """
    JSON file storage readable only by the owner.

    File layout: {"token": {...}, "config_json": "..."}
    """

    FILE_MODE = 0o600

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def save(self, record: OAuthTokenRecord) -> None:
        payload = record.model_dump_json(indent=4)

        async with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                # Create with owner-only permissions before any secret is written
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, self.FILE_MODE)
                os.close(fd)
                os.chmod(self.path, self.FILE_MODE)
                async with aiofiles.open(self.path, "w") as f:
                    await f.write(payload)
            except OSError as e:
                raise StorageError(f"failed to write token file: {e}", step="token store") from e

        logger.info("OAuth token stored", path=str(self.path))

    async def load(self) -> OAuthTokenRecord:
        async with self._lock:
            if not self.path.exists():
                raise NoTokenAvailableError()
            try:
                async with aiofiles.open(self.path, "r") as f:
                    content = await f.read()
            except OSError as e:
                raise StorageError(f"failed to read token file: {e}", step="token store") from e

        try:
            return OAuthTokenRecord.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            raise StorageError(f"corrupt token file: {e}", step="token store") from e

    async def delete(self) -> None:
        async with self._lock:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(f"failed to delete token file: {e}", step="token store") from e
