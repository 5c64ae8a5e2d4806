"""Conversation storage for the orchestrator.

Conversations are append-only message logs. The store hands out deep
copies so callers can never mutate stored history through a snapshot.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod

from shared.errors import NotFoundError
from shared.logging import get_logger
from shared.models import Conversation, Message, MessageRole

logger = get_logger(__name__)


class ConversationNotFoundError(NotFoundError):
    """No conversation exists for the requested id."""

    def __init__(self, conversation_id: uuid.UUID) -> None:
        super().__init__("Chat not found")
        self.conversation_id = conversation_id


class ConversationStore(ABC):
    """
    Storage contract for conversation history.

    Persistent backends implement the same operations and surface their
    I/O failures as StorageError.
    """

    @abstractmethod
    async def create(self) -> Conversation:
        """Allocate a new, empty conversation."""

    @abstractmethod
    async def append(self, conversation_id: uuid.UUID, message: Message) -> None:
        """Append a message atomically, preserving submission order."""

    @abstractmethod
    async def get(self, conversation_id: uuid.UUID) -> Conversation:
        """Return a snapshot of one conversation."""

    @abstractmethod
    async def list(self) -> list[Conversation]:
        """Return snapshots of every conversation, in no particular order."""

    @abstractmethod
    async def delete(self, conversation_id: uuid.UUID) -> None:
        """Remove a conversation."""


class InMemoryConversationStore(ConversationStore):
    """
    Process-local conversation store.

    Writers (create, append, delete) are serialized by a single lock.
    Readers copy the current state without awaiting, so on the event loop
    they always observe a consistent log and run alongside each other.
    """

    def __init__(self) -> None:
        self._conversations: dict[uuid.UUID, Conversation] = {}
        self._lock = asyncio.Lock()

    async def create(self) -> Conversation:
        conversation = Conversation()

        async with self._lock:
            self._conversations[conversation.id] = conversation

        logger.info("Conversation created", chat_uuid=str(conversation.id))
        return conversation.model_copy(deep=True)

    async def append(self, conversation_id: uuid.UUID, message: Message) -> None:
        """
        Append a message to a conversation.

        Args:
            conversation_id: Conversation identifier
            message: Message to append; it is copied into the store

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)

            stored = message.model_copy(deep=True)
            # generated_at never goes backwards within a conversation
            if conversation.messages:
                last = conversation.messages[-1].generated_at
                if stored.generated_at < last:
                    stored.generated_at = last
            conversation.messages.append(stored)

    async def get(self, conversation_id: uuid.UUID) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation.model_copy(deep=True)

    async def list(self) -> list[Conversation]:
        return [c.model_copy(deep=True) for c in self._conversations.values()]

    async def delete(self, conversation_id: uuid.UUID) -> None:
        async with self._lock:
            if conversation_id not in self._conversations:
                raise ConversationNotFoundError(conversation_id)
            del self._conversations[conversation_id]

        logger.info("Conversation deleted", chat_uuid=str(conversation_id))

    def __len__(self) -> int:
        return len(self._conversations)


def truncate_history(messages: list[Message], max_messages: int) -> list[Message]:
    """
    Keep every system message plus the most recent other messages.

    Args:
        messages: Full conversation history
        max_messages: Upper bound on the returned length

    Returns:
        History window suitable for a provider call, in original order
    """
    if len(messages) <= max_messages:
        return list(messages)

    system_msgs = [m for m in messages if m.role == MessageRole.SYSTEM]
    keep_count = max(max_messages - len(system_msgs), 0)
    other_msgs = [m for m in messages if m.role != MessageRole.SYSTEM]
    recent = other_msgs[-keep_count:] if keep_count else []

    # A window must not open on tool results whose calls were cut off
    while recent and recent[0].role == MessageRole.TOOL:
        recent = recent[1:]

    kept = {id(m) for m in system_msgs} | {id(m) for m in recent}
    return [m for m in messages if id(m) in kept]
