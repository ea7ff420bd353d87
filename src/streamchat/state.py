"""Single-writer container for the in-memory conversation set.

All mutations go through ``StateManager`` coroutines serialized by one
``asyncio.Lock``. Reads return deep copies so that callers (the controller's
history snapshot, renderers) can never mutate the live log behind its back.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum
import logging

from .schemas import Conversation, Message, ResponseStats

LOGGER = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]


class GenerationPhase(str, Enum):
    """Lifecycle of a single generation request."""

    IDLE = "IDLE"
    BUILDING_REQUEST = "BUILDING_REQUEST"
    AWAITING_FIRST_TOKEN = "AWAITING_FIRST_TOKEN"
    STREAMING = "STREAMING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class CancellationToken:
    """Cooperative stop signal checked between streamed fragments."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class MessageWriter:
    """Mutation handle scoped to one streaming assistant message."""

    def __init__(self, state: StateManager, conversation_id: str, message_id: str) -> None:
        self._state = state
        self.conversation_id = conversation_id
        self.message_id = message_id

    async def commit_content(self, content: str) -> None:
        """Overwrite the message content with the full accumulated text."""
        await self._state.update_message(
            self.conversation_id, self.message_id, content=content
        )

    async def attach_stats(self, stats: ResponseStats) -> None:
        await self._state.update_message(
            self.conversation_id, self.message_id, stats=stats
        )


class StateManager:
    """Own conversations, the active id, the streaming marker and request slots.

    Listeners are called with a conversation id after every change to that
    conversation's message list.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._conversations: list[Conversation] = []
        self._active_id: str | None = None
        self._streaming_message_id: str | None = None
        self._requests: dict[str, CancellationToken] = {}
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _emit(self, conversation_id: str) -> None:
        for listener in self._listeners:
            listener(conversation_id)

    def _find(self, conversation_id: str) -> Conversation | None:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    # Reads

    @property
    def conversations(self) -> list[Conversation]:
        return [item.model_copy(deep=True) for item in self._conversations]

    @property
    def conversation_count(self) -> int:
        return len(self._conversations)

    @property
    def active_conversation_id(self) -> str | None:
        return self._active_id

    @property
    def streaming_message_id(self) -> str | None:
        return self._streaming_message_id

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self._find(conversation_id)
        return conversation.model_copy(deep=True) if conversation is not None else None

    def has_conversation(self, conversation_id: str) -> bool:
        return self._find(conversation_id) is not None

    def is_generating(self, conversation_id: str | None = None) -> bool:
        if conversation_id is None:
            return bool(self._requests)
        return conversation_id in self._requests

    def request_token(self, conversation_id: str) -> CancellationToken | None:
        return self._requests.get(conversation_id)

    def message_writer(self, conversation_id: str, message_id: str) -> MessageWriter:
        return MessageWriter(self, conversation_id, message_id)

    # Conversation set

    async def replace_all(
        self, conversations: list[Conversation], active_id: str | None
    ) -> None:
        async with self._lock:
            self._conversations = [item.model_copy(deep=True) for item in conversations]
            self._active_id = active_id

    async def prepend_conversation(self, conversation: Conversation) -> None:
        """Insert a conversation at the top of the list and activate it."""
        async with self._lock:
            self._conversations.insert(0, conversation.model_copy(deep=True))
            self._active_id = conversation.id

    async def remove_conversation(self, conversation_id: str) -> str | None:
        """Remove a conversation; return the (possibly new) active id."""
        async with self._lock:
            self._conversations = [
                item for item in self._conversations if item.id != conversation_id
            ]
            if self._active_id == conversation_id:
                self._active_id = (
                    self._conversations[0].id if self._conversations else None
                )
            return self._active_id

    async def set_active(self, conversation_id: str | None) -> None:
        async with self._lock:
            self._active_id = conversation_id

    # Messages

    async def append_message(self, conversation_id: str, message: Message) -> bool:
        async with self._lock:
            conversation = self._find(conversation_id)
            if conversation is None:
                LOGGER.debug(
                    "state.append.missing_conversation",
                    extra={
                        "event": "state.append.missing_conversation",
                        "conversation_id": conversation_id,
                    },
                )
                return False
            conversation.messages.append(message.model_copy(deep=True))
        self._emit(conversation_id)
        return True

    async def update_message(
        self,
        conversation_id: str,
        message_id: str,
        *,
        content: str | None = None,
        stats: ResponseStats | None = None,
    ) -> bool:
        """Overwrite fields of one message in place; missing targets are ignored."""
        async with self._lock:
            conversation = self._find(conversation_id)
            message = conversation.find_message(message_id) if conversation else None
            if message is None:
                return False
            if content is not None:
                message.content = content
            if stats is not None:
                message.stats = stats.model_copy()
        self._emit(conversation_id)
        return True

    # Streaming marker and request slots

    async def set_streaming_message(self, message_id: str | None) -> None:
        async with self._lock:
            self._streaming_message_id = message_id

    async def clear_streaming_message(self, message_id: str) -> None:
        """Clear the marker if it still points at ``message_id``."""
        async with self._lock:
            if self._streaming_message_id == message_id:
                self._streaming_message_id = None

    async def acquire_request_slot(
        self, conversation_id: str, token: CancellationToken
    ) -> bool:
        """Claim the per-conversation generation slot; False when already taken."""
        async with self._lock:
            if conversation_id in self._requests:
                return False
            self._requests[conversation_id] = token
            return True

    async def release_request_slot(self, conversation_id: str) -> None:
        async with self._lock:
            self._requests.pop(conversation_id, None)
