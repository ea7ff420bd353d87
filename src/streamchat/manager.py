"""Conversation management and synchronization with the durable store.

The manager owns the in-memory conversation set (through ``StateManager``),
drives the streaming controller for user sends, and persists every change on a
best-effort basis: store failures are logged and notified but never undo the
in-memory mutation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
import logging
import time
from typing import Any

from .config import Config
from .controller import StreamingController
from .events import EventBus
from .exceptions import (
    ConversationNotFoundError,
    GenerationInProgressError,
    LastConversationError,
    PersistenceError,
)
from .ids import MonotonicIdSource
from .router import ModelRouter, default_client_factories
from .schemas import Conversation, Message, conversation_timestamp, message_timestamp
from .state import CancellationToken, GenerationPhase, StateManager
from .store import ConversationStore, JsonConversationStore
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

DEFAULT_TITLE = "Getting Started"
GREETING = "Hello! I'm your AI assistant powered by Groq. How can I help you today?"
SELECTED_MODEL_KEY = "selectedModel"

_PERSIST_PREFIX = "persist:"


class ConversationManager:
    """CRUD over conversations plus the send/stop entry points used by the UI.

    Responsibilities:
    - Loading the conversation set and the saved model on startup
    - Creating, selecting, deleting and clearing conversations
    - Guarding sends with a per-conversation request slot
    - Coalesced background persistence of changed conversations
    """

    def __init__(
        self,
        store: ConversationStore,
        router: ModelRouter | None = None,
        *,
        config: Config | None = None,
        bus: EventBus | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.perf_counter,
        ids: MonotonicIdSource | None = None,
    ) -> None:
        self.config = config or Config()
        self.store = store
        self.router = router or ModelRouter(default_client_factories(self.config.providers))
        self.bus = bus or EventBus()
        self.ids = ids or MonotonicIdSource()
        self.state = StateManager()
        self.tasks = TaskManager()
        self.controller = StreamingController(
            self.router,
            self.state,
            store,
            self.bus,
            self.ids,
            generation=self.config.generation,
            providers=self.config.providers,
            environ=environ,
            clock=clock,
        )
        self.selected_model = (
            self.config.generation.default_model or self.router.get_recommended_model().id
        )
        self._dirty: set[str] = set()
        self._save_failures: set[str] = set()
        self.state.add_listener(self._schedule_persist)

    @classmethod
    def from_config(
        cls, config: Config, environ: Mapping[str, str] | None = None
    ) -> ConversationManager:
        """Wire a manager against the on-disk JSON store described by ``config``."""
        return cls(
            JsonConversationStore(config.storage.directory),
            ModelRouter(default_client_factories(config.providers)),
            config=config,
            environ=environ,
        )

    @property
    def conversations(self) -> list[Conversation]:
        return self.state.conversations

    @property
    def active_conversation_id(self) -> str | None:
        return self.state.active_conversation_id

    @property
    def active_conversation(self) -> Conversation | None:
        active_id = self.state.active_conversation_id
        return self.state.get_conversation(active_id) if active_id else None

    @property
    def streaming_message_id(self) -> str | None:
        return self.state.streaming_message_id

    @property
    def is_loading(self) -> bool:
        active_id = self.state.active_conversation_id
        return active_id is not None and self.state.is_generating(active_id)

    def _default_conversation(self, title: str = DEFAULT_TITLE) -> Conversation:
        return Conversation(
            id=self.ids.next_id(),
            title=title,
            timestamp=conversation_timestamp(),
            messages=[
                Message(
                    id=self.ids.next_id(),
                    role="assistant",
                    content=GREETING,
                    timestamp=message_timestamp(),
                )
            ],
        )

    async def init(self) -> None:
        """Load saved conversations, seeding a default one when the store is empty."""
        try:
            await self.store.init()
            saved = await self.store.get_all()
            saved_model = await self.store.get_setting(SELECTED_MODEL_KEY)
        except PersistenceError as exc:
            LOGGER.error(
                "manager.init.failed",
                extra={"event": "manager.init.failed", "error": str(exc)},
            )
            await self.bus.notify(
                "Initialization Error",
                "Failed to load saved data. Starting fresh.",
                variant="destructive",
            )
            fallback = self._default_conversation()
            await self.state.replace_all([fallback], fallback.id)
            return

        if saved_model and saved_model.strip():
            self.selected_model = saved_model.strip()

        if saved:
            for conversation in saved:
                self.ids.observe([conversation.id])
                self.ids.observe(message.id for message in conversation.messages)
            await self.state.replace_all(saved, saved[0].id)
            LOGGER.info(
                "manager.init.loaded",
                extra={"event": "manager.init.loaded", "conversations": len(saved)},
            )
            return

        default = self._default_conversation()
        await self.state.replace_all([default], default.id)
        await self._persist(default.id)

    async def select_conversation(self, conversation_id: str) -> None:
        if not self.state.has_conversation(conversation_id):
            raise ConversationNotFoundError(f"Unknown conversation: {conversation_id}")
        await self.state.set_active(conversation_id)

    async def new_conversation(self) -> Conversation:
        """Prepend a fresh conversation with a greeting and make it active."""
        conversation = self._default_conversation(
            title=f"New Chat {self.state.conversation_count + 1}"
        )
        await self.state.prepend_conversation(conversation)
        await self._persist(conversation.id)
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        """Remove a conversation; the last remaining one can never be deleted."""
        if self.state.conversation_count <= 1:
            await self.bus.notify(
                "Cannot delete",
                "You must have at least one conversation.",
                variant="destructive",
            )
            raise LastConversationError("You must have at least one conversation.")
        if not self.state.has_conversation(conversation_id):
            raise ConversationNotFoundError(f"Unknown conversation: {conversation_id}")

        token = self.state.request_token(conversation_id)
        if token is not None:
            token.cancel()
        await self.state.remove_conversation(conversation_id)
        await self.tasks.wait(f"{_PERSIST_PREFIX}{conversation_id}")
        self._dirty.discard(conversation_id)

        try:
            await self.store.delete(conversation_id)
        except PersistenceError as exc:
            await self._report_persistence_failure("delete", conversation_id, exc)

    async def clear_all(self) -> Conversation:
        """Destroy every conversation and start over with one default conversation."""
        for conversation in self.state.conversations:
            token = self.state.request_token(conversation.id)
            if token is not None:
                token.cancel()
        default = self._default_conversation()
        await self.state.replace_all([default], default.id)
        await self.tasks.wait_prefix(_PERSIST_PREFIX)
        self._dirty.clear()

        cleared = True
        try:
            await self.store.clear_all()
        except PersistenceError as exc:
            cleared = False
            LOGGER.error(
                "manager.clear_all.failed",
                extra={"event": "manager.clear_all.failed", "error": str(exc)},
            )
            await self.bus.notify(
                "Error", "Failed to clear conversations.", variant="destructive"
            )

        await self._persist(default.id)
        if cleared:
            await self.bus.notify("All chats cleared", "All conversations have been deleted.")
        return default

    async def send_message(
        self, text: str, images: Sequence[str] | None = None
    ) -> GenerationPhase | None:
        """Append a user turn to the active conversation and stream the reply.

        Blank text without images is ignored. A second send while the active
        conversation is still streaming raises ``GenerationInProgressError``.
        """
        if not text.strip() and not images:
            return None
        conversation_id = self.state.active_conversation_id
        if conversation_id is None:
            return None

        token = CancellationToken()
        if not await self.state.acquire_request_slot(conversation_id, token):
            reason = "A response is still being generated for this conversation."
            await self.bus.notify("Please wait", reason)
            raise GenerationInProgressError(reason)
        try:
            conversation = self.state.get_conversation(conversation_id)
            history = conversation.messages if conversation is not None else []
            user_message = Message(
                id=self.ids.next_id(),
                role="user",
                content=text,
                timestamp=message_timestamp(),
                images=list(images) if images else None,
            )
            await self.state.append_message(conversation_id, user_message)
            return await self.controller.generate(
                text,
                history,
                conversation_id,
                self.selected_model,
                cancel_token=token,
            )
        finally:
            await self.state.release_request_slot(conversation_id)

    def stop_generation(self, conversation_id: str | None = None) -> bool:
        """Request cancellation of the in-flight reply; False when nothing is streaming."""
        target = conversation_id or self.state.active_conversation_id
        if target is None:
            return False
        token = self.state.request_token(target)
        if token is None:
            return False
        token.cancel()
        return True

    async def set_model(self, model_id: str) -> None:
        self.selected_model = model_id.strip()
        await self.save_setting(SELECTED_MODEL_KEY, self.selected_model)
        await self.bus.notify("Model changed", f"Switched to {self.selected_model}")

    async def get_setting(self, key: str) -> str | None:
        try:
            return await self.store.get_setting(key)
        except PersistenceError as exc:
            await self._report_persistence_failure("read setting", key, exc)
            return None

    async def save_setting(self, key: str, value: str) -> bool:
        try:
            await self.store.save_setting(key, value)
        except PersistenceError as exc:
            await self._report_persistence_failure("save setting", key, exc)
            return False
        return True

    async def flush(self) -> None:
        """Wait until every scheduled save has reached the store."""
        await self.tasks.await_all()

    async def close(self) -> None:
        await self.flush()
        await self.tasks.cancel_all()

    def _schedule_persist(self, conversation_id: str) -> None:
        """Queue a save; at most one save per conversation is in flight."""
        self._dirty.add(conversation_id)
        name = f"{_PERSIST_PREFIX}{conversation_id}"
        if self.tasks.is_running(name):
            return
        self.tasks.add(asyncio.create_task(self._persist_loop(conversation_id)), name=name)

    async def _persist(self, conversation_id: str) -> None:
        """Save the live copy of a conversation and wait until the write lands."""
        self._schedule_persist(conversation_id)
        await self.tasks.wait(f"{_PERSIST_PREFIX}{conversation_id}")

    async def _persist_loop(self, conversation_id: str) -> None:
        while conversation_id in self._dirty:
            self._dirty.discard(conversation_id)
            conversation = self.state.get_conversation(conversation_id)
            if conversation is None:
                return
            await self._save(conversation)

    async def _save(self, conversation: Conversation) -> bool:
        try:
            await self.store.save(conversation)
        except PersistenceError as exc:
            if conversation.id not in self._save_failures:
                self._save_failures.add(conversation.id)
                await self._report_persistence_failure("save", conversation.id, exc)
            else:
                LOGGER.debug(
                    "manager.save.failed_again",
                    extra={
                        "event": "manager.save.failed_again",
                        "conversation_id": conversation.id,
                    },
                )
            return False
        self._save_failures.discard(conversation.id)
        return True

    async def _report_persistence_failure(
        self, operation: str, target: str, exc: Exception
    ) -> None:
        fields: dict[str, Any] = {
            "event": "manager.persistence.failed",
            "operation": operation,
            "target": target,
            "error": str(exc),
        }
        LOGGER.error("manager.persistence.failed", extra=fields)
        await self.bus.notify(
            "Storage error",
            f"Failed to {operation}: {exc}",
            variant="destructive",
        )
