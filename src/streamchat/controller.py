"""Streaming controller: turn a submitted message into a streamed assistant reply."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
import logging
import os
import time

from .clients import LanguageModel
from .config import GenerationConfig, ProvidersConfig
from .events import GENERATION_FINISHED, EventBus
from .exceptions import (
    ConfigurationError,
    PersistenceError,
    StreamChatError,
    StreamError,
)
from .ids import MonotonicIdSource
from .router import ModelRouter
from .schemas import Message, message_timestamp
from .state import CancellationToken, GenerationPhase, StateManager
from .store import ConversationStore
from .stream_handler import StreamHandler
from .turns import Turn, build_request_turns

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT_KEY = "systemPrompt"
GENERIC_ERROR_CONTENT = (
    "Sorry, I encountered an error while processing your request. Please try again."
)
GENERIC_ERROR_DESCRIPTION = "Failed to generate response"


def error_content(exc: BaseException, partial: str = "") -> str:
    """Text that replaces the assistant message when a request fails.

    Content that already streamed is kept in front of the error line.
    """
    message = str(exc).strip()
    text = f"Error: {message}" if message else GENERIC_ERROR_CONTENT
    if partial:
        return f"{partial}\n\n{text}"
    return text


class StreamingController:
    """Build the provider request, stream the reply and resolve its terminal state.

    The controller never owns conversation state: it appends and updates the
    assistant placeholder through ``StateManager`` and reads settings from the
    store at request-build time. Each request moves through
    ``BUILDING_REQUEST -> AWAITING_FIRST_TOKEN -> STREAMING`` and ends in
    ``COMPLETED``, ``FAILED`` or ``CANCELLED`` before returning to ``IDLE``.
    """

    def __init__(
        self,
        router: ModelRouter,
        state: StateManager,
        store: ConversationStore,
        bus: EventBus,
        ids: MonotonicIdSource,
        generation: GenerationConfig | None = None,
        providers: ProvidersConfig | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.router = router
        self.state = state
        self.store = store
        self.bus = bus
        self.ids = ids
        self.generation = generation or GenerationConfig()
        self.providers = providers or ProvidersConfig()
        self._environ = environ if environ is not None else os.environ
        self._clock = clock
        self._phases: dict[str, GenerationPhase] = {}

    def phase_of(self, message_id: str) -> GenerationPhase:
        """Current phase of the request streaming into ``message_id``."""
        return self._phases.get(message_id, GenerationPhase.IDLE)

    def _transition(self, message_id: str, phase: GenerationPhase) -> None:
        previous = self._phases.get(message_id, GenerationPhase.IDLE)
        self._phases[message_id] = phase
        LOGGER.debug(
            "generation.transition",
            extra={
                "event": "generation.transition",
                "message_id": message_id,
                "from_state": previous.value,
                "to_state": phase.value,
            },
        )

    async def generate(
        self,
        user_text: str,
        conversation_history: Sequence[Message],
        active_conversation_id: str,
        selected_model: str,
        cancel_token: CancellationToken | None = None,
    ) -> GenerationPhase:
        """Stream one assistant reply into ``active_conversation_id``.

        Returns the terminal phase. Errors never propagate: they are written
        into the assistant message and published as a notification.
        """
        message_id = self.ids.next_id()
        await self.state.set_streaming_message(message_id)
        started_at = self._clock()
        placeholder = Message(
            id=message_id, role="assistant", content="", timestamp=message_timestamp()
        )
        await self.state.append_message(active_conversation_id, placeholder)

        writer = self.state.message_writer(active_conversation_id, message_id)
        handler = StreamHandler(writer, clock=self._clock, started_at=started_at)
        log_fields = {
            "conversation_id": active_conversation_id,
            "message_id": message_id,
            "model": selected_model,
        }
        try:
            self._transition(message_id, GenerationPhase.BUILDING_REQUEST)
            turns = await self._build_request(
                user_text, conversation_history, active_conversation_id, message_id
            )
            model = await self._resolve_model(selected_model)
            await self._consume(message_id, model, turns, handler, cancel_token)
            if self.phase_of(message_id) is GenerationPhase.CANCELLED:
                LOGGER.info(
                    "generation.cancelled",
                    extra={
                        "event": "generation.cancelled",
                        **log_fields,
                        "streamed_chars": len(handler.content),
                    },
                )
            else:
                stats = await handler.finalize(selected_model)
                self._transition(message_id, GenerationPhase.COMPLETED)
                LOGGER.info(
                    "generation.completed",
                    extra={
                        "event": "generation.completed",
                        **log_fields,
                        "total_tokens": stats.total_tokens,
                        "tokens_per_second": stats.tokens_per_second,
                        "time_to_first_token": stats.time_to_first_token,
                        "total_time": stats.total_time,
                    },
                )
        except Exception as exc:  # noqa: BLE001
            self._transition(message_id, GenerationPhase.FAILED)
            failure = exc if isinstance(exc, StreamChatError) else StreamError(str(exc))
            LOGGER.warning(
                "generation.failed",
                extra={
                    "event": "generation.failed",
                    **log_fields,
                    "error_type": type(failure).__name__,
                    "error": str(failure),
                },
            )
            await writer.commit_content(error_content(failure, handler.content))
            await self.bus.notify(
                "Error",
                str(failure).strip() or GENERIC_ERROR_DESCRIPTION,
                variant="destructive",
                source="controller",
            )
        finally:
            terminal = self._phases.pop(message_id, GenerationPhase.FAILED)
            await self.state.clear_streaming_message(message_id)

        await self.bus.publish(
            GENERATION_FINISHED,
            {**log_fields, "phase": terminal.value},
            source="controller",
        )
        return terminal

    async def _consume(
        self,
        message_id: str,
        model: LanguageModel,
        turns: list[Turn],
        handler: StreamHandler,
        cancel_token: CancellationToken | None,
    ) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            self._transition(message_id, GenerationPhase.CANCELLED)
            return
        self._transition(message_id, GenerationPhase.AWAITING_FIRST_TOKEN)
        result = await model.stream_text(
            turns,
            temperature=self.generation.temperature,
            max_tokens=self.generation.max_tokens,
        )
        try:
            async for fragment in result.text_stream:
                if cancel_token is not None and cancel_token.cancelled:
                    self._transition(message_id, GenerationPhase.CANCELLED)
                    return
                if not handler.response_started:
                    self._transition(message_id, GenerationPhase.STREAMING)
                await handler.handle_content(fragment)
        finally:
            await result.aclose()

    async def _build_request(
        self,
        user_text: str,
        history: Sequence[Message],
        conversation_id: str,
        placeholder_id: str,
    ) -> list[Turn]:
        user_images = self._pending_user_images(conversation_id, placeholder_id)
        system_prompt = await self._read_setting(SYSTEM_PROMPT_KEY)
        return build_request_turns(history, user_text, user_images, system_prompt)

    def _pending_user_images(
        self, conversation_id: str, placeholder_id: str
    ) -> list[str] | None:
        """Images on the message just before the placeholder in the live log."""
        conversation = self.state.get_conversation(conversation_id)
        if conversation is None:
            return None
        previous: Message | None = None
        for message in conversation.messages:
            if message.id == placeholder_id:
                break
            previous = message
        if previous is not None and previous.role == "user" and previous.has_images:
            return list(previous.images)
        return None

    async def _resolve_model(self, selected_model: str) -> LanguageModel:
        provider = self.router.get_provider(selected_model)
        if provider is None:
            raise ConfigurationError(f"Unknown model: {selected_model}")
        credential = await self._resolve_credential(provider)
        client = self.router.build_client(provider, credential)
        return client(selected_model)

    async def _resolve_credential(self, provider: str) -> str | None:
        """Settings override first, then the environment default."""
        provider_config = self.providers.get(provider)
        if provider_config is None:
            if self.router.requires_credential(provider):
                raise ConfigurationError(f"Unsupported provider: {provider}")
            return None

        override = (await self._read_setting(provider_config.settings_key) or "").strip()
        if override:
            return override

        default = (self._environ.get(provider_config.api_key_env) or "").strip()
        if default and default != provider_config.api_key_placeholder:
            return default

        if not self.router.requires_credential(provider):
            return None
        raise ConfigurationError(
            f"{provider_config.label} API key not configured. Please set your "
            f"{provider_config.label} API key in settings or add "
            f"{provider_config.api_key_env} to your environment."
        )

    async def _read_setting(self, key: str) -> str | None:
        try:
            return await self.store.get_setting(key)
        except PersistenceError as exc:
            LOGGER.warning(
                "generation.setting_unavailable",
                extra={
                    "event": "generation.setting_unavailable",
                    "key": key,
                    "error": str(exc),
                },
            )
            return None

