"""Tests for the streaming controller request lifecycle."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable, Sequence
from dataclasses import dataclass
import logging
import unittest

from streamchat.clients import TextStreamResult
from streamchat.controller import GENERIC_ERROR_CONTENT, StreamingController, error_content
from streamchat.events import GENERATION_FINISHED, NOTIFICATION_SHOWN, Event, EventBus
from streamchat.exceptions import ConfigurationError, GenerationInProgressError, StreamError
from streamchat.ids import MonotonicIdSource
from streamchat.manager import GREETING, ConversationManager
from streamchat.router import ModelRouter
from streamchat.schemas import Conversation, Message
from streamchat.state import GenerationPhase, StateManager
from streamchat.store import InMemoryConversationStore
from streamchat.turns import ImagePart, MultimodalTurn, TextPart, TextTurn, Turn


class TickClock:
    """Deterministic clock advancing by ``step`` seconds per reading."""

    def __init__(self, start: float = 0.0, step: float = 1.0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


@dataclass
class RecordedRequest:
    model_id: str
    messages: list[Turn]
    temperature: float
    max_tokens: int


class FakeProvider:
    """Scripted provider: every request streams the same fragments."""

    def __init__(
        self,
        fragments: Sequence[str] = ("Hi", " there"),
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
        before_fragment: Callable[[int], None] | None = None,
    ) -> None:
        self.fragments = list(fragments)
        self.error = error
        self.gate = gate
        self.before_fragment = before_fragment
        self.credentials: list[str | None] = []
        self.requests: list[RecordedRequest] = []
        self.closed = 0

    def factory(self, credential: str | None) -> Callable[[str], FakeModel]:
        self.credentials.append(credential)
        return lambda model_id: FakeModel(self, model_id)

    async def stream(self) -> AsyncGenerator[str, None]:
        try:
            if self.gate is not None:
                await self.gate.wait()
            for index, fragment in enumerate(self.fragments):
                if self.before_fragment is not None:
                    self.before_fragment(index)
                yield fragment
            if self.error is not None:
                raise self.error
        finally:
            self.closed += 1


class FakeModel:
    def __init__(self, provider: FakeProvider, model_id: str) -> None:
        self.provider = provider
        self.model_id = model_id

    async def stream_text(
        self, messages: Sequence[Turn], temperature: float, max_tokens: int
    ) -> TextStreamResult:
        self.provider.requests.append(
            RecordedRequest(self.model_id, list(messages), temperature, max_tokens)
        )
        return TextStreamResult(text_stream=self.provider.stream())


class ControllerTestCase(unittest.IsolatedAsyncioTestCase):
    """Wire a manager against in-memory fakes and capture notifications."""

    environ = {"GROQ_API_KEY": "env-key", "GOOGLE_API_KEY": "google-key"}

    def make_manager(
        self,
        groq: FakeProvider | None = None,
        google: FakeProvider | None = None,
        environ: dict[str, str] | None = None,
    ) -> ConversationManager:
        self.groq = groq or FakeProvider()
        self.google = google or FakeProvider()
        self.store = InMemoryConversationStore()
        manager = ConversationManager(
            self.store,
            ModelRouter({"groq": self.groq.factory, "google": self.google.factory}),
            environ=self.environ if environ is None else environ,
            clock=TickClock(),
        )
        self.notifications: list[dict[str, str]] = []
        self.finished: list[Event] = []
        manager.bus.subscribe(NOTIFICATION_SHOWN, lambda event: self.notifications.append(event.data))
        manager.bus.subscribe(GENERATION_FINISHED, self.finished.append)
        return manager

    async def started(self, manager: ConversationManager) -> None:
        self.addAsyncCleanup(manager.close)
        await manager.init()

    def last_message(self, manager: ConversationManager) -> Message:
        conversation = manager.active_conversation
        assert conversation is not None
        return conversation.messages[-1]


class StreamingSuccessTests(ControllerTestCase):
    async def test_streamed_reply_with_stats(self) -> None:
        manager = self.make_manager()
        await self.started(manager)

        phase = await manager.send_message("Hello")

        self.assertIs(phase, GenerationPhase.COMPLETED)
        conversation = manager.active_conversation
        assert conversation is not None
        self.assertEqual(
            [(m.role, m.content) for m in conversation.messages],
            [("assistant", GREETING), ("user", "Hello"), ("assistant", "Hi there")],
        )
        stats = conversation.messages[-1].stats
        assert stats is not None
        self.assertEqual(stats.total_tokens, 2)
        self.assertEqual(stats.model, "llama-3.3-70b-versatile")
        self.assertEqual(stats.time_to_first_token, 1.0)
        self.assertEqual(stats.total_time, 2.0)
        self.assertEqual(stats.tokens_per_second, 1.0)
        self.assertLessEqual(stats.time_to_first_token, stats.total_time)
        self.assertIsNone(manager.streaming_message_id)
        self.assertFalse(manager.is_loading)
        self.assertEqual(self.notifications, [])

    async def test_request_carries_history_and_generation_settings(self) -> None:
        manager = self.make_manager()
        await self.started(manager)

        await manager.send_message("Hello")

        request = self.groq.requests[0]
        self.assertEqual(request.model_id, "llama-3.3-70b-versatile")
        self.assertEqual(request.temperature, 0.7)
        self.assertEqual(request.max_tokens, 2000)
        self.assertEqual(
            request.messages,
            [
                TextTurn(role="assistant", content=GREETING),
                TextTurn(role="user", content="Hello"),
            ],
        )
        self.assertEqual(self.groq.credentials, ["env-key"])
        self.assertEqual(self.google.requests, [])

    async def test_system_prompt_setting_is_prepended(self) -> None:
        manager = self.make_manager()
        await self.started(manager)
        await self.store.save_setting("systemPrompt", "  Answer in French.  ")

        await manager.send_message("Hello")

        self.assertEqual(
            self.groq.requests[0].messages[0],
            TextTurn(role="system", content="Answer in French."),
        )

    async def test_images_become_multimodal_user_turn(self) -> None:
        manager = self.make_manager()
        await self.started(manager)

        await manager.send_message("what is this", images=["aaa", "bbb"])

        last_turn = self.groq.requests[0].messages[-1]
        self.assertIsInstance(last_turn, MultimodalTurn)
        assert isinstance(last_turn, MultimodalTurn)
        self.assertEqual(
            last_turn.parts,
            (TextPart("what is this"), ImagePart("aaa"), ImagePart("bbb")),
        )
        conversation = manager.active_conversation
        assert conversation is not None
        self.assertEqual(conversation.messages[1].images, ["aaa", "bbb"])

    async def test_image_only_send_uses_fallback_prompt(self) -> None:
        manager = self.make_manager()
        await self.started(manager)

        await manager.send_message("", images=["aaa"])

        last_turn = self.groq.requests[0].messages[-1]
        assert isinstance(last_turn, MultimodalTurn)
        self.assertEqual(last_turn.text, "Please analyze these images.")

    async def test_google_model_routes_to_google_provider(self) -> None:
        manager = self.make_manager()
        await self.started(manager)
        manager.selected_model = "gemini-2.0-flash"

        await manager.send_message("Hello")

        self.assertEqual(self.groq.requests, [])
        self.assertEqual(self.google.requests[0].model_id, "gemini-2.0-flash")
        self.assertEqual(self.google.credentials, ["google-key"])
        self.assertEqual(self.last_message(manager).content, "Hi there")

    async def test_content_is_concatenation_of_fragments(self) -> None:
        fragments = ["The", " quick", "", " brown\n", "fox", "   "]
        manager = self.make_manager(groq=FakeProvider(fragments))
        await self.started(manager)

        await manager.send_message("Hello")

        message = self.last_message(manager)
        self.assertEqual(message.content, "".join(fragments))
        assert message.stats is not None
        self.assertEqual(message.stats.total_tokens, 4)

    async def test_phases_are_logged_in_order(self) -> None:
        manager = self.make_manager()
        await self.started(manager)

        with self.assertLogs("streamchat.controller", level=logging.DEBUG) as logs:
            await manager.send_message("Hello")

        transitions = [
            record.to_state
            for record in logs.records
            if record.getMessage() == "generation.transition"
        ]
        self.assertEqual(
            transitions, ["BUILDING_REQUEST", "AWAITING_FIRST_TOKEN", "STREAMING", "COMPLETED"]
        )
        self.assertEqual(self.finished[-1].data["phase"], "COMPLETED")

    async def test_reply_is_persisted(self) -> None:
        manager = self.make_manager()
        await self.started(manager)

        await manager.send_message("Hello")
        await manager.flush()

        saved = await self.store.get_all()
        self.assertEqual(len(saved), 1)
        self.assertEqual(saved[0].messages[-1].content, "Hi there")
        self.assertIsNotNone(saved[0].messages[-1].stats)


class CredentialTests(ControllerTestCase):
    async def test_settings_override_takes_precedence(self) -> None:
        manager = self.make_manager()
        await self.started(manager)
        await self.store.save_setting("groqApiKey", " user-key ")

        await manager.send_message("Hello")

        self.assertEqual(self.groq.credentials, ["user-key"])

    async def test_missing_credential_fails_without_network(self) -> None:
        manager = self.make_manager(environ={})
        await self.started(manager)

        phase = await manager.send_message("Hello")

        self.assertIs(phase, GenerationPhase.FAILED)
        self.assertEqual(
            self.last_message(manager).content,
            "Error: Groq API key not configured. Please set your Groq API key in "
            "settings or add GROQ_API_KEY to your environment.",
        )
        self.assertEqual(self.groq.credentials, [])
        self.assertEqual(self.groq.requests, [])
        self.assertEqual(self.notifications[-1]["variant"], "destructive")

    async def test_placeholder_credential_is_treated_as_missing(self) -> None:
        manager = self.make_manager(environ={"GOOGLE_API_KEY": "your_google_api_key_here"})
        await self.started(manager)
        manager.selected_model = "gemini-1.5-flash"

        await manager.send_message("Hello")

        self.assertTrue(
            self.last_message(manager).content.startswith("Error: Google API key not configured.")
        )
        self.assertEqual(self.google.requests, [])


class FailureTests(ControllerTestCase):
    async def test_unknown_model_fails_before_any_request(self) -> None:
        manager = self.make_manager()
        await self.started(manager)
        manager.selected_model = "not-a-model"

        with self.assertLogs("streamchat.controller", level=logging.DEBUG) as logs:
            phase = await manager.send_message("Hello")

        self.assertIs(phase, GenerationPhase.FAILED)
        message = self.last_message(manager)
        self.assertEqual(message.content, "Error: Unknown model: not-a-model")
        self.assertIsNone(message.stats)
        self.assertEqual(self.groq.credentials + self.google.credentials, [])
        self.assertEqual(
            self.notifications,
            [
                {
                    "title": "Error",
                    "description": "Unknown model: not-a-model",
                    "variant": "destructive",
                }
            ],
        )
        self.assertIsNone(manager.streaming_message_id)
        transitions = [
            record.to_state
            for record in logs.records
            if record.getMessage() == "generation.transition"
        ]
        self.assertEqual(transitions, ["BUILDING_REQUEST", "FAILED"])

    async def test_mid_stream_error_keeps_partial_content(self) -> None:
        provider = FakeProvider(["Partial"], error=StreamError("connection reset"))
        manager = self.make_manager(groq=provider)
        await self.started(manager)

        phase = await manager.send_message("Hello")

        self.assertIs(phase, GenerationPhase.FAILED)
        message = self.last_message(manager)
        self.assertEqual(message.content, "Partial\n\nError: connection reset")
        self.assertIsNone(message.stats)
        self.assertEqual(provider.closed, 1)
        self.assertEqual(self.notifications[-1]["description"], "connection reset")
        self.assertFalse(manager.is_loading)

    async def test_unexpected_exception_is_reported(self) -> None:
        manager = self.make_manager(groq=FakeProvider([], error=RuntimeError("boom")))
        await self.started(manager)

        await manager.send_message("Hello")

        self.assertEqual(self.last_message(manager).content, "Error: boom")

    async def test_error_without_message_uses_generic_text(self) -> None:
        manager = self.make_manager(groq=FakeProvider([], error=RuntimeError()))
        await self.started(manager)

        await manager.send_message("Hello")

        self.assertEqual(self.last_message(manager).content, GENERIC_ERROR_CONTENT)
        self.assertEqual(self.notifications[-1]["description"], "Failed to generate response")

    async def test_next_send_works_after_failure(self) -> None:
        provider = FakeProvider([], error=StreamError("overloaded"))
        manager = self.make_manager(groq=provider)
        await self.started(manager)
        await manager.send_message("Hello")

        provider.error = None
        provider.fragments = ["Recovered"]
        phase = await manager.send_message("Again")

        self.assertIs(phase, GenerationPhase.COMPLETED)
        self.assertEqual(self.last_message(manager).content, "Recovered")


class CancellationTests(ControllerTestCase):
    async def test_stop_keeps_partial_content_without_stats(self) -> None:
        provider = FakeProvider(["Hello", " world", "!"])
        manager = self.make_manager(groq=provider)

        def stop_before_second(index: int) -> None:
            if index == 1:
                manager.stop_generation()

        provider.before_fragment = stop_before_second
        await self.started(manager)

        phase = await manager.send_message("Hi")

        self.assertIs(phase, GenerationPhase.CANCELLED)
        message = self.last_message(manager)
        self.assertEqual(message.content, "Hello")
        self.assertIsNone(message.stats)
        self.assertEqual(provider.closed, 1)
        self.assertEqual(self.notifications, [])
        self.assertFalse(manager.is_loading)
        self.assertIsNone(manager.streaming_message_id)
        self.assertEqual(self.finished[-1].data["phase"], "CANCELLED")

    async def test_stop_without_generation_returns_false(self) -> None:
        manager = self.make_manager()
        await self.started(manager)
        self.assertFalse(manager.stop_generation())


class ConcurrencyTests(ControllerTestCase):
    async def _wait_until(self, predicate: Callable[[], bool]) -> None:
        for _ in range(100):
            if predicate():
                return
            await asyncio.sleep(0)
        self.fail("condition never became true")

    async def test_second_send_while_streaming_is_rejected(self) -> None:
        gate = asyncio.Event()
        manager = self.make_manager(groq=FakeProvider(gate=gate))
        await self.started(manager)

        first = asyncio.create_task(manager.send_message("first"))
        await self._wait_until(lambda: manager.streaming_message_id is not None)
        self.assertTrue(manager.is_loading)

        with self.assertRaises(GenerationInProgressError):
            await manager.send_message("second")
        self.assertEqual(
            self.notifications[-1]["description"],
            "A response is still being generated for this conversation.",
        )

        gate.set()
        self.assertIs(await first, GenerationPhase.COMPLETED)
        conversation = manager.active_conversation
        assert conversation is not None
        self.assertEqual(
            [m.content for m in conversation.messages if m.role == "user"], ["first"]
        )

    async def test_conversations_stream_independently(self) -> None:
        gate = asyncio.Event()
        manager = self.make_manager(groq=FakeProvider(gate=gate))
        await self.started(manager)
        first_id = manager.active_conversation_id
        assert first_id is not None

        first = asyncio.create_task(manager.send_message("first"))
        await self._wait_until(lambda: manager.state.is_generating(first_id))
        await manager.new_conversation()
        second_id = manager.active_conversation_id
        second = asyncio.create_task(manager.send_message("second"))
        await self._wait_until(lambda: manager.state.is_generating(second_id))

        gate.set()
        await asyncio.gather(first, second)

        for conversation_id in (first_id, second_id):
            conversation = manager.state.get_conversation(conversation_id)
            assert conversation is not None
            self.assertEqual(conversation.messages[-1].content, "Hi there")
        self.assertIsNone(manager.streaming_message_id)


class DirectControllerTests(unittest.IsolatedAsyncioTestCase):
    async def test_generate_uses_given_history_snapshot(self) -> None:
        provider = FakeProvider(["ok"])
        state = StateManager()
        history = [
            Message(id="1", role="assistant", content="Hello!", timestamp="t"),
            Message(id="2", role="user", content="Ping", timestamp="t"),
        ]
        await state.replace_all(
            [Conversation(id="c1", title="Chat", timestamp="t", messages=history)], "c1"
        )
        controller = StreamingController(
            ModelRouter({"groq": provider.factory}),
            state,
            InMemoryConversationStore(),
            EventBus(),
            MonotonicIdSource(),
            environ={"GROQ_API_KEY": "k"},
            clock=TickClock(),
        )

        phase = await controller.generate("Ping", history[:1], "c1", "llama-3.1-8b-instant")

        self.assertIs(phase, GenerationPhase.COMPLETED)
        self.assertEqual(
            provider.requests[0].messages,
            [
                TextTurn(role="assistant", content="Hello!"),
                TextTurn(role="user", content="Ping"),
            ],
        )
        conversation = state.get_conversation("c1")
        assert conversation is not None
        self.assertEqual(conversation.messages[-1].content, "ok")
        self.assertIs(controller.phase_of(conversation.messages[-1].id), GenerationPhase.IDLE)


class ErrorContentTests(unittest.TestCase):
    def test_error_content_formats(self) -> None:
        self.assertEqual(error_content(ConfigurationError("Unknown model: x")), "Error: Unknown model: x")
        self.assertEqual(error_content(StreamError("")), GENERIC_ERROR_CONTENT)
        self.assertEqual(
            error_content(StreamError("reset"), partial="Half"), "Half\n\nError: reset"
        )


if __name__ == "__main__":
    unittest.main()
