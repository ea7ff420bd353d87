"""Streaming model clients for OpenAI-compatible chat-completions endpoints.

Both Groq and Google expose an OpenAI-compatible ``/chat/completions`` route
that streams server-sent events. A client is built per provider from an API
key and then called with a model id to obtain a ``LanguageModel``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable, Sequence
from dataclasses import dataclass
import json
import logging
from typing import Any, Protocol

import httpx

from .exceptions import StreamChatError, StreamError
from .turns import ImagePart, MultimodalTurn, TextPart, Turn

LOGGER = logging.getLogger(__name__)

STREAM_DONE = "[DONE]"

_IMAGE_SIGNATURES: tuple[tuple[str, str], ...] = (
    ("/9j/", "image/jpeg"),
    ("iVBORw0KGgo", "image/png"),
    ("R0lGOD", "image/gif"),
    ("UklGR", "image/webp"),
)


@dataclass
class TextStreamResult:
    """Handle on an in-flight completion exposing its text fragments."""

    text_stream: AsyncIterator[str]

    async def aclose(self) -> None:
        """Release the underlying connection if the stream was not exhausted."""
        closer = getattr(self.text_stream, "aclose", None)
        if closer is not None:
            await closer()


class LanguageModel(Protocol):
    async def stream_text(
        self, messages: Sequence[Turn], temperature: float, max_tokens: int
    ) -> TextStreamResult: ...


ModelClient = Callable[[str], LanguageModel]


def image_data_url(image: str) -> str:
    """Return a data URL for a base64 image, sniffing the mime type."""
    if image.startswith("data:"):
        return image
    mime = "image/png"
    for prefix, candidate in _IMAGE_SIGNATURES:
        if image.startswith(prefix):
            mime = candidate
            break
    return f"data:{mime};base64,{image}"


def to_provider_messages(turns: Sequence[Turn]) -> list[dict[str, Any]]:
    """Resolve neutral turns to OpenAI chat-completions message dicts."""
    payload: list[dict[str, Any]] = []
    for turn in turns:
        if isinstance(turn, MultimodalTurn):
            content: list[dict[str, Any]] = []
            for part in turn.parts:
                if isinstance(part, TextPart):
                    content.append({"type": "text", "text": part.text})
                elif isinstance(part, ImagePart):
                    content.append(
                        {"type": "image_url", "image_url": {"url": image_data_url(part.image)}}
                    )
            payload.append({"role": turn.role, "content": content})
        else:
            payload.append({"role": turn.role, "content": turn.content})
    return payload


def parse_event_data(data: str) -> str | None:
    """Extract the content delta from one SSE ``data:`` payload.

    Returns ``STREAM_DONE`` at the end-of-stream sentinel and ``None`` for
    events that carry no text (role headers, usage blocks, keep-alives).
    """
    data = data.strip()
    if not data:
        return None
    if data == STREAM_DONE:
        return STREAM_DONE
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        LOGGER.debug(
            "client.stream.malformed_event",
            extra={"event": "client.stream.malformed_event", "data": data[:200]},
        )
        return None
    if not isinstance(event, dict):
        return None
    error = event.get("error")
    if error:
        raise StreamError(_describe_error(error))
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if isinstance(delta, dict):
        content = delta.get("content")
        if isinstance(content, str) and content:
            return content
    return None


def _describe_error(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    if isinstance(error, str) and error.strip():
        return error.strip()
    return "Provider returned an error."


def _error_from_body(provider: str, status_code: int, body: str) -> StreamError:
    detail = ""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if isinstance(payload, dict) and payload.get("error"):
        detail = _describe_error(payload["error"])
    elif body.strip():
        detail = body.strip()[:300]
    if detail:
        return StreamError(f"{provider} request failed ({status_code}): {detail}")
    return StreamError(f"{provider} request failed with status {status_code}.")


class OpenAICompatibleModel:
    """One model on an OpenAI-compatible streaming endpoint."""

    def __init__(
        self,
        provider: str,
        model_id: str,
        api_key: str | None,
        base_url: str,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.provider = provider
        self.model_id = model_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._api_key = api_key
        self._http_client = http_client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream", "Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def stream_text(
        self, messages: Sequence[Turn], temperature: float, max_tokens: int
    ) -> TextStreamResult:
        payload = {
            "model": self.model_id,
            "messages": to_provider_messages(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }
        return TextStreamResult(text_stream=self._iter_fragments(payload))

    async def _iter_fragments(self, payload: dict[str, Any]) -> AsyncGenerator[str, None]:
        owns_client = self._http_client is None
        client = self._http_client or httpx.AsyncClient(timeout=self.timeout)
        url = f"{self.base_url}/chat/completions"
        try:
            async with client.stream(
                "POST", url, headers=self._headers(), json=payload
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise _error_from_body(self.provider, response.status_code, body)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    fragment = parse_event_data(line[len("data:") :])
                    if fragment == STREAM_DONE:
                        break
                    if fragment:
                        yield fragment
        except StreamChatError:
            raise
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "client.stream.http_error",
                extra={
                    "event": "client.stream.http_error",
                    "provider": self.provider,
                    "error_type": type(exc).__name__,
                },
            )
            raise StreamError(
                f"Unable to reach {self.provider} at {self.base_url}: {exc}"
            ) from exc
        finally:
            if owns_client:
                await client.aclose()


def create_provider_client(
    provider: str,
    api_key: str | None,
    base_url: str,
    timeout: float = 60.0,
    http_client: httpx.AsyncClient | None = None,
) -> ModelClient:
    """Return a callable mapping model ids to models bound to this provider."""

    def _client(model_id: str) -> LanguageModel:
        return OpenAICompatibleModel(
            provider=provider,
            model_id=model_id,
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            http_client=http_client,
        )

    return _client
