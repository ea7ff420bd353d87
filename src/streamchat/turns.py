"""Provider-facing request turns.

A request is a list of turns. Each turn is either a plain ``TextTurn`` or a
``MultimodalTurn`` made of one text part followed by image parts. Provider
clients resolve turns to their own wire format; ``to_wire`` gives the neutral
shape ``{role, content: str | [{type: "text"|"image", ...}]}``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Literal

from .schemas import Message

TurnRole = Literal["system", "user", "assistant"]

IMAGE_FALLBACK_TEXT = "Please analyze these images."


@dataclass(frozen=True)
class TextPart:
    text: str

    def to_wire(self) -> dict[str, str]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImagePart:
    image: str  # base64 payload or data URL

    def to_wire(self) -> dict[str, str]:
        return {"type": "image", "image": self.image}


ContentPart = TextPart | ImagePart


@dataclass(frozen=True)
class TextTurn:
    role: TurnRole
    content: str
    kind: Literal["text"] = "text"

    def to_wire(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class MultimodalTurn:
    role: TurnRole
    parts: tuple[ContentPart, ...]
    kind: Literal["multimodal"] = "multimodal"

    @property
    def images(self) -> list[str]:
        return [part.image for part in self.parts if isinstance(part, ImagePart)]

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def to_wire(self) -> dict[str, Any]:
        return {"role": self.role, "content": [part.to_wire() for part in self.parts]}


Turn = TextTurn | MultimodalTurn


def build_turn(
    role: TurnRole, text: str, images: Sequence[str] | None = None
) -> Turn:
    """Build a turn, switching to a multimodal turn for user images."""
    if images and role == "user":
        parts: list[ContentPart] = [TextPart(text or IMAGE_FALLBACK_TEXT)]
        parts.extend(ImagePart(image) for image in images)
        return MultimodalTurn(role=role, parts=tuple(parts))
    return TextTurn(role=role, content=text)


def turn_from_message(message: Message) -> Turn:
    return build_turn(message.role, message.content, message.images)


def build_request_turns(
    history: Sequence[Message],
    user_text: str,
    user_images: Sequence[str] | None = None,
    system_prompt: str | None = None,
) -> list[Turn]:
    """Assemble the full request: optional system turn, history, new user turn."""
    turns: list[Turn] = [turn_from_message(message) for message in history]
    turns.append(build_turn("user", user_text, user_images))
    prompt = (system_prompt or "").strip()
    if prompt:
        turns.insert(0, TextTurn(role="system", content=prompt))
    return turns
