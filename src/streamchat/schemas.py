"""Conversation, message and response statistics records.

Python code uses snake_case attributes; persisted records use the camelCase
field names (``tokensPerSecond``, ``timeToFirstToken`` ...) so that stores
written by other clients of the same format stay readable.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant"]


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        """Return the plain structured record used by stores."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ResponseStats(_Record):
    """Throughput and latency figures for one completed assistant response."""

    tokens_per_second: float = Field(default=0.0, alias="tokensPerSecond", ge=0)
    time_to_first_token: float = Field(default=0.0, alias="timeToFirstToken", ge=0)
    total_time: float = Field(default=0.0, alias="totalTime", ge=0)
    total_tokens: int = Field(default=0, alias="totalTokens", ge=0)
    model: str


class Message(_Record):
    """A single chat turn as rendered in the conversation log."""

    id: str
    role: Role
    content: str = ""
    timestamp: str
    images: list[str] | None = None
    stats: ResponseStats | None = None

    @property
    def has_images(self) -> bool:
        return bool(self.images)


class Conversation(_Record):
    """An ordered, append-only list of messages with a title."""

    id: str
    title: str
    timestamp: str
    messages: list[Message] = Field(default_factory=list)

    @field_validator("title", mode="before")
    @classmethod
    def _normalize_title(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Conversation title must be a string.")
        return value.strip() or "Untitled"

    @classmethod
    def from_record(cls, payload: Any) -> Conversation:
        """Validate a persisted record back into a conversation."""
        return cls.model_validate(payload)

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


def conversation_timestamp() -> str:
    """Creation time for a conversation (ISO 8601, UTC)."""
    return datetime.now(UTC).isoformat()


def message_timestamp() -> str:
    """Display time for a message in local time."""
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")
