"""Durable conversation and settings stores.

Every store operation is a coroutine and may fail on its own with
``PersistenceError``; callers treat such failures as non-fatal.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol, TypeVar
from urllib.parse import quote

from pydantic import ValidationError

from .exceptions import PersistenceError
from .schemas import Conversation

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ConversationStore(Protocol):
    async def init(self) -> None: ...

    async def get_all(self) -> list[Conversation]: ...

    async def save(self, conversation: Conversation) -> None: ...

    async def delete(self, conversation_id: str) -> None: ...

    async def clear_all(self) -> None: ...

    async def get_setting(self, key: str) -> str | None: ...

    async def save_setting(self, key: str, value: str) -> None: ...


def _newest_first(conversations: list[Conversation]) -> list[Conversation]:
    return sorted(conversations, key=lambda item: item.timestamp, reverse=True)


class InMemoryConversationStore:
    """Dictionary-backed store; values are copied on the way in and out."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._settings: dict[str, str] = {}

    async def init(self) -> None:
        return None

    async def get_all(self) -> list[Conversation]:
        return _newest_first(
            [item.model_copy(deep=True) for item in self._conversations.values()]
        )

    async def save(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)

    async def delete(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)

    async def clear_all(self) -> None:
        self._conversations.clear()

    async def get_setting(self, key: str) -> str | None:
        return self._settings.get(key)

    async def save_setting(self, key: str, value: str) -> None:
        self._settings[key] = value


class JsonConversationStore:
    """One JSON document per conversation plus a flat ``settings.json``.

    Blocking file work runs in a worker thread. Writes go through a temporary
    file and ``os.replace`` so a crash never leaves a half-written record.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory).expanduser()
        self.conversations_dir = self.directory / "conversations"
        self.settings_path = self.directory / "settings.json"
        self._settings_lock = asyncio.Lock()

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        """Set POSIX permissions on a file or directory; failures are only logged."""
        if os.name != "posix":
            return
        try:
            path.chmod(mode)
        except OSError:
            LOGGER.debug("Unable to enforce %o permissions for %s", mode, path)

    def _ensure_paths(self) -> None:
        self.conversations_dir.mkdir(parents=True, exist_ok=True)
        self._enforce_permissions(self.directory, 0o700)
        self._enforce_permissions(self.conversations_dir, 0o700)

    def _conversation_path(self, conversation_id: str) -> Path:
        if not conversation_id:
            raise PersistenceError("Conversation id must not be empty.")
        return self.conversations_dir / f"{quote(conversation_id, safe='')}.json"

    def _write_json(self, target: Path, payload: Any) -> None:
        self._ensure_paths()
        temporary = target.with_name(f".{target.name}.tmp")
        temporary.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        self._enforce_permissions(temporary)
        os.replace(temporary, target)

    def _read_all(self) -> list[Conversation]:
        self._ensure_paths()
        conversations: list[Conversation] = []
        for path in self.conversations_dir.glob("*.json"):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                conversations.append(Conversation.from_record(payload))
            except (json.JSONDecodeError, ValidationError) as exc:
                LOGGER.warning(
                    "store.conversation.corrupt",
                    extra={
                        "event": "store.conversation.corrupt",
                        "path": str(path),
                        "error": str(exc),
                    },
                )
        return _newest_first(conversations)

    def _write_conversation(self, conversation: Conversation) -> None:
        self._write_json(self._conversation_path(conversation.id), conversation.to_record())

    def _delete_conversation(self, conversation_id: str) -> None:
        self._conversation_path(conversation_id).unlink(missing_ok=True)

    def _clear_conversations(self) -> None:
        self._ensure_paths()
        for path in self.conversations_dir.glob("*.json"):
            path.unlink(missing_ok=True)

    def _read_settings(self) -> dict[str, str]:
        if not self.settings_path.exists():
            return {}
        try:
            payload = json.loads(self.settings_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Settings file is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise PersistenceError("Settings payload is invalid.")
        return {str(k): str(v) for k, v in payload.items() if isinstance(v, str)}

    def _write_setting(self, key: str, value: str) -> None:
        settings = self._read_settings()
        settings[key] = value
        self._write_json(self.settings_path, settings)

    async def _run(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except PersistenceError:
            raise
        except (OSError, ValueError, TypeError) as exc:
            raise PersistenceError(f"Unable to {operation}: {exc}") from exc

    async def init(self) -> None:
        await self._run("initialize store", self._ensure_paths)

    async def get_all(self) -> list[Conversation]:
        return await self._run("load conversations", self._read_all)

    async def save(self, conversation: Conversation) -> None:
        # Serialize from a private copy; the caller keeps mutating its own.
        snapshot = conversation.model_copy(deep=True)
        await self._run("save conversation", self._write_conversation, snapshot)

    async def delete(self, conversation_id: str) -> None:
        await self._run("delete conversation", self._delete_conversation, conversation_id)

    async def clear_all(self) -> None:
        await self._run("clear conversations", self._clear_conversations)

    async def get_setting(self, key: str) -> str | None:
        settings = await self._run("read settings", self._read_settings)
        return settings.get(key)

    async def save_setting(self, key: str, value: str) -> None:
        async with self._settings_lock:
            await self._run("save setting", self._write_setting, key, value)
