"""Top-level package for streamchat."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import Config, load_config
    from .controller import StreamingController
    from .exceptions import (
        ConfigurationError,
        ConversationNotFoundError,
        GenerationInProgressError,
        GuardViolation,
        LastConversationError,
        PersistenceError,
        StreamChatError,
        StreamError,
    )
    from .logging_utils import configure_logging
    from .manager import ConversationManager
    from .router import ModelRouter
    from .schemas import Conversation, Message, ResponseStats
    from .state import CancellationToken, GenerationPhase, StateManager
    from .store import ConversationStore, InMemoryConversationStore, JsonConversationStore

_EXPORTS: dict[str, str] = {
    "CancellationToken": ".state",
    "Config": ".config",
    "ConfigurationError": ".exceptions",
    "Conversation": ".schemas",
    "ConversationManager": ".manager",
    "ConversationNotFoundError": ".exceptions",
    "ConversationStore": ".store",
    "GenerationInProgressError": ".exceptions",
    "GenerationPhase": ".state",
    "GuardViolation": ".exceptions",
    "InMemoryConversationStore": ".store",
    "JsonConversationStore": ".store",
    "LastConversationError": ".exceptions",
    "Message": ".schemas",
    "ModelRouter": ".router",
    "PersistenceError": ".exceptions",
    "ResponseStats": ".schemas",
    "StateManager": ".state",
    "StreamChatError": ".exceptions",
    "StreamError": ".exceptions",
    "StreamingController": ".controller",
    "configure_logging": ".logging_utils",
    "load_config": ".config",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import public symbols so importing the package stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module_name, __name__), name)
