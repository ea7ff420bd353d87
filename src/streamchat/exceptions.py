"""Domain exception hierarchy for the streaming chat controller."""

from __future__ import annotations


class StreamChatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class ConfigurationError(StreamChatError):
    """Raised when a request cannot be configured (model, provider, credential)."""


class ConfigValidationError(ConfigurationError):
    """Raised when configuration cannot be validated safely."""


class StreamError(StreamChatError):
    """Raised when the provider stream fails before or during delivery."""


class PersistenceError(StreamChatError):
    """Raised when a store operation fails."""


class ConversationNotFoundError(StreamChatError):
    """Raised when a conversation id is not known to the manager."""


class GuardViolation(StreamChatError):
    """Raised when an operation is rejected before any mutation happens."""


class LastConversationError(GuardViolation):
    """Raised when deleting the only remaining conversation."""


class GenerationInProgressError(GuardViolation):
    """Raised when a send arrives while the conversation is still streaming."""
