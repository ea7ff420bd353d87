"""Publish/subscribe channel for user-facing notifications and lifecycle events."""

from .bus import Event, EventBus
from .domain import GENERATION_FINISHED, NOTIFICATION_SHOWN, Notification

__all__ = ["Event", "EventBus", "GENERATION_FINISHED", "NOTIFICATION_SHOWN", "Notification"]
