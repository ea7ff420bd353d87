"""Event bus that carries notifications and lifecycle events to the UI layer.

Usage:
    bus = EventBus()

    async def on_notification(event):
        print(event.data["title"], event.data["description"])

    unsubscribe = bus.subscribe(NOTIFICATION_SHOWN, on_notification)
    await bus.notify("Model changed", "Switched to gemini-2.0-flash")
    unsubscribe()
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import inspect
import logging
from typing import Any, Literal

from .domain import NOTIFICATION_SHOWN, Notification

LOGGER = logging.getLogger(__name__)


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Publish/subscribe hub; a failing handler never breaks the publisher."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = {}

    def subscribe(self, event_name: str, handler: Callable) -> Callable[[], None]:
        """Register a sync or async handler and return a function removing it."""
        self._subscribers.setdefault(event_name, []).append(handler)
        return lambda: self.unsubscribe(event_name, handler)

    def unsubscribe(self, event_name: str, handler: Callable) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> int:
        """Deliver an event in subscription order; return how many handlers succeeded."""
        event = Event(name=event_name, data=data, source=source)
        delivered = 0
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as exc:  # noqa: BLE001
                LOGGER.error(
                    "events.handler.failed",
                    extra={
                        "event": "events.handler.failed",
                        "event_name": event_name,
                        "source": source,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                continue
            delivered += 1
        return delivered

    async def notify(
        self,
        title: str,
        description: str,
        variant: Literal["default", "destructive"] = "default",
        source: str | None = None,
    ) -> None:
        """Publish a user-facing notification."""
        notification = Notification(title=title, description=description, variant=variant)
        if notification.variant == "destructive":
            LOGGER.info(
                "events.notification.destructive",
                extra={
                    "event": "events.notification.destructive",
                    "title": title,
                    "description": description,
                },
            )
        await self.publish(NOTIFICATION_SHOWN, notification.as_event_data(), source=source)

    def clear(self, event_name: str | None = None) -> None:
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
