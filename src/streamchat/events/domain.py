from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Literal

NOTIFICATION_SHOWN = "notification.shown"
GENERATION_FINISHED = "generation.finished"


@dataclass(frozen=True)
class Notification:
    """A toast-style message for the user."""

    title: str
    description: str
    variant: Literal["default", "destructive"] = "default"

    def as_event_data(self) -> dict[str, Any]:
        return asdict(self)
