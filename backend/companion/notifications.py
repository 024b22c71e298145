from __future__ import annotations

import enum
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Mapping

from companion.agent.constants import NOTIFICATION_HISTORY_SIZE
from companion.agent.state import now_ms
from companion.bus import EventBus, Topic

logger = logging.getLogger(__name__)


class NotificationType(str, enum.Enum):
    SYSTEM = "system"
    TOAST = "toast"
    BUBBLE = "bubble"
    VOICE = "voice"


@dataclass(frozen=True)
class Notification:
    type: NotificationType
    title: str
    body: str
    sound: bool = False
    duration_ms: int | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Notification:
        try:
            kind = NotificationType(payload.get("type", NotificationType.TOAST.value))
        except ValueError:
            kind = NotificationType.TOAST
        return cls(
            type=kind,
            title=str(payload.get("title", "")),
            body=str(payload.get("body", payload.get("message", ""))),
            sound=bool(payload.get("sound", False)),
            duration_ms=payload.get("duration_ms", payload.get("duration")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "body": self.body,
            "sound": self.sound,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class DeliveryReport:
    notification_id: str
    delivered: bool
    reason: str | None = None
    sent_at: int = 0


class NotificationCenter:
    """Sends notifications to the presentation layer through the bus.

    Delivery problems are reported in the returned DeliveryReport, never raised.
    """

    def __init__(self, bus: EventBus, history_size: int = NOTIFICATION_HISTORY_SIZE):
        self._bus = bus
        self._history: deque[tuple[Notification, DeliveryReport]] = deque(maxlen=history_size)

    async def send(self, notification: Notification) -> DeliveryReport:
        sent_at = now_ms()
        if self._bus.subscriber_count(Topic.NOTIFICATION) == 0:
            report = DeliveryReport(notification.id, False, "no presentation layer subscribed", sent_at)
        else:
            delivered = await self._bus.publish(Topic.NOTIFICATION, notification.to_dict())
            if delivered:
                report = DeliveryReport(notification.id, True, None, sent_at)
            else:
                report = DeliveryReport(notification.id, False, "all subscribers failed", sent_at)
        if not report.delivered:
            logger.warning("Notification %r not delivered: %s", notification.title, report.reason)
        self._history.append((notification, report))
        return report

    def history(self, limit: int | None = None) -> list[tuple[Notification, DeliveryReport]]:
        """Newest first."""
        items = list(reversed(self._history))
        return items if limit is None else items[:limit]
