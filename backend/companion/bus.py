"""In-process publish/subscribe bus with typed topics.

Replaces ambient window-level callbacks for cross-agent signals such as
"play a sound" or "celebrate". Subscribers are plain callables, sync or async.
"""

from __future__ import annotations

import enum
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)


class Topic(str, enum.Enum):
    NOTIFICATION = "notification"
    AGENT_RESULT = "agent_result"
    AGENT_ACTION = "agent_action"
    AGENT_STATUS = "agent_status"
    PLAY_SOUND = "play_sound"
    CELEBRATE = "celebrate"


Handler = Callable[[dict], Union[Awaitable[None], None]]


class EventBus:
    def __init__(self):
        self._subscribers: dict[Topic, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: Topic, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *topic*. Returns a function that unsubscribes it."""
        self._subscribers[topic].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._subscribers.get(topic, []))

    async def publish(self, topic: Topic, payload: dict[str, Any] | None = None) -> int:
        """Deliver *payload* to every subscriber of *topic*.

        Returns the number of handlers that completed without raising.
        """
        payload = payload or {}
        delivered = 0
        for handler in list(self._subscribers.get(topic, [])):
            try:
                outcome = handler(payload)
                if inspect.isawaitable(outcome):
                    await outcome
                delivered += 1
            except Exception:
                logger.exception("Subscriber for %s failed", topic.value)
        return delivered
