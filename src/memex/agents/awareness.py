"""Awareness agent - delivers proactive notifications or queues them for later."""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from memex.core.logging import get_logger

logger = get_logger("agents.awareness")


@dataclass
class Notification:
    """A message for the user that nobody asked for yet."""

    message: str
    source: str = "insight"
    created_at: datetime = field(default_factory=datetime.now)


class AwarenessAgent:
    """Pushes notifications through a callback; undeliverable ones wait in a queue."""

    def __init__(
        self,
        notify_callback: Callable[[Notification], Awaitable[None] | None] | None = None,
        max_pending: int = 100,
    ):
        self._notify_callback = notify_callback
        self._pending: list[Notification] = []
        self._max_pending = max_pending

    def set_callback(
        self, callback: Callable[[Notification], Awaitable[None] | None] | None
    ) -> None:
        self._notify_callback = callback

    async def notify(self, message: str, source: str = "insight") -> bool:
        """Send a notification. Returns False when it was queued instead."""
        notification = Notification(message=message, source=source)
        if self._notify_callback:
            try:
                result = self._notify_callback(notification)
                if inspect.isawaitable(result):
                    await result
                return True
            except Exception as e:
                logger.warning(f"Notification callback failed: {e}")
        self._queue(notification)
        return False

    def _queue(self, notification: Notification) -> None:
        self._pending.append(notification)
        if len(self._pending) > self._max_pending:
            dropped = self._pending.pop(0)
            logger.debug(f"Dropped oldest pending notification: {dropped.message[:50]}")

    def get_pending_notifications(self) -> list[Notification]:
        """Get and clear pending notifications."""
        pending = self._pending.copy()
        self._pending.clear()
        return pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)
