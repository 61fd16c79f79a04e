"""Generic host lifecycle signal."""

from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)


class LifecycleSignal:
    """
    Subscribable "host resumed foreground" notification.

    Host integrations call ``emit_resumed`` from whatever lifecycle API the
    platform offers; the engine only needs to know that a resume happened.
    """

    def __init__(self):
        self._subscribers: list[Callable[[], Any]] = []

    def subscribe(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Register a resume callback. Returns an unsubscribe callable."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit_resumed(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception as e:
                logger.error("Resume subscriber failed", error=str(e))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
