"""
Upward event notifications for the presentation layer.

Listeners are plain callables. A listener returning an awaitable has it
scheduled on the running loop; outside a loop it is dropped and logged.
A failing listener is logged and never disturbs the engine or the other
listeners.
"""

import asyncio
import inspect
from typing import Any, Callable

import structlog

from .session.models import LinkSession, PaymentMethod

logger = structlog.get_logger(__name__)

StatusListener = Callable[[LinkSession], Any]
MethodsListener = Callable[[list[PaymentMethod], LinkSession], Any]


class LinkEventHub:
    """Fan-out of session status changes and newly detected methods."""

    def __init__(self):
        self.logger = logger
        self._status_listeners: list[StatusListener] = []
        self._method_listeners: list[MethodsListener] = []
        self._pending: set[asyncio.Future] = set()

    def on_session_status_changed(self, listener: StatusListener) -> Callable[[], None]:
        """Subscribe to status changes. Returns an unsubscribe callable."""
        self._status_listeners.append(listener)
        return lambda: self._discard(self._status_listeners, listener)

    def on_new_method_detected(self, listener: MethodsListener) -> Callable[[], None]:
        """Subscribe to confirmation events. Returns an unsubscribe callable."""
        self._method_listeners.append(listener)
        return lambda: self._discard(self._method_listeners, listener)

    def emit_status_changed(self, session: LinkSession) -> None:
        for listener in list(self._status_listeners):
            self._invoke(listener, "session_status_changed", session)

    def emit_new_method_detected(self, methods: list[PaymentMethod], session: LinkSession) -> None:
        for listener in list(self._method_listeners):
            self._invoke(listener, "new_method_detected", methods, session)

    async def drain(self) -> None:
        """Wait for asynchronous listeners scheduled so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _invoke(self, listener: Callable, event_name: str, *args: Any) -> None:
        try:
            result = listener(*args)
        except Exception as e:
            self.logger.error(
                "Event listener failed",
                event_name=event_name,
                listener=getattr(listener, "__qualname__", repr(listener)),
                error=str(e)
            )
            return

        if inspect.isawaitable(result):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self.logger.error(
                    "Async event listener called outside the event loop",
                    event_name=event_name,
                    listener=getattr(listener, "__qualname__", repr(listener))
                )
                if inspect.iscoroutine(result):
                    result.close()
                return
            future = asyncio.ensure_future(result, loop=loop)
            self._pending.add(future)
            future.add_done_callback(self._listener_done)

    def _listener_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            self.logger.error("Async event listener failed", error=str(future.exception()))

    @staticmethod
    def _discard(listeners: list, listener: Callable) -> None:
        if listener in listeners:
            listeners.remove(listener)
