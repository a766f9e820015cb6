"""Minimal observer registry used between the stream components."""

import inspect
import logging
from collections import defaultdict

logger = logging.getLogger(__name__)


class EventEmitter:
    """Named-event listener registry.

    Listeners run in registration order. A listener that raises is logged and
    skipped so one bad observer never breaks the write pipeline. ``error``
    events with no listener are logged instead of being dropped.
    """

    def __init__(self):
        self._listeners: dict[str, list] = defaultdict(list)

    def on(self, event: str, listener):
        self._listeners[event].append(listener)
        return listener

    def once(self, event: str, listener):
        def _wrapper(*args):
            self.off(event, _wrapper)
            return listener(*args)

        return self.on(event, _wrapper)

    def off(self, event: str, listener):
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args) -> list:
        """Call every listener synchronously. Returns the listener results."""
        listeners = list(self._listeners.get(event, ()))
        if event == "error" and not listeners:
            logger.error("Unhandled stream error: %s", args[0] if args else None)
            return []

        results = []
        for listener in listeners:
            try:
                results.append(listener(*args))
            except Exception:
                logger.exception("Listener for %r failed", event)
        return results

    async def emit_async(self, event: str, *args):
        """Emit, then await every listener result that is awaitable."""
        for result in self.emit(event, *args):
            if inspect.isawaitable(result):
                try:
                    await result
                except Exception:
                    logger.exception("Async listener for %r failed", event)
