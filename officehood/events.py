"""
Callback registry for component notifications.

Listeners are called synchronously, in the order they subscribed. A failing
listener is logged and does not prevent delivery to the ones after it.
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """Named-event dispatcher with a defined delivery order."""

    def __init__(self, *names: str) -> None:
        """
        Initialize the emitter.

        Args:
            names: Event names this emitter publishes. Subscribing to or
                emitting any other name raises ValueError.
        """
        self._listeners: dict[str, list[Listener]] = {name: [] for name in names}

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._listeners)

    def _check(self, name: str) -> list[Listener]:
        try:
            return self._listeners[name]
        except KeyError:
            raise ValueError(f"Unknown event: {name}") from None

    def on(self, name: str, listener: Listener) -> Listener:
        """Subscribe a listener and return it, for a later off()."""
        self._check(name).append(listener)
        logger.debug(f"Subscribed {getattr(listener, '__name__', listener)!s} to {name}")
        return listener

    def off(self, name: str, listener: Listener) -> None:
        """Unsubscribe a listener. Unknown listeners are ignored."""
        listeners = self._check(name)
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, name: str, *args: Any) -> None:
        """Deliver an event to every listener of ``name``."""
        for listener in list(self._check(name)):
            try:
                listener(*args)
            except Exception as e:
                logger.error(
                    f"Error in listener {getattr(listener, '__name__', listener)!s} "
                    f"for event {name}: {e}",
                    exc_info=True,
                )
