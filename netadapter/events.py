"""
Signals — synchronous observer lists used for connection and adapter events.

A handler runs inline on the thread that emits: the accept thread for
``connection_accepted``, the receive thread for ``message_received``, and
whichever thread closed the connection for ``closed``. A slow handler
therefore stalls that connection's I/O.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

log = logging.getLogger(__name__)

Handler = Callable[..., Any]


class Signal:
    """A named list of subscriber callbacks.

    Usage:
        received = Signal("message_received")

        @received.connect
        def on_message(connection, message):
            ...

        received.emit(conn, msg)
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Handler] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def __repr__(self) -> str:
        return f"Signal({self.name!r}, handlers={len(self)})"

    def connect(self, handler: Handler) -> Handler:
        """Subscribe a handler. Returns it so this can be used as a decorator."""
        with self._lock:
            self._handlers.append(handler)
        return handler

    def disconnect(self, handler: Handler) -> None:
        """Unsubscribe a handler. Unknown handlers are ignored."""
        with self._lock:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

    def emit(self, *args: Any) -> None:
        """Call every handler with ``args``.

        A handler that raises is logged and skipped; the remaining handlers
        still run and the emitting loop keeps going.
        """
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                log.exception("Handler error in %s signal", self.name)
