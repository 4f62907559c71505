"""
Listener — one listening TCP socket and the daemon thread accepting on it.

The socket is bound in the constructor so the owner can register the
listener before any connection is accepted. Closing the listener is the only
way to stop its accept loop; that is the expected shutdown path, not an error.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Any, Callable

from netadapter import ACCEPT_POLL_INTERVAL, LISTEN_BACKLOG

log = logging.getLogger(__name__)


class Listener:
    """Accepts connections on ``address:port`` and hands each socket to ``on_accept``.

    Usage:
        listener = Listener("127.0.0.1", 9000, on_accept=handle_socket)
        listener.start()
        # ... later ...
        listener.close()
    """

    def __init__(
        self,
        address: str,
        port: int,
        on_accept: Callable[[socket.socket], Any],
        backlog: int = LISTEN_BACKLOG,
    ) -> None:
        self.address = address
        self.on_accept = on_accept

        family = socket.AF_INET6 if ":" in address else socket.AF_INET
        self.sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.sock.bind((address, port))
            self.sock.listen(backlog)
            # Bounded accept() so close() is noticed on every platform
            self.sock.settimeout(ACCEPT_POLL_INTERVAL)
        except (OSError, OverflowError):
            self.sock.close()
            raise

        self.port: int = self.sock.getsockname()[1]
        self.endpoint = f"{address}:{self.port}"
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the accept thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._accept_loop,
            name=f"netadapter-accept-{self.endpoint}",
            daemon=True,
        )
        self._thread.start()
        log.info("Listening on %s", self.endpoint)

    def close(self, timeout: float | None = 5.0) -> None:
        """Close the listening socket and wait for the accept thread to end."""
        self._stop_event.set()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # not all platforms allow shutdown on a listening socket
        try:
            self.sock.close()
        except OSError as e:
            log.debug("Error closing listener %s: %s", self.endpoint, e)

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _accept_loop(self) -> None:
        """Accept connections until the listening socket is closed."""
        while not self._stop_event.is_set():
            try:
                conn_sock, addr = self.sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._stop_event.is_set() or self.sock.fileno() == -1:
                    break
                # EMFILE, ECONNABORTED and the like: keep the port open
                log.warning("Accept failed on %s: %s", self.endpoint, e)
                self._stop_event.wait(ACCEPT_POLL_INTERVAL)
                continue

            conn_sock.settimeout(None)
            try:
                self.on_accept(conn_sock)
            except Exception:
                log.exception("Failed to set up connection from %s:%s", addr[0], addr[1])
                try:
                    conn_sock.close()
                except OSError:
                    pass

        log.info("The socket accepting connections on %s has been closed", self.endpoint)
