"""
TCP connection — owns a single socket to a remote endpoint.

Wraps a blocking socket with the length-framed wire protocol: blocking
send with an optional synchronous reply, an optional receive thread that
decodes frames and fires ``message_received``, and an idempotent close that
fires ``closed`` exactly once.

Exactly one reader per socket: the receive thread when the connection was
created in wait-for-data mode, otherwise whichever thread is inside a
``send(..., wait_for_reply=True)``.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Any

from netadapter import CONNECT_TIMEOUT, MAX_FRAME_SIZE, RECV_CHUNK_SIZE
from netadapter.events import Signal
from netadapter.protocol import Message, MalformedFrame, encode, read_message

log = logging.getLogger(__name__)

# Connection states
OPEN = "open"
CLOSING = "closing"
CLOSED = "closed"


class ConnectionError(Exception):
    """Error in a connection."""


class ConnectionUnusable(ConnectionError):
    """Operation attempted on a connection whose transport is not connected."""


class TransportError(ConnectionError):
    """A socket-level read, write or dial failed. Fatal to the connection."""


def _format_endpoint(endpoint: Any) -> str:
    if not endpoint:
        return ""
    return f"{endpoint[0]}:{endpoint[1]}"


class Connection:
    """A socket connection between a local and a remote endpoint.

    Usage:
        conn = Connection.connect(("10.0.0.2", 9000))
        reply = conn.send(Message(payload=b"PING"), wait_for_reply=True)
        conn.close()

    A connection created with ``wait_for_data=True`` reads frames on its own
    thread once ``start()`` is called; subscribe to ``message_received`` and
    ``closed`` before starting so no frame is missed.
    """

    def __init__(
        self,
        sock: socket.socket,
        wait_for_data: bool = False,
        max_frame_size: int = MAX_FRAME_SIZE,
    ) -> None:
        self.sock = sock
        self.wait_for_data = wait_for_data
        self.max_frame_size = max_frame_size

        self.message_received = Signal("message_received")
        self.closed = Signal("closed")

        self._state = OPEN
        self._state_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._closed_event = threading.Event()
        self._thread: threading.Thread | None = None

        self.peer_addr = ""
        try:
            self.peer_addr = _format_endpoint(sock.getpeername())
        except OSError:
            pass

    @classmethod
    def connect(
        cls,
        endpoint: tuple[str, int],
        wait_for_data: bool = False,
        timeout: float | None = CONNECT_TIMEOUT,
        max_frame_size: int = MAX_FRAME_SIZE,
    ) -> "Connection":
        """Dial a remote endpoint. Raises TransportError if it cannot connect."""
        host, port = endpoint
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            raise TransportError(f"Failed to connect to {host}:{port}: {e}") from e
        # The dial timeout must not leak into blocking reads
        sock.settimeout(None)
        return cls(sock, wait_for_data=wait_for_data, max_frame_size=max_frame_size)

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<Connection {self.peer_addr or 'unknown'} {self._state}>"

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_usable(self) -> bool:
        """True while open and the socket reports a connected peer."""
        if self._state != OPEN or self.sock.fileno() == -1:
            return False
        try:
            self.sock.getpeername()
        except OSError:
            return False
        return True

    @property
    def local_endpoint(self) -> tuple[str, int] | None:
        if not self.is_usable:
            return None
        try:
            return self.sock.getsockname()[:2]
        except OSError:
            return None

    @property
    def remote_endpoint(self) -> tuple[str, int] | None:
        if not self.is_usable:
            return None
        try:
            return self.sock.getpeername()[:2]
        except OSError:
            return None

    def start(self) -> None:
        """Start the receive thread. No-op unless in wait-for-data mode."""
        if not self.wait_for_data or self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._receive_loop,
            name=f"netadapter-recv-{self.peer_addr or 'unknown'}",
            daemon=True,
        )
        self._thread.start()

    def send(self, msg: Message, wait_for_reply: bool = False) -> Message | None:
        """Serialize and send a message over the wire.

        With ``wait_for_reply`` the calling thread blocks until exactly one
        frame is read back and returns its Message. There is no timeout;
        closing the connection from another thread unblocks the call with
        TransportError.
        """
        if not self.is_usable:
            raise ConnectionUnusable(
                f"Connection to {self.peer_addr or 'unknown'} is not usable"
            )
        if wait_for_reply and self.wait_for_data:
            raise ConnectionError(
                "Cannot wait for a reply: the receive thread owns this socket"
            )

        msg.waiting_for_reply = wait_for_reply
        if not msg.sender:
            local = self.local_endpoint
            if local:
                msg.sender = local[0]
        data = encode(msg, self.max_frame_size)

        # One frame (and its reply) at a time
        with self._send_lock:
            try:
                self.sock.sendall(data)
            except OSError as e:
                self.close()
                raise TransportError(f"Send failed: {e}") from e

            if not wait_for_reply:
                return None

            try:
                return read_message(self._recv_exactly, self.max_frame_size)
            except (TransportError, MalformedFrame):
                self.close()
                raise

    def _recv_exactly(self, n: int) -> bytes:
        """Read exactly n bytes, accumulating partial reads."""
        buf = bytearray()
        while len(buf) < n:
            try:
                chunk = self.sock.recv(min(n - len(buf), RECV_CHUNK_SIZE))
            except OSError as e:
                raise TransportError(f"Receive failed: {e}") from e
            if not chunk:
                raise TransportError("Peer disconnected")
            buf += chunk
        return bytes(buf)

    def _receive_loop(self) -> None:
        """Read frames until the socket fails, firing message_received for each."""
        try:
            while True:
                msg = read_message(self._recv_exactly, self.max_frame_size)
                self.message_received.emit(self, msg)
        except MalformedFrame as e:
            log.warning("Malformed frame from %s: %s", self.peer_addr or "unknown", e)
        except TransportError as e:
            if self._state == OPEN:
                log.info("Connection to %s lost: %s", self.peer_addr or "unknown", e)
            else:
                log.debug("Receive loop for %s stopped: %s", self.peer_addr or "unknown", e)
        except Exception:
            log.exception("Receive loop for %s failed", self.peer_addr or "unknown")
        finally:
            self.close()

    def close(self) -> None:
        """Shut down and close the socket, then fire ``closed``.

        Transport errors during shutdown are swallowed. Only the first call
        does anything; ``closed`` fires exactly once.
        """
        with self._state_lock:
            if self._state != OPEN:
                return
            self._state = CLOSING

        try:
            try:
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already disconnected
            self.sock.close()
        except OSError as e:
            log.debug("Error closing socket to %s: %s", self.peer_addr or "unknown", e)
        finally:
            with self._state_lock:
                self._state = CLOSED
            self._closed_event.set()
            log.info("Closed connection to %s", self.peer_addr or "unknown")
            self.closed.emit(self)

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Block until the connection is closed. Returns False on timeout."""
        return self._closed_event.wait(timeout)

    def join(self, timeout: float | None = None) -> None:
        """Wait for the receive thread to finish (no-op from the thread itself)."""
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
