"""
Network adapter — one instance per local network interface.

Owns the listening ports of an address, the connections they accept
(inbound) and the connections dialled through it (outbound), and republishes
per-connection events at adapter scope.

Threads:
  - one accept thread per listening port (see listener.py)
  - one receive thread per inbound connection, and per outbound connection
    dialled with ``wait_for_data=True``
  - everything else runs on the caller's thread

The listener table and both connection sets are guarded by one lock. Closing
sockets always happens outside it: close notifications re-enter the adapter
from other threads.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from typing import Any

from netadapter import CONNECT_TIMEOUT, LISTEN_BACKLOG, MAX_FRAME_SIZE
from netadapter.connection import Connection
from netadapter.events import Signal
from netadapter.listener import Listener
from netadapter.protocol import Message

log = logging.getLogger(__name__)

# How long shutdown() waits for each receive thread to finish
_JOIN_TIMEOUT = 2.0


class NetworkAdapterError(Exception):
    """Error in network adapter operations."""


class PortAlreadyListening(NetworkAdapterError):
    """The adapter already listens on the requested port."""


class PortNotListening(NetworkAdapterError):
    """The adapter does not listen on the requested port."""


class NetworkAdapter:
    """Listens on ports of one address, tracks connections, fans out their events.

    Usage:
        adapter = NetworkAdapter("127.0.0.1")
        adapter.package_received.connect(handler)  # handler(connection, message)
        adapter.start_listening(9000)
        conn = adapter.connect(("10.0.0.2", 9000))
        reply = adapter.send(Message(payload=b"PING"), conn, wait_for_reply=True)
        adapter.shutdown()

    Use one instance per physical interface the application manages, and
    call ``shutdown()`` (or use it as a context manager) from the
    application's own teardown.
    """

    def __init__(
        self,
        address: str,
        backlog: int = LISTEN_BACKLOG,
        max_frame_size: int = MAX_FRAME_SIZE,
        connect_timeout: float | None = CONNECT_TIMEOUT,
    ) -> None:
        self._address = str(ipaddress.ip_address(address))
        self.backlog = backlog
        self.max_frame_size = max_frame_size
        self.connect_timeout = connect_timeout

        self.package_received = Signal("package_received")
        self.connection_accepted = Signal("connection_accepted")
        self.connection_closed = Signal("connection_closed")

        self._lock = threading.RLock()
        self._listeners: dict[int, Listener] = {}
        self._inbound: set[Connection] = set()
        self._outbound: set[Connection] = set()
        self._shut_down = False

    def __enter__(self) -> "NetworkAdapter":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        return f"<NetworkAdapter {self._address} ports={self.listening_ports}>"

    @property
    def address(self) -> str:
        return self._address

    @property
    def listening_ports(self) -> list[int]:
        with self._lock:
            return sorted(self._listeners)

    @property
    def inbound_connections(self) -> list[Connection]:
        with self._lock:
            return list(self._inbound)

    @property
    def outbound_connections(self) -> list[Connection]:
        with self._lock:
            return list(self._outbound)

    @property
    def connections(self) -> list[Connection]:
        with self._lock:
            return list(self._inbound) + list(self._outbound)

    def _check_running(self) -> None:
        if self._shut_down:
            raise NetworkAdapterError(f"Network adapter {self._address} has been shut down")

    def _track(self, conn: Connection, conns: set[Connection]) -> bool:
        """Add ``conn`` to ``conns`` unless the adapter is shut down.

        A refused connection is closed without reaching ``connection_closed``.
        """
        with self._lock:
            if not self._shut_down:
                conns.add(conn)
                return True
        conn.closed.disconnect(self._on_connection_closed)
        conn.close()
        return False

    # --- Listening ---

    def start_listening(self, port: int) -> int:
        """Bind a listening socket on ``port`` and start accepting on it.

        Port 0 binds an ephemeral port. Returns the bound port.
        Raises PortAlreadyListening if the port is already registered, and
        NetworkAdapterError if the port is out of range or cannot be bound.
        """
        if not 0 <= port <= 65535:
            raise NetworkAdapterError(f"Port out of range: {port}")
        with self._lock:
            self._check_running()
            if port in self._listeners:
                raise PortAlreadyListening(
                    f"The network adapter already listens to port {port}"
                )
            try:
                listener = Listener(
                    self._address, port,
                    on_accept=self._handle_accepted,
                    backlog=self.backlog,
                )
            except (OSError, OverflowError) as e:
                raise NetworkAdapterError(
                    f"Accepting connections failed on {self._address}:{port}: {e}"
                ) from e
            # Registered before the accept thread exists
            self._listeners[listener.port] = listener

        listener.start()
        return listener.port

    def stop_listening(self, port: int) -> None:
        """Close the listening socket on ``port``, ending its accept loop.

        Raises PortNotListening if the adapter does not listen on the port.
        """
        with self._lock:
            listener = self._listeners.pop(port, None)
        if listener is None:
            raise PortNotListening(
                f"The network adapter is not listening to port {port}"
            )
        listener.close()
        log.info("Stopped listening on %s", listener.endpoint)

    def _handle_accepted(self, sock: socket.socket) -> None:
        """Called on a listener's accept thread for each inbound socket."""
        conn = Connection(sock, wait_for_data=True, max_frame_size=self.max_frame_size)
        conn.message_received.connect(self._on_message_received)
        conn.closed.connect(self._on_connection_closed)

        if not self._track(conn, self._inbound):
            log.info("Refused connection from %s: adapter shut down", conn.peer_addr or "unknown")
            return
        log.info("Accepted connection from %s", conn.peer_addr or "unknown")

        self.connection_accepted.emit(conn)
        conn.start()

    # --- Outbound ---

    def connect(
        self,
        endpoint: tuple[str, int],
        wait_for_data: bool = False,
    ) -> Connection:
        """Establish a new connection to a remote endpoint.

        By default the connection has no receive thread: replies are read by
        ``send(..., wait_for_reply=True)``. With ``wait_for_data=True`` every
        frame the peer pushes is re-emitted as ``package_received``.
        Raises TransportError if the endpoint cannot be reached.
        """
        with self._lock:
            self._check_running()
        conn = Connection.connect(
            endpoint,
            wait_for_data=wait_for_data,
            timeout=self.connect_timeout,
            max_frame_size=self.max_frame_size,
        )
        if wait_for_data:
            conn.message_received.connect(self._on_message_received)
        conn.closed.connect(self._on_connection_closed)

        if not self._track(conn, self._outbound):
            raise NetworkAdapterError(f"Network adapter {self._address} has been shut down")
        log.info("Connected to %s", conn.peer_addr or f"{endpoint[0]}:{endpoint[1]}")

        conn.start()
        return conn

    def send(
        self,
        msg: Message,
        connection: Connection,
        wait_for_reply: bool = False,
    ) -> Message | None:
        """Send a package to the remote end of ``connection``."""
        return connection.send(msg, wait_for_reply)

    # --- Connection events ---

    def _on_message_received(self, connection: Connection, msg: Message) -> None:
        self.package_received.emit(connection, msg)

    def _on_connection_closed(self, connection: Connection) -> None:
        with self._lock:
            if connection in self._inbound:
                self._inbound.discard(connection)
            else:
                self._outbound.discard(connection)
        log.debug("Connection to %s removed", connection.peer_addr or "unknown")
        self.connection_closed.emit(connection)

    # --- Shutdown ---

    def shutdown(self) -> None:
        """Stop every listener and close every connection.

        The adapter cannot listen or connect again afterwards. Connections
        still being dialled or accepted when this runs are closed as soon
        as they complete.
        """
        with self._lock:
            self._shut_down = True

        for port in self.listening_ports:
            try:
                self.stop_listening(port)
            except PortNotListening:
                pass  # stopped concurrently

        connections = self.connections
        for conn in connections:
            conn.close()
        for conn in connections:
            conn.join(_JOIN_TIMEOUT)

        log.info("Network adapter %s shut down", self._address)
