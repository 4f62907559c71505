"""
Tests for NetworkAdapter — listeners, accept loops, connection bookkeeping,
event fan-out, and shutdown. Everything runs over real loopback sockets.
"""

from __future__ import annotations

import errno
import random
import socket
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from netadapter.adapter import (
    NetworkAdapter, NetworkAdapterError, PortAlreadyListening, PortNotListening,
)
from netadapter.connection import CLOSED, Connection, TransportError
from netadapter.listener import Listener
from netadapter.protocol import Message, encode


@pytest.fixture
def client():
    """A second adapter used to dial the one under test."""
    a = NetworkAdapter("127.0.0.1")
    yield a
    a.shutdown()


def _pong_handler(connection: Connection, msg: Message) -> None:
    if msg.waiting_for_reply and msg.payload == b"PING":
        connection.send(Message(payload=b"PONG", sender="127.0.0.1"))


# ---------------------------------------------------------------------------
# TestListening
# ---------------------------------------------------------------------------

class TestListening:
    """Tests for start_listening / stop_listening."""

    def test_invalid_address(self):
        with pytest.raises(ValueError):
            NetworkAdapter("not-an-address")

    def test_start_listening_returns_bound_port(self, adapter):
        port = adapter.start_listening(0)
        assert port > 0
        assert adapter.listening_ports == [port]

    def test_listening_ports_sorted(self, adapter):
        ports = [adapter.start_listening(0) for _ in range(3)]
        assert adapter.listening_ports == sorted(ports)

    def test_start_listening_twice_fails(self, adapter, wait_for):
        port = adapter.start_listening(0)

        with pytest.raises(PortAlreadyListening):
            adapter.start_listening(port)

        # The first listener is still accepting
        accepted = MagicMock()
        adapter.connection_accepted.connect(accepted)
        with socket.create_connection(("127.0.0.1", port)):
            assert wait_for(lambda: accepted.call_count == 1)
        assert adapter.listening_ports == [port]

    def test_stop_listening_unknown_port(self, adapter):
        with pytest.raises(PortNotListening):
            adapter.stop_listening(65000)

    def test_stop_listening_refuses_new_connections(self, adapter):
        port = adapter.start_listening(0)
        adapter.stop_listening(port)

        assert adapter.listening_ports == []
        with pytest.raises(TransportError):
            Connection.connect(("127.0.0.1", port), timeout=2.0)

    def test_stop_listening_twice_fails(self, adapter):
        port = adapter.start_listening(0)
        adapter.stop_listening(port)
        with pytest.raises(PortNotListening):
            adapter.stop_listening(port)

    def test_port_can_be_reused_after_stop(self, adapter):
        port = adapter.start_listening(0)
        adapter.stop_listening(port)
        assert adapter.start_listening(port) == port

    def test_bind_failure_raises(self, adapter):
        other = socket.create_server(("127.0.0.1", 0))
        try:
            with pytest.raises(NetworkAdapterError, match="Accepting connections failed"):
                adapter.start_listening(other.getsockname()[1])
        finally:
            other.close()
        assert adapter.listening_ports == []

    @pytest.mark.parametrize("port", [-1, 70000])
    def test_port_out_of_range(self, adapter, port):
        with pytest.raises(NetworkAdapterError, match="out of range"):
            adapter.start_listening(port)
        assert adapter.listening_ports == []

    def test_listener_closes_socket_on_bind_overflow(self):
        created = []
        real_socket = socket.socket

        def make_socket(*args):
            sock = real_socket(*args)
            created.append(sock)
            return sock

        with patch("netadapter.listener.socket.socket", side_effect=make_socket):
            with pytest.raises(OverflowError):
                Listener("127.0.0.1", 70000, on_accept=MagicMock())
        assert created[0].fileno() == -1


# ---------------------------------------------------------------------------
# TestAccept
# ---------------------------------------------------------------------------

class TestAccept:
    """Tests for accepted connections and event republishing."""

    def test_connection_accepted_event(self, adapter, wait_for):
        port = adapter.start_listening(0)
        accepted = []
        threads = []

        def on_accepted(conn):
            accepted.append(conn)
            threads.append(threading.current_thread().name)

        adapter.connection_accepted.connect(on_accepted)

        with socket.create_connection(("127.0.0.1", port)) as raw:
            assert wait_for(lambda: len(accepted) == 1)
            conn = accepted[0]
            assert conn in adapter.inbound_connections
            assert conn.remote_endpoint == raw.getsockname()
            assert threads[0].startswith("netadapter-accept-")

    def test_package_received_carries_connection(self, adapter, wait_for):
        port = adapter.start_listening(0)
        received = []
        adapter.package_received.connect(lambda c, m: received.append((c, m)))

        with socket.create_connection(("127.0.0.1", port)) as raw:
            raw.sendall(encode(Message(payload=b"hello", sender="10.0.0.7")))
            assert wait_for(lambda: received)

        conn, msg = received[0]
        assert conn in adapter.inbound_connections or conn.state == CLOSED
        assert msg.payload == b"hello"
        assert msg.sender == "10.0.0.7"
        assert msg.waiting_for_reply is False

    def test_ping_pong(self, adapter, client):
        port = adapter.start_listening(0)
        received = []
        adapter.package_received.connect(lambda c, m: received.append(m))
        adapter.package_received.connect(_pong_handler)

        conn = client.connect(("127.0.0.1", port))
        reply = client.send(Message(payload=b"PING"), conn, wait_for_reply=True)

        assert reply.payload == b"PONG"
        assert received[0].payload == b"PING"
        assert received[0].waiting_for_reply is True
        assert received[0].sender == "127.0.0.1"

    def test_handler_error_is_contained(self, adapter, client, wait_for):
        port = adapter.start_listening(0)

        def failing(c, m):
            raise RuntimeError("handler bug")

        adapter.package_received.connect(failing)
        adapter.package_received.connect(_pong_handler)

        conn = client.connect(("127.0.0.1", port))
        reply = client.send(Message(payload=b"PING"), conn, wait_for_reply=True)

        assert reply.payload == b"PONG"
        assert len(adapter.inbound_connections) == 1

    def test_malformed_frame_closes_inbound(self, adapter, wait_for):
        port = adapter.start_listening(0)
        closed = MagicMock()
        adapter.connection_closed.connect(closed)
        accepted = []
        adapter.connection_accepted.connect(accepted.append)

        with socket.create_connection(("127.0.0.1", port)) as raw:
            assert wait_for(lambda: accepted)
            raw.sendall(b"BADLEN????" + b"abcd")
            assert wait_for(lambda: closed.call_count == 1)

        closed.assert_called_once_with(accepted[0])
        assert accepted[0].state == CLOSED
        assert adapter.inbound_connections == []

    def test_concurrent_connections_bookkeeping(self, adapter, wait_for):
        port = adapter.start_listening(0)
        n = 10
        closed = []
        lock = threading.Lock()

        def on_closed(conn):
            with lock:
                closed.append(conn)

        adapter.connection_closed.connect(on_closed)

        socks: list[socket.socket] = []

        def dial():
            s = socket.create_connection(("127.0.0.1", port))
            with lock:
                socks.append(s)

        dialers = [threading.Thread(target=dial) for _ in range(n)]
        for t in dialers:
            t.start()
        for t in dialers:
            t.join(5)

        assert wait_for(lambda: len(adapter.inbound_connections) == n)

        random.shuffle(socks)
        closers = [threading.Thread(target=s.close) for s in socks]
        for t in closers:
            t.start()
        for t in closers:
            t.join(5)

        assert wait_for(lambda: len(closed) == n)
        assert adapter.inbound_connections == []
        assert len(set(map(id, closed))) == n


# ---------------------------------------------------------------------------
# TestOutbound
# ---------------------------------------------------------------------------

class TestOutbound:
    """Tests for connect / send and outbound bookkeeping."""

    def test_connect_tracks_outbound(self, adapter, client):
        port = adapter.start_listening(0)
        conn = client.connect(("127.0.0.1", port))

        assert client.outbound_connections == [conn]
        assert client.inbound_connections == []
        assert conn.wait_for_data is False
        assert conn._thread is None

    def test_close_removes_outbound_and_notifies(self, adapter, client):
        port = adapter.start_listening(0)
        closed = MagicMock()
        client.connection_closed.connect(closed)
        conn = client.connect(("127.0.0.1", port))

        conn.close()
        conn.close()

        closed.assert_called_once_with(conn)
        assert client.outbound_connections == []

    def test_remote_close_seen_by_server(self, adapter, client, wait_for):
        port = adapter.start_listening(0)
        closed = MagicMock()
        adapter.connection_closed.connect(closed)
        conn = client.connect(("127.0.0.1", port))
        assert wait_for(lambda: len(adapter.inbound_connections) == 1)

        conn.close()

        assert wait_for(lambda: closed.call_count == 1)
        assert adapter.inbound_connections == []

    def test_connect_refused(self, client):
        probe = socket.create_server(("127.0.0.1", 0))
        port = probe.getsockname()[1]
        probe.close()

        with pytest.raises(TransportError):
            client.connect(("127.0.0.1", port))
        assert client.outbound_connections == []

    def test_outbound_wait_for_data_receives_pushes(self, adapter, client, wait_for):
        port = adapter.start_listening(0)
        adapter.connection_accepted.connect(
            lambda c: c.send(Message(payload=b"welcome", sender="127.0.0.1"))
        )
        received = []
        client.package_received.connect(lambda c, m: received.append((c, m.payload)))

        conn = client.connect(("127.0.0.1", port), wait_for_data=True)

        assert wait_for(lambda: received)
        assert received == [(conn, b"welcome")]

    def test_send_is_pass_through(self, adapter):
        conn = MagicMock()
        msg = Message(payload=b"x")
        conn.send.return_value = "reply"

        assert adapter.send(msg, conn, wait_for_reply=True) == "reply"
        conn.send.assert_called_once_with(msg, True)


# ---------------------------------------------------------------------------
# TestShutdown
# ---------------------------------------------------------------------------

class TestShutdown:
    """Tests for shutdown and the context manager."""

    def test_shutdown_closes_everything(self, adapter, client, wait_for):
        port_a = adapter.start_listening(0)
        port_b = adapter.start_listening(0)
        closed = []
        adapter.connection_closed.connect(closed.append)

        client.connect(("127.0.0.1", port_a))
        client.connect(("127.0.0.1", port_b))
        assert wait_for(lambda: len(adapter.inbound_connections) == 2)

        # an outbound connection owned by the adapter under test
        other = NetworkAdapter("127.0.0.1")
        try:
            other_port = other.start_listening(0)
            out = adapter.connect(("127.0.0.1", other_port))

            adapter.shutdown()

            assert adapter.listening_ports == []
            assert adapter.connections == []
            assert out.state == CLOSED
            assert len(closed) == 3
        finally:
            other.shutdown()

        with pytest.raises(TransportError):
            Connection.connect(("127.0.0.1", port_a), timeout=2.0)

    def test_shutdown_is_idempotent(self, adapter):
        adapter.start_listening(0)
        adapter.shutdown()
        adapter.shutdown()
        assert adapter.listening_ports == []

    def test_context_manager(self):
        with NetworkAdapter("127.0.0.1") as a:
            port = a.start_listening(0)
            assert a.listening_ports == [port]
        assert a.listening_ports == []

    def test_no_listen_or_connect_after_shutdown(self, adapter, client):
        port = client.start_listening(0)
        adapter.shutdown()

        with pytest.raises(NetworkAdapterError, match="has been shut down"):
            adapter.start_listening(0)
        with pytest.raises(NetworkAdapterError, match="has been shut down"):
            adapter.connect(("127.0.0.1", port))
        assert adapter.connections == []

    def test_connect_completing_during_shutdown_is_closed(self, adapter):
        closed = MagicMock()
        adapter.connection_closed.connect(closed)
        dialled = []
        peers = []

        def dial(endpoint, **kwargs):
            # shutdown runs while the dial is still in flight
            adapter.shutdown()
            local, remote = socket.socketpair()
            peers.append(remote)
            conn = Connection(local, wait_for_data=kwargs["wait_for_data"])
            dialled.append(conn)
            return conn

        with patch.object(Connection, "connect", side_effect=dial):
            with pytest.raises(NetworkAdapterError, match="has been shut down"):
                adapter.connect(("127.0.0.1", 9))

        assert dialled[0].state == CLOSED
        assert adapter.outbound_connections == []
        closed.assert_not_called()
        peers[0].close()


# ---------------------------------------------------------------------------
# TestAcceptLoop
# ---------------------------------------------------------------------------

class TestAcceptLoop:
    """Tests for Listener error handling."""

    def test_transient_accept_error_keeps_listening(self, wait_for):
        on_accept = MagicMock()
        listener = Listener("127.0.0.1", 0, on_accept=on_accept)
        listener.sock.close()

        accepted_sock = MagicMock()
        results = iter([
            OSError(errno.EMFILE, "Too many open files"),
            (accepted_sock, ("127.0.0.1", 40000)),
        ])

        def accept():
            try:
                item = next(results)
            except StopIteration:
                time.sleep(0.01)
                raise socket.timeout()
            if isinstance(item, Exception):
                raise item
            return item

        listener.sock = MagicMock()
        listener.sock.accept.side_effect = accept
        listener.start()
        try:
            assert wait_for(lambda: on_accept.call_count == 1)
            on_accept.assert_called_once_with(accepted_sock)
            assert listener.is_running
        finally:
            listener.close()
        assert not listener.is_running

    def test_closed_socket_ends_loop(self, wait_for):
        listener = Listener("127.0.0.1", 0, on_accept=MagicMock())
        listener.start()
        listener.close()
        assert wait_for(lambda: not listener.is_running)
