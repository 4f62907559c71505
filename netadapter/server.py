"""
Adapter node — foreground process that embeds a NetworkAdapter, listens on
the configured ports and logs (and optionally echoes) every package.

Start with: ``netadapter node start``
"""

from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from typing import Any

from netadapter.adapter import NetworkAdapter
from netadapter.config import load_config
from netadapter.connection import Connection, ConnectionError as ConnError
from netadapter.protocol import Message, ProtocolError

log = logging.getLogger(__name__)


class AdapterNode:
    """A NetworkAdapter wired to a package handler and to process signals.

    Usage:
        node = AdapterNode(host="0.0.0.0", ports=[9000])
        node.run()  # blocks until SIGINT/SIGTERM or stop()
    """

    def __init__(
        self,
        host: str | None = None,
        ports: list[int] | None = None,
        config_path: Path | None = None,
        echo: bool | None = None,
    ) -> None:
        self._config = load_config(config_path)
        self.host = host or self._config["host"]
        self.ports = list(ports) if ports else list(self._config["ports"])
        self.echo = self._config["echo"] if echo is None else echo

        self.adapter = NetworkAdapter(
            self.host,
            backlog=self._config["backlog"],
            max_frame_size=self._config["max_frame_size"],
            connect_timeout=self._config["connect_timeout"],
        )
        self.adapter.package_received.connect(self._handle_package)
        self.adapter.connection_accepted.connect(self._handle_accepted)
        self.adapter.connection_closed.connect(self._handle_closed)

        self.packages_received = 0
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start listening on every configured port."""
        log.info("Starting adapter node on %s", self.host)
        bound = []
        try:
            for port in self.ports:
                bound.append(self.adapter.start_listening(port))
        except Exception:
            self.adapter.shutdown()
            raise
        self.ports = bound

    def stop(self) -> None:
        """Gracefully shut down the node."""
        log.info("Shutting down adapter node...")
        self._shutdown_event.set()
        self.adapter.shutdown()
        log.info("Adapter node stopped")

    def run(self) -> None:
        """Start, then block until a shutdown signal or stop()."""
        self.start()

        # Signal handlers can only be installed from the main thread
        if threading.current_thread() is threading.main_thread():
            for sig_name in ("SIGINT", "SIGTERM"):
                sig = getattr(signal, sig_name, None)
                if sig:
                    signal.signal(sig, self._signal_shutdown)

        print("Adapter node started")
        print(f"  listen: {', '.join(f'{self.host}:{p}' for p in self.ports)}")
        print(f"  echo:   {'on' if self.echo else 'off'}")
        print()

        try:
            while not self._shutdown_event.wait(0.5):
                pass
        finally:
            self.stop()
            print("\nAdapter node stopped.")

    def _signal_shutdown(self, signum: int, frame: Any) -> None:
        log.info("Received shutdown signal")
        self._shutdown_event.set()

    def _handle_accepted(self, connection: Connection) -> None:
        log.info("Peer %s connected", connection.peer_addr)

    def _handle_closed(self, connection: Connection) -> None:
        log.info("Peer %s disconnected", connection.peer_addr)

    def _handle_package(self, connection: Connection, msg: Message) -> None:
        self.packages_received += 1
        log.info(
            "Package from %s via %s (%d bytes, waiting=%s)",
            msg.sender, connection.peer_addr, len(msg.payload), msg.waiting_for_reply,
        )
        if not (self.echo and msg.waiting_for_reply):
            return
        try:
            connection.send(Message(payload=msg.payload, sender=self.adapter.address))
        except (ConnError, ProtocolError) as e:
            log.warning("Failed to echo to %s: %s", connection.peer_addr, e)

    def status(self) -> dict[str, Any]:
        """Return current node status."""
        return {
            "host": self.host,
            "ports": self.adapter.listening_ports,
            "inbound": len(self.adapter.inbound_connections),
            "outbound": len(self.adapter.outbound_connections),
            "packages_received": self.packages_received,
            "echo": self.echo,
        }


def run_node(
    host: str | None = None,
    ports: list[int] | None = None,
    config_path: Path | None = None,
    echo: bool | None = None,
) -> None:
    """Entry point for ``netadapter node start``. Runs the node in foreground."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    node = AdapterNode(host=host, ports=ports, config_path=config_path, echo=echo)

    try:
        node.run()
    except KeyboardInterrupt:
        print("\nShutting down...")
