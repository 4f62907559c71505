"""
netadapter CLI — run an adapter node or exchange a single package.

Commands:
  netadapter node start   - Start an adapter node (foreground)
  netadapter node config  - Show the effective node configuration
  netadapter send         - Send one package to HOST:PORT, optionally wait for the reply
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from netadapter import CONNECT_TIMEOUT, __version__


def _parse_endpoint(value: str) -> tuple[str, int]:
    """Parse HOST:PORT (IPv6 as [ADDR]:PORT)."""
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    port_num = int(port)
    if not 0 < port_num <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {port_num}")
    return host, port_num


def cmd_node_start(args: argparse.Namespace) -> None:
    """Start an adapter node in foreground mode."""
    from netadapter.server import run_node

    try:
        run_node(
            host=getattr(args, "host", None),
            ports=getattr(args, "port", None),
            config_path=Path(args.config) if getattr(args, "config", None) else None,
            echo=False if getattr(args, "no_echo", False) else None,
        )
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_node_config(args: argparse.Namespace) -> None:
    """Print the effective node configuration."""
    from netadapter.config import load_config

    config_path = Path(args.config) if getattr(args, "config", None) else None
    print(json.dumps(load_config(config_path), indent=2))


def cmd_send(args: argparse.Namespace) -> None:
    """Send one package and print the reply, if any."""
    from netadapter.connection import Connection, ConnectionError as ConnError
    from netadapter.protocol import Message, ProtocolError

    msg = Message(payload=args.payload, sender=args.sender or "")
    try:
        with Connection.connect(args.endpoint, timeout=args.timeout) as conn:
            reply = conn.send(msg, wait_for_reply=args.wait)
    except (ConnError, ProtocolError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    host, port = args.endpoint
    print(f"Sent {len(msg.payload)} bytes to {host}:{port}")
    if reply is not None:
        try:
            text = reply.text
        except UnicodeDecodeError:
            text = reply.payload.hex()
        print(f"  reply from {reply.sender}: {text}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netadapter",
        description="Peer-to-peer package exchange over TCP",
    )
    parser.add_argument("--version", action="version", version=f"netadapter {__version__}")
    sub = parser.add_subparsers(dest="command")

    # node
    p_node = sub.add_parser("node", help="Adapter node management")
    node_sub = p_node.add_subparsers(dest="node_command")

    p_ns = node_sub.add_parser("start", help="Start an adapter node (foreground)")
    p_ns.add_argument("--host", help="Local address to listen on (default from config)")
    p_ns.add_argument(
        "--port", type=int, action="append",
        help="Port to listen on; repeat for several (default from config)",
    )
    p_ns.add_argument("--config", help="Path to node.toml")
    p_ns.add_argument("--no-echo", action="store_true", help="Do not answer waiting senders")

    p_nc = node_sub.add_parser("config", help="Show effective node configuration")
    p_nc.add_argument("--config", help="Path to node.toml")

    # send
    p_send = sub.add_parser("send", help="Send one package to a remote adapter")
    p_send.add_argument("endpoint", type=_parse_endpoint, help="HOST:PORT of the remote adapter")
    p_send.add_argument("payload", help="Payload text")
    p_send.add_argument("--wait", action="store_true", help="Block for one reply package")
    p_send.add_argument("--sender", help="Sender address (default: local address)")
    p_send.add_argument(
        "--timeout", type=float, default=CONNECT_TIMEOUT,
        help=f"Connect timeout in seconds (default {CONNECT_TIMEOUT})",
    )

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        print(f"netadapter {__version__}")
        print()
        print("Usage:")
        print("  netadapter node start [--host ADDR] [--port N ...] [--config FILE]")
        print("  netadapter node config [--config FILE]")
        print("  netadapter send HOST:PORT PAYLOAD [--wait]")
        print()
        print("Run 'netadapter <command> --help' for details on any command.")
        sys.exit(0)

    if args.command == "node":
        node_commands = {
            "start": cmd_node_start,
            "config": cmd_node_config,
        }
        nc = getattr(args, "node_command", None)
        if not nc:
            print("Usage: netadapter node {start|config}")
            sys.exit(0)
        node_commands[nc](args)
        return

    commands = {
        "send": cmd_send,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
