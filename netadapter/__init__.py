"""
netadapter — peer-to-peer package exchange over plain TCP.

Architecture:
    protocol    — Message model, 10-byte length framing, JSON body codec
    events      — Signal: synchronous observer lists
    connection  — one socket, its receive thread, blocking send/reply
    listener    — one listening socket and its accept thread
    adapter     — NetworkAdapter: listeners + inbound/outbound connections
    config      — TOML node configuration
    server      — foreground echo node embedding an adapter
    cli         — ``netadapter`` command line
"""

__version__ = "0.1.0"

# Wire format
LENGTH_FIELD_SIZE = 10  # ASCII decimal, NUL padded on the right
MAX_FRAME_SIZE = 2 * 1024 * 1024  # 2MB

# Socket I/O
RECV_CHUNK_SIZE = 4096
LISTEN_BACKLOG = 1000
CONNECT_TIMEOUT = 10.0  # seconds, dial only; established sockets block indefinitely
ACCEPT_POLL_INTERVAL = 0.5  # seconds between stop checks in accept loops

# Node defaults
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9000

__all__ = [
    "LENGTH_FIELD_SIZE",
    "MAX_FRAME_SIZE",
    "RECV_CHUNK_SIZE",
    "LISTEN_BACKLOG",
    "CONNECT_TIMEOUT",
    "ACCEPT_POLL_INTERVAL",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
]
