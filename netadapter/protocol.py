"""
Wire protocol — the Message model, length framing, and body serialization.

Frame format (over TCP):
    [10 bytes: ASCII decimal body length, left-aligned, NUL padded]  [body]

The body is a compact UTF-8 JSON document with two regions:
    label    — {"sender": <ip address>, "remoteIsWaiting": <bool>}
    payload  — opaque bytes, base64 encoded

There is no version field, checksum or resync marker. Once a length field
is misread the rest of the stream is garbage, so every decode failure is
fatal to the connection that produced it.
"""

from __future__ import annotations

import base64
import binascii
import ipaddress
import json
import re
from dataclasses import dataclass
from typing import Any, Callable

from netadapter import LENGTH_FIELD_SIZE, MAX_FRAME_SIZE

_LENGTH_PAD = b"\x00 "
_DIGITS_RE = re.compile(rb"^[0-9]+$")


class ProtocolError(Exception):
    """Invalid message or framing error."""


class MalformedFrame(ProtocolError):
    """A frame could not be decoded. The stream position is lost."""


class FrameTooLarge(ProtocolError):
    """An encoded body would exceed the maximum frame size."""


@dataclass
class Message:
    """A single package exchanged between two endpoints.

    ``payload`` is never interpreted here. A ``str`` payload is stored UTF-8
    encoded; ``sender`` may be left empty, in which case the sending
    connection stamps its local address.
    """
    payload: bytes = b""
    sender: str = ""
    waiting_for_reply: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.payload, str):
            self.payload = self.payload.encode("utf-8")
        elif isinstance(self.payload, (bytearray, memoryview)):
            self.payload = bytes(self.payload)
        elif not isinstance(self.payload, bytes):
            raise TypeError(
                f"payload must be bytes or str, got {type(self.payload).__name__}"
            )

    @property
    def text(self) -> str:
        """Payload decoded as UTF-8."""
        return self.payload.decode("utf-8")


def _normalize_sender(sender: Any) -> str:
    """Return the canonical text form of an IP address. Raises ValueError."""
    if not isinstance(sender, str):
        raise ValueError(f"sender must be a string, got {type(sender).__name__}")
    return str(ipaddress.ip_address(sender))


def make_document(msg: Message) -> dict:
    """Build the body document for a message."""
    if not msg.sender:
        raise ProtocolError("Message has no sender")
    try:
        sender = _normalize_sender(msg.sender)
    except ValueError as e:
        raise ProtocolError(f"Invalid sender: {e}") from e
    return {
        "label": {
            "sender": sender,
            "remoteIsWaiting": bool(msg.waiting_for_reply),
        },
        "payload": base64.b64encode(msg.payload).decode("ascii"),
    }


def validate_document(doc: Any) -> None:
    """Validate a deserialized body document. Raises MalformedFrame on failure."""
    if not isinstance(doc, dict):
        raise MalformedFrame("Body must be a JSON object")

    for region in ("label", "payload"):
        if region not in doc:
            raise MalformedFrame(f"Missing region: {region!r}")

    label = doc["label"]
    if not isinstance(label, dict):
        raise MalformedFrame("label must be a JSON object")
    for field in ("sender", "remoteIsWaiting"):
        if field not in label:
            raise MalformedFrame(f"Missing label field: {field!r}")

    try:
        _normalize_sender(label["sender"])
    except ValueError as e:
        raise MalformedFrame(f"Invalid sender: {e}") from e

    if not isinstance(label["remoteIsWaiting"], bool):
        raise MalformedFrame("remoteIsWaiting must be a boolean")

    if not isinstance(doc["payload"], str):
        raise MalformedFrame("payload must be a base64 string")


def encode_length(length: int) -> bytes:
    """Render a body length as the fixed-width length field."""
    digits = str(length).encode("ascii")
    if length < 0 or len(digits) > LENGTH_FIELD_SIZE:
        raise ProtocolError(f"Length {length} does not fit the length field")
    return digits.ljust(LENGTH_FIELD_SIZE, b"\x00")


def decode_length(field: bytes, max_frame_size: int = MAX_FRAME_SIZE) -> int:
    """Parse a length field. Returns the body length.

    NUL and space padding around the digits is ignored; anything else is
    a MalformedFrame, as is a length above ``max_frame_size``.
    """
    if len(field) != LENGTH_FIELD_SIZE:
        raise MalformedFrame(
            f"Length field must be {LENGTH_FIELD_SIZE} bytes, got {len(field)}"
        )
    digits = field.strip(_LENGTH_PAD)
    if not _DIGITS_RE.match(digits):
        raise MalformedFrame(f"Bad length field: {field!r}")
    length = int(digits)
    if length > max_frame_size:
        raise MalformedFrame(f"Frame length {length} exceeds max {max_frame_size}")
    return length


def encode(msg: Message, max_frame_size: int = MAX_FRAME_SIZE) -> bytes:
    """Serialize a message to a framed binary blob.

    Returns: length field (10B) + JSON body (variable).
    """
    body = json.dumps(make_document(msg), separators=(",", ":")).encode("utf-8")
    if len(body) > max_frame_size:
        raise FrameTooLarge(
            f"Body too large: {len(body)} bytes (max {max_frame_size})"
        )
    return encode_length(len(body)) + body


def decode_body(data: bytes) -> Message:
    """Decode and validate a body (after the length field is stripped)."""
    try:
        doc = json.loads(data.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedFrame(f"Invalid JSON body: {e}") from e

    validate_document(doc)

    try:
        payload = base64.b64decode(doc["payload"].encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise MalformedFrame(f"Invalid payload encoding: {e}") from e

    label = doc["label"]
    return Message(
        payload=payload,
        sender=_normalize_sender(label["sender"]),
        waiting_for_reply=label["remoteIsWaiting"],
    )


def read_message(
    read_exactly: Callable[[int], bytes],
    max_frame_size: int = MAX_FRAME_SIZE,
) -> Message:
    """Consume exactly one frame from a stream and decode it.

    ``read_exactly(n)`` must return exactly ``n`` bytes or raise.
    """
    length = decode_length(read_exactly(LENGTH_FIELD_SIZE), max_frame_size)
    return decode_body(read_exactly(length))


def decode(data: bytes, max_frame_size: int = MAX_FRAME_SIZE) -> Message:
    """Decode the first frame of a complete byte string.

    Convenience function for testing. Connections use read_message.
    """
    length = decode_length(data[:LENGTH_FIELD_SIZE], max_frame_size)
    body = data[LENGTH_FIELD_SIZE:LENGTH_FIELD_SIZE + length]
    if len(body) < length:
        raise MalformedFrame(
            f"Incomplete body: expected {length} bytes, got {len(body)}"
        )
    return decode_body(body)
