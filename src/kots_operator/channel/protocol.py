# ABOUTME: Wire codec for the control channel (Engine.IO v3 / Socket.IO v2 text frames)
# ABOUTME: Encodes and decodes engine packets, socket packets, and builds the socket URL

"""
Control channel wire format.

=============================================================================
FRAMES
=============================================================================

Every websocket text frame is one ENGINE packet: a single digit type followed
by its data.

    0{"sid":"abc","pingInterval":25000,"pingTimeout":5000}   open
    1                                                        close
    2                                                        ping (client -> server)
    3                                                        pong
    4<socket packet>                                         message
    6                                                        noop

A message carries a SOCKET packet, again a digit type followed by an
optional "/namespace," prefix, an optional numeric ack id and JSON data:

    40                                  connect (server accepted us)
    41                                  disconnect
    42["deploy",{"app_id":"..."}]       event with one payload
    44"not authorized"                  error

Only the root namespace is used; other namespaces and ack ids are accepted
on decode and ignored by the client.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any
from urllib.parse import urlencode, urlsplit

from kots_operator.errors import ProtocolError

DEFAULT_PING_INTERVAL = 25.0
DEFAULT_PING_TIMEOUT = 60.0


class EnginePacketType(IntEnum):
    OPEN = 0
    CLOSE = 1
    PING = 2
    PONG = 3
    MESSAGE = 4
    UPGRADE = 5
    NOOP = 6


class SocketPacketType(IntEnum):
    CONNECT = 0
    DISCONNECT = 1
    EVENT = 2
    ACK = 3
    ERROR = 4


@dataclass(frozen=True)
class EnginePacket:
    type: EnginePacketType
    data: str = ""

    def encode(self) -> str:
        return f"{int(self.type)}{self.data}"

    @classmethod
    def decode(cls, frame: str) -> EnginePacket:
        if not frame or not frame[0].isdigit():
            raise ProtocolError(f"invalid engine packet: {frame[:40]!r}")
        try:
            packet_type = EnginePacketType(int(frame[0]))
        except ValueError as e:
            raise ProtocolError(f"unknown engine packet type {frame[0]!r}") from e
        return cls(packet_type, frame[1:])


@dataclass(frozen=True)
class OpenInfo:
    """Session parameters from the server's open packet."""

    sid: str
    ping_interval: float = DEFAULT_PING_INTERVAL
    ping_timeout: float = DEFAULT_PING_TIMEOUT

    @classmethod
    def decode(cls, data: str) -> OpenInfo:
        try:
            body = json.loads(data)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"invalid open packet: {e}") from e
        return cls(
            sid=body.get("sid", ""),
            ping_interval=body.get("pingInterval", DEFAULT_PING_INTERVAL * 1000) / 1000,
            ping_timeout=body.get("pingTimeout", DEFAULT_PING_TIMEOUT * 1000) / 1000,
        )


@dataclass(frozen=True)
class SocketPacket:
    type: SocketPacketType
    data: Any = None
    namespace: str = "/"
    ack_id: int | None = None

    def encode(self) -> str:
        out = str(int(self.type))
        if self.namespace != "/":
            out += f"{self.namespace},"
        if self.ack_id is not None:
            out += str(self.ack_id)
        if self.data is not None:
            out += json.dumps(self.data, separators=(",", ":"))
        return out

    @classmethod
    def decode(cls, text: str) -> SocketPacket:
        if not text or not text[0].isdigit():
            raise ProtocolError(f"invalid socket packet: {text[:40]!r}")
        try:
            packet_type = SocketPacketType(int(text[0]))
        except ValueError as e:
            raise ProtocolError(f"unknown socket packet type {text[0]!r}") from e

        rest = text[1:]
        namespace = "/"
        if rest.startswith("/"):
            end = rest.find(",")
            if end == -1:
                namespace, rest = rest, ""
            else:
                namespace, rest = rest[:end], rest[end + 1 :]

        digits = 0
        while digits < len(rest) and rest[digits].isdigit():
            digits += 1
        ack_id = int(rest[:digits]) if digits else None
        rest = rest[digits:]

        data = None
        if rest:
            try:
                data = json.loads(rest)
            except json.JSONDecodeError as e:
                raise ProtocolError(f"invalid socket packet data: {e}") from e
        return cls(packet_type, data, namespace, ack_id)

    @property
    def event(self) -> tuple[str, Any]:
        """(event name, first argument) of an EVENT packet."""
        if self.type != SocketPacketType.EVENT or not isinstance(self.data, list) or not self.data:
            raise ProtocolError("not an event packet")
        name = self.data[0]
        if not isinstance(name, str):
            raise ProtocolError("event name is not a string")
        payload = self.data[1] if len(self.data) > 1 else None
        return name, payload


def encode_event(event: str, payload: Any) -> str:
    """Full websocket frame for an outbound event."""
    message = SocketPacket(SocketPacketType.EVENT, [event, payload]).encode()
    return EnginePacket(EnginePacketType.MESSAGE, message).encode()


PING_FRAME = EnginePacket(EnginePacketType.PING).encode()
PONG_FRAME = EnginePacket(EnginePacketType.PONG).encode()


def build_socket_url(api_endpoint: str, token: str) -> str:
    """
    Websocket URL for the control plane.

    Examples:
        >>> build_socket_url("http://kotsadm:3000", "abc")
        'ws://kotsadm:3000/socket.io/?EIO=3&transport=websocket&token=abc'
        >>> build_socket_url("https://console.example.com", "abc")
        'wss://console.example.com:443/socket.io/?EIO=3&transport=websocket&token=abc'
    """
    parts = urlsplit(api_endpoint)
    if not parts.hostname:
        raise ValueError(f"invalid api endpoint {api_endpoint!r}")
    secure = parts.scheme == "https"
    port = parts.port or (443 if secure else 80)
    query = urlencode({"EIO": "3", "transport": "websocket", "token": token})
    scheme = "wss" if secure else "ws"
    return f"{scheme}://{parts.hostname}:{port}/socket.io/?{query}"
