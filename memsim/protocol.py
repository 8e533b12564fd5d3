"""Wire protocol shared by the memory server and its clients.

Every packet on the wire is ``opcode | size | payload`` where the first two
fields are native-order 32-bit integers and the payload is a sequence of
``length | bytes`` items.
"""

from __future__ import annotations

import logging
import socket
import struct
from dataclasses import dataclass, field
from enum import IntEnum

_INT = struct.Struct("=i")

_log = logging.getLogger(__name__)


class OpCode(IntEnum):
    """Operation codes understood by every module of the system."""

    CLOSED = 0
    HANDSHAKE = 1
    HANDSHAKE_CPU_MEMORY = 2
    PACKET = 3
    MESSAGE = 4
    OK = 5
    NO = 6
    FETCH = 7
    WRITE = 8
    READ = 9
    EXEC = 10
    INIT = 11
    INTERRUPT = 12
    CPU_INTERRUPT = 13
    SUSPEND = 14
    UNSUSPEND = 15
    SYSCALL_IO = 16
    SYSCALL_INIT = 17
    SYSCALL_DUMP_MEMORY = 18
    SYSCALL_EXIT = 19
    IO_REQUEST = 20
    DUMP_MEMORY_REQUEST = 21
    IO_FINISHED = 22
    MEMORY_DUMP = 23
    FRAME = 24
    PAGE_WRITE = 25
    PAGE_READ = 26
    SPACE_AVAILABLE = 27
    KILL_PROCESS = 28
    ERROR = 29


class ProtocolError(Exception):
    """Raised when a received payload is malformed."""


class ConnectionClosedError(ConnectionError):
    """Raised when the peer closes the connection mid-message."""


@dataclass
class Packet:
    """An operation code plus a payload of length-prefixed items."""

    opcode: int = OpCode.PACKET
    payload: bytearray = field(default_factory=bytearray)

    def add(self, content: bytes | bytearray | memoryview | int | str) -> Packet:
        """Append one item; ints are packed as 32-bit, strings get a trailing NUL."""
        if isinstance(content, bool):
            raise TypeError("cannot add a bool to a packet")
        if isinstance(content, int):
            data = _INT.pack(content)
        elif isinstance(content, str):
            data = content.encode() + b"\0"
        else:
            data = bytes(content)
        self.payload += _INT.pack(len(data))
        self.payload += data
        return self

    def serialize(self) -> bytes:
        """Return the bytes sent on the wire for this packet."""
        return _INT.pack(int(self.opcode)) + _INT.pack(len(self.payload)) + bytes(self.payload)


def deserialize(payload: bytes) -> list[bytes]:
    """Split a packet payload into its items."""
    view = memoryview(payload)
    items: list[bytes] = []
    offset = 0
    while offset < len(view):
        if offset + _INT.size > len(view):
            raise ProtocolError("corrupt buffer: not enough room for the item size")
        (length,) = _INT.unpack_from(view, offset)
        offset += _INT.size
        if length < 0 or offset + length > len(view):
            raise ProtocolError("corrupt buffer: not enough room for the whole item")
        items.append(bytes(view[offset:offset + length]))
        offset += length
    return items


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Read exactly ``size`` bytes or raise ConnectionClosedError."""
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionClosedError(f"connection closed after {len(data)} of {size} bytes")
        data += chunk
    return bytes(data)


def recv_operation(sock: socket.socket) -> OpCode | int:
    """Read an operation code.

    Returns OpCode.CLOSED (and closes the socket) when the peer hung up.
    Codes outside OpCode are returned as plain ints.
    """
    try:
        raw = recv_exact(sock, _INT.size)
    except ConnectionClosedError:
        sock.close()
        return OpCode.CLOSED
    except OSError:
        sock.close()
        raise
    (code,) = _INT.unpack(raw)
    try:
        return OpCode(code)
    except ValueError:
        return code


def recv_packet_items(sock: socket.socket) -> list[bytes]:
    """Read a packet's size and payload and return its items."""
    (size,) = _INT.unpack(recv_exact(sock, _INT.size))
    if size < 0:
        raise ProtocolError(f"negative packet size {size}")
    return deserialize(recv_exact(sock, size))


def send_packet(sock: socket.socket, packet: Packet) -> bool:
    """Send a packet; return False if the socket could not be written."""
    try:
        sock.sendall(packet.serialize())
    except OSError:
        _log.debug("send failed, the socket is probably closed")
        return False
    _log.debug("packet sent")
    return True


def send_message(sock: socket.socket, message: str) -> None:
    """Send a NUL-terminated text message."""
    data = message.encode() + b"\0"
    sock.sendall(_INT.pack(OpCode.MESSAGE) + _INT.pack(len(data)) + data)


def recv_message(sock: socket.socket) -> str:
    """Read the size and text of a message whose opcode was already read."""
    (size,) = _INT.unpack(recv_exact(sock, _INT.size))
    if size < 0:
        raise ProtocolError(f"negative message size {size}")
    data = recv_exact(sock, size)
    return data.split(b"\0", 1)[0].decode()


def send_handshake(sock: socket.socket) -> None:
    """Send the handshake operation code."""
    sock.sendall(_INT.pack(OpCode.HANDSHAKE))


def start_server(port: str | int) -> socket.socket:
    """Open a listening TCP socket on every interface."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    reuse_port = getattr(socket, "SO_REUSEPORT", None)
    if reuse_port is not None:
        server.setsockopt(socket.SOL_SOCKET, reuse_port, 1)
    server.bind(("", int(port)))
    server.listen(socket.SOMAXCONN)
    _log.debug("ready to listen")
    return server


def accept_client(server: socket.socket) -> socket.socket:
    """Wait for and return the next client connection."""
    client, _ = server.accept()
    _log.debug("a client connected")
    return client