import socket
import struct

import pytest

from memsim.protocol import (
    ConnectionClosedError,
    OpCode,
    Packet,
    ProtocolError,
    accept_client,
    deserialize,
    recv_exact,
    recv_message,
    recv_operation,
    recv_packet_items,
    send_handshake,
    send_message,
    send_packet,
    start_server,
)


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


@pytest.mark.parametrize(
    "opcode, wire_value",
    [(OpCode.CLOSED, 0), (OpCode.HANDSHAKE, 1), (OpCode.ERROR, 29)],
)
def test_opcode_wire_values_in_serialized_header(opcode, wire_value):
    wire = Packet(opcode).serialize()
    assert wire == struct.pack("=ii", wire_value, 0)


def test_empty_packet_serializes_to_header_only():
    packet = Packet(OpCode.OK)
    assert packet.serialize() == struct.pack("=ii", OpCode.OK, 0)


def test_default_opcode_is_packet():
    assert Packet().opcode == OpCode.PACKET


def test_bytes_round_trip():
    packet = Packet().add(b"abc").add(b"").add(b"\x00\x01")
    assert deserialize(bytes(packet.payload)) == [b"abc", b"", b"\x00\x01"]


def test_int_round_trip():
    packet = Packet().add(42).add(-7)
    items = deserialize(bytes(packet.payload))
    assert [struct.unpack("=i", item)[0] for item in items] == [42, -7]


def test_string_gets_nul_terminator():
    packet = Packet().add("hola")
    assert deserialize(bytes(packet.payload)) == [b"hola\0"]


def test_add_rejects_bool():
    with pytest.raises(TypeError):
        Packet().add(True)


def test_serialize_size_field_matches_payload():
    packet = Packet(OpCode.FETCH).add(1).add(b"xyz")
    wire = packet.serialize()
    opcode, size = struct.unpack_from("=ii", wire)
    assert opcode == OpCode.FETCH
    assert size == len(wire) - 8


def test_deserialize_truncated_size_raises():
    with pytest.raises(ProtocolError):
        deserialize(b"\x01\x00")


def test_deserialize_item_longer_than_buffer_raises():
    with pytest.raises(ProtocolError):
        deserialize(struct.pack("=i", 10) + b"abc")


def test_send_and_receive_packet(pair):
    a, b = pair
    assert send_packet(a, Packet(OpCode.READ).add(5).add(b"data")) is True
    assert recv_operation(b) == OpCode.READ
    items = recv_packet_items(b)
    assert items == [struct.pack("=i", 5), b"data"]


def test_recv_operation_returns_closed_on_hangup(pair):
    a, b = pair
    a.close()
    assert recv_operation(b) == OpCode.CLOSED
    assert b.fileno() == -1


def test_recv_operation_unknown_code_is_int(pair):
    a, b = pair
    a.sendall(struct.pack("=i", 999))
    result = recv_operation(b)
    assert result == 999
    assert not isinstance(result, OpCode)


def test_message_round_trip(pair):
    a, b = pair
    send_message(a, "saludos")
    assert recv_operation(b) == OpCode.MESSAGE
    assert recv_message(b) == "saludos"


def test_handshake(pair):
    a, b = pair
    send_handshake(a)
    assert recv_operation(b) == OpCode.HANDSHAKE


def test_recv_exact_raises_when_peer_closes_early(pair):
    a, b = pair
    a.sendall(b"ab")
    a.close()
    with pytest.raises(ConnectionClosedError):
        recv_exact(b, 4)


def test_send_packet_on_closed_socket_returns_false():
    a, b = socket.socketpair()
    b.close()
    a.close()
    assert send_packet(a, Packet(OpCode.OK)) is False


def test_server_accepts_client():
    server = start_server(0)
    try:
        port = server.getsockname()[1]
        client = socket.create_connection(("127.0.0.1", port))
        conn = accept_client(server)
        try:
            send_handshake(client)
            assert recv_operation(conn) == OpCode.HANDSHAKE
        finally:
            client.close()
            conn.close()
    finally:
        server.close()