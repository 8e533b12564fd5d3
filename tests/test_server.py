import socket
import struct
import threading
from contextlib import contextmanager

import pytest

from memsim.config import MemoryConfig
from memsim.memory import MemoryManager, ProcessNotFoundError
from memsim.protocol import (
    OpCode,
    Packet,
    recv_exact,
    recv_operation,
    recv_packet_items,
    start_server,
)
from memsim.server import MemoryServer

INT = struct.Struct("=i")
PID = 1
PROC_SIZE = 40  # three pages of 16 bytes


def as_int(item):
    return INT.unpack(item)[0]


@pytest.fixture
def server(tmp_path):
    (tmp_path / "proc1").write_text("NOOP\nWRITE 0 hola\nEXIT\n")
    config = MemoryConfig(
        listen_port="0",
        memory_size=256,
        page_size=16,
        entries_per_table=4,
        levels=2,
        memory_delay=0,
        swapfile_path=str(tmp_path / "swap.bin"),
        swap_delay=0,
        log_level="INFO",
        dump_path=str(tmp_path) + "/",
        instructions_path=str(tmp_path) + "/",
        swap_frames=16,
    )
    return MemoryServer(config, MemoryManager(config))


def serve(server, sock):
    thread = threading.Thread(target=server.handle_connection, args=(sock,), daemon=True)
    thread.start()
    return thread


def kernel_request(server, packet):
    client, remote = socket.socketpair()
    client.settimeout(5)
    thread = serve(server, remote)
    client.sendall(INT.pack(OpCode.HANDSHAKE))
    assert recv_exact(client, 4) == INT.pack(OpCode.OK)
    client.sendall(packet.serialize())
    code = recv_operation(client)
    items = [] if code == OpCode.CLOSED else recv_packet_items(client)
    client.close()
    thread.join(5)
    return code, items


def init(server, pid=PID, size=PROC_SIZE, name="proc1"):
    return kernel_request(server, Packet(OpCode.INIT).add(pid).add(size).add(name))


@contextmanager
def cpu_session(server):
    client, remote = socket.socketpair()
    client.settimeout(5)
    thread = serve(server, remote)
    client.sendall(INT.pack(OpCode.HANDSHAKE_CPU_MEMORY))
    assert recv_operation(client) == OpCode.OK
    items = recv_packet_items(client)
    try:
        yield client, items
    finally:
        client.close()
        thread.join(5)
    assert not thread.is_alive()


def request(client, packet):
    client.sendall(packet.serialize())
    return recv_operation(client), recv_packet_items(client)


def test_init_creates_process(server):
    code, items = init(server)
    assert code == OpCode.OK
    assert items == []
    process = server.manager.get_process(PID)
    assert process.pages_used == 3
    assert server.manager.free_frame_count() == server.manager.frame_count - 3


def test_init_with_missing_file_reports_error(server):
    code, _ = init(server, name="missing")
    assert code == OpCode.ERROR
    with pytest.raises(ProcessNotFoundError):
        server.manager.get_process(PID)


def test_cpu_handshake_sends_layout(server):
    with cpu_session(server) as (_, items):
        assert [as_int(i) for i in items] == [
            server.config.entries_per_table,
            server.config.page_size,
            server.config.levels,
        ]


def test_fetch_returns_instructions(server):
    init(server)
    with cpu_session(server) as (client, _):
        code, items = request(client, Packet(OpCode.FETCH).add(PID).add(1))
        assert code == OpCode.PACKET
        assert items == [b"WRITE 0 hola\0"]
    assert server.manager.get_process(PID).metrics.instructions_requested == 1


def test_fetch_past_end_is_error(server):
    init(server)
    with cpu_session(server) as (client, _):
        code, items = request(client, Packet(OpCode.FETCH).add(PID).add(3))
        assert code == OpCode.ERROR
        assert items == []
    assert server.manager.instructions.count(PID) == 0


def test_space_available(server):
    code, _ = kernel_request(server, Packet(OpCode.SPACE_AVAILABLE).add(2).add(64))
    assert code == OpCode.OK
    too_big = server.config.memory_size * 2
    code, _ = kernel_request(server, Packet(OpCode.SPACE_AVAILABLE).add(2).add(too_big))
    assert code == OpCode.NO
    init(server)
    code, _ = kernel_request(server, Packet(OpCode.SPACE_AVAILABLE).add(PID).add(too_big))
    assert code == OpCode.OK


def test_kill_removes_process(server):
    init(server)
    code, _ = kernel_request(server, Packet(OpCode.KILL_PROCESS).add(PID))
    assert code == OpCode.OK
    with pytest.raises(ProcessNotFoundError):
        server.manager.get_process(PID)
    assert server.manager.free_frame_count() == server.manager.frame_count


def test_write_then_read(server):
    init(server)
    with cpu_session(server) as (client, _):
        client.sendall(Packet(OpCode.WRITE).add(5).add("hola").add(PID).serialize())
        code, items = request(client, Packet(OpCode.READ).add(5).add(4).add(PID))
        assert code == OpCode.READ
        assert items == [b"hola"]
    metrics = server.manager.get_process(PID).metrics
    assert (metrics.memory_writes, metrics.memory_reads) == (1, 1)


def test_read_out_of_range_is_error(server):
    init(server)
    with cpu_session(server) as (client, _):
        code, _ = request(
            client, Packet(OpCode.READ).add(server.config.memory_size).add(4).add(PID)
        )
        assert code == OpCode.ERROR


def test_frame_lookup(server):
    init(server)
    expected = server.manager.get_process(PID).table.lookup(2, 4, 2).frame
    with cpu_session(server) as (client, _):
        code, items = request(client, Packet(OpCode.FRAME).add(PID).add(2))
        assert code == OpCode.FRAME
        assert [as_int(i) for i in items] == [expected]
        code, items = request(client, Packet(OpCode.FRAME).add(99).add(0))
        assert [as_int(i) for i in items] == [-1]


def test_page_write_then_read(server):
    init(server)
    page = b"x" * server.config.page_size
    with cpu_session(server) as (client, _):
        code, _ = request(client, Packet(OpCode.PAGE_WRITE).add(PID).add(16).add(page))
        assert code == OpCode.OK
        code, items = request(client, Packet(OpCode.PAGE_READ).add(PID).add(20))
        assert code == OpCode.PAGE_READ
        assert items == [page]
    assert bytes(server.manager.memory[16:32]) == page


def test_suspend_and_unsuspend(server):
    init(server)
    total = server.manager.frame_count
    code, _ = kernel_request(server, Packet(OpCode.SUSPEND).add(PID))
    assert code == OpCode.CLOSED
    assert len(server.manager.swap.pages) == 3
    assert server.manager.free_frame_count() == total
    code, _ = kernel_request(server, Packet(OpCode.UNSUSPEND).add(PID))
    assert code == OpCode.OK
    assert server.manager.swap.pages == []
    assert server.manager.free_frame_count() == total - 3


def test_dump_writes_file(server, tmp_path):
    init(server)
    code, _ = kernel_request(server, Packet(OpCode.DUMP_MEMORY_REQUEST).add(PID))
    assert code == OpCode.MEMORY_DUMP
    dumps = list(tmp_path.glob(f"{PID}-*.dmp"))
    assert len(dumps) == 1
    assert dumps[0].stat().st_size == 3 * server.config.page_size


def test_dump_of_unknown_process_has_no_reply(server, tmp_path):
    code, _ = kernel_request(server, Packet(OpCode.DUMP_MEMORY_REQUEST).add(42))
    assert code == OpCode.CLOSED
    assert list(tmp_path.glob("42-*.dmp")) == []


def test_invalid_handshake_closes(server):
    client, remote = socket.socketpair()
    client.settimeout(5)
    thread = serve(server, remote)
    client.sendall(INT.pack(OpCode.FETCH))
    assert client.recv(1) == b""
    client.close()
    thread.join(5)
    assert not thread.is_alive()