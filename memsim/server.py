"""Network front end of the memory: kernel and CPU connections."""

from __future__ import annotations

import logging
import socket
import struct
import sys
import threading
import time
from collections.abc import Callable, Sequence

from memsim import access
from memsim.config import TRACE, MemoryConfig, create_logger, load_config
from memsim.memory import MemoryManager, ProcessNotFoundError
from memsim.protocol import (
    ConnectionClosedError,
    OpCode,
    Packet,
    ProtocolError,
    accept_client,
    recv_operation,
    recv_packet_items,
    send_packet,
    start_server,
)

_log = logging.getLogger("LogMem")
_INT = struct.Struct("=i")


def _ints(items: Sequence[bytes], count: int) -> list[int]:
    if len(items) < count:
        raise ProtocolError(f"expected at least {count} items, got {len(items)}")
    values = []
    for item in items[:count]:
        if len(item) != _INT.size:
            raise ProtocolError(f"expected a {_INT.size}-byte integer, got {len(item)} bytes")
        values.append(_INT.unpack(item)[0])
    return values


def _text(item: bytes) -> str:
    return item.split(b"\0", 1)[0].decode()


def _reply(sock: socket.socket, opcode: OpCode) -> None:
    send_packet(sock, Packet(opcode))


class MemoryServer:
    """Serves kernel requests (one per connection) and CPU sessions."""

    def __init__(self, config: MemoryConfig, manager: MemoryManager | None = None) -> None:
        self.config = config
        self.manager = manager if manager is not None else MemoryManager(config)
        self._started: set[int] = set()
        self._ready = threading.Condition()

    def _delay(self) -> None:
        if self.config.memory_delay > 0:
            time.sleep(self.config.memory_delay / 1000)

    # -- connections -------------------------------------------------------

    def handle_connection(self, sock: socket.socket) -> None:
        """Read the handshake of a new client and serve it."""
        try:
            code = recv_operation(sock)
        except OSError:
            sock.close()
            return
        if code == OpCode.HANDSHAKE_CPU_MEMORY:
            _log.log(TRACE, "Received the handshake of a CPU")
            packet = Packet(OpCode.OK)
            packet.add(self.config.entries_per_table)
            packet.add(self.config.page_size)
            packet.add(self.config.levels)
            send_packet(sock, packet)
            self.handle_cpu(sock)
        elif code == OpCode.HANDSHAKE:
            _log.info("## Kernel Conectado - FD del socket: %d", sock.fileno())
            try:
                sock.sendall(_INT.pack(OpCode.OK))
                self.handle_kernel(sock)
            except (OSError, ProtocolError) as exc:
                _log.error("Kernel request failed: %s", exc)
            finally:
                sock.close()
        else:
            _log.error("Invalid handshake: %d", int(code))
            sock.close()

    def handle_cpu(self, sock: socket.socket) -> None:
        """Serve requests of a persistent CPU connection until it closes."""
        handlers: dict[int, Callable[[socket.socket], object]] = {
            OpCode.FETCH: self.send_instruction,
            OpCode.READ: self._cpu_read,
            OpCode.WRITE: self._cpu_write,
            OpCode.FRAME: self._cpu_frame,
            OpCode.PAGE_WRITE: self._cpu_page_write,
            OpCode.PAGE_READ: self._cpu_page_read,
        }
        try:
            while True:
                try:
                    code = recv_operation(sock)
                except OSError:
                    _log.warning("CPU disconnected")
                    break
                if code == OpCode.CLOSED:
                    _log.log(TRACE, "Connection with CPU closed")
                    break
                handler = handlers.get(code)
                if handler is None:
                    continue
                try:
                    handler(sock)
                except (ConnectionClosedError, ProtocolError) as exc:
                    _log.warning("CPU disconnected: %s", exc)
                    break
        finally:
            sock.close()

    def handle_kernel(self, sock: socket.socket) -> None:
        """Serve the single request of a kernel connection."""
        code = recv_operation(sock)
        if code == OpCode.INIT:
            self._kernel_init(sock)
        elif code == OpCode.SPACE_AVAILABLE:
            self._kernel_space(sock)
        elif code == OpCode.KILL_PROCESS:
            (pid,) = _ints(recv_packet_items(sock), 1)
            try:
                self.manager.finalize(pid)
            except ProcessNotFoundError:
                pass
            with self._ready:
                self._started.discard(pid)
            _reply(sock, OpCode.OK)
        elif code == OpCode.DUMP_MEMORY_REQUEST:
            (pid,) = _ints(recv_packet_items(sock), 1)
            _log.info("## PID: %d - Memory Dump solicitado", pid)
            try:
                access.dump(self.manager, pid)
            except (OSError, ProcessNotFoundError) as exc:
                _log.error("Memory dump of process %d failed: %s", pid, exc)
                return
            _reply(sock, OpCode.MEMORY_DUMP)
        elif code == OpCode.SUSPEND:
            _log.info("Received a suspension request")
            (pid,) = _ints(recv_packet_items(sock), 1)
            try:
                self.manager.suspend(pid)
            except ProcessNotFoundError:
                pass
        elif code == OpCode.UNSUSPEND:
            _log.info("Received an unsuspension request")
            (pid,) = _ints(recv_packet_items(sock), 1)
            try:
                self.manager.unsuspend(pid)
            except ProcessNotFoundError:
                pass
            _reply(sock, OpCode.OK)
        else:
            _log.log(TRACE, "Unknown kernel operation: %d", int(code))

    def _kernel_init(self, sock: socket.socket) -> None:
        items = recv_packet_items(sock)
        pid, size = _ints(items, 2)
        if len(items) < 3:
            raise ProtocolError("INIT needs a file name")
        filename = _text(items[2])
        _log.log(TRACE, "Process PID=%d - Size=%d", pid, size)
        try:
            self.manager.init_process(size, pid, filename)
        except (OSError, ValueError, RuntimeError) as exc:
            _log.error("Could not create process %d: %s", pid, exc)
            _reply(sock, OpCode.ERROR)
            return
        with self._ready:
            self._started.add(pid)
            self._ready.notify_all()
        _reply(sock, OpCode.OK)

    def _kernel_space(self, sock: socket.socket) -> None:
        pid, size = _ints(recv_packet_items(sock), 2)
        _log.log(TRACE, "Space request - PID:(%d) - Size: %d", pid, size)
        try:
            self.manager.get_process(pid)
        except ProcessNotFoundError:
            pass
        else:
            _log.log(TRACE, "PID %d already has structures", pid)
            _reply(sock, OpCode.OK)
            return
        if self.manager.fits(size):
            _reply(sock, OpCode.OK)
        else:
            _log.log(TRACE, "The process does not fit in memory")
            _reply(sock, OpCode.NO)

    # -- CPU requests ------------------------------------------------------

    def send_instruction(self, sock: socket.socket) -> bool:
        """Answer a FETCH with the instruction at the requested PC."""
        pid, pc = _ints(recv_packet_items(sock), 2)
        with self._ready:
            self._ready.wait_for(lambda: pid in self._started)

        instructions = self.manager.instructions
        count = instructions.count(pid)
        if pc >= count:
            _log.error("PC past the instructions - PC: %d - CANT: %d", pc, count)
            _reply(sock, OpCode.ERROR)
            instructions.remove(pid)
            return False
        instruction = instructions.get(pid, pc)
        if instruction is None:
            _log.error("No instruction at PC=%d", pc)
            _reply(sock, OpCode.ERROR)
            instructions.remove(pid)
            return False

        self._delay()
        _log.info(
            "## PID: %d - Obtener instrucción: %d - Instrucción: %s", pid, pc, instruction
        )
        send_packet(sock, Packet(OpCode.PACKET).add(instruction))
        try:
            self.manager.get_process(pid).metrics.instructions_requested += 1
        except ProcessNotFoundError:
            _log.warning("PID %d not found (possibly destroyed)", pid)
        return True

    def _cpu_read(self, sock: socket.socket) -> None:
        address, size, pid = _ints(recv_packet_items(sock), 3)
        try:
            data = access.read(self.manager, pid, address, size)
        except (IndexError, ValueError, ProcessNotFoundError) as exc:
            _log.error("READ failed: %s", exc)
            _reply(sock, OpCode.ERROR)
            return
        send_packet(sock, Packet(OpCode.READ).add(data))

    def _cpu_write(self, sock: socket.socket) -> None:
        items = recv_packet_items(sock)
        if len(items) < 3:
            raise ProtocolError("WRITE needs an address, data and a PID")
        (address,) = _ints(items[:1], 1)
        data = items[1].split(b"\0", 1)[0]
        (pid,) = _ints(items[2:3], 1)
        try:
            access.write(self.manager, pid, address, data)
        except (IndexError, ProcessNotFoundError) as exc:
            _log.error("WRITE failed: %s", exc)

    def _cpu_frame(self, sock: socket.socket) -> None:
        pid, page = _ints(recv_packet_items(sock), 2)
        try:
            frame = access.frame_of(self.manager, pid, page)
        except ProcessNotFoundError:
            frame = -1
        send_packet(sock, Packet(OpCode.FRAME).add(frame))

    def _cpu_page_read(self, sock: socket.socket) -> None:
        pid, address = _ints(recv_packet_items(sock), 2)
        try:
            data = access.read_page(self.manager, pid, address)
        except (IndexError, ProcessNotFoundError) as exc:
            _log.error("Page read failed: %s", exc)
            _reply(sock, OpCode.ERROR)
            return
        send_packet(sock, Packet(OpCode.PAGE_READ).add(data))

    def _cpu_page_write(self, sock: socket.socket) -> None:
        items = recv_packet_items(sock)
        pid, address = _ints(items, 2)
        if len(items) < 3:
            raise ProtocolError("PAGE_WRITE needs page data")
        try:
            access.write_page(self.manager, pid, address, items[2])
        except (IndexError, ProcessNotFoundError) as exc:
            _log.error("Page write failed: %s", exc)
            _reply(sock, OpCode.ERROR)
            return
        _reply(sock, OpCode.OK)

    # -- listening ---------------------------------------------------------

    def serve_forever(self, listener: socket.socket) -> None:
        """Accept clients and serve each on its own thread until the listener closes."""
        while True:
            try:
                client = accept_client(listener)
            except OSError:
                return
            threading.Thread(
                target=self.handle_connection, args=(client,), daemon=True
            ).start()

    def start(self, listener: socket.socket) -> threading.Thread:
        """Run serve_forever on a background thread and return it."""
        thread = threading.Thread(target=self.serve_forever, args=(listener,), daemon=True)
        thread.start()
        return thread


def main(argv: Sequence[str] | None = None) -> int:
    """Load the configuration and serve until interrupted."""
    args = list(sys.argv[1:] if argv is None else argv)
    path = args[0] if args else "memoria.config"
    config = load_config(path)
    create_logger(config.log_level)
    server = MemoryServer(config)
    listener = start_server(config.listen_port)
    try:
        server.serve_forever(listener)
    except KeyboardInterrupt:
        pass
    finally:
        listener.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())