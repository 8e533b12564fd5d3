"""User memory, frame allocation and the life cycle of processes."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from memsim.config import TRACE, MemoryConfig
from memsim.instructions import InstructionStore
from memsim.page_table import PageTable
from memsim.swap import SwapFullError, SwappedPage, SwapSpace

_log = logging.getLogger("LogMem")


@dataclass
class Metrics:
    """Per-process counters reported when the process is destroyed."""

    page_table_accesses: int = 0
    instructions_requested: int = 0
    swap_outs: int = 0
    swap_ins: int = 0
    memory_reads: int = 0
    memory_writes: int = 0


@dataclass(eq=False)
class Process:
    """A process known to the memory: its page table and its metrics."""

    pid: int
    table: PageTable
    pages_used: int
    metrics: Metrics = field(default_factory=Metrics)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class ProcessNotFoundError(LookupError):
    """Raised when a PID has no structures in memory."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"process {pid} not found")
        self.pid = pid


class MemoryManager:
    """User memory split into frames, the processes using them and swap."""

    def __init__(
        self,
        config: MemoryConfig,
        swap: SwapSpace | None = None,
        instructions: InstructionStore | None = None,
    ) -> None:
        self.config = config
        self.memory = bytearray(config.memory_size)
        self.frame_count = config.frame_count()
        self.memory_lock = threading.Lock()
        self._frames = [False] * self.frame_count
        self._frames_lock = threading.Lock()
        self._processes: dict[int, Process] = {}
        self._processes_lock = threading.Lock()
        self._swap_lock = threading.Lock()
        if swap is None:
            swap = SwapSpace(config.swapfile_path, config.page_size, config.swap_frames)
            swap.initialize()
        self.swap = swap
        self.instructions = (
            instructions
            if instructions is not None
            else InstructionStore(config.instructions_path)
        )
        _log.info(
            "User memory initialised with %d frames of %db each",
            self.frame_count,
            config.page_size,
        )

    def _page_slice(self, frame: int) -> slice:
        base = frame * self.config.page_size
        return slice(base, base + self.config.page_size)

    def _valid_frame(self, frame: int) -> bool:
        return 0 <= frame < self.frame_count

    def _release_frame(self, frame: int) -> None:
        if self._valid_frame(frame):
            with self._frames_lock:
                self._frames[frame] = False

    def find_free_frame(self) -> int | None:
        """Reserve and return the lowest free frame, or None when all are used."""
        with self._frames_lock:
            for frame, used in enumerate(self._frames):
                if not used:
                    self._frames[frame] = True
                    return frame
        return None

    def free_frame_count(self) -> int:
        """Number of frames not in use."""
        with self._frames_lock:
            return self._frames.count(False)

    def fits(self, size: int) -> bool:
        """Whether a process of ``size`` bytes fits in the free frames."""
        return size // self.config.page_size <= self.free_frame_count()

    def init_process(self, size: int, pid: int, filename: str) -> PageTable:
        """Create the structures of a process and give each of its pages a frame."""
        cfg = self.config
        pages = -(-size // cfg.page_size)
        _log.log(TRACE, "pages needed %d", pages)
        capacity = cfg.entries_per_table**cfg.levels
        if pages > capacity:
            raise ValueError(
                f"process of {size} bytes needs {pages} pages, the table holds {capacity}"
            )
        if pages > self.free_frame_count():
            raise RuntimeError(f"not enough free frames for process {pid}")

        self.instructions.load(pid, filename)
        process = Process(pid=pid, table=PageTable.create(cfg.entries_per_table, cfg.levels), pages_used=pages)

        with process.lock:
            for page in range(pages):
                frame = self.find_free_frame()
                if frame is None:
                    for _, entry in process.table.leaves(cfg.entries_per_table, cfg.levels):
                        if entry.present:
                            self._release_frame(entry.frame)
                    self.instructions.remove(pid)
                    raise RuntimeError(f"not enough free frames for process {pid}")
                entry = process.table.lookup(page, cfg.entries_per_table, cfg.levels)
                if not entry.present:
                    _log.log(TRACE, "Page %d is not in main memory", page)
                entry.present = True
                entry.frame = frame
                _log.log(TRACE, "Page %d assigned to frame %d", page, frame)

        _log.info("## PID: %d - Proceso Creado - Tamaño: %d", pid, size)
        with self._processes_lock:
            self._processes[pid] = process
        return process.table

    def get_process(self, pid: int) -> Process:
        """The process registered under ``pid``."""
        with self._processes_lock:
            process = self._processes.get(pid)
        if process is None:
            _log.error("Process %d not found", pid)
            raise ProcessNotFoundError(pid)
        return process

    def _swap_out(self, pid: int, page: int, frame: int) -> None:
        try:
            (swap_frame,) = self.swap.allocate(1)
        except SwapFullError:
            _log.error("No free swap frames to suspend page %d of process %d", page, pid)
            return
        if not self._valid_frame(frame):
            _log.error("Invalid frame (%d) while suspending a page of PID %d", frame, pid)
            self.swap.release([swap_frame])
            return
        with self.memory_lock:
            data = bytes(self.memory[self._page_slice(frame)])
        self.swap.write(data, swap_frame)
        with self._swap_lock:
            self.swap.pages.append(SwappedPage(pid=pid, page=page, swap_frame=swap_frame))

    def suspend(self, pid: int) -> None:
        """Move every present page of ``pid`` to swap and free its frames."""
        process = self.get_process(pid)
        cfg = self.config
        with process.lock:
            for page, entry in process.table.leaves(cfg.entries_per_table, cfg.levels):
                if entry.present:
                    self._swap_out(pid, page, entry.frame)
                    self._release_frame(entry.frame)
                    entry.present = False
        process.metrics.swap_outs += 1

    def unsuspend(self, pid: int) -> bool:
        """Bring the swapped pages of ``pid`` back; False if they do not fit."""
        with self._swap_lock:
            swapped = [p for p in self.swap.pages if p.pid == pid]
        if len(swapped) > self.free_frame_count():
            _log.error("Not enough free frames to unsuspend process %d", pid)
            return False

        process = self.get_process(pid)
        cfg = self.config
        for record in swapped:
            frame = self.find_free_frame()
            if frame is None:
                _log.error("Unexpected: no free frame to restore a page")
                break
            data = self.swap.read(record.swap_frame)
            with self.memory_lock:
                self.memory[self._page_slice(frame)] = data
            with process.lock:
                entry = process.table.lookup(record.page, cfg.entries_per_table, cfg.levels)
                entry.present = True
                entry.frame = frame
            self.swap.release([record.swap_frame])
            with self._swap_lock:
                self.swap.pages.remove(record)

        process.metrics.swap_ins += 1
        _log.info("Process %d unsuspended", pid)
        return True

    def finalize(self, pid: int) -> Process:
        """Destroy every structure of ``pid`` and return the removed process."""
        process = self.get_process(pid)
        cfg = self.config

        with process.lock:
            for _, entry in process.table.leaves(cfg.entries_per_table, cfg.levels):
                if entry.present:
                    self._release_frame(entry.frame)

        self.instructions.remove(pid)

        with self._swap_lock:
            mine = [p for p in self.swap.pages if p.pid == pid]
            self.swap.pages[:] = [p for p in self.swap.pages if p.pid != pid]
        self.swap.release(p.swap_frame for p in mine)

        with self._processes_lock:
            self._processes.pop(pid, None)

        m = process.metrics
        _log.info(
            "## PID: %d - Proceso Destruido - Métricas - Acc.T.Pag: %d; Inst.Sol.: %d; "
            "SWAP: %d; Mem.Prin.: %d; Lec.Mem.: %d; Esc.Mem.: %d",
            pid,
            m.page_table_accesses,
            m.instructions_requested,
            m.swap_outs,
            m.swap_ins,
            m.memory_reads,
            m.memory_writes,
        )
        return process