"""Memory accesses on behalf of the CPU and memory dumps."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path

from memsim.config import TRACE
from memsim.memory import MemoryManager
from memsim.page_table import entry_index

_log = logging.getLogger("LogMem")


def _delay(manager: MemoryManager) -> None:
    delay = manager.config.memory_delay
    if delay > 0:
        time.sleep(delay / 1000)


def frame_of(manager: MemoryManager, pid: int, page: int) -> int:
    """Walk the page table of ``pid`` and return the frame of ``page``; -1 if missing."""
    process = manager.get_process(pid)
    cfg = manager.config
    table = process.table
    frame = -1
    for level in range(cfg.levels):
        process.metrics.page_table_accesses += 1
        _delay(manager)
        index = entry_index(page, level, cfg.entries_per_table, cfg.levels)
        if table is None or not 0 <= index < len(table.entries):
            _log.error("Entry %d not found at level %d", index, level)
            return -1
        entry = table.entries[index]
        if level < cfg.levels - 1:
            table = entry.next_table
        else:
            frame = entry.frame
    _log.log(TRACE, "Frame = %d", frame)
    return frame


def _check_range(manager: MemoryManager, address: int, size: int) -> None:
    if address < 0 or address + size > manager.config.memory_size:
        raise IndexError(
            f"physical address out of range (address={address}, size={size})"
        )


def read(manager: MemoryManager, pid: int, address: int, size: int) -> bytes:
    """Read ``size`` bytes at a physical address."""
    if size < 0:
        raise ValueError(f"size must not be negative, got {size}")
    process = manager.get_process(pid)
    _check_range(manager, address, size)
    _delay(manager)
    with manager.memory_lock:
        data = bytes(manager.memory[address:address + size])
    _log.info("## PID: %d - Lectura - Dir. Física: %d - Tamaño: %d", pid, address, size)
    process.metrics.memory_reads += 1
    return data


def write(manager: MemoryManager, pid: int, address: int, data: bytes | str) -> int:
    """Write ``data`` at a physical address and return how many bytes were written."""
    payload = data.encode() if isinstance(data, str) else bytes(data)
    process = manager.get_process(pid)
    _delay(manager)
    try:
        _check_range(manager, address, len(payload))
    except IndexError:
        _log.error(
            "WRITE: physical address out of range (dir=%d, tam=%d)", address, len(payload)
        )
        raise
    with manager.memory_lock:
        manager.memory[address:address + len(payload)] = payload
    process.metrics.memory_writes += 1
    _log.info(
        "## PID: %d - Escritura - Dir. Física: %d - Tamaño: %d", pid, address, len(payload)
    )
    return len(payload)


def _page_bounds(manager: MemoryManager, address: int) -> slice:
    page_size = manager.config.page_size
    base = (address // page_size) * page_size
    _check_range(manager, base, page_size)
    return slice(base, base + page_size)


def read_page(manager: MemoryManager, pid: int, address: int) -> bytes:
    """Return the whole page that holds a physical address."""
    process = manager.get_process(pid)
    bounds = _page_bounds(manager, address)
    _delay(manager)
    with manager.memory_lock:
        data = bytes(manager.memory[bounds])
    process.metrics.memory_reads += 1
    return data


def write_page(manager: MemoryManager, pid: int, address: int, data: bytes) -> None:
    """Replace the whole page that holds a physical address; short data is zero-padded."""
    process = manager.get_process(pid)
    bounds = _page_bounds(manager, address)
    page_size = manager.config.page_size
    payload = bytes(data)[:page_size].ljust(page_size, b"\0")
    _delay(manager)
    with manager.memory_lock:
        manager.memory[bounds] = payload
    process.metrics.memory_writes += 1


def timestamp(moment: datetime | None = None) -> str:
    """Format a moment (default: now, local time) as used in dump file names."""
    return (moment or datetime.now()).strftime("%Y%m%d%H%M%S")


def dump(manager: MemoryManager, pid: int, moment: datetime | None = None) -> Path:
    """Write the pages of ``pid`` in page order to a dump file and return its path."""
    process = manager.get_process(pid)
    cfg = manager.config
    path = Path(f"{cfg.dump_path}{pid}-{timestamp(moment)}.dmp")
    with open(path, "wb") as fh:
        for page in range(process.pages_used):
            with process.lock:
                entry = process.table.lookup(page, cfg.entries_per_table, cfg.levels)
            if not entry.present:
                _log.log(TRACE, "Page %d is not in main memory", page)
            if not 0 <= entry.frame < manager.frame_count:
                _log.error("Invalid frame for page %d: %d", page, entry.frame)
                fh.write(bytes(cfg.page_size))
                continue
            base = entry.frame * cfg.page_size
            with manager.memory_lock:
                data = bytes(manager.memory[base:base + cfg.page_size])
            fh.write(data)
    _log.info("Memory dump of process %d generated", pid)
    return path