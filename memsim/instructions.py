"""Per-process instruction lists loaded from pseudocode files."""

from __future__ import annotations

import logging
import threading

_log = logging.getLogger("LogMem")


class InstructionStore:
    """Instructions of every process, keyed by PID."""

    def __init__(self, directory: str) -> None:
        self.directory = directory
        self._by_pid: dict[int, list[str]] = {}
        self._lock = threading.Lock()

    def load(self, pid: int, filename: str) -> list[str]:
        """Read one instruction per line from ``directory + filename``."""
        path = f"{self.directory}{filename}"
        _log.debug("instruction file is (%s)", path)
        with open(path, encoding="utf-8") as fh:
            instructions = [line.split("\n", 1)[0] for line in fh]
        with self._lock:
            self._by_pid[pid] = instructions
        _log.debug("stored instructions for PID %d", pid)
        return instructions

    def get(self, pid: int, pc: int) -> str | None:
        """Instruction at ``pc`` for ``pid``, or None past the end."""
        with self._lock:
            try:
                instructions = self._by_pid[pid]
            except KeyError:
                raise KeyError(f"no instructions loaded for PID {pid}") from None
            if not 0 <= pc < len(instructions):
                return None
            return instructions[pc]

    def count(self, pid: int) -> int:
        """Number of instructions of ``pid``; 0 when none are loaded."""
        with self._lock:
            instructions = self._by_pid.get(pid)
        if instructions is None:
            _log.error("no instruction list for PID %s", pid)
            return 0
        return len(instructions)

    def remove(self, pid: int) -> list[str] | None:
        """Forget and return the instructions of ``pid``."""
        with self._lock:
            return self._by_pid.pop(pid, None)