"""Swap area backed by a file split into page-sized frames."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

_log = logging.getLogger("LogMem")


class SwapFullError(Exception):
    """Raised when the swap area has fewer free frames than requested."""


@dataclass(frozen=True)
class SwappedPage:
    """A page of a process that currently lives in a swap frame."""

    pid: int
    page: int
    swap_frame: int


class SwapSpace:
    """Frame allocator and page storage on top of a swap file."""

    def __init__(self, path: str | Path, page_size: int, frame_count: int) -> None:
        if page_size <= 0:
            raise ValueError(f"page size must be positive, got {page_size}")
        if frame_count < 0:
            raise ValueError(f"frame count must not be negative, got {frame_count}")
        self.path = Path(path)
        self.page_size = page_size
        self.frame_count = frame_count
        self.pages: list[SwappedPage] = []
        self._used = [False] * frame_count
        self._lock = threading.RLock()

    def initialize(self) -> None:
        """Create or grow the swap file and mark every frame free."""
        expected = self.frame_count * self.page_size
        with self._lock:
            with open(self.path, "ab") as fh:
                size = fh.seek(0, os.SEEK_END)
                if size < expected:
                    fh.write(bytes(expected - size))
            self._used = [False] * self.frame_count
            self.pages.clear()
        _log.info(
            "Swap initialised with %d frames of %d bytes", self.frame_count, self.page_size
        )

    def _check_frame(self, frame: int) -> None:
        if not 0 <= frame < self.frame_count:
            raise IndexError(f"swap frame {frame} out of range 0..{self.frame_count - 1}")

    def allocate(self, count: int) -> list[int]:
        """Reserve ``count`` free frames, lowest numbers first."""
        with self._lock:
            frames: list[int] = []
            for frame, used in enumerate(self._used):
                if len(frames) >= count:
                    break
                if not used:
                    self._used[frame] = True
                    frames.append(frame)
            if len(frames) < count:
                self.release(frames)
                _log.error("fewer free swap frames than requested (%d)", count)
                raise SwapFullError(f"cannot allocate {count} swap frames")
            return frames

    def write(self, data: bytes | bytearray | memoryview, frame: int) -> None:
        """Store one page of data in the given frame."""
        self._check_frame(frame)
        payload = bytes(data)
        if len(payload) != self.page_size:
            raise ValueError(
                f"page data must be {self.page_size} bytes, got {len(payload)}"
            )
        with self._lock, open(self.path, "r+b") as fh:
            fh.seek(frame * self.page_size)
            fh.write(payload)
        _log.info("Wrote a page to swap frame %d", frame)

    def read(self, frame: int) -> bytes:
        """Return the page stored in the given frame."""
        self._check_frame(frame)
        with self._lock, open(self.path, "rb") as fh:
            fh.seek(frame * self.page_size)
            data = fh.read(self.page_size)
        return data.ljust(self.page_size, b"\0")

    def release(self, frames: Iterable[int]) -> None:
        """Mark the given frames free again."""
        with self._lock:
            for frame in frames:
                self._check_frame(frame)
                self._used[frame] = False

    def free_count(self) -> int:
        """Number of frames not currently reserved."""
        with self._lock:
            return self._used.count(False)