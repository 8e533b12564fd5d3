"""Multi-level page tables."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field


@dataclass
class PageTableEntry:
    """One slot of a page table: a frame at the last level, a subtable above it."""

    number: int
    present: bool = False
    frame: int = -1
    next_table: PageTable | None = None


@dataclass
class PageTable:
    """A table of entries, possibly pointing at tables of the next level."""

    entries: list[PageTableEntry] = field(default_factory=list)

    @classmethod
    def create(cls, entries_per_table: int, levels: int, level: int = 0) -> PageTable:
        """Build a complete table tree from ``level`` down to the last level."""
        table = cls()
        for number in range(entries_per_table):
            entry = PageTableEntry(number=number)
            if level < levels - 1:
                entry.next_table = cls.create(entries_per_table, levels, level + 1)
            table.entries.append(entry)
        return table

    def lookup(self, page: int, entries_per_table: int, levels: int) -> PageTableEntry:
        """Walk the tree from this root table to the last-level entry of ``page``."""
        table = self
        for level in range(levels):
            index = entry_index(page, level, entries_per_table, levels)
            if index >= len(table.entries):
                raise LookupError(f"invalid entry {index} at level {level}")
            entry = table.entries[index]
            if level == levels - 1:
                return entry
            if entry.next_table is None:
                raise LookupError(f"entry {index} at level {level} has no next table")
            table = entry.next_table
        raise LookupError("a page table needs at least one level")

    def leaves(
        self, entries_per_table: int, levels: int
    ) -> Iterator[tuple[int, PageTableEntry]]:
        """Yield ``(page number, entry)`` for every last-level entry, in page order."""
        yield from self._leaves(entries_per_table, levels, 0, 0)

    def _leaves(
        self, entries_per_table: int, levels: int, level: int, base: int
    ) -> Iterator[tuple[int, PageTableEntry]]:
        step = entries_per_table ** (levels - level - 1)
        for i, entry in enumerate(self.entries):
            page = base + i * step
            if level < levels - 1:
                if entry.next_table is not None:
                    yield from entry.next_table._leaves(
                        entries_per_table, levels, level + 1, page
                    )
            else:
                yield page, entry


def entry_index(page: int, level: int, entries_per_table: int, levels: int) -> int:
    """Index into the table at ``level`` used when translating ``page``."""
    bits = entries_per_table.bit_length() - 1
    return (page >> (bits * (levels - level - 1))) & ((1 << bits) - 1)