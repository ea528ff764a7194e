"""Memory areas and the ordered set of areas that makes up an address space."""

from __future__ import annotations

import bisect
import operator
from collections.abc import Iterator

from axaddrspace.addr import AddrRange
from axaddrspace.backend import Backend
from axaddrspace.errors import MappingError, mapping_err_to_ax_err
from axaddrspace.flags import MappingFlags
from axaddrspace.pagetable import PageTable64


class MemoryArea:
    """A contiguous range of addresses mapped with the same flags and backend."""

    def __init__(self, start, size: int, flags: MappingFlags, backend: Backend) -> None:
        size = operator.index(size)
        if size < 0:
            raise ValueError("area size must not be negative")
        self.start = start
        self._end = start + size
        self.flags = MappingFlags(flags)
        self.backend = backend

    def end(self):
        return self._end

    def size(self) -> int:
        return operator.index(self._end) - operator.index(self.start)

    @property
    def va_range(self) -> AddrRange:
        return AddrRange(self.start, self._end)

    def _addr(self, value: int):
        return type(self.start)(value)

    def _map(self, pt: PageTable64) -> None:
        if not self.backend.map(self.start, self.size(), self.flags, pt):
            raise mapping_err_to_ax_err(MappingError.BAD_STATE)

    def _unmap_part(self, start: int, size: int, pt: PageTable64) -> None:
        if not self.backend.unmap(self._addr(start), size, pt):
            raise mapping_err_to_ax_err(MappingError.BAD_STATE)

    def _unmap(self, pt: PageTable64) -> None:
        self._unmap_part(operator.index(self.start), self.size(), pt)

    def _shrink_left(self, new_start: int, pt: PageTable64) -> None:
        start = operator.index(self.start)
        self._unmap_part(start, new_start - start, pt)
        self.start = self._addr(new_start)

    def _shrink_right(self, new_end: int, pt: PageTable64) -> None:
        self._unmap_part(new_end, operator.index(self._end) - new_end, pt)
        self._end = self._addr(new_end)

    def _split(self, pos: int) -> MemoryArea:
        end = operator.index(self._end)
        right = MemoryArea(self._addr(pos), end - pos, self.flags, self.backend)
        self._end = self._addr(pos)
        return right

    def __repr__(self) -> str:
        return (
            f"MemoryArea(va_range={self.va_range!r}, flags={self.flags!r}, "
            f"backend={self.backend!r})"
        )


def _start_of(area: MemoryArea) -> int:
    return operator.index(area.start)


class MemorySet:
    """Non-overlapping memory areas kept in address order."""

    def __init__(self) -> None:
        self._areas: list[MemoryArea] = []

    def __len__(self) -> int:
        return len(self._areas)

    def __iter__(self) -> Iterator[MemoryArea]:
        return iter(list(self._areas))

    def find(self, addr) -> MemoryArea | None:
        """Return the area that contains ``addr``, if any."""
        value = operator.index(addr)
        i = bisect.bisect_right(self._areas, value, key=_start_of)
        if i:
            area = self._areas[i - 1]
            if value < operator.index(area.end()):
                return area
        return None

    def overlaps(self, start, size: int) -> bool:
        """Return whether ``[start, start + size)`` intersects any area."""
        s = operator.index(start)
        e = s + operator.index(size)
        return any(
            operator.index(area.start) < e and s < operator.index(area.end())
            for area in self._areas
        )

    def map(self, area: MemoryArea, pt: PageTable64, unmap_overlap: bool) -> None:
        """Add an area and map it into ``pt``.

        Overlapping areas are unmapped first when ``unmap_overlap`` is set;
        otherwise an overlap is an error.
        """
        if area.size() == 0:
            raise mapping_err_to_ax_err(MappingError.INVALID_PARAM)
        if self.overlaps(area.start, area.size()):
            if unmap_overlap:
                self.unmap(area.start, area.size(), pt)
            else:
                raise mapping_err_to_ax_err(MappingError.ALREADY_EXISTS)
        area._map(pt)
        bisect.insort(self._areas, area, key=_start_of)

    def unmap(self, start, size: int, pt: PageTable64) -> None:
        """Remove ``[start, start + size)``, shrinking or splitting areas at the edges."""
        s = operator.index(start)
        size = operator.index(size)
        if size < 0:
            raise mapping_err_to_ax_err(MappingError.INVALID_PARAM)
        if size == 0:
            return
        e = s + size

        kept = []
        for area in self._areas:
            if s <= operator.index(area.start) and operator.index(area.end()) <= e:
                area._unmap(pt)
            else:
                kept.append(area)
        self._areas = kept

        i = bisect.bisect_left(self._areas, s, key=_start_of)
        if i:
            before = self._areas[i - 1]
            before_end = operator.index(before.end())
            if before_end > s:
                if before_end <= e:
                    before._shrink_right(s, pt)
                else:
                    right = before._split(e)
                    before._shrink_right(s, pt)
                    bisect.insort(self._areas, right, key=_start_of)

        i = bisect.bisect_left(self._areas, s, key=_start_of)
        if i < len(self._areas):
            after = self._areas[i]
            if operator.index(after.start) < e:
                after._shrink_left(e, pt)

    def clear(self, pt: PageTable64) -> None:
        """Unmap and remove every area."""
        for area in self._areas:
            area._unmap(pt)
        self._areas.clear()

    def __repr__(self) -> str:
        return f"MemorySet({self._areas!r})"