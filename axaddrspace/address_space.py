"""Guest physical address spaces backed by a nested page table."""

from __future__ import annotations

import logging
import operator

from axaddrspace.addr import AddrRange, GuestPhysAddr, HostPhysAddr, is_aligned_4k
from axaddrspace.backend import AllocBackend, LinearBackend
from axaddrspace.errors import InvalidInputError, NoMemoryError
from axaddrspace.flags import MappingFlags
from axaddrspace.hal import AxMmHal
from axaddrspace.memory_set import MemoryArea, MemorySet
from axaddrspace.pagetable import PageTable64, PagingError, nested_page_table

_log = logging.getLogger(__name__)


def _gpa(addr) -> GuestPhysAddr:
    if isinstance(addr, GuestPhysAddr):
        return addr
    return GuestPhysAddr(operator.index(addr))


class AddrSpace:
    """A guest physical address space: its areas and the page table mapping them."""

    def __init__(self, va_range: AddrRange, pt: PageTable64) -> None:
        self._va_range = va_range
        self._areas = MemorySet()
        self._pt = pt
        self._closed = False

    @classmethod
    def new_empty(cls, hal: AxMmHal, base, size: int, arch: str = "aarch64") -> AddrSpace:
        """Create an empty address space covering ``[base, base + size)``."""
        va_range = AddrRange.from_start_size(_gpa(base), operator.index(size))
        try:
            pt = nested_page_table(hal, arch)
        except PagingError as exc:
            raise NoMemoryError("cannot allocate the nested page table") from exc
        return cls(va_range, pt)

    def base(self) -> GuestPhysAddr:
        return self._va_range.start

    def end(self) -> GuestPhysAddr:
        return self._va_range.end

    def size(self) -> int:
        return self._va_range.size()

    def page_table(self) -> PageTable64:
        return self._pt

    def page_table_root(self) -> HostPhysAddr:
        return self._pt.root_paddr()

    def contains_range(self, start, size: int) -> bool:
        try:
            other = AddrRange.from_start_size(_gpa(start), operator.index(size))
        except ValueError:
            return False
        return self._va_range.contains_range(other)

    def map_linear(self, start_vaddr, start_paddr, size: int, flags: MappingFlags) -> None:
        """Map guest ``start_vaddr`` onward to contiguous host frames from ``start_paddr``."""
        start_vaddr = _gpa(start_vaddr)
        paddr = operator.index(start_paddr)
        size = operator.index(size)
        if not self.contains_range(start_vaddr, size):
            raise InvalidInputError("address out of range")
        if not (start_vaddr.is_aligned_4k() and is_aligned_4k(paddr) and is_aligned_4k(size)):
            raise InvalidInputError("address not aligned")
        offset = start_vaddr.as_usize() - paddr
        area = MemoryArea(start_vaddr, size, flags, LinearBackend(offset))
        self._areas.map(area, self._pt, False)

    def map_alloc(self, start, size: int, flags: MappingFlags, populate: bool) -> None:
        """Map ``size`` bytes at ``start`` to frames from the allocator."""
        start = _gpa(start)
        size = operator.index(size)
        if not self.contains_range(start, size):
            raise InvalidInputError(
                f"address [{start!r}~GPA:{start.as_usize() + size:#x}] out of range"
            )
        if not (start.is_aligned_4k() and is_aligned_4k(size)):
            raise InvalidInputError("address not aligned")
        area = MemoryArea(start, size, flags, AllocBackend(bool(populate)))
        self._areas.map(area, self._pt, False)

    def unmap(self, start, size: int) -> None:
        """Remove mappings within ``[start, start + size)``."""
        start = _gpa(start)
        size = operator.index(size)
        if not self.contains_range(start, size):
            raise InvalidInputError("address out of range")
        if not (start.is_aligned_4k() and is_aligned_4k(size)):
            raise InvalidInputError("address not aligned")
        self._areas.unmap(start, size, self._pt)

    def clear(self) -> None:
        """Remove every mapping."""
        self._areas.clear(self._pt)

    def handle_page_fault(self, vaddr, access_flags: MappingFlags) -> bool:
        """Try to resolve a fault; return True when it was not a real fault."""
        vaddr = _gpa(vaddr)
        if not self._va_range.contains(vaddr):
            return False
        area = self._areas.find(vaddr)
        if area is None:
            return False
        if MappingFlags(access_flags) not in area.flags:
            return False
        return area.backend.handle_page_fault(vaddr, area.flags, self._pt)

    def translate(self, vaddr) -> HostPhysAddr | None:
        """Translate a guest address; None when out of range or unmapped."""
        vaddr = _gpa(vaddr)
        if not self._va_range.contains(vaddr):
            return None
        try:
            paddr, _, _ = self._pt.query(vaddr)
        except PagingError:
            return None
        _log.debug("vaddr %r translate to %r", vaddr, paddr)
        return paddr

    def translated_byte_buffer(self, vaddr, length: int) -> list[memoryview] | None:
        """Return writable views of host memory backing ``length`` bytes from ``vaddr``.

        One view per page touched. None when the address is out of range, not in
        an area, or ``length`` exceeds the area's size.
        """
        vaddr = _gpa(vaddr)
        length = operator.index(length)
        if not self._va_range.contains(vaddr):
            return None
        area = self._areas.find(vaddr)
        if area is None:
            return None
        if length > area.size():
            _log.warning(
                "AddrSpace translated_byte_buffer len %#x exceeds area length %#x",
                length,
                area.size(),
            )
            return None
        hal = self._pt.hal
        start = vaddr.as_usize()
        end = start + length
        _log.debug("start %#x end %#x area size %#x", start, end, area.size())
        views = []
        while start < end:
            paddr, _, page_size = self._pt.query(start)
            chunk_end = min((start & ~(page_size - 1)) + page_size, end)
            views.append(hal.buffer(hal.phys_to_virt(paddr), chunk_end - start))
            start = chunk_end
        return views

    def translate_and_get_limit(self, vaddr) -> tuple[HostPhysAddr, int] | None:
        """Translate a guest address and return it with the size of its area."""
        vaddr = _gpa(vaddr)
        if not self._va_range.contains(vaddr):
            return None
        area = self._areas.find(vaddr)
        if area is None:
            return None
        try:
            paddr, _, _ = self._pt.query(vaddr)
        except PagingError:
            return None
        return paddr, area.size()

    def close(self) -> None:
        """Remove every mapping and free the page table; later calls do nothing."""
        if self._closed:
            return
        self.clear()
        self._pt.release()
        self._closed = True

    def __enter__(self) -> AddrSpace:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        root = "released" if self._closed else repr(self._pt.root_paddr())
        return (
            f"AddrSpace(va_range={self._va_range!r}, page_table_root={root}, "
            f"areas={self._areas!r})"
        )