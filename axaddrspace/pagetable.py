"""Multi-level nested page tables kept in simulated host memory."""

from __future__ import annotations

import enum
import logging
import operator
from collections.abc import Callable

from axaddrspace.addr import PAGE_SIZE_4K, Addr, HostPhysAddr
from axaddrspace.arch_aarch64 import A64HVPagingMetaData, A64PTEHV
from axaddrspace.arch_x86_64 import EPTEntry, ExtendedPageTableMetadata
from axaddrspace.errors import AxError, BadStateError
from axaddrspace.flags import MappingFlags
from axaddrspace.hal import AxMmHal

_log = logging.getLogger(__name__)

_ENTRY_SIZE = 8
_ENTRY_BITS = 9
_ENTRY_MASK = (1 << _ENTRY_BITS) - 1


class PageSize(enum.IntEnum):
    """Sizes of pages a leaf entry can map."""

    SIZE_4K = 0x1000
    SIZE_2M = 0x20_0000
    SIZE_1G = 0x4000_0000

    def is_huge(self) -> bool:
        return self is not PageSize.SIZE_4K


_LEVEL_OF_SIZE = {PageSize.SIZE_4K: 1, PageSize.SIZE_2M: 2, PageSize.SIZE_1G: 3}
_SIZE_OF_LEVEL = {level: size for size, level in _LEVEL_OF_SIZE.items()}


class PagingError(AxError):
    """A page-table operation failed; ``reason`` tells why."""

    NO_MEMORY = "no_memory"
    NOT_ALIGNED = "not_aligned"
    NOT_MAPPED = "not_mapped"
    ALREADY_MAPPED = "already_mapped"
    MAPPED_TO_HUGE_PAGE = "mapped_to_huge_page"

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason.replace("_", " "))


def _index(vaddr: int, level: int) -> int:
    return (vaddr >> (12 + _ENTRY_BITS * (level - 1))) & _ENTRY_MASK


class PageTable64:
    """A 64-bit multi-level page table whose tables live in frames of ``hal``."""

    def __init__(self, metadata, pte_type, hal: AxMmHal) -> None:
        self.metadata = metadata
        self.pte_type = pte_type
        self.hal = hal
        self._tables: list[int] = []
        self._root: int | None = None
        self._root = self._alloc_table()

    # --- table storage -------------------------------------------------

    def _alloc_table(self) -> int:
        frame = self.hal.alloc_frame()
        if frame is None:
            raise PagingError(PagingError.NO_MEMORY, "cannot allocate a page table frame")
        paddr = frame.as_usize()
        self._view(paddr, PAGE_SIZE_4K)[:] = bytes(PAGE_SIZE_4K)
        self._tables.append(paddr)
        return paddr

    def _view(self, paddr: int, length: int) -> memoryview:
        return self.hal.buffer(self.hal.phys_to_virt(HostPhysAddr(paddr)), length)

    def _read(self, table: int, index: int):
        raw = int.from_bytes(self._view(table + index * _ENTRY_SIZE, _ENTRY_SIZE), "little")
        return self.pte_type(raw)

    def _write(self, table: int, index: int, pte) -> None:
        self._view(table + index * _ENTRY_SIZE, _ENTRY_SIZE)[:] = pte.bits().to_bytes(
            _ENTRY_SIZE, "little"
        )

    def _root_table(self) -> int:
        if self._root is None:
            raise BadStateError("page table has been released")
        return self._root

    def _flush(self, vaddr: int | None) -> None:
        self.metadata.flush_tlb(None if vaddr is None else self.metadata.VIRT_ADDR(vaddr))

    # --- walking ---------------------------------------------------------

    def _find(self, vaddr: int):
        """Return ``(table, index, pte, page_size)`` of the leaf entry for vaddr."""
        table = self._root_table()
        for level in range(self.metadata.LEVELS, 0, -1):
            index = _index(vaddr, level)
            pte = self._read(table, index)
            if level == 1:
                return table, index, pte, PageSize.SIZE_4K
            if not pte.is_present():
                raise PagingError(PagingError.NOT_MAPPED, f"{vaddr:#x} is not mapped")
            if pte.is_huge():
                if level in _SIZE_OF_LEVEL:
                    return table, index, pte, _SIZE_OF_LEVEL[level]
                raise PagingError(PagingError.MAPPED_TO_HUGE_PAGE)
            table = pte.paddr().as_usize()
        raise BadStateError("page table has no levels")

    def _find_or_create(self, vaddr: int, page_size: PageSize):
        target_level = _LEVEL_OF_SIZE[page_size]
        if target_level > self.metadata.LEVELS:
            raise PagingError(PagingError.NOT_ALIGNED, f"page size {page_size:#x} unsupported")
        table = self._root_table()
        for level in range(self.metadata.LEVELS, target_level, -1):
            index = _index(vaddr, level)
            pte = self._read(table, index)
            if pte.is_unused():
                child = self._alloc_table()
                self._write(table, index, self.pte_type.new_table(HostPhysAddr(child)))
                table = child
            elif not pte.is_present():
                raise PagingError(PagingError.NOT_MAPPED, f"{vaddr:#x} is not mapped")
            elif pte.is_huge():
                raise PagingError(PagingError.MAPPED_TO_HUGE_PAGE)
            else:
                table = pte.paddr().as_usize()
        return table, _index(vaddr, target_level)

    # --- public interface ------------------------------------------------

    def root_paddr(self) -> HostPhysAddr:
        return HostPhysAddr(self._root_table())

    def map(self, vaddr, paddr, page_size, flags: MappingFlags) -> None:
        """Map one page of ``page_size`` at ``vaddr`` to ``paddr``."""
        page_size = PageSize(page_size)
        vaddr = operator.index(vaddr)
        if vaddr & (page_size - 1):
            raise PagingError(PagingError.NOT_ALIGNED, f"{vaddr:#x} is not aligned")
        table, index = self._find_or_create(vaddr, page_size)
        if not self._read(table, index).is_unused():
            raise PagingError(PagingError.ALREADY_MAPPED, f"{vaddr:#x} is already mapped")
        target = HostPhysAddr(operator.index(paddr) & ~(page_size - 1))
        self._write(table, index, self.pte_type.new_page(target, flags, page_size.is_huge()))

    def unmap(self, vaddr) -> tuple[HostPhysAddr, PageSize]:
        """Remove the mapping of the page holding ``vaddr``; return its frame and size."""
        vaddr = operator.index(vaddr)
        table, index, pte, size = self._find(vaddr)
        self._write(table, index, self.pte_type(0))
        if not pte.is_present():
            raise PagingError(PagingError.NOT_MAPPED, f"{vaddr:#x} is not mapped")
        self._flush(vaddr)
        return pte.paddr(), size

    def remap(self, vaddr, paddr, flags: MappingFlags) -> PageSize:
        """Point the existing entry for ``vaddr`` at ``paddr`` with new flags."""
        vaddr = operator.index(vaddr)
        table, index, pte, size = self._find(vaddr)
        pte.set_paddr(HostPhysAddr(operator.index(paddr) & ~(size - 1)))
        pte.set_flags(flags, size.is_huge())
        self._write(table, index, pte)
        self._flush(vaddr)
        return size

    def query(self, vaddr) -> tuple[HostPhysAddr, MappingFlags, PageSize]:
        """Translate ``vaddr``; return the physical address, flags and page size."""
        vaddr = operator.index(vaddr)
        _, _, pte, size = self._find(vaddr)
        if not pte.is_present():
            raise PagingError(PagingError.NOT_MAPPED, f"{vaddr:#x} is not mapped")
        return HostPhysAddr(pte.paddr().as_usize() + (vaddr & (size - 1))), pte.flags(), size

    def map_region(
        self,
        vaddr,
        get_paddr: Callable[[Addr], Addr],
        size: int,
        flags: MappingFlags,
        allow_huge: bool,
        flush_tlb_by_page: bool,
    ) -> None:
        """Map ``size`` bytes from ``vaddr``, each page to ``get_paddr(page)``."""
        va = operator.index(vaddr)
        size = operator.index(size)
        first = operator.index(get_paddr(self.metadata.VIRT_ADDR(va)))
        if (va | first | size) & (PAGE_SIZE_4K - 1):
            raise PagingError(PagingError.NOT_ALIGNED, "region is not 4K aligned")
        _log.debug("map_region: [%#x, %#x) %r", va, va + size, flags)
        while size > 0:
            paddr = operator.index(get_paddr(self.metadata.VIRT_ADDR(va)))
            page_size = PageSize.SIZE_4K
            if allow_huge:
                for candidate in (PageSize.SIZE_1G, PageSize.SIZE_2M):
                    if (
                        _LEVEL_OF_SIZE[candidate] <= self.metadata.LEVELS
                        and not (va | paddr) & (candidate - 1)
                        and size >= candidate
                    ):
                        page_size = candidate
                        break
            self.map(va, paddr, page_size, flags)
            if flush_tlb_by_page:
                self._flush(va)
            va += page_size
            size -= page_size
        if not flush_tlb_by_page:
            self._flush(None)

    def unmap_region(self, vaddr, size: int, flush_tlb_by_page: bool) -> None:
        """Remove every mapping in ``size`` bytes from ``vaddr``."""
        va = operator.index(vaddr)
        size = operator.index(size)
        _log.debug("unmap_region: [%#x, %#x)", va, va + size)
        while size > 0:
            _, page_size = self.unmap(va)
            if va & (page_size - 1) or page_size > size:
                raise PagingError(PagingError.NOT_ALIGNED, f"{va:#x} is inside a larger page")
            va += page_size
            size -= page_size
        if not flush_tlb_by_page:
            self._flush(None)

    def release(self) -> None:
        """Return every table frame to the allocator; later calls do nothing."""
        tables, self._tables, self._root = self._tables, [], None
        for paddr in tables:
            self.hal.dealloc_frame(HostPhysAddr(paddr))

    def __repr__(self) -> str:
        root = "released" if self._root is None else f"{self._root:#x}"
        return f"PageTable64(root={root}, levels={self.metadata.LEVELS})"


_ARCHES = {
    "x86_64": (ExtendedPageTableMetadata, EPTEntry),
    "aarch64": (A64HVPagingMetaData, A64PTEHV),
}


def nested_page_table(hal: AxMmHal, arch: str = "aarch64") -> PageTable64:
    """Create the nested page table used for two-stage translation on ``arch``."""
    try:
        metadata, pte_type = _ARCHES[arch]
    except KeyError:
        raise ValueError(f"unsupported architecture: {arch!r}") from None
    return PageTable64(metadata, pte_type, hal)