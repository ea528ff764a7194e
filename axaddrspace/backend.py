"""Memory mapping backends: linear mappings and allocated (optionally lazy) mappings."""

from __future__ import annotations

import abc
import logging
import operator
from dataclasses import dataclass

from axaddrspace.addr import PAGE_SIZE_4K, HostPhysAddr
from axaddrspace.flags import MappingFlags
from axaddrspace.pagetable import PageSize, PageTable64, PagingError

_log = logging.getLogger(__name__)


class Backend(abc.ABC):
    """How the pages of a memory area get their physical frames.

    Every operation reports success as a boolean, as the memory-set layer expects.
    """

    @abc.abstractmethod
    def map(self, start, size: int, flags: MappingFlags, pt: PageTable64) -> bool:
        """Map ``[start, start + size)`` into ``pt``."""

    @abc.abstractmethod
    def unmap(self, start, size: int, pt: PageTable64) -> bool:
        """Unmap ``[start, start + size)`` from ``pt``."""

    def protect(self, start, size: int, new_flags: MappingFlags, pt: PageTable64) -> bool:
        """Change permissions; mappings are left as they are."""
        return True

    @abc.abstractmethod
    def handle_page_fault(self, vaddr, orig_flags: MappingFlags, pt: PageTable64) -> bool:
        """Resolve a fault at ``vaddr``; return whether it was handled."""


@dataclass(frozen=True)
class LinearBackend(Backend):
    """Contiguous frames: ``vaddr`` maps to ``vaddr - pa_va_offset``."""

    pa_va_offset: int

    def map(self, start, size: int, flags: MappingFlags, pt: PageTable64) -> bool:
        start_va = operator.index(start)
        offset = self.pa_va_offset
        _log.debug(
            "map_linear: [%#x, %#x) -> [%#x, %#x) %r",
            start_va, start_va + size, start_va - offset, start_va - offset + size, flags,
        )
        try:
            pt.map_region(
                start,
                lambda va: HostPhysAddr(operator.index(va) - offset),
                size,
                flags,
                False,
                False,
            )
        except (PagingError, ValueError):
            return False
        return True

    def unmap(self, start, size: int, pt: PageTable64) -> bool:
        _log.debug("unmap_linear: [%#x, %#x)", operator.index(start), operator.index(start) + size)
        try:
            pt.unmap_region(start, size, True)
        except PagingError:
            return False
        return True

    def handle_page_fault(self, vaddr, orig_flags: MappingFlags, pt: PageTable64) -> bool:
        return False


@dataclass(frozen=True)
class AllocBackend(Backend):
    """Frames from the allocator, taken up front (populate) or on first fault."""

    populate: bool

    def map(self, start, size: int, flags: MappingFlags, pt: PageTable64) -> bool:
        start_va = operator.index(start)
        _log.debug(
            "map_alloc: [%#x, %#x) %r (populate=%s)", start_va, start_va + size, flags, self.populate
        )
        if not self.populate:
            try:
                pt.map_region(start, lambda va: HostPhysAddr(0), size, MappingFlags(0), False, False)
            except PagingError:
                return False
            return True
        for addr in range(start_va, start_va + size, PAGE_SIZE_4K):
            frame = pt.hal.alloc_frame()
            if frame is None:
                return False
            try:
                pt.map(addr, frame, PageSize.SIZE_4K, flags)
            except PagingError:
                pt.hal.dealloc_frame(frame)
                return False
        return True

    def unmap(self, start, size: int, pt: PageTable64) -> bool:
        start_va = operator.index(start)
        _log.debug("unmap_alloc: [%#x, %#x)", start_va, start_va + size)
        for addr in range(start_va, start_va + size, PAGE_SIZE_4K):
            try:
                frame, page_size = pt.unmap(addr)
            except PagingError:
                continue  # pages never faulted in have no frame
            if page_size.is_huge():
                return False
            pt.hal.dealloc_frame(frame)
        return True

    def handle_page_fault(self, vaddr, orig_flags: MappingFlags, pt: PageTable64) -> bool:
        if self.populate:
            return False
        frame = pt.hal.alloc_frame()
        if frame is None:
            return False
        try:
            pt.remap(vaddr, frame, orig_flags)
        except PagingError:
            pt.hal.dealloc_frame(frame)
            return False
        return True