"""Memory-management hardware abstraction and a simulated host memory."""

from __future__ import annotations

import abc
import operator

from axaddrspace.addr import PAGE_SIZE_4K, HostPhysAddr, HostVirtAddr, is_aligned_4k

_PHYS_VIRT_OFFSET = 0xFFFF_0000_0000_0000


class AxMmHal(abc.ABC):
    """Hardware abstraction layer for memory management."""

    @abc.abstractmethod
    def alloc_frame(self) -> HostPhysAddr | None:
        """Allocate a 4 KiB frame; return its address, or None when out of memory."""

    @abc.abstractmethod
    def dealloc_frame(self, paddr: HostPhysAddr) -> None:
        """Return a frame to the allocator."""

    @abc.abstractmethod
    def phys_to_virt(self, paddr: HostPhysAddr) -> HostVirtAddr:
        """Convert a host physical address to a host virtual address."""

    @abc.abstractmethod
    def virt_to_phys(self, vaddr: HostVirtAddr) -> HostPhysAddr:
        """Convert a host virtual address to a host physical address."""

    @abc.abstractmethod
    def buffer(self, vaddr: HostVirtAddr, length: int) -> memoryview:
        """Return a writable view of host memory starting at a virtual address."""


class MemoryHal(AxMmHal):
    """Host memory simulated by a byte array of ``frame_count`` 4 KiB frames.

    Physical memory starts at ``base``; virtual addresses are physical
    addresses plus a fixed offset.
    """

    def __init__(self, base, frame_count: int) -> None:
        base = operator.index(base)
        frame_count = operator.index(frame_count)
        if base < 0 or not is_aligned_4k(base):
            raise ValueError(f"base {base:#x} is not a 4K-aligned address")
        if frame_count < 0:
            raise ValueError("frame count must not be negative")
        if base + frame_count * PAGE_SIZE_4K > _PHYS_VIRT_OFFSET:
            raise ValueError("simulated memory does not fit the physical address space")
        self._base = base
        self._memory = bytearray(frame_count * PAGE_SIZE_4K)
        self._free = [base + i * PAGE_SIZE_4K for i in reversed(range(frame_count))]
        self._allocated: set[int] = set()

    def alloc_frame(self) -> HostPhysAddr | None:
        if not self._free:
            return None
        paddr = self._free.pop()
        self._allocated.add(paddr)
        return HostPhysAddr(paddr)

    def dealloc_frame(self, paddr) -> None:
        value = operator.index(paddr)
        if value not in self._allocated:
            raise ValueError(f"frame {value:#x} is not allocated")
        self._allocated.remove(value)
        self._free.append(value)

    def phys_to_virt(self, paddr) -> HostVirtAddr:
        return HostVirtAddr(operator.index(paddr) + _PHYS_VIRT_OFFSET)

    def virt_to_phys(self, vaddr) -> HostPhysAddr:
        return HostPhysAddr(operator.index(vaddr) - _PHYS_VIRT_OFFSET)

    def buffer(self, vaddr, length: int) -> memoryview:
        length = operator.index(length)
        if length < 0:
            raise ValueError("length must not be negative")
        offset = self.virt_to_phys(vaddr).as_usize() - self._base
        if offset < 0 or offset + length > len(self._memory):
            raise ValueError(f"[{operator.index(vaddr):#x}, +{length:#x}) is outside host memory")
        return memoryview(self._memory)[offset : offset + length]