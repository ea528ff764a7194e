"""Physical frames owned by an allocator and released explicitly."""

from __future__ import annotations

import logging

from axaddrspace.addr import PAGE_SIZE_4K, HostPhysAddr
from axaddrspace.errors import BadStateError, NoMemoryError
from axaddrspace.hal import AxMmHal

_log = logging.getLogger(__name__)


class PhysFrame:
    """A 4 KiB physical frame that returns itself to the allocator on release."""

    def __init__(self, hal: AxMmHal, start_paddr: HostPhysAddr | None = None) -> None:
        self._hal = hal
        self._start_paddr = start_paddr

    @classmethod
    def alloc(cls, hal: AxMmHal) -> PhysFrame:
        """Allocate a frame."""
        paddr = hal.alloc_frame()
        if paddr is None:
            raise NoMemoryError("allocate physical frame failed")
        if paddr.as_usize() == 0:
            hal.dealloc_frame(paddr)
            raise BadStateError("allocator returned a frame at physical address 0")
        return cls(hal, paddr)

    @classmethod
    def alloc_zero(cls, hal: AxMmHal) -> PhysFrame:
        """Allocate a frame and fill it with zeros."""
        frame = cls.alloc(hal)
        frame.fill(0)
        return frame

    @classmethod
    def uninit(cls, hal: AxMmHal) -> PhysFrame:
        """Create a placeholder frame that owns no memory."""
        return cls(hal)

    def start_paddr(self) -> HostPhysAddr:
        if self._start_paddr is None:
            raise BadStateError("uninitialized PhysFrame")
        return self._start_paddr

    def as_buffer(self) -> memoryview:
        """Return a writable view of the frame's bytes."""
        return self._hal.buffer(self._hal.phys_to_virt(self.start_paddr()), PAGE_SIZE_4K)

    def fill(self, byte: int) -> None:
        if not 0 <= byte <= 0xFF:
            raise ValueError(f"fill byte {byte} out of range")
        self.as_buffer()[:] = bytes([byte]) * PAGE_SIZE_4K

    def release(self) -> None:
        """Return the frame to the allocator; later calls do nothing."""
        paddr, self._start_paddr = self._start_paddr, None
        if paddr is not None:
            self._hal.dealloc_frame(paddr)
            _log.debug("[AxVM] deallocated PhysFrame(%#x)", paddr.as_usize())

    def __enter__(self) -> PhysFrame:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"PhysFrame(start_paddr={self._start_paddr!r})"