"""Intel VMX extended page table (EPT) entries."""

from __future__ import annotations

import enum
import functools
import operator
from typing import ClassVar

from axaddrspace.addr import GuestPhysAddr, HostPhysAddr
from axaddrspace.flags import MappingFlags

_U64_MAX = (1 << 64) - 1
_MEM_TYPE_SHIFT = 3
_MEM_TYPE_FIELD = 0b111 << _MEM_TYPE_SHIFT


class EPTFlags(enum.IntFlag):
    """EPT entry flags (SDM Vol. 3C, Section 28.3.2)."""

    READ = 1 << 0
    WRITE = 1 << 1
    EXECUTE = 1 << 2
    MEM_TYPE_MASK = 0b111 << 3
    IGNORE_PAT = 1 << 6
    HUGE_PAGE = 1 << 7
    ACCESSED = 1 << 8
    DIRTY = 1 << 9
    EXECUTE_FOR_USER = 1 << 10


_EPT_KNOWN_BITS = functools.reduce(
    operator.or_, (int(member) for member in EPTFlags.__members__.values()), 0
)


def _truncate(raw: int) -> EPTFlags:
    return EPTFlags(raw & _EPT_KNOWN_BITS)


class EPTMemType(enum.IntEnum):
    """EPT memory typing (SDM Vol. 3C, Section 28.3.7)."""

    UNCACHED = 0
    WRITE_COMBINING = 1
    WRITE_THROUGH = 4
    WRITE_PROTECTED = 5
    WRITE_BACK = 6


def set_mem_type(flags: EPTFlags, mem_type: EPTMemType) -> EPTFlags:
    """Return the flags with the memory-type field replaced."""
    mem_type = EPTMemType(mem_type)
    raw = (int(flags) & ~_MEM_TYPE_FIELD) | (int(mem_type) << _MEM_TYPE_SHIFT)
    return _truncate(raw)


def get_mem_type(flags: EPTFlags) -> EPTMemType:
    """Decode the memory-type field; raise ValueError for an undefined type."""
    value = (int(flags) & _MEM_TYPE_FIELD) >> _MEM_TYPE_SHIFT
    try:
        return EPTMemType(value)
    except ValueError:
        raise ValueError(f"undefined EPT memory type {value}") from None


def ept_flags_from_mapping(flags: MappingFlags) -> EPTFlags:
    """Convert generic mapping flags into EPT flags."""
    flags = MappingFlags(flags)
    ret = EPTFlags(0)
    if not flags:
        return ret
    if MappingFlags.READ in flags:
        ret |= EPTFlags.READ
    if MappingFlags.WRITE in flags:
        ret |= EPTFlags.WRITE
    if MappingFlags.EXECUTE in flags:
        ret |= EPTFlags.EXECUTE
    if MappingFlags.DEVICE not in flags:
        ret = set_mem_type(ret, EPTMemType.WRITE_BACK)
    return ret


def mapping_flags_from_ept(flags: EPTFlags) -> MappingFlags:
    """Convert EPT flags into generic mapping flags."""
    raw = int(flags)
    ret = MappingFlags(0)
    if raw & EPTFlags.READ:
        ret |= MappingFlags.READ
    if raw & EPTFlags.WRITE:
        ret |= MappingFlags.WRITE
    if raw & EPTFlags.EXECUTE:
        ret |= MappingFlags.EXECUTE
    try:
        if get_mem_type(flags) is EPTMemType.UNCACHED:
            ret |= MappingFlags.DEVICE
    except ValueError:
        pass
    return ret


class EPTEntry:
    """An x86_64 VMX extended page table entry."""

    PHYS_ADDR_MASK: ClassVar[int] = 0x000F_FFFF_FFFF_F000

    __slots__ = ("_raw",)

    def __init__(self, raw: int = 0) -> None:
        raw = operator.index(raw)
        if not 0 <= raw <= _U64_MAX:
            raise ValueError(f"entry value {raw:#x} is not a 64-bit value")
        self._raw = raw

    @staticmethod
    def _page_flags(flags: MappingFlags, is_huge: bool) -> EPTFlags:
        ept = ept_flags_from_mapping(flags)
        if is_huge:
            ept |= EPTFlags.HUGE_PAGE
        return ept

    @classmethod
    def new_page(cls, paddr, flags: MappingFlags, is_huge: bool) -> EPTEntry:
        ept = cls._page_flags(flags, is_huge)
        return cls(int(ept) | (operator.index(paddr) & cls.PHYS_ADDR_MASK))

    @classmethod
    def new_table(cls, paddr) -> EPTEntry:
        ept = EPTFlags.READ | EPTFlags.WRITE | EPTFlags.EXECUTE
        return cls(int(ept) | (operator.index(paddr) & cls.PHYS_ADDR_MASK))

    def paddr(self) -> HostPhysAddr:
        return HostPhysAddr(self._raw & self.PHYS_ADDR_MASK)

    def flags(self) -> MappingFlags:
        return mapping_flags_from_ept(_truncate(self._raw))

    def set_paddr(self, paddr) -> None:
        mask = self.PHYS_ADDR_MASK
        self._raw = (self._raw & ~mask & _U64_MAX) | (operator.index(paddr) & mask)

    def set_flags(self, flags: MappingFlags, is_huge: bool) -> None:
        ept = self._page_flags(flags, is_huge)
        self._raw = (self._raw & self.PHYS_ADDR_MASK) | int(ept)

    def is_unused(self) -> bool:
        return self._raw == 0

    def is_present(self) -> bool:
        return self._raw & 0x7 != 0

    def is_huge(self) -> bool:
        return bool(self._raw & EPTFlags.HUGE_PAGE)

    def clear(self) -> None:
        self._raw = 0

    def bits(self) -> int:
        return self._raw

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EPTEntry):
            return NotImplemented
        return self._raw == other._raw

    def __hash__(self) -> int:
        return hash(self._raw)

    def __repr__(self) -> str:
        try:
            mem_type = repr(get_mem_type(_truncate(self._raw)))
        except ValueError as exc:
            mem_type = f"<{exc}>"
        return (
            f"EPTEntry(raw={self._raw:#x}, hpaddr={self.paddr()!r}, "
            f"flags={self.flags()!r}, mem_type={mem_type})"
        )


class ExtendedPageTableMetadata:
    """Metadata of VMX extended page tables."""

    LEVELS: ClassVar[int] = 4
    PA_MAX_BITS: ClassVar[int] = 52
    VA_MAX_BITS: ClassVar[int] = 48
    VIRT_ADDR: ClassVar[type] = GuestPhysAddr

    @staticmethod
    def flush_tlb(vaddr=None) -> None:
        """Invalidate cached translations; simulated memory caches none."""