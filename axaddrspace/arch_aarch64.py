"""AArch64 stage-2 (IPA to host PA) translation table descriptors."""

from __future__ import annotations

import enum
import functools
import operator
from typing import ClassVar

from axaddrspace.addr import GuestPhysAddr, HostPhysAddr
from axaddrspace.flags import MappingFlags

_U64_MAX = (1 << 64) - 1


class DescriptorAttr(enum.IntFlag):
    """Memory attribute fields of VMSAv8-64 stage-2 descriptors."""

    VALID = 1 << 0
    NON_BLOCK = 1 << 1
    ATTR = 0b1111 << 2
    S2AP_RO = 1 << 6
    S2AP_WO = 1 << 7
    INNER = 1 << 8
    SHAREABLE = 1 << 9
    AF = 1 << 10
    NG = 1 << 11
    CONTIGUOUS = 1 << 52
    XN = 1 << 54
    NS = 1 << 55
    PXN_TABLE = 1 << 59
    XN_TABLE = 1 << 60
    AP_NO_EL0_TABLE = 1 << 61
    AP_NO_WRITE_TABLE = 1 << 62
    NS_TABLE = 1 << 63


_ATTR_KNOWN_BITS = functools.reduce(
    operator.or_, (int(member) for member in DescriptorAttr.__members__.values()), 0
)

_ATTR_INDEX_MASK = 0b1111_00
_S2_NORMAL_INNER_WB_CACHEABLE = 0b11 << 2
_S2_NORMAL_OUTER_WB_CACHEABLE = 0b11 << 4
_S2_NORMAL_OUTER_WB_NOCACHEABLE = 0b1 << 4
_NORMAL_BIT = _S2_NORMAL_INNER_WB_CACHEABLE | _S2_NORMAL_OUTER_WB_CACHEABLE


def _truncate(raw: int) -> DescriptorAttr:
    return DescriptorAttr(raw & _ATTR_KNOWN_BITS)


class MemType(enum.IntEnum):
    """Memory types encoded in the descriptor attribute index."""

    DEVICE = 0
    NORMAL = 1
    NORMAL_NON_CACHE = 2


def attr_from_mem_type(mem_type: MemType) -> DescriptorAttr:
    """Return the attribute bits that encode a memory type."""
    mem_type = MemType(mem_type)
    shareable = int(DescriptorAttr.SHAREABLE)
    if mem_type is MemType.NORMAL:
        bits = _NORMAL_BIT | shareable
    elif mem_type is MemType.NORMAL_NON_CACHE:
        bits = _S2_NORMAL_INNER_WB_CACHEABLE | _S2_NORMAL_OUTER_WB_NOCACHEABLE | shareable
    else:
        bits = shareable
    return DescriptorAttr(bits)


def attr_mem_type(attr: DescriptorAttr) -> MemType:
    """Decode the memory type of a set of attributes.

    Raises ValueError when the attribute index holds no known encoding.
    """
    idx = int(attr) & _ATTR_INDEX_MASK
    if idx == _NORMAL_BIT:
        return MemType.NORMAL
    if idx == _S2_NORMAL_OUTER_WB_NOCACHEABLE:
        return MemType.NORMAL_NON_CACHE
    if idx == 0:
        return MemType.DEVICE
    raise ValueError(f"Invalid memory attribute index {idx:#x}")


def attr_from_flags(flags: MappingFlags) -> DescriptorAttr:
    """Convert generic mapping flags into descriptor attributes."""
    flags = MappingFlags(flags)
    if MappingFlags.DEVICE in flags:
        if MappingFlags.UNCACHED in flags:
            attr = attr_from_mem_type(MemType.NORMAL_NON_CACHE)
        else:
            attr = attr_from_mem_type(MemType.DEVICE)
    else:
        attr = attr_from_mem_type(MemType.NORMAL)
    if MappingFlags.READ in flags:
        attr |= DescriptorAttr.VALID | DescriptorAttr.S2AP_RO
    if MappingFlags.WRITE in flags:
        attr |= DescriptorAttr.S2AP_WO
    return attr


def flags_from_attr(attr: DescriptorAttr) -> MappingFlags:
    """Convert descriptor attributes into generic mapping flags."""
    raw = int(attr)
    flags = MappingFlags(0)
    if raw & DescriptorAttr.VALID:
        flags |= MappingFlags.READ
    if not raw & DescriptorAttr.S2AP_WO:
        flags |= MappingFlags.WRITE
    if not raw & DescriptorAttr.XN:
        flags |= MappingFlags.EXECUTE
    if attr_mem_type(attr) is MemType.DEVICE:
        flags |= MappingFlags.DEVICE
    return flags


class A64PTEHV:
    """A VMSAv8-64 stage-2 translation table descriptor."""

    PHYS_ADDR_MASK: ClassVar[int] = 0x0000_FFFF_FFFF_F000

    __slots__ = ("_raw",)

    def __init__(self, raw: int = 0) -> None:
        raw = operator.index(raw)
        if not 0 <= raw <= _U64_MAX:
            raise ValueError(f"descriptor value {raw:#x} is not a 64-bit value")
        self._raw = raw

    @classmethod
    def empty(cls) -> A64PTEHV:
        """Return a descriptor with every bit clear."""
        return cls(0)

    @staticmethod
    def _page_attr(flags: MappingFlags, is_huge: bool) -> DescriptorAttr:
        attr = attr_from_flags(flags) | DescriptorAttr.AF
        if not is_huge:
            attr |= DescriptorAttr.NON_BLOCK
        return attr

    @classmethod
    def new_page(cls, paddr, flags: MappingFlags, is_huge: bool) -> A64PTEHV:
        attr = cls._page_attr(flags, is_huge)
        return cls(int(attr) | (operator.index(paddr) & cls.PHYS_ADDR_MASK))

    @classmethod
    def new_table(cls, paddr) -> A64PTEHV:
        attr = DescriptorAttr.NON_BLOCK | DescriptorAttr.VALID
        return cls(int(attr) | (operator.index(paddr) & cls.PHYS_ADDR_MASK))

    def bits(self) -> int:
        return self._raw

    def paddr(self) -> HostPhysAddr:
        return HostPhysAddr(self._raw & self.PHYS_ADDR_MASK)

    def flags(self) -> MappingFlags:
        return flags_from_attr(_truncate(self._raw))

    def set_paddr(self, paddr) -> None:
        mask = self.PHYS_ADDR_MASK
        self._raw = (self._raw & ~mask & _U64_MAX) | (operator.index(paddr) & mask)

    def set_flags(self, flags: MappingFlags, is_huge: bool) -> None:
        attr = self._page_attr(flags, is_huge)
        self._raw = (self._raw & self.PHYS_ADDR_MASK) | int(attr)

    def is_unused(self) -> bool:
        return self._raw == 0

    def is_present(self) -> bool:
        return bool(self._raw & DescriptorAttr.VALID)

    def is_huge(self) -> bool:
        return not self._raw & DescriptorAttr.NON_BLOCK

    def clear(self) -> None:
        self._raw = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, A64PTEHV):
            return NotImplemented
        return self._raw == other._raw

    def __hash__(self) -> int:
        return hash(self._raw)

    def __repr__(self) -> str:
        try:
            flags = repr(self.flags())
        except ValueError:
            flags = "<invalid>"
        return (
            f"A64PTE(raw={self._raw:#x}, paddr={self.paddr()!r}, "
            f"attr={_truncate(self._raw)!r}, flags={flags})"
        )


class A64HVPagingMetaData:
    """Metadata of AArch64 hypervisor page tables (IPA to host PA)."""

    LEVELS: ClassVar[int] = 3
    PA_MAX_BITS: ClassVar[int] = 48
    VA_MAX_BITS: ClassVar[int] = 40
    VIRT_ADDR: ClassVar[type] = GuestPhysAddr

    @staticmethod
    def flush_tlb(vaddr=None) -> None:
        """Invalidate cached translations; simulated memory caches none."""