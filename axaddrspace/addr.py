"""Typed host and guest addresses and half-open address ranges."""

from __future__ import annotations

import operator
from dataclasses import dataclass
from typing import ClassVar

PAGE_SIZE_4K = 0x1000
_USIZE_MAX = (1 << 64) - 1


def is_aligned_4k(value) -> bool:
    """Return whether the value is a multiple of 4 KiB."""
    return operator.index(value) & (PAGE_SIZE_4K - 1) == 0


def _check_align(align) -> int:
    align = operator.index(align)
    if align <= 0 or align & (align - 1):
        raise ValueError(f"alignment {align:#x} is not a power of two")
    return align


@dataclass(frozen=True, order=True, repr=False)
class Addr:
    """A 64-bit address value; subclasses tell address spaces apart."""

    value: int
    _PREFIX: ClassVar[str] = ""

    def __post_init__(self) -> None:
        value = operator.index(self.value)
        if not 0 <= value <= _USIZE_MAX:
            raise ValueError(f"address {value:#x} out of the 64-bit range")
        object.__setattr__(self, "value", value)

    def as_usize(self) -> int:
        return self.value

    def __index__(self) -> int:
        return self.value

    def __int__(self) -> int:
        return self.value

    def align_down(self, align):
        align = _check_align(align)
        return type(self)(self.value & ~(align - 1))

    def align_up(self, align):
        align = _check_align(align)
        return type(self)((self.value + align - 1) & ~(align - 1))

    def is_aligned_4k(self) -> bool:
        return is_aligned_4k(self.value)

    def __add__(self, other):
        if isinstance(other, Addr):
            return NotImplemented
        return type(self)(self.value + operator.index(other))

    def __sub__(self, other):
        if isinstance(other, Addr):
            if type(other) is not type(self):
                raise TypeError(
                    f"cannot subtract {type(other).__name__} from {type(self).__name__}"
                )
            diff = self.value - other.value
            if diff < 0:
                raise ValueError(f"{self!r} - {other!r} underflows")
            return diff
        return type(self)(self.value - operator.index(other))

    def __repr__(self) -> str:
        return f"{self._PREFIX}{self.value:#x}"

    def __format__(self, spec: str) -> str:
        if spec:
            return format(self.value, spec)
        return repr(self)


class GuestVirtAddr(Addr):
    """Guest virtual address."""

    _PREFIX = "GVA:"


class GuestPhysAddr(Addr):
    """Guest physical address."""

    _PREFIX = "GPA:"


class HostVirtAddr(Addr):
    """Host virtual address."""

    _PREFIX = "VA:"


class HostPhysAddr(Addr):
    """Host physical address."""

    _PREFIX = "PA:"


@dataclass(frozen=True, repr=False)
class AddrRange:
    """A half-open range ``[start, end)`` of addresses of one kind."""

    start: Addr
    end: Addr

    def __post_init__(self) -> None:
        if type(self.start) is not type(self.end):
            raise TypeError("range bounds must be addresses of the same kind")
        if self.start.value > self.end.value:
            raise ValueError(f"invalid range {self!r}")

    @classmethod
    def from_start_size(cls, start: Addr, size: int) -> AddrRange:
        return cls(start, start + size)

    def size(self) -> int:
        return self.end - self.start

    def contains(self, addr: Addr) -> bool:
        return self.start <= addr < self.end

    def contains_range(self, other: AddrRange) -> bool:
        return self.start <= other.start and other.end <= self.end

    def overlaps(self, other: AddrRange) -> bool:
        return self.start < other.end and other.start < self.end

    def __repr__(self) -> str:
        return f"{self.start!r}..{self.end!r}"