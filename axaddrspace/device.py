"""Device access widths, I/O ports and system register addresses."""

from __future__ import annotations

import enum
import operator
from dataclasses import dataclass

_USIZE_MAX = (1 << 64) - 1


def _hex(value: int, upper: bool) -> str:
    return f"0x{value:X}" if upper else f"{value:#x}"


class AccessWidth(enum.IntEnum):
    """Width of a device access in bytes; a "word" is 16 bits."""

    BYTE = 1
    WORD = 2
    DWORD = 4
    QWORD = 8

    @classmethod
    def from_size(cls, value: int) -> AccessWidth:
        value = operator.index(value)
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"invalid access width: {value} bytes") from None

    def size(self) -> int:
        return int(self.value)

    def bits_range(self) -> range:
        """The range of bit positions the access covers."""
        return range(0, self.value * 8)


@dataclass(frozen=True, order=True, repr=False)
class Port:
    """A 16-bit I/O port number."""

    value: int

    def __post_init__(self) -> None:
        value = operator.index(self.value)
        if not 0 <= value <= 0xFFFF:
            raise ValueError(f"port number {value} out of range")
        object.__setattr__(self, "value", value)

    def number(self) -> int:
        return self.value

    def __repr__(self) -> str:
        return f"Port({self.value})"

    def __format__(self, spec: str) -> str:
        if spec in ("x", "X"):
            return f"Port({_hex(self.value, spec == 'X')})"
        return format(repr(self), spec)


@dataclass(frozen=True, order=True, repr=False)
class SysRegAddr:
    """A system register address."""

    value: int

    def __post_init__(self) -> None:
        value = operator.index(self.value)
        if not 0 <= value <= _USIZE_MAX:
            raise ValueError(f"system register address {value} out of range")
        object.__setattr__(self, "value", value)

    def addr(self) -> int:
        return self.value

    def __repr__(self) -> str:
        return f"SysRegAddr({self.value})"

    def __format__(self, spec: str) -> str:
        if spec in ("x", "X"):
            return f"SysRegAddr({_hex(self.value, spec == 'X')})"
        return format(repr(self), spec)


@dataclass(frozen=True)
class SysRegAddrRange:
    """An inclusive range of system register addresses."""

    start: SysRegAddr
    end: SysRegAddr

    def contains(self, addr: SysRegAddr) -> bool:
        if not isinstance(addr, SysRegAddr):
            raise TypeError("expected a SysRegAddr")
        return self.start.value <= addr.value <= self.end.value

    def __format__(self, spec: str) -> str:
        if spec == "x":
            return f"{self.start.value:#x}..={self.end.value:#x}"
        return format(repr(self), spec)


@dataclass(frozen=True)
class PortRange:
    """An inclusive range of port numbers."""

    start: Port
    end: Port

    def contains(self, addr: Port) -> bool:
        if not isinstance(addr, Port):
            raise TypeError("expected a Port")
        return self.start.value <= addr.value <= self.end.value

    def __format__(self, spec: str) -> str:
        if spec == "x":
            return f"{self.start.value:#x}..={self.end.value:#x}"
        return format(repr(self), spec)