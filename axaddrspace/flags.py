"""Mapping permission flags and nested page fault information."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from axaddrspace.addr import GuestPhysAddr


class MappingFlags(enum.IntFlag):
    """Permissions and attributes of a memory mapping."""

    READ = 1 << 0
    WRITE = 1 << 1
    EXECUTE = 1 << 2
    USER = 1 << 3
    DEVICE = 1 << 4
    UNCACHED = 1 << 5


@dataclass(frozen=True)
class NestedPageFaultInfo:
    """Information about a nested page fault."""

    access_flags: MappingFlags
    fault_guest_paddr: GuestPhysAddr