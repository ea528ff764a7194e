import pytest

from axaddrspace.addr import HostPhysAddr
from axaddrspace.arch_x86_64 import (
    EPTEntry,
    EPTFlags,
    EPTMemType,
    ExtendedPageTableMetadata,
    ept_flags_from_mapping,
    get_mem_type,
    mapping_flags_from_ept,
    set_mem_type,
)
from axaddrspace.flags import MappingFlags

RWX = MappingFlags.READ | MappingFlags.WRITE | MappingFlags.EXECUTE


def test_empty_mapping_flags_give_empty_ept_flags():
    assert ept_flags_from_mapping(MappingFlags(0)) == EPTFlags(0)


def test_empty_ept_flags_read_back_as_device():
    assert mapping_flags_from_ept(ept_flags_from_mapping(MappingFlags(0))) == MappingFlags.DEVICE


def test_normal_memory_is_write_back():
    ept = ept_flags_from_mapping(RWX)
    assert get_mem_type(ept) is EPTMemType.WRITE_BACK
    assert EPTFlags.READ in ept and EPTFlags.WRITE in ept and EPTFlags.EXECUTE in ept


def test_device_memory_is_uncached():
    ept = ept_flags_from_mapping(MappingFlags.READ | MappingFlags.DEVICE)
    assert get_mem_type(ept) is EPTMemType.UNCACHED


@pytest.mark.parametrize(
    "flags",
    [
        MappingFlags.READ,
        MappingFlags.READ | MappingFlags.WRITE,
        RWX,
        MappingFlags.EXECUTE,
        MappingFlags.READ | MappingFlags.DEVICE,
        RWX | MappingFlags.DEVICE,
    ],
)
def test_mapping_flags_round_trip(flags):
    assert mapping_flags_from_ept(ept_flags_from_mapping(flags)) == flags


@pytest.mark.parametrize("mem_type", list(EPTMemType))
def test_set_and_get_mem_type(mem_type):
    base = EPTFlags.READ | EPTFlags.HUGE_PAGE
    ept = set_mem_type(set_mem_type(base, EPTMemType.WRITE_BACK), mem_type)
    assert get_mem_type(ept) is mem_type
    assert EPTFlags.READ in ept
    assert EPTFlags.HUGE_PAGE in ept


def test_undefined_mem_type_raises():
    ept = EPTFlags(2 << 3)
    with pytest.raises(ValueError):
        get_mem_type(ept)
    assert MappingFlags.DEVICE not in mapping_flags_from_ept(ept | EPTFlags.READ)


def test_new_page():
    entry = EPTEntry.new_page(HostPhysAddr(0x20_0000), MappingFlags.READ, False)
    assert entry.paddr() == HostPhysAddr(0x20_0000)
    assert entry.is_present()
    assert not entry.is_huge()
    assert entry.flags() == MappingFlags.READ


def test_new_huge_page():
    entry = EPTEntry.new_page(HostPhysAddr(0x4000_0000), RWX, True)
    assert entry.is_huge()
    assert entry.flags() == RWX


def test_new_table_is_rwx():
    entry = EPTEntry.new_table(HostPhysAddr(0x3000))
    assert entry.is_present()
    assert not entry.is_huge()
    assert entry.paddr() == HostPhysAddr(0x3000)
    assert entry.bits() & 0x7 == 0x7


def test_entry_with_no_access_is_not_present():
    entry = EPTEntry.new_page(HostPhysAddr(0x1000), MappingFlags.DEVICE, False)
    assert not entry.is_present()
    assert not entry.is_unused()


def test_paddr_is_masked():
    entry = EPTEntry.new_table(HostPhysAddr(0xABCDE))
    assert entry.paddr() == HostPhysAddr(0xAB000)
    high = EPTEntry.new_table(HostPhysAddr((1 << 53) | 0x5000))
    assert high.paddr() == HostPhysAddr(0x5000)


def test_set_paddr_keeps_flags():
    entry = EPTEntry.new_page(HostPhysAddr(0x1000), RWX, True)
    entry.set_paddr(HostPhysAddr(0x7000))
    assert entry.paddr() == HostPhysAddr(0x7000)
    assert entry.flags() == RWX
    assert entry.is_huge()


def test_set_flags_keeps_paddr():
    entry = EPTEntry.new_page(HostPhysAddr(0x8000), RWX, True)
    entry.set_flags(MappingFlags.READ, False)
    assert entry.paddr() == HostPhysAddr(0x8000)
    assert entry.flags() == MappingFlags.READ
    assert not entry.is_huge()


def test_new_page_matches_set_flags():
    entry = EPTEntry.new_page(HostPhysAddr(0x9000), RWX, False)
    other = EPTEntry()
    other.set_paddr(HostPhysAddr(0x9000))
    other.set_flags(RWX, False)
    assert entry == other


def test_clear():
    entry = EPTEntry.new_table(HostPhysAddr(0x2000))
    entry.clear()
    assert entry.is_unused()
    assert entry.bits() == 0


def test_raw_out_of_range():
    with pytest.raises(ValueError):
        EPTEntry(-1)


def test_metadata_flush_and_geometry():
    assert ExtendedPageTableMetadata.flush_tlb(None) is None
    assert ExtendedPageTableMetadata.LEVELS == 4
    assert ExtendedPageTableMetadata.PA_MAX_BITS == 52
    assert ExtendedPageTableMetadata.VA_MAX_BITS == 48