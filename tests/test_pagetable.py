import pytest

from axaddrspace.addr import GuestPhysAddr, HostPhysAddr
from axaddrspace.arch_x86_64 import EPTEntry, ExtendedPageTableMetadata
from axaddrspace.errors import AxError, BadStateError
from axaddrspace.flags import MappingFlags
from axaddrspace.hal import MemoryHal
from axaddrspace.pagetable import PageSize, PageTable64, PagingError, nested_page_table

RW = MappingFlags.READ | MappingFlags.WRITE
HAL_BASE = 0x10_0000
TARGET = HostPhysAddr(0x8000_0000)


def _free_frames(hal):
    frames = []
    while (frame := hal.alloc_frame()) is not None:
        frames.append(frame)
    for frame in frames:
        hal.dealloc_frame(frame)
    return len(frames)


@pytest.fixture(params=["x86_64", "aarch64"])
def pt(request):
    hal = MemoryHal(HAL_BASE, 32)
    table = nested_page_table(hal, request.param)
    yield table
    table.release()


def test_root_is_aligned_frame_of_hal(pt):
    root = pt.root_paddr()
    assert root.is_aligned_4k()
    assert root.as_usize() >= HAL_BASE


def test_map_then_query(pt):
    pt.map(GuestPhysAddr(0x4000), TARGET, PageSize.SIZE_4K, RW)
    paddr, flags, size = pt.query(GuestPhysAddr(0x4000) + 0x123)
    assert paddr == TARGET + 0x123
    assert size is PageSize.SIZE_4K
    assert MappingFlags.READ in flags


def test_x86_flags_round_trip():
    hal = MemoryHal(HAL_BASE, 16)
    pt = nested_page_table(hal, "x86_64")
    pt.map(GuestPhysAddr(0x1000), TARGET, PageSize.SIZE_4K, RW)
    assert pt.query(GuestPhysAddr(0x1000))[1] == RW


def test_map_twice_already_mapped(pt):
    pt.map(GuestPhysAddr(0x4000), TARGET, PageSize.SIZE_4K, RW)
    with pytest.raises(PagingError) as info:
        pt.map(GuestPhysAddr(0x4000), TARGET, PageSize.SIZE_4K, RW)
    assert info.value.reason == PagingError.ALREADY_MAPPED


def test_map_misaligned_vaddr(pt):
    with pytest.raises(PagingError) as info:
        pt.map(GuestPhysAddr(0x4001), TARGET, PageSize.SIZE_4K, RW)
    assert info.value.reason == PagingError.NOT_ALIGNED


def test_unmap_returns_frame_and_removes_mapping(pt):
    pt.map(GuestPhysAddr(0x4000), TARGET, PageSize.SIZE_4K, RW)
    assert pt.unmap(GuestPhysAddr(0x4000)) == (TARGET, PageSize.SIZE_4K)
    with pytest.raises(PagingError) as info:
        pt.query(GuestPhysAddr(0x4000))
    assert info.value.reason == PagingError.NOT_MAPPED


def test_unmap_unmapped(pt):
    with pytest.raises(PagingError) as info:
        pt.unmap(GuestPhysAddr(0x9000))
    assert info.value.reason == PagingError.NOT_MAPPED


def test_remap_changes_target(pt):
    pt.map(GuestPhysAddr(0x4000), TARGET, PageSize.SIZE_4K, RW)
    other = HostPhysAddr(0x9000_0000)
    assert pt.remap(GuestPhysAddr(0x4000) + 0x10, other, RW) is PageSize.SIZE_4K
    assert pt.query(GuestPhysAddr(0x4000))[0] == other


def test_map_region_uses_huge_pages_when_allowed():
    hal = MemoryHal(HAL_BASE, 16)
    pt = nested_page_table(hal, "x86_64")
    start = GuestPhysAddr(PageSize.SIZE_2M)
    pt.map_region(
        start,
        lambda va: HostPhysAddr(va.as_usize() + TARGET.as_usize()),
        PageSize.SIZE_2M + PageSize.SIZE_4K,
        RW,
        True,
        False,
    )
    paddr, _, size = pt.query(start + 0x1234)
    assert size is PageSize.SIZE_2M
    assert paddr == HostPhysAddr(start.as_usize() + TARGET.as_usize() + 0x1234)
    assert pt.query(start + PageSize.SIZE_2M)[2] is PageSize.SIZE_4K


def test_map_region_without_huge_pages(pt):
    start = GuestPhysAddr(PageSize.SIZE_2M)
    pt.map_region(start, lambda va: TARGET, PageSize.SIZE_2M, RW, False, True)
    assert pt.query(start)[2] is PageSize.SIZE_4K


def test_map_region_not_aligned(pt):
    with pytest.raises(PagingError) as info:
        pt.map_region(GuestPhysAddr(0x1000), lambda va: TARGET, 0x800, RW, False, False)
    assert info.value.reason == PagingError.NOT_ALIGNED


def test_unmap_region_clears_all_pages(pt):
    start = GuestPhysAddr(0x10000)
    pt.map_region(start, lambda va: HostPhysAddr(va.as_usize()), 4 * PageSize.SIZE_4K, RW, False, False)
    pt.unmap_region(start, 4 * PageSize.SIZE_4K, True)
    for page in range(4):
        with pytest.raises(PagingError):
            pt.query(start + page * PageSize.SIZE_4K)


def test_aarch64_one_gigabyte_block():
    hal = MemoryHal(HAL_BASE, 8)
    pt = nested_page_table(hal, "aarch64")
    start = GuestPhysAddr(PageSize.SIZE_1G)
    pt.map(start, TARGET, PageSize.SIZE_1G, MappingFlags.READ)
    paddr, _, size = pt.query(start + 0x1234)
    assert size is PageSize.SIZE_1G
    assert paddr == TARGET + 0x1234


def test_release_returns_all_frames():
    hal = MemoryHal(HAL_BASE, 16)
    before = _free_frames(hal)
    pt = nested_page_table(hal, "x86_64")
    pt.map(GuestPhysAddr(0x4000), TARGET, PageSize.SIZE_4K, RW)
    assert _free_frames(hal) < before
    pt.release()
    assert _free_frames(hal) == before
    with pytest.raises(BadStateError):
        pt.query(GuestPhysAddr(0x4000))


def test_no_memory_for_root():
    with pytest.raises(PagingError) as info:
        nested_page_table(MemoryHal(HAL_BASE, 0), "x86_64")
    assert info.value.reason == PagingError.NO_MEMORY
    assert isinstance(info.value, AxError)


def test_unknown_arch():
    with pytest.raises(ValueError):
        nested_page_table(MemoryHal(HAL_BASE, 4), "mips")


def test_direct_construction():
    hal = MemoryHal(HAL_BASE, 8)
    pt = PageTable64(ExtendedPageTableMetadata, EPTEntry, hal)
    pt.map(GuestPhysAddr(0x2000), TARGET, PageSize.SIZE_4K, RW)
    assert pt.query(GuestPhysAddr(0x2000))[0] == TARGET


@pytest.mark.parametrize(
    "size, huge",
    [(PageSize.SIZE_4K, False), (PageSize.SIZE_2M, True), (PageSize.SIZE_1G, True)],
)
def test_page_size_is_huge(size, huge):
    assert size.is_huge() is huge