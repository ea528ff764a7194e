import pytest

from axaddrspace.addr import GuestPhysAddr, HostPhysAddr
from axaddrspace.backend import AllocBackend, LinearBackend
from axaddrspace.flags import MappingFlags
from axaddrspace.hal import MemoryHal
from axaddrspace.pagetable import PageSize, PagingError, nested_page_table

RW = MappingFlags.READ | MappingFlags.WRITE
PAGE = PageSize.SIZE_4K
START = GuestPhysAddr(0x40_0000)


def _free_frames(hal):
    frames = []
    while (frame := hal.alloc_frame()) is not None:
        frames.append(frame)
    for frame in frames:
        hal.dealloc_frame(frame)
    return len(frames)


@pytest.fixture(params=["x86_64", "aarch64"])
def pt(request):
    return nested_page_table(MemoryHal(0x10_0000, 32), request.param)


def test_linear_map_translates_with_offset(pt):
    backend = LinearBackend(pa_va_offset=0x30_0000)
    assert backend.map(START, 2 * PAGE, RW, pt) is True
    assert pt.query(START + PAGE + 0x10)[0] == HostPhysAddr(START.as_usize() - 0x30_0000 + PAGE + 0x10)


def test_linear_unmap(pt):
    backend = LinearBackend(pa_va_offset=0)
    assert backend.map(START, 2 * PAGE, RW, pt)
    assert backend.unmap(START, 2 * PAGE, pt) is True
    with pytest.raises(PagingError):
        pt.query(START)


def test_linear_unmap_unmapped_fails(pt):
    assert LinearBackend(pa_va_offset=0).unmap(START, PAGE, pt) is False


def test_linear_map_overlap_fails(pt):
    backend = LinearBackend(pa_va_offset=0)
    assert backend.map(START, PAGE, RW, pt)
    assert backend.map(START, PAGE, RW, pt) is False


def test_linear_never_handles_faults(pt):
    backend = LinearBackend(pa_va_offset=0)
    backend.map(START, PAGE, RW, pt)
    assert backend.handle_page_fault(START, RW, pt) is False


def test_protect_is_accepted(pt):
    assert LinearBackend(pa_va_offset=0).protect(START, PAGE, RW, pt) is True
    assert AllocBackend(populate=True).protect(START, PAGE, RW, pt) is True


def test_populated_alloc_maps_every_page(pt):
    backend = AllocBackend(populate=True)
    assert backend.map(START, 3 * PAGE, RW, pt)
    frames = {pt.query(START + i * PAGE)[0] for i in range(3)}
    assert len(frames) == 3
    assert backend.handle_page_fault(START, RW, pt) is False


def test_populated_alloc_unmap_returns_frames(pt):
    backend = AllocBackend(populate=True)
    assert backend.map(START, PAGE, RW, pt)
    assert backend.unmap(START, PAGE, pt)
    before = _free_frames(pt.hal)
    assert backend.map(START, 3 * PAGE, RW, pt)
    assert _free_frames(pt.hal) == before - 3
    assert backend.unmap(START, 3 * PAGE, pt) is True
    assert _free_frames(pt.hal) == before


def test_populated_alloc_out_of_memory():
    pt = nested_page_table(MemoryHal(0x10_0000, 6), "x86_64")
    assert AllocBackend(populate=True).map(START, 16 * PAGE, RW, pt) is False


def test_lazy_alloc_faults_in_frames(pt):
    backend = AllocBackend(populate=False)
    assert backend.map(START, 2 * PAGE, RW, pt)
    with pytest.raises(PagingError) as info:
        pt.query(START)
    assert info.value.reason == PagingError.NOT_MAPPED
    assert backend.handle_page_fault(START + 0x80, RW, pt) is True
    paddr, flags, size = pt.query(START)
    assert paddr.is_aligned_4k()
    assert MappingFlags.READ in flags
    assert size is PAGE
    with pytest.raises(PagingError):
        pt.query(START + PAGE)


def test_lazy_alloc_unmap_frees_faulted_frames(pt):
    backend = AllocBackend(populate=False)
    assert backend.map(START, 2 * PAGE, RW, pt)
    before = _free_frames(pt.hal)
    assert backend.handle_page_fault(START, RW, pt)
    assert _free_frames(pt.hal) == before - 1
    assert backend.unmap(START, 2 * PAGE, pt) is True
    assert _free_frames(pt.hal) == before
    with pytest.raises(PagingError):
        pt.query(START)


def test_lazy_fault_keeps_original_flags_x86():
    pt = nested_page_table(MemoryHal(0x10_0000, 16), "x86_64")
    backend = AllocBackend(populate=False)
    assert backend.map(START, PAGE, RW, pt)
    assert backend.handle_page_fault(START, RW, pt)
    assert pt.query(START)[1] == RW


def test_lazy_fault_outside_mapping_fails(pt):
    backend = AllocBackend(populate=False)
    before = _free_frames(pt.hal)
    assert backend.handle_page_fault(GuestPhysAddr(0x8000_0000), RW, pt) is False
    assert _free_frames(pt.hal) == before