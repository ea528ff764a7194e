# axaddrspace

Guest physical address space management for a hypervisor, modelled in pure Python.

The package keeps track of a guest's physical address space: which ranges are
mapped, how they are backed, and how guest physical addresses translate to host
physical addresses through a nested (two-stage) page table. Page tables live in
frames handed out by a memory HAL, so the whole structure can be inspected and
exercised in-process.

## Modules

- `axaddrspace.addr`: `GuestPhysAddr`, `GuestVirtAddr`, `HostPhysAddr`,
  `HostVirtAddr` (all subclasses of `Addr`), the half-open `AddrRange`, and
  `is_aligned_4k`. Addresses support `+ int`, `- int`, and subtraction of two
  addresses of the same kind, plus `align_down`, `align_up` and `is_aligned_4k`.
- `axaddrspace.hal`: the abstract `AxMmHal` interface (`alloc_frame`,
  `dealloc_frame`, `phys_to_virt`, `virt_to_phys`, `buffer`) and `MemoryHal`,
  an implementation backed by a `bytearray` of `frame_count` 4 KiB frames
  starting at physical address `base`.
- `axaddrspace.frame`: `PhysFrame`, a 4 KiB frame with `alloc`, `alloc_zero`,
  `uninit`, `start_paddr`, `as_buffer`, `fill` and `release`; it is also a
  context manager that releases the frame on exit.
- `axaddrspace.flags`: `MappingFlags` (`READ`, `WRITE`, `EXECUTE`, `USER`,
  `DEVICE`, `UNCACHED`) and the `NestedPageFaultInfo` record.
- `axaddrspace.arch_aarch64`: AArch64 stage-2 descriptors (`A64PTEHV`,
  `DescriptorAttr`, `MemType`) with the conversions `attr_from_flags`,
  `flags_from_attr`, `attr_from_mem_type`, `attr_mem_type`, and the
  `A64HVPagingMetaData` (3 levels, 40-bit guest addresses).
- `axaddrspace.arch_x86_64`: Intel EPT entries (`EPTEntry`, `EPTFlags`,
  `EPTMemType`) with `ept_flags_from_mapping`, `mapping_flags_from_ept`,
  `set_mem_type`, `get_mem_type`, and `ExtendedPageTableMetadata` (4 levels).
- `axaddrspace.pagetable`: `PageTable64` (`map`, `unmap`, `remap`, `query`,
  `map_region`, `unmap_region`, `release`), `PageSize` (4K, 2M, 1G),
  `PagingError`, and `nested_page_table(hal, arch)` for `"aarch64"` or `"x86_64"`.
- `axaddrspace.backend`: `LinearBackend` (guest address minus a fixed
  `pa_va_offset`) and `AllocBackend` (frames taken up front when `populate` is
  true, otherwise on the first page fault).
- `axaddrspace.memory_set`: `MemoryArea` and `MemorySet`, the ordered,
  non-overlapping set of areas; unmapping shrinks or splits areas at the edges.
- `axaddrspace.address_space`: `AddrSpace`, which ties areas and the page table
  together and is a context manager (`close` unmaps everything and frees the
  page table).
- `axaddrspace.device`: `AccessWidth` (`from_size`, `size`, `bits_range`),
  `Port`, `SysRegAddr`, and the inclusive ranges `PortRange` and
  `SysRegAddrRange`.
- `axaddrspace.errors`: the error classes listed below, `MappingError` and
  `mapping_err_to_ax_err`.

## Installation

```
pip install axaddrspace
```

No third-party libraries are needed.

## Example

```python
from axaddrspace.addr import GuestPhysAddr, HostPhysAddr
from axaddrspace.address_space import AddrSpace
from axaddrspace.flags import MappingFlags
from axaddrspace.hal import MemoryHal

hal = MemoryHal(0x8000_0000, 256)          # 256 host frames of 4 KiB

with AddrSpace.new_empty(hal, GuestPhysAddr(0), 0x100_0000, "x86_64") as space:
    rw = MappingFlags.READ | MappingFlags.WRITE

    # Guest 0x10000.. backed by frames allocated on first access.
    space.map_alloc(GuestPhysAddr(0x10000), 0x4000, rw, False)
    assert space.handle_page_fault(GuestPhysAddr(0x10010), MappingFlags.READ)

    # Guest 0x200000.. mapped one-to-one onto a fixed host range.
    space.map_linear(GuestPhysAddr(0x200000), HostPhysAddr(0x200000), 0x2000, rw)
    print(space.translate(GuestPhysAddr(0x200123)))   # PA:0x200123

    # Host memory behind a guest range, one view per page.
    for chunk in space.translated_byte_buffer(GuestPhysAddr(0x10000), 16):
        chunk[:] = bytes(len(chunk))

    space.unmap(GuestPhysAddr(0x10000), 0x4000)
```

`translate` and `translate_and_get_limit` return `None` for addresses that are
out of range or not mapped. `translated_byte_buffer` returns `None` when the
address lies outside every area or the length exceeds the area's size; in a
lazily allocated area, pages that have not been faulted in raise `PagingError`.

## Errors

All errors derive from `axaddrspace.errors.AxError`:

- `InvalidInputError` (also a `ValueError`): out-of-range or misaligned
  requests to `AddrSpace`, and empty areas.
- `AlreadyExistsError`: a new mapping overlaps an existing area.
- `BadStateError`: a backend could not map or unmap an area (including running
  out of frames while populating), or an uninitialized frame or released page
  table was used.
- `NoMemoryError`: `AddrSpace.new_empty` could not allocate the page table
  root, or `PhysFrame.alloc` found no free frame.
- `PagingError`: raised by `PageTable64` itself, with a `reason` such as
  `not_mapped`, `already_mapped` or `not_aligned`.

## What it does not do

- It never touches real hardware: the TLB flush hooks of both metadata classes
  do nothing, and all memory is the HAL's own buffer.
- Only AArch64 stage-2 and x86_64 EPT page tables are provided.
- `Backend.protect` leaves mappings unchanged.

## Running the tests

```
pip install -e .[test]
pytest
```