"""Guest physical address spaces: typed addresses, a memory HAL, nested page tables and mapping backends."""

__version__ = "0.1.0"

__all__ = [
    "addr",
    "address_space",
    "arch_aarch64",
    "arch_x86_64",
    "backend",
    "device",
    "errors",
    "flags",
    "frame",
    "hal",
    "memory_set",
    "pagetable",
]