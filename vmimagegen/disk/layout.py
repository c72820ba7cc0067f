"""Partition layout of generated disk images.

Every image carries the same GPT layout, created with sgdisk --align-end:

1. BIOS boot partition (1 MiB, ef02)
2. EFI system partition (300 MiB, ef00, FAT32)
3. Root partition (8304, ext4) filling the rest of the disk

plan_layout() computes where sgdisk will put each partition so callers can
check sizes without touching a disk.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from vmimagegen.types import PartitionRole

SECTOR_SIZE = 512
ALIGNMENT_SECTORS = 2048  # 1 MiB
# Protective MBR + primary header + 32 sectors of entries (mirrored at the end)
GPT_HEADER_SECTORS = 34
MIB = 1024 * 1024

BIOS_BOOT_MIB = 1
EFI_MIB = 300
MIN_ROOT_MIB = 256

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([KMGTP]?)(?:i?B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": 1024, "M": MIB, "G": 1024**3, "T": 1024**4, "P": 1024**5}


class LayoutError(Exception):
    """Raised for invalid image sizes or layouts."""

    def __init__(self, message: str, code: str = "layout_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class PartitionSpec:
    """One partition of the planned layout.

    Attributes:
        number: GPT partition number (1-based).
        role: What the partition is for.
        typecode: sgdisk type code.
        name: GPT partition name.
        start_sector: First sector.
        end_sector: Last sector (inclusive).
    """

    number: int
    role: PartitionRole
    typecode: str
    name: str
    start_sector: int
    end_sector: int

    @property
    def size_bytes(self) -> int:
        return (self.end_sector - self.start_sector + 1) * SECTOR_SIZE


@dataclass(frozen=True)
class DiskLayout:
    """Planned partition table of a disk image."""

    size_bytes: int
    partitions: tuple[PartitionSpec, ...]

    def partition(self, role: PartitionRole) -> PartitionSpec:
        for part in self.partitions:
            if part.role == role:
                return part
        raise KeyError(role)

    @property
    def root(self) -> PartitionSpec:
        return self.partition(PartitionRole.ROOT)


def parse_size(value: str | int) -> int:
    """Parse a truncate(1)-style size such as "16G" into bytes.

    Suffixes K, M, G, T and P are powers of 1024; "GiB"/"GB" spellings are
    accepted with the same meaning.

    Raises:
        LayoutError: If the size cannot be parsed.
    """
    if isinstance(value, int):
        if value <= 0:
            raise LayoutError(f"Size must be positive, got {value}", code="invalid_size")
        return value
    match = _SIZE_PATTERN.match(value)
    if not match:
        raise LayoutError(f"Invalid size: {value!r}", code="invalid_size")
    number, unit = match.groups()
    size = int(number) * _SIZE_UNITS[unit.upper()]
    if size <= 0:
        raise LayoutError(f"Size must be positive, got {value!r}", code="invalid_size")
    return size


def _align_up(sector: int) -> int:
    return -(-sector // ALIGNMENT_SECTORS) * ALIGNMENT_SECTORS


def _aligned_end(last_usable: int) -> int:
    """Last sector of a partition ending at or before last_usable, aligned."""
    return (last_usable + 1) // ALIGNMENT_SECTORS * ALIGNMENT_SECTORS - 1


def minimum_disk_size() -> int:
    """Smallest image size that leaves room for a usable root partition."""
    sectors = (
        ALIGNMENT_SECTORS
        + (BIOS_BOOT_MIB + EFI_MIB + MIN_ROOT_MIB) * MIB // SECTOR_SIZE
        + ALIGNMENT_SECTORS
    )
    return sectors * SECTOR_SIZE


def plan_layout(size: str | int, root_name: str = "Root") -> DiskLayout:
    """Compute the partition table sgdisk produces for an image of size.

    Raises:
        LayoutError: If the size is invalid or too small for a root partition.
    """
    size_bytes = parse_size(size)
    if size_bytes < minimum_disk_size():
        raise LayoutError(
            f"Disk size {size_bytes} bytes is below the minimum of "
            f"{minimum_disk_size()} bytes",
            code="disk_too_small",
        )

    total_sectors = size_bytes // SECTOR_SIZE
    last_usable = total_sectors - GPT_HEADER_SECTORS

    bios_start = _align_up(GPT_HEADER_SECTORS)
    bios_end = bios_start + BIOS_BOOT_MIB * MIB // SECTOR_SIZE - 1
    efi_start = _align_up(bios_end + 1)
    efi_end = efi_start + EFI_MIB * MIB // SECTOR_SIZE - 1
    root_start = _align_up(efi_end + 1)
    root_end = _aligned_end(last_usable)

    return DiskLayout(
        size_bytes=size_bytes,
        partitions=(
            PartitionSpec(
                1, PartitionRole.BIOS_BOOT, "ef02", "BIOS boot partition",
                bios_start, bios_end,
            ),
            PartitionSpec(
                2, PartitionRole.EFI, "ef00", "EFI system partition",
                efi_start, efi_end,
            ),
            PartitionSpec(
                3, PartitionRole.ROOT, "8304", root_name,
                root_start, root_end,
            ),
        ),
    )


def sgdisk_create_args(layout: DiskLayout) -> list[str]:
    """sgdisk arguments writing a fresh table for layout."""
    args = ["--align-end", "--clear"]
    for part in layout.partitions:
        if part.role == PartitionRole.ROOT:
            extent = f"{part.number}:0:0"
        else:
            extent = f"{part.number}:0:+{part.size_bytes // MIB}M"
        args += [
            f"--new={extent}",
            f"--typecode={part.number}:{part.typecode}",
            f"--change-name={part.number}:{part.name}",
        ]
    return args


def sgdisk_grow_root_args(layout: DiskLayout) -> tuple[list[str], list[str]]:
    """sgdisk argument lists that recreate only the root partition.

    The first call drops the root entry, the second moves the backup header
    to the new end of the file and re-adds root over all remaining space.
    """
    root = layout.root
    delete = ["--align-end", f"--delete={root.number}"]
    recreate = [
        "--align-end",
        "--move-second-header",
        f"--new={root.number}:0:0",
        f"--typecode={root.number}:{root.typecode}",
        f"--change-name={root.number}:{root.name}",
    ]
    return delete, recreate


__all__ = [
    "ALIGNMENT_SECTORS",
    "DiskLayout",
    "LayoutError",
    "PartitionSpec",
    "SECTOR_SIZE",
    "minimum_disk_size",
    "parse_size",
    "plan_layout",
    "sgdisk_create_args",
    "sgdisk_grow_root_args",
]
