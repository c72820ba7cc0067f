"""Mount tree of a bound disk image.

A mounted image consists of the root filesystem, the EFI partition under
<root>/efi and, for variant derivation, a bind mount of the host package
download cache so repeated installs reuse downloads. The whole tree is
removed with one recursive umount.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from vmimagegen.disk.loop import LoopBinding
from vmimagegen.runner import CommandRunner

logger = logging.getLogger(__name__)

PROC_MOUNTS = Path("/proc/mounts")

ROOT_PARTITION = 3
EFI_PARTITION = 2
EFI_MOUNT_DIR = "efi"

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape(field_value: str) -> str:
    """Undo the octal escaping /proc/mounts applies to spaces and the like."""
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field_value)


def read_mount_points(mounts_file: Path = PROC_MOUNTS) -> list[Path]:
    """Return every mount point listed in mounts_file.

    Returns an empty list if the file cannot be read.
    """
    points: list[Path] = []
    try:
        with open(mounts_file) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2:
                    points.append(Path(_unescape(parts[1])))
    except OSError:
        logger.warning("Could not read %s, assuming nothing is mounted", mounts_file)
    return points


def mounts_under(path: Path, mounts_file: Path = PROC_MOUNTS) -> list[Path]:
    """Return mount points at or beneath path.

    The kernel lists canonical paths, so path is resolved first.
    """
    target = Path(path).resolve()
    return [
        point
        for point in read_mount_points(mounts_file)
        if point == target or target in point.parents
    ]


def is_mount_point(path: Path, mounts_file: Path = PROC_MOUNTS) -> bool:
    return Path(path).resolve() in read_mount_points(mounts_file)


@dataclass
class MountTree:
    """Filesystems of one image mounted under a fixed root directory.

    Attributes:
        root: Directory the root partition is mounted on.
        mounted: Mount points this tree created, in mount order.
    """

    root: Path
    mounted: list[Path] = field(default_factory=list)

    @property
    def efi(self) -> Path:
        return self.root / EFI_MOUNT_DIR

    def mount_partitions(self, binding: LoopBinding, runner: CommandRunner) -> None:
        """Mount root, then EFI under it."""
        runner.run(["mount", binding.partition(ROOT_PARTITION), self.root])
        self.mounted.append(self.root)
        self.efi.mkdir(parents=True, exist_ok=True)
        runner.run(["mount", binding.partition(EFI_PARTITION), self.efi])
        self.mounted.append(self.efi)

    def bind_package_cache(
        self, cache_dir: Path, target: str, runner: CommandRunner
    ) -> Path:
        """Bind-mount the host package cache into the image."""
        inside = self.root / target
        inside.mkdir(parents=True, exist_ok=True)
        runner.run(["mount", "--bind", cache_dir, inside])
        self.mounted.append(inside)
        return inside

    def is_mounted(self, mounts_file: Path = PROC_MOUNTS) -> bool:
        return bool(self.mounted) or is_mount_point(self.root, mounts_file)

    def unmount(
        self,
        runner: CommandRunner,
        mounts_file: Path = PROC_MOUNTS,
        check: bool = True,
    ) -> bool:
        """Recursively unmount the tree; a no-op if nothing is mounted.

        Returns:
            True if the tree is unmounted afterwards.
        """
        if not self.is_mounted(mounts_file):
            logger.debug("Nothing mounted at %s", self.root)
            return True
        result = runner.run(["umount", "--recursive", self.root], check=check)
        if not result.success:
            logger.error("Failed to unmount %s (exit %d)", self.root, result.exit_code)
            return False
        self.mounted.clear()
        logger.info("Unmounted %s", self.root)
        return True


__all__ = [
    "MountTree",
    "is_mount_point",
    "mounts_under",
    "read_mount_points",
]
