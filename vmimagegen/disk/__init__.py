"""Disk image lifecycle.

This module handles:
- Partition layout planning and sgdisk invocation
- Loop device binding with bounded waiting for partition nodes
- Mounting the image tree (root, EFI, package cache bind)
- Scoped teardown of all of the above
"""

from vmimagegen.disk.layout import DiskLayout, LayoutError, plan_layout
from vmimagegen.disk.loop import LoopBinding, PartitionsNotReadyError
from vmimagegen.disk.mounts import MountTree
from vmimagegen.disk.session import BuildSession, CleanupError, open_build_session

__all__ = [
    "BuildSession",
    "CleanupError",
    "DiskLayout",
    "LayoutError",
    "LoopBinding",
    "MountTree",
    "PartitionsNotReadyError",
    "open_build_session",
    "plan_layout",
]
