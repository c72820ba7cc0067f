"""Disk lifecycle for one build.

BuildSession carries the state shared by disk setup, base build, variant
derivation and cleanup: the working directory, the mount root, the active
loop binding and the mounted tree. open_build_session() scopes it so the
binding and mounts are released and the working directory removed on every
exit path, including errors and interruptions.

Loop devices and the mount namespace are process-wide and there is no
locking against a second build running at the same time; only one build
may be in flight.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from vmimagegen.config import Settings
from vmimagegen.disk.layout import (
    DiskLayout,
    LayoutError,
    parse_size,
    plan_layout,
    sgdisk_create_args,
    sgdisk_grow_root_args,
)
from vmimagegen.disk.loop import (
    LoopBinding,
    RetryPolicy,
    attach,
    detach,
    wait_for_partitions,
)
from vmimagegen.disk.mounts import PROC_MOUNTS, MountTree, mounts_under
from vmimagegen.runner import CommandRunner, ToolFailure

logger = logging.getLogger(__name__)

MOUNT_DIR_NAME = "mount"


class DiskSessionError(Exception):
    """Raised when a disk operation is used out of order."""

    def __init__(self, message: str, code: str = "disk_session_error") -> None:
        super().__init__(message)
        self.code = code


class CleanupError(Exception):
    """Teardown could not prove the working directory is safe to delete."""

    def __init__(self, work_dir: Path | None) -> None:
        super().__init__(
            f"Cleanup incomplete; left {work_dir} in place because it may still "
            "contain mounts"
        )
        self.work_dir = work_dir
        self.code = "cleanup_incomplete"


@dataclass
class BuildSession:
    """Explicit state of one build, passed to every disk operation.

    Attributes:
        settings: Effective settings.
        runner: Runs external tools.
        work_dir: Per-build scratch directory (None until prepared).
        loop: Active loop binding, if any.
        tree: Mount tree rooted at <work_dir>/mount.
        mounts_file: Mount table consulted before teardown.
        retry_policy: Backoff used while waiting for partition nodes.
        node_exists: Checks whether a device node is present.
    """

    settings: Settings
    runner: CommandRunner
    work_dir: Path | None = None
    loop: LoopBinding | None = None
    tree: MountTree | None = None
    mounts_file: Path = PROC_MOUNTS
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    node_exists: Callable[[str], bool] = os.path.exists

    @classmethod
    def from_settings(
        cls, settings: Settings, runner: CommandRunner | None = None
    ) -> BuildSession:
        return cls(
            settings=settings,
            runner=runner or CommandRunner(),
            retry_policy=RetryPolicy(
                attempts=settings.partition_wait_attempts,
                initial_delay=settings.partition_wait_initial_delay,
                max_delay=settings.partition_wait_max_delay,
            ),
        )

    @property
    def mount_dir(self) -> Path:
        return self._require_work_dir() / MOUNT_DIR_NAME

    @property
    def output_dir(self) -> Path:
        return self.settings.output_path

    def _require_work_dir(self) -> Path:
        if self.work_dir is None:
            raise DiskSessionError("Build session is not prepared", code="not_prepared")
        return self.work_dir

    def prepare(self) -> Path:
        """Create the output and working directories and the mount root."""
        output_dir = self.output_dir
        tmp_root = self.settings.tmp_path
        output_dir.mkdir(parents=True, exist_ok=True)
        tmp_root.mkdir(parents=True, exist_ok=True)
        self.work_dir = Path(tempfile.mkdtemp(dir=tmp_root))

        owner = self.settings.invoking_owner
        if owner is not None:
            for path in (output_dir, self.work_dir):
                os.chown(path, *owner)

        self.mount_dir.mkdir()
        self.tree = MountTree(self.mount_dir)
        logger.info("Working directory: %s", self.work_dir)
        return self.work_dir

    def image_path(self, name: str) -> Path:
        return self._require_work_dir() / name

    def attach_image(self, path: Path) -> LoopBinding:
        """Bind path to a loop device and wait for its partition nodes."""
        if self.loop is not None:
            raise DiskSessionError(
                f"{self.loop.image} is still bound to {self.loop.device}",
                code="loop_busy",
            )
        self.loop = attach(path, self.runner)
        wait_for_partitions(
            self.loop, self.runner, self.retry_policy, exists=self.node_exists
        )
        return self.loop

    def setup_disk(self, path: Path, size: str | int) -> DiskLayout:
        """Create a sparse image, write the partition table and bind it.

        Returns:
            The planned layout written to the image.
        """
        layout = plan_layout(size, self.settings.root_partition_name)
        self.runner.run(["truncate", "-s", str(layout.size_bytes), path])
        self.runner.run(["sgdisk", *sgdisk_create_args(layout), path])
        self.attach_image(path)
        return layout

    def grow_root(self, path: Path, size: str | int) -> DiskLayout:
        """Grow an unbound image file and recreate only its root partition.

        Raises:
            LayoutError: If size is smaller than the current image.
        """
        new_size = parse_size(size)
        current = path.stat().st_size
        if new_size < current:
            raise LayoutError(
                f"Cannot shrink {path.name} from {current} to {new_size} bytes",
                code="shrink_not_allowed",
            )
        layout = plan_layout(new_size, self.settings.root_partition_name)
        delete, recreate = sgdisk_grow_root_args(layout)
        self.runner.run(["truncate", "-s", str(new_size), path])
        self.runner.run(["sgdisk", *delete, path])
        self.runner.run(["sgdisk", *recreate, path])
        return layout

    def mount_partitions(self) -> MountTree:
        """Mount root and EFI of the bound image (no package cache)."""
        if self.loop is None or self.tree is None:
            raise DiskSessionError("No image is bound", code="not_bound")
        self.tree.mount_partitions(self.loop, self.runner)
        return self.tree

    def mount_image(self, path: Path) -> MountTree:
        """Bind path, mount its filesystems and the shared package cache."""
        self.attach_image(path)
        tree = self.mount_partitions()
        tree.bind_package_cache(
            self.settings.package_cache_dir,
            self.settings.package_cache_target,
            self.runner,
        )
        return tree

    def unmount_image(self) -> None:
        """Unmount the tree and release the loop binding.

        Safe to call when nothing is mounted or bound.
        """
        if self.tree is not None:
            self.tree.unmount(self.runner, self.mounts_file)
        if self.loop is not None:
            detach(self.loop, self.runner)
            self.loop = None

    def cleanup(self) -> bool:
        """Tear everything down; tolerant of already-clean state.

        The working directory is only removed when the tree was unmounted
        and the mount table shows nothing beneath it, so the bind-mounted
        package cache is never deleted through it.

        Returns:
            True if everything was released and removed.
        """
        clean = True

        if self.tree is not None:
            try:
                if not self.tree.unmount(self.runner, self.mounts_file, check=False):
                    clean = False
            except ToolFailure as e:
                logger.error("Unmount during cleanup failed: %s", e)
                clean = False

        if self.loop is not None:
            try:
                if detach(self.loop, self.runner, check=False):
                    self.loop = None
            except ToolFailure as e:
                logger.error("Loop detach during cleanup failed: %s", e)

        if self.work_dir is not None and self.work_dir.exists():
            remaining = mounts_under(self.work_dir, self.mounts_file)
            if not clean:
                logger.error("Not removing %s, unmount did not complete", self.work_dir)
            elif remaining:
                logger.error(
                    "Not removing %s, still mounted: %s",
                    self.work_dir,
                    ", ".join(str(p) for p in remaining),
                )
                clean = False
            else:
                try:
                    shutil.rmtree(self.work_dir)
                except OSError as e:
                    logger.error("Could not remove %s: %s", self.work_dir, e)
                    clean = False
                else:
                    logger.info("Removed %s", self.work_dir)
                    self.work_dir = None

        return clean


@contextmanager
def open_build_session(
    settings: Settings,
    runner: CommandRunner | None = None,
    session: BuildSession | None = None,
) -> Iterator[BuildSession]:
    """Scope a BuildSession; cleanup runs on every exit path.

    Raises:
        CleanupError: If the body succeeded but teardown was incomplete.
    """
    if session is None:
        session = BuildSession.from_settings(settings, runner)
    try:
        session.prepare()
        yield session
    except BaseException:
        session.cleanup()
        raise
    if not session.cleanup():
        raise CleanupError(session.work_dir)


__all__ = [
    "BuildSession",
    "CleanupError",
    "DiskSessionError",
    "open_build_session",
]
