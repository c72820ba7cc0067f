"""Base image build.

This module handles:
- Formatting the EFI and root partitions of a freshly partitioned image
- Bootstrapping the distribution into the mounted root
- Running the base recipe's pre hook
- Flushing and trimming both filesystems before unmounting

The resulting image is the common ancestor copied by every variant.
"""

from __future__ import annotations

import logging
from pathlib import Path

from vmimagegen.config import Settings
from vmimagegen.disk.mounts import EFI_PARTITION, ROOT_PARTITION
from vmimagegen.disk.session import BuildSession, DiskSessionError
from vmimagegen.recipes.hooks import run_pre_hook
from vmimagegen.recipes.schema import RecipeSchema
from vmimagegen.runner import CommandRunner

logger = logging.getLogger(__name__)

EFI_SECTOR_SIZE = 4096


def resolve_arch(settings: Settings, runner: CommandRunner) -> str:
    """Target architecture from settings, else what dpkg reports for the host."""
    if settings.arch:
        return settings.arch
    return runner.output(["dpkg", "--print-architecture"])


def format_partitions(session: BuildSession) -> None:
    """Create FAT32 on the EFI partition and ext4 on root."""
    if session.loop is None:
        raise DiskSessionError("No image is bound", code="not_bound")
    runner = session.runner
    runner.run(
        [
            "mkfs.fat",
            "-F",
            "32",
            "-S",
            str(EFI_SECTOR_SIZE),
            session.loop.partition(EFI_PARTITION),
        ]
    )
    runner.run(["mkfs.ext4", session.loop.partition(ROOT_PARTITION)])


def bootstrap_command(settings: Settings, mount_dir: Path, arch: str) -> list[str]:
    return [
        "aoscbootstrap",
        settings.bootstrap_branch,
        str(mount_dir),
        f"--arch={arch}",
        f"--config={settings.bootstrap_config}",
        f"--include-files={settings.bootstrap_include_files}",
        settings.mirror,
        "--force",
    ]


def image_cleanup(mount_dir: Path, runner: CommandRunner) -> None:
    """Flush the root filesystem and discard unused blocks on both filesystems."""
    runner.run(["sync", "-f", str(mount_dir / "etc" / "os-release")])
    runner.run(["fstrim", "--verbose", str(mount_dir)])
    runner.run(["fstrim", "--verbose", str(mount_dir / "efi")])


def build_base(
    session: BuildSession,
    recipe: RecipeSchema,
    build_version: str,
    arch: str,
) -> Path:
    """Turn the bound, partitioned base image into a bootstrapped system.

    Expects setup_disk() to have bound the image. Leaves it unmounted and
    unbound.

    Returns:
        Path of the base image.
    """
    if session.loop is None:
        raise DiskSessionError("setup_disk must run before build_base", code="not_bound")
    image = session.loop.image
    logger.info("Building base image %s (%s, %s)", image.name, arch, build_version)

    format_partitions(session)
    tree = session.mount_partitions()
    session.runner.run(bootstrap_command(session.settings, tree.root, arch))
    run_pre_hook(
        recipe,
        tree.root,
        session.runner,
        build_version=build_version,
        arch=arch,
        image_name=image.name,
    )
    image_cleanup(tree.root, session.runner)
    session.unmount_image()
    return image


__all__ = [
    "bootstrap_command",
    "build_base",
    "format_partitions",
    "image_cleanup",
    "resolve_arch",
]
