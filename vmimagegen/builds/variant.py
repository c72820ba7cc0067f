"""Variant image derivation.

Each variant starts from a scratch copy of the base image. The copy may be
grown (only the root partition moves), then it is mounted with the shared
package cache, customized, trimmed, unmounted, packaged and published.
Any failing step propagates; nothing reaches the output directory unless
every step before publication succeeded.
"""

from __future__ import annotations

import logging
from pathlib import Path

from vmimagegen.builds.artifacts import publish_artifact
from vmimagegen.builds.base import image_cleanup
from vmimagegen.disk.session import BuildSession
from vmimagegen.recipes.hooks import run_post_hook, run_pre_hook
from vmimagegen.recipes.io import RecipeError
from vmimagegen.recipes.schema import RecipeSchema
from vmimagegen.runner import CommandRunner
from vmimagegen.types import ArtifactInfo

logger = logging.getLogger(__name__)


SCRATCH_PREFIX = "scratch-"
SCRATCH_SUFFIX = ".img"


def scratch_name(recipe: RecipeSchema) -> str:
    return f"{SCRATCH_PREFIX}{recipe.name}{SCRATCH_SUFFIX}"


def check_image_name(final_name: str, base_image_name: str) -> None:
    """Reject final names that would overwrite the base or a scratch image.

    Raises:
        RecipeError: If final_name is not a plain file name or is reserved.
    """
    if not final_name or "/" in final_name or final_name in (".", ".."):
        raise RecipeError(
            f"Image name {final_name!r} is not a plain file name",
            code="invalid_image_name",
        )
    if final_name == base_image_name or (
        final_name.startswith(SCRATCH_PREFIX) and final_name.endswith(SCRATCH_SUFFIX)
    ):
        raise RecipeError(
            f"Image name {final_name!r} is reserved for build working files",
            code="reserved_image_name",
        )


def install_packages(
    mount_dir: Path,
    packages: tuple[str, ...] | list[str],
    chroot_command: list[str],
    install_command: list[str],
    runner: CommandRunner,
) -> None:
    """Install packages with the target's package manager inside the mounted root."""
    if not packages:
        return
    runner.run([*chroot_command, str(mount_dir), *install_command, *packages])


def enable_services(mount_dir: Path, preset_file: str, services: tuple[str, ...] | list[str]) -> None:
    """Append one 'enable' line per service to the image's preset file.

    Takes effect on first boot; no service manager runs against the image.
    """
    if not services:
        return
    preset = mount_dir / preset_file
    preset.parent.mkdir(parents=True, exist_ok=True)
    with preset.open("a", encoding="utf-8") as f:
        for service in services:
            f.write(f"enable {service}\n")
    logger.info("Enabled %s via %s", ", ".join(services), preset_file)


def create_variant(
    session: BuildSession,
    base_image: Path,
    recipe: RecipeSchema,
    build_version: str,
    arch: str,
) -> ArtifactInfo:
    """Derive, package and publish the image described by recipe.

    Args:
        session: Active build session; nothing may be bound.
        base_image: Unmounted base image.
        recipe: Variant recipe.
        build_version: Build identifier.
        arch: Target architecture.

    Returns:
        The published artifact.
    """
    settings = session.settings
    runner = session.runner
    final_name = recipe.render_image_name(build_version, arch)
    check_image_name(final_name, settings.base_image_name)
    scratch = session.image_path(scratch_name(recipe))
    logger.info("Deriving %s from %s", final_name, base_image.name)

    runner.run(["cp", "-a", str(base_image), str(scratch)])
    if recipe.disk_size:
        session.grow_root(scratch, recipe.disk_size)

    tree = session.mount_image(scratch)
    install_packages(
        tree.root,
        recipe.packages,
        settings.chroot_command,
        settings.package_install_command,
        runner,
    )
    enable_services(tree.root, settings.preset_file, recipe.services)
    run_pre_hook(
        recipe,
        tree.root,
        runner,
        build_version=build_version,
        arch=arch,
        image_name=final_name,
    )
    image_cleanup(tree.root, runner)
    session.unmount_image()

    final_path = run_post_hook(recipe, scratch, final_name, runner)
    return publish_artifact(
        final_path,
        session.output_dir,
        owner=settings.invoking_owner,
        recipe=recipe.name,
    )


__all__ = [
    "check_image_name",
    "create_variant",
    "enable_services",
    "install_packages",
    "scratch_name",
]
