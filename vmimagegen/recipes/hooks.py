"""Recipe hook execution.

This module handles:
- Running a recipe's pre hook against the mounted image root
- Packaging the unmounted scratch image into the final artifact, either
  through the recipe's post hook, the built-in qemu-img conversion or a
  plain rename

Hooks are bash scripts run with -euo pipefail, so any failing command
aborts the hook and surfaces as ToolFailure.
"""

from __future__ import annotations

import logging
from pathlib import Path

from vmimagegen.recipes.schema import RecipeSchema
from vmimagegen.runner import CommandRunner, ToolFailure

logger = logging.getLogger(__name__)

HOOK_SHELL = ["bash", "-euo", "pipefail", "-c"]


def run_pre_hook(
    recipe: RecipeSchema,
    mount_dir: Path,
    runner: CommandRunner,
    *,
    build_version: str,
    arch: str,
    image_name: str = "",
) -> bool:
    """Run the recipe's pre hook with the image mounted.

    The hook sees MOUNT, BUILD_VERSION, ARCH and IMAGE_NAME in its
    environment.

    Returns:
        True if a hook was run.
    """
    if not recipe.pre_hook:
        return False
    logger.info("Running pre hook of %s", recipe.name)
    runner.run(
        [*HOOK_SHELL, recipe.pre_hook, f"{recipe.name}-pre-hook"],
        env={
            "MOUNT": str(mount_dir),
            "BUILD_VERSION": build_version,
            "ARCH": arch,
            "IMAGE_NAME": image_name,
        },
    )
    return True


def convert_command(recipe: RecipeSchema, source: Path, dest: Path) -> list[str]:
    """qemu-img invocation for the recipe's built-in conversion."""
    if recipe.convert is None:
        raise ValueError(f"Recipe {recipe.name} has no convert step")
    cmd = ["qemu-img", "convert"]
    if recipe.convert.compress:
        cmd.append("-c")
    cmd += ["-f", "raw", "-O", recipe.convert.format, str(source), str(dest)]
    return cmd


def run_post_hook(
    recipe: RecipeSchema,
    scratch_image: Path,
    final_name: str,
    runner: CommandRunner,
) -> Path:
    """Turn the scratch image into the final artifact next to it.

    The post hook runs in the scratch image's directory with the scratch
    image as $1 and the final name as $2. The scratch image is removed
    once the final artifact exists.

    Returns:
        Path of the final artifact.

    Raises:
        ToolFailure: If packaging fails or produces no file.
    """
    work_dir = scratch_image.parent
    final_path = work_dir / final_name

    if recipe.post_hook:
        logger.info("Running post hook of %s", recipe.name)
        runner.run(
            [
                *HOOK_SHELL,
                recipe.post_hook,
                f"{recipe.name}-post-hook",
                str(scratch_image),
                final_name,
            ],
            cwd=work_dir,
        )
    elif recipe.convert is not None:
        runner.run(convert_command(recipe, scratch_image, final_path))
        scratch_image.unlink(missing_ok=True)
    else:
        logger.info("Renaming %s to %s", scratch_image.name, final_name)
        scratch_image.rename(final_path)

    if not final_path.is_file():
        raise ToolFailure(
            f"Packaging of {recipe.name} did not produce {final_name}",
            code="artifact_missing",
        )
    if scratch_image.exists():
        scratch_image.unlink()
    return final_path


__all__ = ["convert_command", "run_post_hook", "run_pre_hook"]
