"""Build orchestration.

This module handles:
- Refusing to run without root, before any resource is touched
- Resolving the build version (date-based default with a warning)
- Converting SIGTERM/SIGHUP into a normal exit so cleanup runs
  (see vmimagegen.interrupts)
- Sequencing disk setup, base build and every variant derivation inside
  one scoped build session
- Writing the build manifest
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import date

from vmimagegen.builds.artifacts import generate_manifest, write_manifest
from vmimagegen.builds.base import build_base, resolve_arch
from vmimagegen.builds.variant import check_image_name, create_variant
from vmimagegen.config import Settings
from vmimagegen.disk.session import BuildSession, open_build_session
from vmimagegen.interrupts import exit_on_signals
from vmimagegen.recipes.io import RecipeRegistry, load_registry
from vmimagegen.runner import CommandRunner
from vmimagegen.types import BuildReport

logger = logging.getLogger(__name__)


class PrivilegeError(Exception):
    """Raised when the build is started without root privileges."""

    def __init__(self, message: str = "root is required") -> None:
        super().__init__(message)
        self.code = "privilege_required"


class BuildVersionError(ValueError):
    """Raised when a build identifier cannot be used in file names."""

    def __init__(self, build_version: str) -> None:
        super().__init__(f"Invalid build version: {build_version!r}")
        self.code = "invalid_build_version"


def require_root(geteuid: Callable[[], int] | None = None) -> None:
    if (geteuid or os.geteuid)() != 0:
        raise PrivilegeError()


def resolve_build_version(build_version: str | None, today: date | None = None) -> str:
    """Return build_version, or today's date as YYYYMMDD with a warning.

    Raises:
        BuildVersionError: If build_version contains a path separator.
    """
    if build_version:
        if "/" in build_version or build_version in (".", ".."):
            raise BuildVersionError(build_version)
        return build_version
    fallback = (today or date.today()).strftime("%Y%m%d")
    logger.warning("BUILD_VERSION wasn't set! Falling back to %s", fallback)
    return fallback


def run_build(
    settings: Settings,
    registry: RecipeRegistry | None = None,
    build_version: str | None = None,
    runner: CommandRunner | None = None,
    session: BuildSession | None = None,
) -> BuildReport:
    """Build the base image and every variant.

    Args:
        settings: Effective settings.
        registry: Recipes; loaded from settings.recipes_path when omitted.
        build_version: Build identifier; defaults to today's date.
        runner: Command runner (tests pass a fake).
        session: Pre-built session (tests pass one with a fake mount table).

    Returns:
        BuildReport listing the published artifacts.

    Raises:
        PrivilegeError: If not running as root.
        BuildVersionError: If build_version is not usable in file names.
        RecipeError: If a variant's image name is reserved.
        ToolFailure: If any external step fails.
    """
    require_root()
    version = resolve_build_version(build_version)
    if registry is None:
        registry = load_registry(settings.recipes_path)
    runner = runner or (session.runner if session else CommandRunner())

    logger.info(
        "Building %s: base '%s' and %d variant(s)",
        version,
        registry.base.name,
        len(registry.variants),
    )

    with exit_on_signals(), open_build_session(settings, runner, session) as build:
        arch = resolve_arch(settings, runner)
        for recipe in registry.variants:
            check_image_name(
                recipe.render_image_name(version, arch), settings.base_image_name
            )
        base_path = build.image_path(settings.base_image_name)
        build.setup_disk(base_path, settings.default_disk_size)
        build_base(build, registry.base, version, arch)

        report = BuildReport(build_version=version, base_image=base_path)
        for recipe in registry.variants:
            report.artifacts.append(create_variant(build, base_path, recipe, version, arch))

        manifest = generate_manifest(
            report.artifacts,
            version,
            extra_metadata={"arch": arch, "base_recipe": registry.base.name},
        )
        report.manifest_path = write_manifest(
            manifest, build.output_dir / f"manifest-{version}.json"
        )

    logger.info("Build %s finished with %d artifact(s)", version, len(report.artifacts))
    return report


__all__ = [
    "BuildVersionError",
    "PrivilegeError",
    "require_root",
    "resolve_build_version",
    "run_build",
]
