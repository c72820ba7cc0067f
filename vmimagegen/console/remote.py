"""Run the build pipeline inside a throwaway VM.

This module handles:
- Creating a host working directory inside the shared project directory
- Booting the installer VM and driving it through the guest script
- Moving the results the guest copied back into the output directory
- Killing the VM and removing the working directory on every exit path,
  including SIGTERM and SIGHUP
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

from vmimagegen.config import Settings
from vmimagegen.console.bootstrap import build_guest_script, run_guest_script
from vmimagegen.console.session import ConsoleSession
from vmimagegen.console.vm import GuestVM, VMError, find_local_iso, prepare_boot
from vmimagegen.interrupts import exit_on_signals
from vmimagegen.runner import CommandRunner

logger = logging.getLogger(__name__)

GUEST_OUTPUT_DIR = "output"
# Grace period for the guest to power off after the shutdown command
SHUTDOWN_TIMEOUT = 300


def collect_results(work_dir: Path, output_dir: Path) -> list[Path]:
    """Move everything the guest copied into <work_dir>/output to output_dir."""
    source = work_dir / GUEST_OUTPUT_DIR
    if not source.is_dir():
        raise VMError(
            f"The build VM produced no results in {source}", code="no_results"
        )
    output_dir.mkdir(parents=True, exist_ok=True)
    moved = []
    for item in sorted(source.iterdir()):
        dest = output_dir / item.name
        shutil.move(str(item), dest)
        moved.append(dest)
    logger.info("Collected %d file(s) from the build VM", len(moved))
    return moved


def run_remote_build(
    settings: Settings,
    build_version: str,
    iso: Path | None = None,
    runner: CommandRunner | None = None,
) -> list[Path]:
    """Boot the installer ISO, run the build in the guest and collect results.

    Args:
        settings: Effective settings.
        build_version: Build identifier passed to the guest build.
        iso: Installer ISO; searched in project_dir when omitted.
        runner: Command runner.

    Returns:
        Paths of the files moved into the output directory.

    Raises:
        VMError: If no ISO is available or the VM cannot start.
        TransportTimeout: If a guest prompt does not appear in time.
        TransportClosed: If the guest powers off unexpectedly.
    """
    runner = runner or CommandRunner()
    project_dir = settings.project_dir.absolute()
    if iso is None:
        iso = find_local_iso(project_dir, settings.vm_iso_glob)
        if iso is None:
            raise VMError(
                f"No installer ISO matching {settings.vm_iso_glob} in {project_dir}",
                code="iso_not_found",
            )

    with exit_on_signals():
        return _build_in_guest(settings, build_version, iso, project_dir, runner)


def _build_in_guest(
    settings: Settings,
    build_version: str,
    iso: Path,
    project_dir: Path,
    runner: CommandRunner,
) -> list[Path]:
    tmp_root = settings.tmp_path.absolute()
    tmp_root.mkdir(parents=True, exist_ok=True)
    work_dir = Path(tempfile.mkdtemp(dir=tmp_root))
    try:
        try:
            results_rel = work_dir.relative_to(project_dir).as_posix()
        except ValueError as e:
            raise VMError(
                f"{tmp_root} must be inside the shared directory {project_dir}",
                code="tmp_not_shared",
            ) from e

        boot = prepare_boot(iso, work_dir, runner)
        steps = build_guest_script(
            results_rel,
            build_version,
            settings.guest_inputs,
            settings.guest_packages,
            settings.guest_build_command,
        )
        with GuestVM(
            work_dir,
            boot,
            project_dir,
            runner,
            memory_mb=settings.vm_memory_mb,
            scratch_disk_size=settings.vm_scratch_disk_size,
            mirror=settings.vm_mirror,
        ) as vm:
            transport = vm.start()
            console = ConsoleSession(transport, char_timeout=settings.console_char_timeout)
            # Everything up to and including copying the results back
            run_guest_script(console, steps[:-1])
            moved = collect_results(work_dir, settings.output_path)
            run_guest_script(console, steps[-1:])
            exit_code = vm.wait(timeout=SHUTDOWN_TIMEOUT)
            logger.info("Build VM exited with code %d", exit_code)
        return moved
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)


__all__ = ["collect_results", "run_remote_build"]
