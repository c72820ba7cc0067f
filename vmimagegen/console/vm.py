"""Throwaway QEMU guest used for remote builds.

This module handles:
- Locating a local installer ISO (fetching one is left to the caller)
- Extracting the kernel and initrd so a serial console cmdline can be set
- Composing the qemu-system command line
- Running QEMU as a supervised child that can always be killed
- Opening the serial console FIFOs as a PexpectTransport
"""

from __future__ import annotations

import errno
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from vmimagegen.console.bootstrap import SHARE_TAG
from vmimagegen.console.session import PexpectTransport
from vmimagegen.runner import CommandRunner

logger = logging.getLogger(__name__)

KERNEL_NAME = "vmlinuz-linux"
INITRD_NAME = "archiso.img"
ISO_BOOT_DIR = "arch/boot/x86_64"
FIFO_BASENAME = "guest"
SCRATCH_DISK_NAME = "scratch-disk.img"

# How long QEMU gets to open its end of the serial FIFOs
FIFO_OPEN_TIMEOUT = 30.0


class VMError(Exception):
    """Raised when the build VM cannot be prepared or started."""

    def __init__(self, message: str, code: str = "vm_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class BootFiles:
    """Installer media and the boot files extracted from it."""

    iso: Path
    kernel: Path
    initrd: Path
    volume_id: str


def find_local_iso(search_dir: Path, pattern: str) -> Path | None:
    """Return the newest installer ISO matching pattern, if any."""
    candidates = sorted(search_dir.glob(pattern))
    if not candidates:
        return None
    return candidates[-1]


def parse_volume_id(xorriso_report: str) -> str | None:
    """Extract the volume id from `xorriso -indev ISO` output.

    The relevant line looks like ``Volume id    : 'ARCH_202610'``.
    """
    for line in xorriso_report.splitlines():
        key, sep, value = line.partition(":")
        if sep and "Volume id" in key:
            return value.replace("'", "").replace(" ", "").strip()
    return None


def prepare_boot(iso: Path, dest_dir: Path, runner: CommandRunner) -> BootFiles:
    """Extract kernel and initrd from the ISO and read its volume id.

    Raises:
        VMError: If the ISO is missing or has no volume id.
        ToolFailure: If xorriso fails.
    """
    if not iso.is_file():
        raise VMError(f"Installer ISO not found: {iso}", code="iso_not_found")

    runner.run(
        ["xorriso", "-osirrox", "on", "-indev", iso, "-extract", ISO_BOOT_DIR, "."],
        cwd=dest_dir,
    )
    report = runner.run(
        ["xorriso", "-indev", iso], capture=True, merge_stderr=True
    ).stdout
    volume_id = parse_volume_id(report)
    if not volume_id:
        raise VMError(f"Could not read volume id of {iso}", code="iso_volume_id")

    logger.info("Using installer %s (volume id %s)", iso, volume_id)
    return BootFiles(
        iso=iso,
        kernel=dest_dir / KERNEL_NAME,
        initrd=dest_dir / INITRD_NAME,
        volume_id=volume_id,
    )


def compose_qemu_command(
    boot: BootFiles,
    scratch_disk: Path,
    shared_dir: Path,
    memory_mb: int,
    mirror: str,
    fifo_basename: str = FIFO_BASENAME,
) -> list[str]:
    """Compose the qemu-system-x86_64 command for a serial-console guest."""
    append = (
        f"archisobasedir=arch archisolabel={boot.volume_id} ip=dhcp "
        f"net.ifnames=0 console=ttyS0 mirror={mirror}"
    )
    return [
        "qemu-system-x86_64",
        "-machine",
        "accel=kvm:tcg",
        "-m",
        str(memory_mb),
        "-net",
        "nic",
        "-net",
        "user",
        "-kernel",
        str(boot.kernel),
        "-initrd",
        str(boot.initrd),
        "-append",
        append,
        "-drive",
        f"file={scratch_disk},format=raw,if=virtio",
        "-drive",
        f"file={boot.iso},format=raw,if=virtio,media=cdrom,read-only=on",
        "-virtfs",
        f"local,path={shared_dir},mount_tag={SHARE_TAG},security_model=none",
        "-monitor",
        "none",
        "-serial",
        f"pipe:{fifo_basename}",
        "-nographic",
    ]


class GuestVM:
    """A QEMU guest supervised by the host build.

    Use as a context manager: leaving the block always kills the VM if it
    is still running.
    """

    def __init__(
        self,
        work_dir: Path,
        boot: BootFiles,
        shared_dir: Path,
        runner: CommandRunner,
        memory_mb: int = 768,
        scratch_disk_size: str = "4G",
        mirror: str = "https://mirror.pkgbuild.com",
    ) -> None:
        self.work_dir = work_dir
        self.boot = boot
        self.shared_dir = shared_dir
        self.runner = runner
        self.memory_mb = memory_mb
        self.scratch_disk_size = scratch_disk_size
        self.mirror = mirror
        self.process: subprocess.Popen[bytes] | None = None
        self.transport: PexpectTransport | None = None

    @property
    def fifo_in(self) -> Path:
        return self.work_dir / f"{FIFO_BASENAME}.in"

    @property
    def fifo_out(self) -> Path:
        return self.work_dir / f"{FIFO_BASENAME}.out"

    @property
    def scratch_disk(self) -> Path:
        return self.work_dir / SCRATCH_DISK_NAME

    def start(self) -> PexpectTransport:
        """Create the FIFOs and scratch disk, launch QEMU, open the console."""
        os.mkfifo(self.fifo_in)
        os.mkfifo(self.fifo_out)
        # Preallocated rather than sparse so a full host disk fails here
        self.runner.run(
            ["fallocate", "-l", self.scratch_disk_size, self.scratch_disk]
        )

        cmd = compose_qemu_command(
            self.boot,
            self.scratch_disk,
            self.shared_dir,
            self.memory_mb,
            self.mirror,
        )
        logger.info("Starting build VM: %s", " ".join(cmd))
        try:
            self.process = subprocess.Popen(cmd, cwd=self.work_dir)
        except OSError as e:
            raise VMError(f"Failed to start QEMU: {e}", code="vm_start_failed") from e

        self.transport = self._open_console()
        return self.transport

    def _open_console(self) -> PexpectTransport:
        """Open the host ends of the serial FIFOs once QEMU holds its ends.

        Opening the write side non-blocking fails with ENXIO until QEMU has
        the input FIFO open, which avoids blocking forever on a QEMU that
        died during startup.
        """
        deadline = time.monotonic() + FIFO_OPEN_TIMEOUT
        while True:
            try:
                write_fd = os.open(self.fifo_in, os.O_WRONLY | os.O_NONBLOCK)
                break
            except OSError as e:
                if e.errno != errno.ENXIO:
                    raise
            if self.process is not None and self.process.poll() is not None:
                raise VMError(
                    f"QEMU exited with code {self.process.returncode} during startup",
                    code="vm_start_failed",
                )
            if time.monotonic() >= deadline:
                raise VMError("QEMU did not open the serial console", code="vm_start_failed")
            time.sleep(0.1)
        os.set_blocking(write_fd, True)
        read_fd = os.open(self.fifo_out, os.O_RDONLY)
        return PexpectTransport(read_fd, write_fd)

    def wait(self, timeout: float | None = None) -> int:
        """Wait for the guest to power off and return QEMU's exit code."""
        if self.process is None:
            raise VMError("VM was never started", code="vm_not_started")
        return self.process.wait(timeout=timeout)

    def terminate(self) -> None:
        """Kill QEMU if it is still running and close the console."""
        if self.process is not None and self.process.poll() is None:
            logger.warning("Killing build VM (pid %d)", self.process.pid)
            self.process.kill()
            self.process.wait()
        if self.transport is not None:
            self.transport.close()
            self.transport = None

    def __enter__(self) -> GuestVM:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.terminate()


__all__ = [
    "BootFiles",
    "GuestVM",
    "VMError",
    "compose_qemu_command",
    "find_local_iso",
    "parse_volume_id",
    "prepare_boot",
]
