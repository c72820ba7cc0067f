"""Scripted console session that runs the build inside a booted installer.

The guest is driven purely by (send, expect) pairs on its serial console.
An ERR trap shuts the guest down as soon as any command fails; the host has
no other failure channel, so a guest-side failure shows up only as the next
expect() timing out or the console closing when the VM powers off. A slow
guest and a crashed one are indistinguishable until the per-character
timeout fires.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass

from vmimagegen.console.session import ConsoleSession

logger = logging.getLogger(__name__)

LOGIN_PROMPT = "archiso login:"
SHELL_PROMPT = "# "

SHARE_TAG = "host"
GUEST_SHARE_DIR = "/mnt/vmimagegen"
GUEST_SCRATCH_DIR = "/mnt/scratch-disk"
GUEST_SCRATCH_DEVICE = "/dev/vda"


@dataclass(frozen=True)
class GuestStep:
    """One scripted interaction.

    Attributes:
        description: Human-readable purpose, used for logging.
        send: Text typed at the console (None to only wait).
        expect: Literal prompt awaited afterwards (None to not wait).
    """

    description: str
    send: str | None = None
    expect: str | None = SHELL_PROMPT


def _command(description: str, command: str) -> GuestStep:
    return GuestStep(description=description, send=f"{command}\n")


def build_guest_script(
    host_results_dir: str,
    build_version: str,
    inputs: list[str],
    packages: list[str],
    build_command: str,
) -> list[GuestStep]:
    """Compose the fixed console script for a remote build.

    Args:
        host_results_dir: Host working directory relative to the shared
            directory; the guest copies its output/ there.
        build_version: Build identifier passed to the build command.
        inputs: Paths (relative to the shared directory) copied into the guest.
        packages: Extra packages installed in the guest.
        build_command: Command template run in the guest; may use {build_version}.

    Returns:
        Ordered list of steps, ending with the shutdown command.
    """
    quoted_inputs = " ".join(
        shlex.quote(f"{GUEST_SHARE_DIR}/{item}") for item in inputs
    )
    results_dir = shlex.quote(f"{GUEST_SHARE_DIR}/{host_results_dir}/")
    return [
        GuestStep("wait for login prompt", send=None, expect=LOGIN_PROMPT),
        GuestStep("log in as root", send="root\n"),
        _command("start bash", "bash"),
        _command("power off on any failing command", 'trap "shutdown now" ERR'),
        _command(
            "mount shared host directory",
            f"mkdir {GUEST_SHARE_DIR} && mount -t 9p -o trans=virtio {SHARE_TAG} "
            f"{GUEST_SHARE_DIR} -oversion=9p2000.L",
        ),
        _command(
            "prepare scratch disk",
            f"mkfs.ext4 {GUEST_SCRATCH_DEVICE} && mkdir {GUEST_SCRATCH_DIR}/ && "
            f"mount {GUEST_SCRATCH_DEVICE} {GUEST_SCRATCH_DIR} && cd {GUEST_SCRATCH_DIR}",
        ),
        _command("copy build inputs", f"cp -a {quoted_inputs} ."),
        _command(
            "keep package downloads on the scratch disk",
            "mkdir pkg && mount --bind pkg /var/cache/pacman/pkg",
        ),
        _command(
            "wait for pacman-init",
            "until systemctl is-active pacman-init; do sleep 1; done",
        ),
        _command(
            "install build tooling",
            "pacman -Sy --noconfirm " + " ".join(shlex.quote(p) for p in packages),
        ),
        _command(
            "run build pipeline",
            build_command.format(build_version=shlex.quote(build_version)),
        ),
        _command(
            "copy results back to host",
            f"cp -r --preserve=mode,timestamps output {results_dir}",
        ),
        GuestStep("power off", send="shutdown now\n", expect=None),
    ]


def run_guest_script(console: ConsoleSession, steps: list[GuestStep]) -> None:
    """Play a guest script against a console session.

    Raises:
        TransportTimeout: A prompt did not appear in time; for steps after
            the ERR trap this usually means a guest command failed.
        TransportClosed: The guest powered off or the VM died.
    """
    for index, step in enumerate(steps, start=1):
        logger.info("Guest step %d/%d: %s", index, len(steps), step.description)
        if step.send is not None:
            console.send(step.send)
        if step.expect is not None:
            console.expect(step.expect)


__all__ = [
    "GUEST_SHARE_DIR",
    "GuestStep",
    "LOGIN_PROMPT",
    "SHARE_TAG",
    "SHELL_PROMPT",
    "build_guest_script",
    "run_guest_script",
]
