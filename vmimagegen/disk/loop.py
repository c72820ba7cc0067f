"""Loop device bindings for disk images.

Partition scanning on a freshly attached loop device is asynchronous: the
child nodes (/dev/loopNp1 ...) show up some time after losetup returns.
wait_for_partitions() polls for them with a bounded exponential backoff.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from vmimagegen.runner import CommandRunner, ToolFailure

logger = logging.getLogger(__name__)

PARTITION_COUNT = 3


class PartitionsNotReadyError(Exception):
    """Partition nodes did not appear within the retry budget."""

    def __init__(self, device: str, missing: str, attempts: int) -> None:
        super().__init__(
            f"Partition node {missing} of {device} did not appear "
            f"after {attempts} attempts"
        )
        self.device = device
        self.missing = missing
        self.attempts = attempts
        self.code = "partitions_not_ready"


@dataclass
class LoopBinding:
    """An image file attached to a loop block device.

    Attributes:
        image: Backing image file.
        device: Loop device path, e.g. /dev/loop3.
    """

    image: Path
    device: str

    def partition(self, number: int) -> str:
        """Path of the child node for partition number."""
        return f"{self.device}p{number}"

    @property
    def partitions(self) -> list[str]:
        return [self.partition(n) for n in range(1, PARTITION_COUNT + 1)]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""

    attempts: int = 10
    initial_delay: float = 0.5
    max_delay: float = 5.0

    def delays(self) -> list[float]:
        """Sleep durations between consecutive attempts."""
        delays: list[float] = []
        delay = self.initial_delay
        for _ in range(self.attempts - 1):
            delays.append(min(delay, self.max_delay))
            delay *= 2
        return delays


def attach(image: Path, runner: CommandRunner) -> LoopBinding:
    """Attach image to the first free loop device with partition scanning."""
    device = runner.output(["losetup", "--find", "--partscan", "--show", image])
    if not device:
        raise ToolFailure(f"losetup returned no device for {image}", code="loop_attach_failed")
    logger.info("Attached %s to %s", image, device)
    return LoopBinding(image=image, device=device)


def detach(binding: LoopBinding, runner: CommandRunner, check: bool = True) -> bool:
    """Release a loop binding.

    Returns:
        True if losetup succeeded.
    """
    result = runner.run(["losetup", "-d", binding.device], check=check)
    if result.success:
        logger.info("Detached %s", binding.device)
    else:
        logger.warning("Could not detach %s (exit %d)", binding.device, result.exit_code)
    return result.success


def wait_for_partitions(
    binding: LoopBinding,
    runner: CommandRunner,
    policy: RetryPolicy,
    exists: Callable[[str], bool] = os.path.exists,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Wait until every partition node of binding exists.

    Settles udev and asks the kernel to re-read the partition table before
    polling.

    Raises:
        PartitionsNotReadyError: If a node is still missing after the last attempt.
    """
    runner.run(["udevadm", "settle"])
    runner.run(["blockdev", "--flushbufs", "--rereadpt", binding.device])

    delays = policy.delays()
    for attempt in range(1, policy.attempts + 1):
        missing = [p for p in binding.partitions if not exists(p)]
        if not missing:
            logger.debug("Partitions of %s ready after %d attempt(s)", binding.device, attempt)
            return
        if attempt == policy.attempts:
            raise PartitionsNotReadyError(binding.device, missing[0], policy.attempts)
        delay = delays[attempt - 1]
        logger.info("%s doesn't exist yet, retrying in %.1fs", missing[0], delay)
        sleep(delay)


__all__ = [
    "LoopBinding",
    "PartitionsNotReadyError",
    "RetryPolicy",
    "attach",
    "detach",
    "wait_for_partitions",
]
