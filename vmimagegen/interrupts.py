"""Termination signal handling for long-running builds.

SIGTERM and SIGHUP are turned into SystemExit while a build runs so that
context managers unwind: mounts are released, loop bindings detached, the
build VM killed and working directories removed. SIGINT already raises
KeyboardInterrupt.
"""

from __future__ import annotations

import logging
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)

INTERRUPT_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


@contextmanager
def exit_on_signals(signals: tuple[signal.Signals, ...] = INTERRUPT_SIGNALS) -> Iterator[None]:
    """Raise SystemExit(128 + signum) on the given signals inside the block."""

    def handler(signum, frame):
        logger.warning("Received %s, cleaning up", signal.Signals(signum).name)
        sys.exit(128 + signum)

    previous = {sig: signal.signal(sig, handler) for sig in signals}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


__all__ = ["INTERRUPT_SIGNALS", "exit_on_signals"]
