"""Serial console automation for builds inside a throwaway VM.

This module handles:
- Byte-level expect/send over the guest's serial console
- The fixed guest script that runs the build remotely
- Starting and supervising the QEMU guest
"""

from vmimagegen.console.session import (
    ConsoleSession,
    TransportClosed,
    TransportTimeout,
)

__all__ = ["ConsoleSession", "TransportClosed", "TransportTimeout"]

# Access vmimagegen.console.vm and vmimagegen.console.remote directly
