"""Console session over a raw byte stream.

This module handles:
- Reading a live, unbounded byte stream one byte at a time with a
  per-byte timeout (pexpect fdspawn transport)
- Matching literal prompts in that stream
- Injecting keystrokes, fire-and-forget

The default matcher restarts from the beginning of the pattern on any
mismatching byte and does not re-test that byte. Guest prompts such as
"# " and "archiso login:" never overlap with themselves, so this is
enough in practice; PrefixFunctionMatcher is the backtracking variant.
The stream is not content-safe: any guest output containing the prompt
text counts as the prompt.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from typing import Protocol

import pexpect
from pexpect import fdpexpect

logger = logging.getLogger(__name__)

Observer = Callable[[bytes], None]


class ConsoleError(Exception):
    """Base error for console session failures."""

    def __init__(self, message: str, code: str = "console_error") -> None:
        super().__init__(message)
        self.code = code


class TransportTimeout(ConsoleError):
    """No byte arrived within the per-character timeout."""

    def __init__(self, pattern: str, matched: int, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout}s waiting for {pattern!r} "
            f"({matched}/{len(pattern)} characters matched)",
            code="transport_timeout",
        )
        self.pattern = pattern
        self.matched = matched
        self.timeout = timeout


class TransportClosed(ConsoleError):
    """The guest end of the stream went away."""

    def __init__(self, pattern: str | None = None) -> None:
        detail = f" while waiting for {pattern!r}" if pattern is not None else ""
        super().__init__(f"Console stream closed{detail}", code="transport_closed")
        self.pattern = pattern


class Transport(Protocol):
    """Byte stream between host and guest.

    read_byte() returns exactly one byte, raises pexpect.TIMEOUT when none
    arrives in time and TransportClosed once the guest end is gone.
    """

    def read_byte(self, timeout: float) -> bytes:
        ...

    def write(self, data: bytes) -> None:
        ...


class PexpectTransport:
    """Transport backed by pexpect fdspawn objects on raw file descriptors.

    Args:
        read_fd: Descriptor the guest writes to (host reads).
        write_fd: Descriptor the guest reads from (host writes).
    """

    def __init__(self, read_fd: int, write_fd: int) -> None:
        self._reader = fdpexpect.fdspawn(read_fd)
        self._writer = fdpexpect.fdspawn(write_fd)

    def read_byte(self, timeout: float) -> bytes:
        try:
            return self._reader.read_nonblocking(size=1, timeout=timeout)
        except pexpect.EOF as e:
            raise TransportClosed() from e

    def write(self, data: bytes) -> None:
        try:
            self._writer.send(data)
        except OSError as e:
            raise TransportClosed() from e

    def close(self) -> None:
        for spawn in (self._reader, self._writer):
            if not spawn.closed:
                spawn.close()


class PatternMatcher(Protocol):
    """Incremental literal matcher fed one byte at a time."""

    def reset(self) -> None:
        ...

    def feed(self, byte: int) -> bool:
        """Consume one byte; return True once the whole pattern matched."""
        ...

    @property
    def matched(self) -> int:
        ...


class NaiveMatcher:
    """Match index that drops back to zero on any mismatch.

    The mismatching byte is not compared against the start of the pattern,
    so "aab" is not found in "aaab".
    """

    def __init__(self, pattern: bytes) -> None:
        if not pattern:
            raise ValueError("pattern must not be empty")
        self.pattern = pattern
        self._index = 0

    @property
    def matched(self) -> int:
        return self._index

    def reset(self) -> None:
        self._index = 0

    def feed(self, byte: int) -> bool:
        if self.pattern[self._index] == byte:
            self._index += 1
            if self._index == len(self.pattern):
                self._index = 0
                return True
        else:
            self._index = 0
        return False


class PrefixFunctionMatcher:
    """Matcher that backtracks with a failure function (Knuth-Morris-Pratt)."""

    def __init__(self, pattern: bytes) -> None:
        if not pattern:
            raise ValueError("pattern must not be empty")
        self.pattern = pattern
        self._failure = self._build_failure(pattern)
        self._index = 0

    @staticmethod
    def _build_failure(pattern: bytes) -> list[int]:
        failure = [0] * len(pattern)
        k = 0
        for i in range(1, len(pattern)):
            while k and pattern[i] != pattern[k]:
                k = failure[k - 1]
            if pattern[i] == pattern[k]:
                k += 1
            failure[i] = k
        return failure

    @property
    def matched(self) -> int:
        return self._index

    def reset(self) -> None:
        self._index = 0

    def feed(self, byte: int) -> bool:
        while self._index and self.pattern[self._index] != byte:
            self._index = self._failure[self._index - 1]
        if self.pattern[self._index] == byte:
            self._index += 1
        if self._index == len(self.pattern):
            self._index = 0
            return True
        return False


MatcherFactory = Callable[[bytes], PatternMatcher]


def stdout_observer(data: bytes) -> None:
    """Mirror console bytes to the host's stdout."""
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()


class ConsoleSession:
    """Wait-for-pattern and send primitives over a Transport.

    Args:
        transport: Byte stream to the guest.
        char_timeout: Seconds to wait for each individual byte.
        observer: Receives every consumed byte (live progress display).
        matcher_factory: Builds the matcher used by expect().
    """

    def __init__(
        self,
        transport: Transport,
        char_timeout: float = 240,
        observer: Observer | None = stdout_observer,
        matcher_factory: MatcherFactory = NaiveMatcher,
    ) -> None:
        self.transport = transport
        self.char_timeout = char_timeout
        self.observer = observer
        self.matcher_factory = matcher_factory

    def expect(self, pattern: str, char_timeout: float | None = None) -> None:
        """Consume the stream up to and including the next match of pattern.

        Args:
            pattern: Literal text to wait for.
            char_timeout: Per-byte timeout overriding the session default.

        Raises:
            TransportTimeout: If any single byte takes longer than the timeout.
            TransportClosed: If the guest end of the stream is gone.
        """
        timeout = self.char_timeout if char_timeout is None else char_timeout
        matcher = self.matcher_factory(pattern.encode())
        logger.debug("Waiting for %r", pattern)
        while True:
            try:
                byte = self.transport.read_byte(timeout)
            except pexpect.TIMEOUT as e:
                raise TransportTimeout(pattern, matcher.matched, timeout) from e
            except TransportClosed as e:
                raise TransportClosed(pattern) from e
            if self.observer is not None:
                self.observer(byte)
            if matcher.feed(byte[0]):
                logger.debug("Matched %r", pattern)
                return

    def send(self, text: str) -> None:
        """Write text to the guest; no acknowledgment is awaited."""
        logger.debug("Sending %r", text)
        self.transport.write(text.encode())


__all__ = [
    "ConsoleError",
    "ConsoleSession",
    "NaiveMatcher",
    "PatternMatcher",
    "PexpectTransport",
    "PrefixFunctionMatcher",
    "Transport",
    "TransportClosed",
    "TransportTimeout",
    "stdout_observer",
]
