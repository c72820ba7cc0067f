"""External tool execution.

Every partitioning, mounting, bootstrap and conversion step goes through
CommandRunner so commands are logged uniformly and any failure surfaces as
ToolFailure. Tests substitute a recording runner.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class ToolFailure(Exception):
    """Raised when an external tool fails or cannot be started."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        command: str | None = None,
        code: str = "tool_failed",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.command = command
        self.code = code


@dataclass
class ToolResult:
    """Result of an external tool invocation.

    Attributes:
        command: The shell-quoted command line.
        exit_code: Process exit code.
        stdout: Captured output (empty unless capture was requested).
    """

    command: str
    exit_code: int
    stdout: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class CommandRunner:
    """Runs external tools with logging and uniform error reporting."""

    def __init__(self, env_override: Mapping[str, str] | None = None) -> None:
        self.env_override = dict(env_override or {})

    def run(
        self,
        cmd: Sequence[str | os.PathLike[str]],
        *,
        capture: bool = False,
        merge_stderr: bool = False,
        check: bool = True,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        input: str | None = None,
    ) -> ToolResult:
        """Run a command to completion.

        Args:
            cmd: Command and arguments.
            capture: Capture stdout instead of passing it through.
            merge_stderr: Send stderr to the same place as stdout.
            check: Raise ToolFailure on a non-zero exit code.
            cwd: Working directory.
            env: Extra environment variables for this command.
            input: Text fed to stdin.

        Returns:
            ToolResult with exit code and captured output.

        Raises:
            ToolFailure: If the command fails (with check) or cannot start.
        """
        argv = [os.fspath(c) for c in cmd]
        cmd_str = shlex.join(argv)
        logger.info("Running: %s", cmd_str)

        full_env: dict[str, str] | None = None
        if env or self.env_override:
            full_env = dict(os.environ)
            full_env.update(self.env_override)
            full_env.update(env or {})

        try:
            result = subprocess.run(
                argv,
                cwd=cwd,
                env=full_env,
                input=input,
                stdout=subprocess.PIPE if capture else None,
                stderr=subprocess.STDOUT if merge_stderr else None,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise ToolFailure(
                f"Tool not found: {argv[0]}",
                command=cmd_str,
                code="tool_not_found",
            ) from e
        except OSError as e:
            raise ToolFailure(
                f"Failed to execute {argv[0]}: {e}",
                command=cmd_str,
                code="execution_error",
            ) from e

        if check and result.returncode != 0:
            message = f"Command failed with exit code {result.returncode}: {cmd_str}"
            logger.error(message)
            raise ToolFailure(message, exit_code=result.returncode, command=cmd_str)

        return ToolResult(
            command=cmd_str,
            exit_code=result.returncode,
            stdout=result.stdout or "",
        )

    def output(
        self,
        cmd: Sequence[str | os.PathLike[str]],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> str:
        """Run a command and return its stripped stdout."""
        return self.run(cmd, capture=True, cwd=cwd, env=env).stdout.strip()


__all__ = ["CommandRunner", "ToolFailure", "ToolResult"]
