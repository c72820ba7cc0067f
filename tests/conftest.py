"""Shared fixtures.

External tools are never executed: FakeRunner records every command and
emulates the few file side effects later steps depend on.
"""

import os
from pathlib import Path

import pytest

from vmimagegen.config import Settings
from vmimagegen.runner import CommandRunner, ToolFailure, ToolResult


class FakeRunner(CommandRunner):
    """CommandRunner that records commands instead of running them.

    Attributes:
        commands: argv lists in call order.
        outputs: Program name -> stdout returned when captured.
        fail: Program names (or full argv prefixes) that exit with status 1.
    """

    def __init__(self, outputs=None, fail=None):
        super().__init__()
        self.commands = []
        self.calls = []
        self.outputs = {"losetup": "/dev/loop7", "dpkg": "amd64"}
        self.outputs.update(outputs or {})
        self.fail = set(fail or ())

    def programs(self):
        return [c[0] for c in self.commands]

    def find(self, program):
        return [c for c in self.commands if c[0] == program]

    def _fails(self, argv):
        return argv[0] in self.fail or " ".join(argv) in self.fail

    def run(self, cmd, *, capture=False, merge_stderr=False, check=True,
            cwd=None, env=None, input=None):
        argv = [os.fspath(c) for c in cmd]
        self.commands.append(argv)
        self.calls.append({"argv": argv, "cwd": cwd, "env": env})
        if self._fails(argv):
            if check:
                raise ToolFailure(f"{argv[0]} failed", exit_code=1, command=" ".join(argv))
            return ToolResult(command=" ".join(argv), exit_code=1)
        self._side_effect(argv, cwd)
        stdout = self.outputs.get(argv[0], "") if capture else ""
        return ToolResult(command=" ".join(argv), exit_code=0, stdout=stdout)

    def _side_effect(self, argv, cwd):
        program = argv[0]
        if program == "truncate":
            path = Path(argv[-1])
            size = int(argv[2])
            with open(path, "ab"):
                pass
            os.truncate(path, size)
        elif program == "cp" and "-a" in argv:
            # Sparse stand-in; image contents are never inspected
            with open(argv[-1], "wb") as f:
                f.truncate(os.path.getsize(argv[-2]))
        elif program == "qemu-img":
            Path(argv[-1]).write_bytes(b"QFI\xfb" + Path(argv[-2]).name.encode())


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Settings rooted in tmp_path with no sudo identity."""
    monkeypatch.delenv("SUDO_UID", raising=False)
    monkeypatch.delenv("SUDO_GID", raising=False)
    cache = tmp_path / "pkgcache"
    cache.mkdir()
    return Settings(
        project_dir=tmp_path,
        package_cache_dir=cache,
        arch="amd64",
        partition_wait_initial_delay=0.01,
        partition_wait_max_delay=0.01,
        _env_file=None,
    )


@pytest.fixture
def mounts_file(tmp_path):
    """Empty mount table standing in for /proc/mounts."""
    path = tmp_path / "mounts"
    path.write_text("")
    return path


@pytest.fixture
def build_session(settings, fake_runner, mounts_file):
    """BuildSession whose loop partitions always exist."""
    from vmimagegen.disk.session import BuildSession

    session = BuildSession.from_settings(settings, fake_runner)
    session.mounts_file = mounts_file
    session.node_exists = lambda path: True
    return session


@pytest.fixture
def make_runner():
    """Build FakeRunners with scripted outputs or failures."""
    return FakeRunner
