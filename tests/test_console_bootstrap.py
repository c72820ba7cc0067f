"""Tests for console/bootstrap.py module."""

import pytest

from vmimagegen.console.bootstrap import (
    GUEST_SHARE_DIR,
    LOGIN_PROMPT,
    SHELL_PROMPT,
    build_guest_script,
    run_guest_script,
)
from vmimagegen.console.session import TransportTimeout


def make_script(**overrides):
    kwargs = {
        "host_results_dir": "tmp/tmpabc123",
        "build_version": "20261016",
        "inputs": ["pyproject.toml", "vmimagegen", "images"],
        "packages": ["python-pip", "qemu-img"],
        "build_command": "vmimagegen build {build_version}",
    }
    kwargs.update(overrides)
    return build_guest_script(**kwargs)


class RecordingConsole:
    """Console double that logs sends/expects and can stall on one prompt."""

    def __init__(self, stall_after_send=None):
        self.events = []
        self.stall_after_send = stall_after_send
        self._last_send = None

    def send(self, text):
        self.events.append(("send", text))
        self._last_send = text

    def expect(self, pattern, char_timeout=None):
        if self.stall_after_send and self._last_send and self.stall_after_send in self._last_send:
            raise TransportTimeout(pattern, 0, 240)
        self.events.append(("expect", pattern))


class TestBuildGuestScript:
    """Tests for build_guest_script."""

    def test_starts_with_login(self):
        """First step waits for the login prompt, second logs in."""
        steps = make_script()
        assert steps[0].send is None
        assert steps[0].expect == LOGIN_PROMPT
        assert steps[1].send == "root\n"
        assert steps[1].expect == SHELL_PROMPT

    def test_error_trap_before_work(self):
        """The shutdown trap is installed before anything can fail."""
        sends = [s.send for s in make_script() if s.send]
        trap = sends.index('trap "shutdown now" ERR\n')
        mount = next(i for i, s in enumerate(sends) if "mount -t 9p" in s)
        assert trap < mount

    def test_ends_with_shutdown_without_expect(self):
        """Last step powers off and waits for nothing."""
        last = make_script()[-1]
        assert last.send == "shutdown now\n"
        assert last.expect is None

    def test_prompts_are_literal(self):
        """All expectations are the fixed literal prompts."""
        patterns = {s.expect for s in make_script() if s.expect}
        assert patterns == {LOGIN_PROMPT, SHELL_PROMPT}

    def test_build_command_gets_version(self):
        """The build command is formatted with the quoted version."""
        sends = [s.send for s in make_script(build_version="2026 10") if s.send]
        assert "vmimagegen build '2026 10'\n" in sends

    def test_inputs_and_results_paths(self):
        """Inputs come from the share; results go to the host work dir."""
        sends = "".join(s.send for s in make_script() if s.send)
        assert f"{GUEST_SHARE_DIR}/vmimagegen" in sends
        assert f"output {GUEST_SHARE_DIR}/tmp/tmpabc123/" in sends

    def test_packages_installed(self):
        """Extra tooling is installed with pacman."""
        sends = [s.send for s in make_script() if s.send]
        assert "pacman -Sy --noconfirm python-pip qemu-img\n" in sends


class TestRunGuestScript:
    """Tests for run_guest_script."""

    def test_plays_steps_in_order(self):
        """Each step sends, then expects."""
        steps = make_script()
        console = RecordingConsole()
        run_guest_script(console, steps)
        assert console.events[0] == ("expect", LOGIN_PROMPT)
        assert console.events[1] == ("send", "root\n")
        assert console.events[-1] == ("send", "shutdown now\n")
        assert len([e for e in console.events if e[0] == "send"]) == len(steps) - 1

    def test_guest_failure_is_a_timeout(self):
        """A failing guest command stops the script with TransportTimeout."""
        console = RecordingConsole(stall_after_send="vmimagegen build")
        with pytest.raises(TransportTimeout):
            run_guest_script(console, make_script())
        assert ("send", "shutdown now\n") not in console.events
