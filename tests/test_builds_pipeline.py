"""Tests for builds/base.py, builds/variant.py and builds/orchestrator.py.

Everything runs against FakeRunner; no loop device or mount is touched.
"""

import signal
from datetime import date
from unittest.mock import patch

import pytest

from vmimagegen.builds.artifacts import verify_checksum
from vmimagegen.builds.base import bootstrap_command, build_base, resolve_arch
from vmimagegen.builds.orchestrator import (
    BuildVersionError,
    PrivilegeError,
    require_root,
    resolve_build_version,
    run_build,
)
from vmimagegen.builds.variant import check_image_name, create_variant, enable_services
from vmimagegen.disk.session import DiskSessionError
from vmimagegen.interrupts import exit_on_signals
from vmimagegen.recipes.io import RecipeError, RecipeRegistry
from vmimagegen.recipes.schema import RecipeSchema
from vmimagegen.runner import ToolFailure
from vmimagegen.types import RecipeRole

MIB = 1024**2

BASE = RecipeSchema(name="base", role=RecipeRole.BASE, pre_hook="echo base")


def cloud(**overrides):
    data = {
        "name": "cloud",
        "image_name": "cloud-{build_version}.qcow2",
        "packages": ["cloud-utils"],
        "services": ["cloud-init", "sshd"],
        "convert": {"format": "qcow2"},
    }
    data.update(overrides)
    return RecipeSchema.model_validate(data)


@pytest.fixture
def as_root():
    with patch("vmimagegen.builds.orchestrator.os.geteuid", return_value=0):
        yield


def prepared_base(build_session, size="600M"):
    """Prepare the session and run the base build, returning the base image."""
    build_session.prepare()
    image = build_session.image_path("image.img")
    build_session.setup_disk(image, size)
    build_base(build_session, BASE, "20261016", "amd64")
    return image


class TestBuildBase:
    """Tests for build_base."""

    def test_sequence(self, build_session):
        """Format, mount, bootstrap, hook, trim, unmount."""
        image = prepared_base(build_session)
        programs = build_session.runner.programs()
        start = programs.index("mkfs.fat")
        assert programs[start:] == [
            "mkfs.fat", "mkfs.ext4", "mount", "mount", "aoscbootstrap",
            "bash", "sync", "fstrim", "fstrim", "umount", "losetup",
        ]
        assert build_session.runner.find("mkfs.fat")[0] == [
            "mkfs.fat", "-F", "32", "-S", "4096", "/dev/loop7p2",
        ]
        assert build_session.loop is None
        assert image.exists()

    def test_no_package_cache_bind(self, build_session):
        """The base build mounts only root and EFI."""
        prepared_base(build_session)
        assert not any("--bind" in c for c in build_session.runner.find("mount"))

    def test_requires_bound_disk(self, build_session):
        build_session.prepare()
        with pytest.raises(DiskSessionError):
            build_base(build_session, BASE, "1", "amd64")

    def test_bootstrap_command(self, settings, tmp_path):
        cmd = bootstrap_command(settings, tmp_path, "amd64")
        assert cmd[:3] == ["aoscbootstrap", "stable", str(tmp_path)]
        assert "--arch=amd64" in cmd
        assert cmd[-2:] == ["https://repo.aosc.io/debs", "--force"]

    def test_resolve_arch(self, settings, fake_runner):
        assert resolve_arch(settings, fake_runner) == "amd64"
        assert fake_runner.commands == []
        unset = settings.model_copy(update={"arch": None})
        fake_runner.outputs["dpkg"] = "arm64"
        assert resolve_arch(unset, fake_runner) == "arm64"
        assert fake_runner.commands == [["dpkg", "--print-architecture"]]


class TestCreateVariant:
    """Tests for create_variant."""

    def test_publishes_artifact(self, build_session, settings):
        """A variant ends as a checksummed artifact in the output dir."""
        base = prepared_base(build_session)
        info = create_variant(build_session, base, cloud(), "20261016", "amd64")

        assert info.path == settings.output_path / "cloud-20261016.qcow2"
        assert verify_checksum(info.path)
        assert build_session.loop is None

    def test_installs_packages_in_chroot(self, build_session):
        base = prepared_base(build_session)
        create_variant(build_session, base, cloud(), "20261016", "amd64")
        install = build_session.runner.find("arch-chroot")
        assert install == [[
            "arch-chroot", str(build_session.mount_dir),
            "/usr/bin/oma", "install", "--no-check-dbus", "-y", "cloud-utils",
        ]]

    def test_services_via_preset(self, build_session, settings):
        """Services are enabled by appending to the preset file."""
        base = prepared_base(build_session)
        create_variant(build_session, base, cloud(), "20261016", "amd64")
        preset = build_session.mount_dir / settings.preset_file
        assert preset.read_text() == "enable cloud-init\nenable sshd\n"
        assert "systemctl" not in build_session.runner.programs()

    def test_package_cache_bound(self, build_session, settings):
        base = prepared_base(build_session)
        create_variant(build_session, base, cloud(), "20261016", "amd64")
        binds = [c for c in build_session.runner.find("mount") if "--bind" in c]
        assert binds and binds[0][2] == str(settings.package_cache_dir)

    def test_no_override_keeps_size(self, build_session, settings):
        """Without disk_size the artifact has the base image's size."""
        base = prepared_base(build_session)
        info = create_variant(
            build_session, base, cloud(convert=None), "1", "amd64"
        )
        assert info.size_bytes == 600 * MIB
        assert not any("--delete=3" in c for c in build_session.runner.find("sgdisk"))

    def test_override_grows_copy_only(self, build_session):
        """disk_size grows the scratch copy, not the base image."""
        base = prepared_base(build_session)
        info = create_variant(
            build_session, base, cloud(convert=None, disk_size="700M"), "1", "amd64"
        )
        assert info.size_bytes == 700 * MIB
        assert base.stat().st_size == 600 * MIB

    def test_failure_emits_no_artifact(self, build_session, settings, make_runner):
        """A failing step propagates and nothing reaches the output dir."""
        build_session.runner = make_runner(fail={"arch-chroot"})
        base = prepared_base(build_session)
        with pytest.raises(ToolFailure):
            create_variant(build_session, base, cloud(), "20261016", "amd64")
        assert list(settings.output_path.iterdir()) == []

    @pytest.mark.parametrize(
        "name", ["image.img", "scratch-cloud.img", "..", "a/b.img", ""]
    )
    def test_reserved_image_names(self, name):
        """Names that would clobber build working files are rejected."""
        with pytest.raises(RecipeError):
            check_image_name(name, "image.img")

    def test_plain_image_name_accepted(self):
        check_image_name("scratch-cloud.qcow2", "image.img")

    def test_base_image_name_rejected_before_copy(self, build_session):
        base = prepared_base(build_session)
        recipe = cloud(convert=None, image_name="image.img")
        with pytest.raises(RecipeError) as exc_info:
            create_variant(build_session, base, recipe, "1", "amd64")
        assert exc_info.value.code == "reserved_image_name"
        assert "cp" not in build_session.runner.programs()

    def test_enable_services_appends(self, tmp_path):
        preset = "usr/lib/systemd/system-preset/80-image.preset"
        enable_services(tmp_path, preset, ["a"])
        enable_services(tmp_path, preset, ["b"])
        assert (tmp_path / preset).read_text() == "enable a\nenable b\n"


class TestOrchestratorHelpers:
    """Tests for privilege, build version and signal helpers."""

    def test_require_root(self):
        require_root(lambda: 0)
        with pytest.raises(PrivilegeError) as exc_info:
            require_root(lambda: 1000)
        assert exc_info.value.code == "privilege_required"

    def test_explicit_build_version(self):
        assert resolve_build_version("v1") == "v1"

    @pytest.mark.parametrize("version", ["2026/10", "..", "."])
    def test_build_version_not_a_path(self, version):
        with pytest.raises(BuildVersionError) as exc_info:
            resolve_build_version(version)
        assert exc_info.value.code == "invalid_build_version"

    def test_default_build_version_warns(self, caplog):
        with caplog.at_level("WARNING"):
            version = resolve_build_version(None, today=date(2026, 10, 16))
        assert version == "20261016"
        assert "BUILD_VERSION" in caplog.text

    def test_sigterm_becomes_system_exit(self):
        """SIGTERM unwinds like an exception so cleanup runs."""
        previous = signal.getsignal(signal.SIGTERM)
        with pytest.raises(SystemExit) as exc_info:
            with exit_on_signals():
                signal.raise_signal(signal.SIGTERM)
        assert exc_info.value.code == 128 + signal.SIGTERM
        assert signal.getsignal(signal.SIGTERM) == previous


class TestRunBuild:
    """Tests for run_build."""

    def test_refuses_without_root(self, build_session, settings):
        """Nothing is touched when not running as root."""
        registry = RecipeRegistry.from_recipes([BASE, cloud()])
        with patch("vmimagegen.builds.orchestrator.os.geteuid", return_value=1000):
            with pytest.raises(PrivilegeError):
                run_build(settings, registry, "1", session=build_session)
        assert build_session.runner.commands == []
        assert not settings.tmp_path.exists()

    def test_one_artifact_per_variant(self, build_session, settings, as_root):
        """Artifacts count equals variant count and all verify."""
        settings = settings.model_copy(update={"default_disk_size": "600M"})
        build_session.settings = settings
        registry = RecipeRegistry.from_recipes(
            [BASE, cloud(), cloud(name="vagrant", image_name="vagrant-{build_version}.img")]
        )
        report = run_build(settings, registry, "20261016", session=build_session)

        assert len(report.artifacts) == len(registry.variants) == 2
        assert [a.recipe for a in report.artifacts] == ["cloud", "vagrant"]
        assert all(verify_checksum(a.path) for a in report.artifacts)
        assert report.manifest_path == settings.output_path / "manifest-20261016.json"
        assert list(settings.tmp_path.iterdir()) == []

    def test_order(self, build_session, settings, as_root):
        """Disk setup, then base build, then variants."""
        settings = settings.model_copy(update={"default_disk_size": "600M"})
        build_session.settings = settings
        registry = RecipeRegistry.from_recipes([BASE, cloud()])
        run_build(settings, registry, "1", session=build_session)
        programs = build_session.runner.programs()
        assert programs[:2] == ["truncate", "sgdisk"]
        assert programs.index("aoscbootstrap") < programs.index("cp")
        assert programs.index("cp") < programs.index("qemu-img")

    def test_failure_cleans_up(self, build_session, settings, make_runner, as_root):
        """A failing variant aborts the build and still releases everything."""
        settings = settings.model_copy(update={"default_disk_size": "600M"})
        build_session.settings = settings
        build_session.runner = make_runner(fail={"qemu-img"})
        registry = RecipeRegistry.from_recipes([BASE, cloud()])

        with pytest.raises(ToolFailure):
            run_build(settings, registry, "1", session=build_session)

        assert build_session.loop is None
        assert list(settings.tmp_path.iterdir()) == []
        assert not any(settings.output_path.glob("*.qcow2"))
        assert not any(settings.output_path.glob("manifest-*.json"))

    def test_reserved_name_fails_before_disk_setup(self, build_session, settings, as_root):
        """A variant named like the base image stops the build up front."""
        registry = RecipeRegistry.from_recipes([BASE, cloud(image_name="image.img")])
        with pytest.raises(RecipeError):
            run_build(settings, registry, "1", session=build_session)
        assert "truncate" not in build_session.runner.programs()
        assert list(settings.tmp_path.iterdir()) == []

    def test_bad_build_version_touches_nothing(self, build_session, settings, as_root):
        registry = RecipeRegistry.from_recipes([BASE, cloud()])
        with pytest.raises(BuildVersionError):
            run_build(settings, registry, "../escape", session=build_session)
        assert build_session.runner.commands == []
