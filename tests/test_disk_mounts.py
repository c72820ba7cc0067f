"""Tests for disk/mounts.py module."""

from pathlib import Path

from vmimagegen.disk.loop import LoopBinding
from vmimagegen.disk.mounts import (
    MountTree,
    is_mount_point,
    mounts_under,
    read_mount_points,
)

PROC_MOUNTS_SAMPLE = """\
proc /proc proc rw,nosuid,nodev,noexec,relatime 0 0
/dev/nvme0n1p2 / ext4 rw,relatime 0 0
/dev/loop7p3 /srv/build/tmp/tmpx/mount ext4 rw,relatime 0 0
/dev/loop7p2 /srv/build/tmp/tmpx/mount/efi vfat rw,relatime 0 0
/dev/nvme0n1p2 /srv/build/tmp/tmpx/mount/var/cache/apt/archives ext4 rw 0 0
/dev/sdb1 /media/USB\\040Drive vfat rw 0 0
"""


def write_table(tmp_path, text=PROC_MOUNTS_SAMPLE):
    path = tmp_path / "mounts"
    path.write_text(text)
    return path


class TestReadMountPoints:
    """Tests for /proc/mounts parsing."""

    def test_parses_and_unescapes(self, tmp_path):
        """Octal escapes such as \\040 are decoded."""
        points = read_mount_points(write_table(tmp_path))
        assert Path("/media/USB Drive") in points
        assert Path("/proc") in points

    def test_unreadable_table(self, tmp_path):
        """A missing table reads as empty."""
        assert read_mount_points(tmp_path / "missing") == []

    def test_mounts_under(self, tmp_path):
        """Everything at or beneath the path is reported."""
        found = mounts_under(Path("/srv/build/tmp/tmpx"), write_table(tmp_path))
        assert found == [
            Path("/srv/build/tmp/tmpx/mount"),
            Path("/srv/build/tmp/tmpx/mount/efi"),
            Path("/srv/build/tmp/tmpx/mount/var/cache/apt/archives"),
        ]
        assert mounts_under(Path("/srv/build/tmp/other"), write_table(tmp_path)) == []

    def test_symlinked_path_matches_canonical_entry(self, tmp_path):
        """The table holds canonical paths; a symlinked path still matches."""
        real = tmp_path / "real"
        (real / "mount").mkdir(parents=True)
        link = tmp_path / "link"
        link.symlink_to(real)
        table = write_table(tmp_path, f"/dev/loop7p3 {real.resolve()}/mount ext4 rw 0 0\n")
        assert mounts_under(link, table) == [real.resolve() / "mount"]
        assert is_mount_point(link / "mount", table)

    def test_is_mount_point(self, tmp_path):
        table = write_table(tmp_path)
        assert is_mount_point(Path("/srv/build/tmp/tmpx/mount"), table)
        assert not is_mount_point(Path("/srv/build/tmp"), table)


class TestMountTree:
    """Tests for MountTree."""

    def test_mount_partitions(self, tmp_path, fake_runner):
        """Root is mounted before EFI."""
        tree = MountTree(tmp_path / "mount")
        tree.root.mkdir()
        tree.mount_partitions(LoopBinding(Path("x"), "/dev/loop7"), fake_runner)
        assert fake_runner.commands == [
            ["mount", "/dev/loop7p3", str(tree.root)],
            ["mount", "/dev/loop7p2", str(tree.root / "efi")],
        ]
        assert tree.mounted == [tree.root, tree.efi]

    def test_bind_package_cache(self, tmp_path, fake_runner):
        """The host cache is bind-mounted inside the root."""
        tree = MountTree(tmp_path / "mount")
        inside = tree.bind_package_cache(
            Path("/var/cache/apt/archives"), "var/cache/apt/archives", fake_runner
        )
        assert inside == tree.root / "var/cache/apt/archives"
        assert fake_runner.commands == [
            ["mount", "--bind", "/var/cache/apt/archives", str(inside)]
        ]

    def test_unmount_twice_is_noop(self, tmp_path, fake_runner, mounts_file):
        """The second unmount does nothing and does not fail."""
        tree = MountTree(tmp_path / "mount")
        tree.root.mkdir()
        tree.mount_partitions(LoopBinding(Path("x"), "/dev/loop7"), fake_runner)

        assert tree.unmount(fake_runner, mounts_file)
        assert tree.unmount(fake_runner, mounts_file)
        assert fake_runner.find("umount") == [["umount", "--recursive", str(tree.root)]]

    def test_unmount_detects_foreign_mount(self, tmp_path, fake_runner):
        """A root left mounted by an earlier run is still unmounted."""
        root = tmp_path / "mount"
        table = write_table(tmp_path, f"/dev/loop3p3 {root} ext4 rw 0 0\n")
        assert MountTree(root).unmount(fake_runner, table)
        assert fake_runner.find("umount")

    def test_unmount_failure_unchecked(self, tmp_path, make_runner, mounts_file):
        """With check=False a failing umount returns False."""
        runner = make_runner(fail={"umount"})
        tree = MountTree(tmp_path / "mount", mounted=[tmp_path / "mount"])
        assert not tree.unmount(runner, mounts_file, check=False)
        assert tree.mounted
