"""Tests for storage/mount.py - loop mounts and mount sessions.

Covers:
- Partition root resolution (direct, nested, degraded)
- Unmount retries and lazy fallback
- MountSession single-release semantics
- mount_images() cleanup on every exit path
"""

from unittest.mock import patch

import pytest

from wsa_arm.domain.models import FilesystemState, Partition
from wsa_arm.storage import mount
from wsa_arm.storage.exceptions import (
    FilesystemCheckError,
    MountFailedError,
    UnmountFailedError,
)


@pytest.fixture
def mount_table(monkeypatch):
    """Track mounted paths in a set instead of asking the kernel."""
    mounted = set()
    monkeypatch.setattr(mount, "is_mounted", lambda path: str(path) in mounted)
    monkeypatch.setattr(mount.time, "sleep", lambda _seconds: None)
    return mounted


@pytest.fixture
def loop_mounts(fake_runner, mount_table):
    """mount/umount commands update the mount table."""
    fake_runner.on("mount", action=lambda cmd: mount_table.add(cmd[-1]))
    fake_runner.on("umount", action=lambda cmd: mount_table.discard(cmd[-1]))
    return fake_runner


class TestResolvePartitionRoot:
    def test_direct_layout(self, tmp_path):
        (tmp_path / "etc").mkdir()

        assert mount.resolve_partition_root(tmp_path, Partition.SYSTEM) == tmp_path

    def test_nested_layout(self, tmp_path):
        (tmp_path / "vendor" / "lib").mkdir(parents=True)

        assert mount.resolve_partition_root(tmp_path, Partition.VENDOR) == tmp_path / "vendor"

    def test_nested_under_wrong_partition_name(self, tmp_path):
        (tmp_path / "system" / "bin").mkdir(parents=True)

        assert mount.resolve_partition_root(tmp_path, Partition.VENDOR) == tmp_path

    def test_degrades_to_mount_point(self, tmp_path):
        (tmp_path / "lost+found").mkdir()

        assert mount.resolve_partition_root(tmp_path, Partition.SYSTEM) == tmp_path

    def test_files_do_not_count_as_layout(self, tmp_path):
        (tmp_path / "bin").write_text("not a dir")
        (tmp_path / "system" / "bin").mkdir(parents=True)

        assert mount.resolve_partition_root(tmp_path, Partition.SYSTEM) == tmp_path / "system"


class TestUnmount:
    def test_not_mounted_is_noop(self, fake_runner, mount_table, tmp_path):
        assert mount.unmount(tmp_path) is False
        assert fake_runner.calls == []

    def test_syncs_then_unmounts(self, loop_mounts, mount_table, tmp_path):
        mount_table.add(str(tmp_path))

        assert mount.unmount(tmp_path) is False
        assert loop_mounts.calls[0] == ["sync"]
        assert ["umount", str(tmp_path)] in loop_mounts.calls

    def test_retries_three_times_then_raises(self, fake_runner, mount_table, tmp_path):
        mount_table.add(str(tmp_path))
        fake_runner.on("umount", returncode=32, stderr="target is busy")

        with pytest.raises(UnmountFailedError, match="target is busy"):
            mount.unmount(tmp_path)

        assert len(fake_runner.commands("umount")) == 3

    def test_succeeds_on_second_attempt(self, fake_runner, mount_table, tmp_path):
        mount_table.add(str(tmp_path))

        def busy_once(cmd):
            if len(fake_runner.commands("umount")) > 1:
                mount_table.discard(cmd[-1])

        fake_runner.on("umount", action=busy_once)

        mount.unmount(tmp_path)

        assert len(fake_runner.commands("umount")) == 2

    def test_lazy_fallback(self, fake_runner, mount_table, tmp_path):
        mount_table.add(str(tmp_path))
        fake_runner.on("umount", returncode=32)
        fake_runner.on("umount", "-l", returncode=0)

        assert mount.unmount(tmp_path, lazy=True) is True
        assert ["umount", "-l", str(tmp_path)] in fake_runner.calls


class TestMountSession:
    def test_mount_resolves_root(self, loop_mounts, vendor_image, tmp_path):
        mountpoint = tmp_path / "mnt" / "vendor"
        session = mount.MountSession(vendor_image, mountpoint)

        def populate(cmd):
            (mountpoint / "vendor" / "etc").mkdir(parents=True)

        loop_mounts.on("mount", action=populate)

        root = session.mount()

        assert root == mountpoint / "vendor"
        assert session.mounted
        assert loop_mounts.commands("mount")[0] == [
            "mount", "-t", "ext4", "-o", "loop", str(vendor_image.path), str(mountpoint)
        ]

    def test_refuses_unusable_image(self, loop_mounts, vendor_image, tmp_path):
        vendor_image.state = FilesystemState.CORRUPT
        session = mount.MountSession(vendor_image, tmp_path / "mnt")

        with pytest.raises(FilesystemCheckError):
            session.mount()
        assert loop_mounts.calls == []

    def test_refuses_double_mount(self, loop_mounts, vendor_image, tmp_path):
        session = mount.MountSession(vendor_image, tmp_path / "mnt")
        session.mount()

        with pytest.raises(MountFailedError, match="already mounted"):
            session.mount()

    def test_release_is_idempotent(self, loop_mounts, vendor_image, tmp_path):
        session = mount.MountSession(vendor_image, tmp_path / "mnt")
        session.mount()

        session.release()
        session.release()

        assert len(loop_mounts.commands("umount")) == 1
        assert not session.mounted

    def test_remount_after_release(self, loop_mounts, vendor_image, tmp_path):
        session = mount.MountSession(vendor_image, tmp_path / "mnt")
        session.mount()
        session.release()
        session.mount()

        assert len(loop_mounts.commands("mount")) == 2
        assert session.mounted

    def test_mount_failure_runs_diagnostics(self, fake_runner, mount_table, vendor_image, tmp_path):
        fake_runner.on("mount", returncode=32, stderr="wrong fs type")
        fake_runner.on("file", stdout="vendor.img: Linux rev 1.0 ext4 filesystem data")
        session = mount.MountSession(vendor_image, tmp_path / "mnt")

        with pytest.raises(MountFailedError, match="wrong fs type"):
            session.mount()

        assert fake_runner.commands("file") == [["file", str(vendor_image.path)]]
        assert fake_runner.commands("e2fsck", "-f", "-y") == [
            ["e2fsck", "-f", "-y", str(vendor_image.path)]
        ]
        assert not session.mounted

    def test_context_manager(self, loop_mounts, mount_table, vendor_image, tmp_path):
        with mount.MountSession(vendor_image, tmp_path / "mnt") as session:
            assert session.mounted

        assert mount_table == set()


class TestMountImages:
    def test_mounts_under_base(self, loop_mounts, mount_table, system_image, vendor_image, tmp_path):
        base = tmp_path / "mount_temp"

        with mount.mount_images(system_image, vendor_image, base) as (system, vendor):
            assert system.mountpoint == base / "system"
            assert vendor.mountpoint == base / "vendor"
            assert mount_table == {str(base / "system"), str(base / "vendor")}

        assert mount_table == set()

    def test_explicit_release_inside_block(self, loop_mounts, mount_table, system_image, vendor_image, tmp_path):
        with mount.mount_images(system_image, vendor_image, tmp_path) as (system, vendor):
            vendor.release()
            system.release()

        assert len(loop_mounts.commands("umount")) == 2

    def test_vendor_mount_failure_releases_system(
        self, fake_runner, mount_table, system_image, vendor_image, tmp_path
    ):
        fake_runner.on("mount", action=lambda cmd: mount_table.add(cmd[-1]))
        fake_runner.on("mount", "-t", "ext4", "-o", "loop", str(vendor_image.path), returncode=32)
        fake_runner.on("umount", action=lambda cmd: mount_table.discard(cmd[-1]))

        with pytest.raises(MountFailedError):
            with mount.mount_images(system_image, vendor_image, tmp_path):
                pytest.fail("block must not run")

        assert mount_table == set()

    def test_error_in_block_releases_lazily(self, fake_runner, mount_table, system_image, vendor_image, tmp_path):
        fake_runner.on("mount", action=lambda cmd: mount_table.add(cmd[-1]))
        fake_runner.on("umount", returncode=32)
        fake_runner.on("umount", "-l", action=lambda cmd: mount_table.discard(cmd[-1]))

        with pytest.raises(RuntimeError, match="install failed"):
            with mount.mount_images(system_image, vendor_image, tmp_path):
                raise RuntimeError("install failed")

        assert len(fake_runner.commands("umount", "-l")) == 2
        assert mount_table == set()

    def test_interrupt_in_block_releases_both(
        self, loop_mounts, mount_table, system_image, vendor_image, tmp_path
    ):
        with pytest.raises(KeyboardInterrupt):
            with mount.mount_images(system_image, vendor_image, tmp_path):
                raise KeyboardInterrupt

        assert mount_table == set()

    def test_cleanup_failure_does_not_mask_error(self, fake_runner, mount_table, system_image, vendor_image, tmp_path):
        fake_runner.on("mount", action=lambda cmd: mount_table.add(cmd[-1]))
        fake_runner.on("umount", returncode=32)

        with pytest.raises(RuntimeError, match="install failed"):
            with mount.mount_images(system_image, vendor_image, tmp_path):
                raise RuntimeError("install failed")


class TestIsMounted:
    @patch("os.path.ismount", return_value=True)
    def test_delegates_to_ismount(self, mock_ismount, tmp_path):
        assert mount.is_mounted(tmp_path)
        mock_ismount.assert_called_once_with(tmp_path)
