#!/usr/bin/env python3
"""
Unit tests for scripts/mount.py (Volume Mount Controller, open side).

Tests:
1. open_volume: token unlock -> mkdir -> mount, named after the loop number
2. create path runs mkfs on the mapping before mounting
3. A non-empty mount directory is refused and the mapping is closed again
4. A failed mount closes the mapping and removes the directory it created
5. A failed unlock leaves nothing to clean up
6. Ctrl-C during mkfs or mount still closes the mapping
"""

from unittest.mock import patch

import pytest

from encrypted_files.core.errors import FormatError, MountError, MountPointError, UnlockError
from encrypted_files.scripts import mount


class TestPrepareMountPoint:
    def test_creates_directory(self, tmp_path):
        target = tmp_path / "mnt" / "3"
        assert mount.prepare_mount_point(target) is True
        assert target.is_dir()

    def test_reuses_empty_directory(self, tmp_path):
        target = tmp_path / "3"
        target.mkdir()
        assert mount.prepare_mount_point(target) is False

    def test_refuses_non_empty_directory(self, tmp_path):
        target = tmp_path / "3"
        target.mkdir()
        (target / "stray.txt").write_text("x")
        with pytest.raises(MountPointError, match="not empty"):
            mount.prepare_mount_point(target)

    def test_refuses_file(self, tmp_path):
        target = tmp_path / "3"
        target.write_text("x")
        with pytest.raises(MountPointError, match="not a directory"):
            mount.prepare_mount_point(target)

    def test_refuses_active_mount_point(self, tmp_path):
        target = tmp_path / "3"
        target.mkdir()
        with patch("encrypted_files.scripts.mount.is_mounted", return_value=True):
            with pytest.raises(MountPointError, match="already mounted"):
                mount.prepare_mount_point(target)


class TestOpenVolume:
    def test_unlock_then_mount(self, fake_runner, settings):
        volume = mount.open_volume("/dev/loop3", 3, settings)

        assert volume.mapped_name == "3.unencrypted"
        assert volume.mount_point == settings.mount_root / "3"
        assert volume.mount_point.is_dir()
        assert fake_runner.calls == [
            ["cryptsetup", "open", "--type", "luks2", "--token-only", "/dev/loop3", "3.unencrypted"],
            ["mount", "/dev/mapper/3.unencrypted", str(settings.mount_root / "3")],
        ]

    def test_make_fs_before_mount(self, fake_runner, settings):
        mount.open_volume("/dev/loop3", 3, settings, make_fs=True)
        assert fake_runner.calls[1] == ["mkfs.ext4", "-q", "/dev/mapper/3.unencrypted"]
        assert fake_runner.index("mkfs.ext4") < fake_runner.index("mount")

    def test_unlock_failure_touches_nothing_else(self, fake_runner, settings):
        fake_runner.on("cryptsetup", "open", returncode=2)
        with pytest.raises(UnlockError):
            mount.open_volume("/dev/loop3", 3, settings)
        assert len(fake_runner.calls) == 1
        assert not (settings.mount_root / "3").exists()

    def test_non_empty_mount_dir_closes_mapping(self, fake_runner, settings):
        target = settings.mount_root / "3"
        target.mkdir()
        (target / "stray.txt").write_text("x")

        with pytest.raises(MountPointError):
            mount.open_volume("/dev/loop3", 3, settings)

        assert fake_runner.calls[-1] == ["cryptsetup", "close", "3.unencrypted"]
        assert not fake_runner.called("mount")
        assert (target / "stray.txt").exists()

    def test_mount_failure_cleans_up(self, fake_runner, settings):
        fake_runner.on("mount", returncode=32, stderr="mount: wrong fs type")

        with pytest.raises(MountError, match="wrong fs type"):
            mount.open_volume("/dev/loop3", 3, settings)

        assert fake_runner.calls[-1] == ["cryptsetup", "close", "3.unencrypted"]
        assert not (settings.mount_root / "3").exists()

    def test_mkfs_failure_closes_mapping(self, fake_runner, settings):
        fake_runner.on("mkfs.ext4", returncode=1)
        with pytest.raises(FormatError):
            mount.open_volume("/dev/loop3", 3, settings, make_fs=True)
        assert fake_runner.calls[-1] == ["cryptsetup", "close", "3.unencrypted"]

    def test_cleanup_failure_is_reported_in_hint(self, fake_runner, settings):
        fake_runner.on("mount", returncode=32)
        fake_runner.on("cryptsetup", "close", returncode=5)

        with pytest.raises(MountError) as exc_info:
            mount.open_volume("/dev/loop3", 3, settings)
        assert "mapping 3.unencrypted is still open" in exc_info.value.hint

    @pytest.mark.parametrize("command", ["mkfs.ext4", "mount"])
    def test_interrupt_closes_mapping(self, fake_runner, settings, command):
        def interrupt(argv):
            raise KeyboardInterrupt

        fake_runner.on(command, effect=interrupt)

        with pytest.raises(KeyboardInterrupt):
            mount.open_volume("/dev/loop3", 3, settings, make_fs=True)
        assert fake_runner.calls[-1] == ["cryptsetup", "close", "3.unencrypted"]
