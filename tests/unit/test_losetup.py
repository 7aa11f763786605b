#!/usr/bin/env python3
"""
Unit tests for scripts/losetup_cli.py (Loop Device Binder).

Tests:
1. device_number parses trailing digits and rejects everything else
2. bind validates the backing file before calling losetup
3. bind reports "no free loop device" distinctly, whatever the losetup wording
4. unbind refuses a loop device that is still held by a mapping
"""

import pytest

from encrypted_files.core.errors import BindError, ParseError, UnbindError
from encrypted_files.scripts import losetup_cli


class TestDeviceNumber:
    def test_loop_device(self):
        assert losetup_cli.device_number("/dev/loop12") == 12

    def test_zero(self):
        assert losetup_cli.device_number("/dev/loop0") == 0

    def test_trailing_newline(self):
        assert losetup_cli.device_number("/dev/loop3\n") == 3

    @pytest.mark.parametrize("device", ["/dev/loop", "", "/dev/sda-x"])
    def test_no_digits(self, device):
        with pytest.raises(ParseError):
            losetup_cli.device_number(device)


class TestBind:
    def test_bind_returns_device(self, fake_runner, tmp_path):
        backing = tmp_path / "1.encrypted"
        backing.write_bytes(b"\0" * 1024)
        fake_runner.on("losetup", "--find", "--show", stdout="/dev/loop7\n")

        assert losetup_cli.bind(backing) == "/dev/loop7"
        assert fake_runner.calls == [["losetup", "--find", "--show", str(backing.resolve())]]

    def test_missing_file(self, fake_runner, tmp_path):
        with pytest.raises(BindError, match="does not exist"):
            losetup_cli.bind(tmp_path / "nope.encrypted")
        assert fake_runner.calls == []

    def test_directory_is_not_a_backing_file(self, fake_runner, tmp_path):
        with pytest.raises(BindError, match="not a regular file"):
            losetup_cli.bind(tmp_path)
        assert fake_runner.calls == []

    @pytest.mark.parametrize(
        "stderr",
        [
            "losetup: cannot find an unused loop device: No free loop device",
            "losetup: cannot find an unused loop device",
            "losetup: Could not find any free loop device",
        ],
    )
    def test_no_free_loop_device(self, fake_runner, tmp_path, stderr):
        backing = tmp_path / "1.encrypted"
        backing.touch()
        fake_runner.on("losetup", "--find", returncode=1, stderr=stderr)

        with pytest.raises(BindError, match="no free loop device") as exc_info:
            losetup_cli.bind(backing)
        assert "losetup -D" in exc_info.value.hint

    def test_unexpected_output(self, fake_runner, tmp_path):
        backing = tmp_path / "1.encrypted"
        backing.touch()
        fake_runner.on("losetup", "--find", stdout="")

        with pytest.raises(BindError, match="unexpected losetup output"):
            losetup_cli.bind(backing)


class TestUnbind:
    def test_detaches(self, fake_runner, tmp_path):
        losetup_cli.unbind("/dev/loop3", sys_block=tmp_path)
        assert fake_runner.calls == [["losetup", "--detach", "/dev/loop3"]]

    def test_refuses_when_held(self, fake_runner, tmp_path):
        holders = tmp_path / "loop3" / "holders"
        holders.mkdir(parents=True)
        (holders / "dm-0").touch()

        with pytest.raises(UnbindError, match="still in use by dm-0"):
            losetup_cli.unbind("/dev/loop3", sys_block=tmp_path)
        assert fake_runner.calls == []

    def test_losetup_failure(self, fake_runner, tmp_path):
        fake_runner.on("losetup", "--detach", returncode=1, stderr="losetup: /dev/loop3: detach failed: No such device")

        with pytest.raises(UnbindError, match="detach failed") as exc_info:
            losetup_cli.unbind("/dev/loop3", sys_block=tmp_path)
        assert exc_info.value.hint == "Detach by hand: losetup -d /dev/loop3"

    def test_holders_of_unknown_device(self, tmp_path):
        assert losetup_cli.holders("/dev/loop99", sys_block=tmp_path) == []
