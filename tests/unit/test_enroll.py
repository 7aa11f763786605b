#!/usr/bin/env python3
"""
Unit tests for scripts/enroll.py (Credential Enrollment).

Tests:
1. Format with the bootstrap key in slot N, token i lands in slot i, slot N wiped
2. The bootstrap key file is gone afterwards, on success and on failure
3. Declining before key #k stops enrollment with Cancelled
4. A key that did not land in its slot is an EnrollmentError
5. Revocation verifies that no passphrase slot survives
6. A missing or full bootstrap key directory is an EnrollmentError naming it; nothing is formatted
"""

import io

import pytest

from conftest import luks_dump_json
from encrypted_files.core.errors import Cancelled, EnrollmentError, KeyRevocationError
from encrypted_files.scripts import enroll
from encrypted_files.scripts.tokens import SecurityKey


def _script_dumps(fake_runner, token_count):
    """luksDump answers as they evolve: one more token per enrollment, then the wiped bootstrap slot."""
    for enrolled in range(1, token_count + 1):
        slots = list(range(enrolled)) + [token_count]
        fake_runner.on("cryptsetup", "luksDump", stdout=luks_dump_json(slots, fido2_slots=range(enrolled)))
    fake_runner.on(
        "cryptsetup", "luksDump", stdout=luks_dump_json(range(token_count), fido2_slots=range(token_count))
    )


def _keys(*devices):
    queue = [SecurityKey(d) for d in devices]
    return lambda timeout: queue.pop(0)


class TestEnrollVolume:
    def test_two_keys(self, fake_runner, settings, out):
        fake_runner.on("blkid", returncode=2)
        _script_dumps(fake_runner, 2)

        result = enroll.enroll_volume(
            "/dev/loop3",
            settings,
            out=out,
            stream=io.StringIO("y\ny\n"),
            wait_for_key=_keys("/dev/hidraw2", "/dev/hidraw3"),
        )

        assert result.bootstrap_slot == 2
        assert result.token_slots == [0, 1]

        format_call = fake_runner.calls[fake_runner.index("cryptsetup", "luksFormat")]
        assert format_call[format_call.index("--key-slot") + 1] == "2"
        key_file = format_call[format_call.index("--key-file") + 1]

        enroll_calls = [c for c in fake_runner.calls if c[0] == "systemd-cryptenroll"]
        assert enroll_calls == [
            ["systemd-cryptenroll", "--fido2-device=/dev/hidraw2", f"--unlock-key-file={key_file}", "/dev/loop3"],
            ["systemd-cryptenroll", "--fido2-device=/dev/hidraw3", f"--unlock-key-file={key_file}", "/dev/loop3"],
        ]
        assert fake_runner.calls[fake_runner.index("cryptsetup", "luksKillSlot")] == [
            "cryptsetup",
            "luksKillSlot",
            "--batch-mode",
            "/dev/loop3",
            "2",
        ]
        assert fake_runner.index("cryptsetup", "luksKillSlot") > fake_runner.index("systemd-cryptenroll")
        assert list(settings.bootstrap_key_dir.iterdir()) == []

    def test_decline_second_key(self, fake_runner, settings, out):
        fake_runner.on("blkid", returncode=2)
        _script_dumps(fake_runner, 2)

        with pytest.raises(Cancelled, match="1 of 2 key"):
            enroll.enroll_volume(
                "/dev/loop3",
                settings,
                out=out,
                stream=io.StringIO("y\nn\n"),
                wait_for_key=_keys("/dev/hidraw2"),
            )

        assert len([c for c in fake_runner.calls if c[0] == "systemd-cryptenroll"]) == 1
        assert not fake_runner.called("cryptsetup", "luksKillSlot")
        assert list(settings.bootstrap_key_dir.iterdir()) == []

    def test_enrollment_command_fails(self, fake_runner, settings, out):
        fake_runner.on("blkid", returncode=2)
        fake_runner.on("systemd-cryptenroll", returncode=1)

        with pytest.raises(EnrollmentError, match="exit code 1"):
            enroll.enroll_volume(
                "/dev/loop3", settings, out=out, stream=io.StringIO("y\n"), wait_for_key=_keys("/dev/hidraw2")
            )
        assert list(settings.bootstrap_key_dir.iterdir()) == []

    def test_key_not_in_expected_slot(self, fake_runner, settings, out):
        fake_runner.on("blkid", returncode=2)
        fake_runner.on("cryptsetup", "luksDump", stdout=luks_dump_json([0, 2], fido2_slots=[]))

        with pytest.raises(EnrollmentError, match="not enrolled into keyslot 0"):
            enroll.enroll_volume(
                "/dev/loop3", settings, out=out, stream=io.StringIO("y\n"), wait_for_key=_keys("/dev/hidraw2")
            )

    def test_no_prompt_answer_formats_but_enrolls_nothing(self, fake_runner, settings, out):
        fake_runner.on("blkid", returncode=2)

        with pytest.raises(Cancelled):
            enroll.enroll_volume("/dev/loop3", settings, out=out, stream=io.StringIO(""), wait_for_key=_keys())
        assert fake_runner.called("cryptsetup", "luksFormat")
        assert not fake_runner.called("systemd-cryptenroll")

    def test_missing_key_dir(self, fake_runner, settings, out, tmp_path):
        gone = tmp_path / "no-shm"
        settings = settings.with_overrides(bootstrap_key_dir=gone)

        with pytest.raises(EnrollmentError, match="no-shm") as exc_info:
            enroll.enroll_volume("/dev/loop3", settings, out=out, stream=io.StringIO("y\n"), wait_for_key=_keys())
        assert isinstance(exc_info.value.__cause__, OSError)
        assert str(gone) in exc_info.value.hint
        assert not fake_runner.called("cryptsetup", "luksFormat")
        assert not gone.exists()

    def test_key_dir_full(self, fake_runner, settings, out, monkeypatch):
        def no_space(key_dir, *args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("encrypted_files.core.secrets.create_bootstrap_key", no_space)

        with pytest.raises(EnrollmentError, match="No space left on device"):
            enroll.enroll_volume("/dev/loop3", settings, out=out, stream=io.StringIO("y\n"), wait_for_key=_keys())
        assert fake_runner.calls == []


class TestRevokeBootstrap:
    def test_passphrase_slot_survives(self, fake_runner):
        fake_runner.on("cryptsetup", "luksDump", stdout=luks_dump_json([0, 1, 2], fido2_slots=[0, 1]))
        with pytest.raises(KeyRevocationError, match="keyslot\\(s\\) 2 still unlock"):
            enroll.revoke_bootstrap("/dev/loop3", 2, 2)

    def test_missing_token_slot(self, fake_runner):
        fake_runner.on("cryptsetup", "luksDump", stdout=luks_dump_json([0], fido2_slots=[0]))
        with pytest.raises(KeyRevocationError, match="expected 2"):
            enroll.revoke_bootstrap("/dev/loop3", 2, 2)

    def test_clean_header(self, fake_runner):
        fake_runner.on("cryptsetup", "luksDump", stdout=luks_dump_json([0, 1], fido2_slots=[0, 1]))
        assert enroll.revoke_bootstrap("/dev/loop3", 2, 2) == [0, 1]
