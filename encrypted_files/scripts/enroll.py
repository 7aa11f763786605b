#!/usr/bin/env python3
"""
Credential Enrollment (create path only)

Formats a new LUKS2 volume with a throwaway bootstrap key, enrolls N FIDO2
security keys against it, then wipes the bootstrap keyslot.

Keyslot layout:
    slot N        bootstrap key (luksFormat --key-slot N)
    slots 0..N-1  security key i -> slot i (systemd-cryptenroll takes the
                  lowest free slot)

End state: no keyslot without a token binding, N keyslots bound to
systemd-fido2 tokens. The bootstrap key file is destroyed however the
enrollment ends.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, TextIO

from encrypted_files.core import runner
from encrypted_files.core.config import Settings
from encrypted_files.core.constants import Commands, FileNames
from encrypted_files.core.errors import CommandError, EnrollmentError, KeyRevocationError
from encrypted_files.core.limits import Limits
from encrypted_files.core.secrets import bootstrap_key
from encrypted_files.scripts import cryptsetup_cli
from encrypted_files.scripts.cli_output import CLIOutput, get_output
from encrypted_files.scripts.prompts import require_confirmation
from encrypted_files.scripts.tokens import SecurityKey, wait_for_security_key

_enroll_logger = logging.getLogger("encrypted_files.enroll")


@dataclass
class EnrollmentResult:
    device: str
    bootstrap_slot: int
    token_slots: List[int] = field(default_factory=list)


def enroll_token(device: str, key: SecurityKey, key_file: Path) -> None:
    """
    Bind one security key to the next free keyslot, unlocking with key_file.

    systemd-cryptenroll asks for the key's PIN and a touch on the terminal,
    so its output is not captured.

    Raises:
        EnrollmentError: systemd-cryptenroll failed or timed out
    """
    try:
        runner.run_cmd(
            [
                Commands.CRYPTENROLL,
                f"--fido2-device={key.device}",
                f"--unlock-key-file={key_file}",
                device,
            ],
            capture_output=False,
            timeout=Limits.ENROLL_TIMEOUT,
        )
    except CommandError as e:
        reason = "timed out" if e.timed_out else f"exit code {e.returncode}"
        raise EnrollmentError(f"{device}: enrolling {key.label} failed ({reason})") from e


def _check_slot(device: str, slot: int, key: SecurityKey) -> None:
    dump = cryptsetup_cli.luks_dump(device)
    if slot not in dump.token_slots:
        raise EnrollmentError(
            f"{device}: {key.label} was not enrolled into keyslot {slot} "
            f"(token-bound slots: {dump.token_slots or 'none'})"
        )


def revoke_bootstrap(device: str, bootstrap_slot: int, expected_tokens: int) -> List[int]:
    """
    Wipe the bootstrap keyslot and verify the final header.

    Returns:
        The token-bound keyslots that remain

    Raises:
        KeyRevocationError: Wipe failed, or a non-token slot survived, or
            fewer token slots remain than were enrolled
    """
    cryptsetup_cli.kill_slot(device, bootstrap_slot)

    dump = cryptsetup_cli.luks_dump(device)
    if dump.passphrase_slots:
        slots = " ".join(str(s) for s in dump.passphrase_slots)
        raise KeyRevocationError(
            f"{device}: keyslot(s) {slots} still unlock without a security key",
            hint=f"Wipe them by hand NOW: cryptsetup luksKillSlot {device} <slot>",
        )
    if len(dump.token_slots) < max(expected_tokens, 1):
        raise KeyRevocationError(
            f"{device}: expected {expected_tokens} token-bound keyslot(s), found {len(dump.token_slots)}",
            hint=f"Inspect with: cryptsetup luksDump {device}",
        )

    _enroll_logger.info(f"enroll.revoke: device={device}, bootstrap_slot={bootstrap_slot}, token_slots={dump.token_slots}")
    return dump.token_slots


def enroll_volume(
    device: str,
    settings: Settings,
    out: Optional[CLIOutput] = None,
    stream: Optional[TextIO] = None,
    wait_for_key: Callable[..., SecurityKey] = wait_for_security_key,
) -> EnrollmentResult:
    """
    Format device and enroll settings.token_count security keys.

    Args:
        device: Loop device holding the new backing file
        settings: token_count, bootstrap_key_dir, prompt/poll timeouts, force_format
        out: Operator output
        stream: Operator input (stdin by default)
        wait_for_key: Security key poller (injectable for tests)

    Returns:
        EnrollmentResult with the token-bound keyslots

    Raises:
        FormatError: luksFormat refused or failed
        Cancelled: Operator declined or timed out before a key was presented
        EnrollmentError: Key missing or ambiguous, enrollment command failed, or the
            bootstrap key file could not be created or destroyed
        KeyRevocationError: Bootstrap keyslot could not be removed
    """
    out = out or get_output()
    count = settings.token_count
    result = EnrollmentResult(device=device, bootstrap_slot=count)

    try:
        with bootstrap_key(settings.bootstrap_key_dir) as key_file:
            cryptsetup_cli.format_luks(device, key_file, key_slot=count, force=settings.force_format)
            out.info(f"Formatted {device} as LUKS2 (temporary key in slot {count})")

            for slot in range(count):
                require_confirmation(
                    f"Insert security key #{slot + 1} of {count} (unplug any other key) and confirm",
                    settings.prompt_timeout,
                    cancelled_message=(
                        f"{device}: enrollment cancelled before key #{slot + 1}; "
                        f"{len(result.token_slots)} of {count} key(s) enrolled"
                    ),
                    out=out,
                    stream=stream,
                )
                key = wait_for_key(settings.token_poll_timeout)
                out.log(f"Enrolling {key.label} into keyslot {slot}; enter its PIN and touch it when asked")
                enroll_token(device, key, key_file)
                _check_slot(device, slot, key)
                result.token_slots.append(slot)
                _enroll_logger.info(f"enroll.token: device={device}, slot={slot}, key={key.device}")
                out.info(f"Security key #{slot + 1} enrolled")

            result.token_slots = revoke_bootstrap(device, count, count)
    except OSError as e:
        raise EnrollmentError(
            f"{device}: bootstrap key in {settings.bootstrap_key_dir} could not be created or destroyed ({e})",
            hint=f"Check that {settings.bootstrap_key_dir} exists and is writable; remove any leftover {FileNames.BOOTSTRAP_KEY_PREFIX}* file there",
        ) from e

    out.info(f"Temporary key removed; {device} now unlocks only with its {count} security key(s)")
    return result
