#!/usr/bin/env python3
"""
cryptsetup / dmsetup CLI Wrapper

Provides a wrapper around the crypt-layer command-line tools:
- luksFormat with a key file, guarded against existing signatures
- Token-only open, close, luksKillSlot
- Structured parsing of `cryptsetup status` and
  `cryptsetup luksDump --dump-json-metadata`
- Listing crypt targets via `dmsetup ls --target crypt`

Tool output is parsed into CryptStatus / LuksDump records here and
nowhere else. Parse failures raise StatusParseError instead of being
guessed around.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from encrypted_files.core import runner
from encrypted_files.core.constants import Commands, CryptParams
from encrypted_files.core.errors import (
    CommandError,
    CryptCloseError,
    FormatError,
    KeyRevocationError,
    StatusParseError,
    UnlockError,
)
from encrypted_files.core.limits import Limits

_crypt_logger = logging.getLogger("encrypted_files.crypt")

_STATUS_HEADLINE_RE = re.compile(r"^(?P<path>\S+) is (?P<state>active|inactive)(?P<in_use> and is in use)?\.?$")


# ===========================================================================
# Records
# ===========================================================================


@dataclass(frozen=True)
class CryptStatus:
    """One `cryptsetup status <name>` result."""

    name: str
    active: bool
    in_use: bool = False
    type: Optional[str] = None
    device: Optional[str] = None
    loop_file: Optional[str] = None
    mode: Optional[str] = None

    @property
    def is_loop_backed(self) -> bool:
        return bool(self.device and self.device.startswith(CryptParams.LOOP_PREFIX))


@dataclass(frozen=True)
class LuksToken:
    id: int
    type: str
    keyslots: Tuple[int, ...] = ()


@dataclass(frozen=True)
class LuksDump:
    """Keyslots and tokens from the LUKS2 JSON metadata area."""

    keyslots: Dict[int, str] = field(default_factory=dict)  # slot id -> slot type
    tokens: Tuple[LuksToken, ...] = ()

    @property
    def fido2_tokens(self) -> List[LuksToken]:
        return [t for t in self.tokens if t.type == CryptParams.FIDO2_TOKEN_TYPE]

    @property
    def has_fido2_token(self) -> bool:
        return bool(self.fido2_tokens)

    @property
    def token_slots(self) -> List[int]:
        """Keyslots bound to a FIDO2 token."""
        bound = {slot for t in self.fido2_tokens for slot in t.keyslots}
        return sorted(slot for slot in self.keyslots if slot in bound)

    @property
    def passphrase_slots(self) -> List[int]:
        """Keyslots no token refers to, i.e. unlocked by a passphrase or key file."""
        bound = {slot for t in self.tokens for slot in t.keyslots}
        return sorted(slot for slot in self.keyslots if slot not in bound)


# ===========================================================================
# Parsers
# ===========================================================================


def parse_status(name: str, output: str) -> CryptStatus:
    """
    Parse `cryptsetup status` output.

    Expected shape:
        /dev/mapper/3.unencrypted is active and is in use.
          type:    LUKS2
          device:  /dev/loop3
          loop:    /srv/vault/1.encrypted
          mode:    read/write

    Raises:
        StatusParseError: Headline missing or unrecognised
    """
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        raise StatusParseError(f"{name}: empty cryptsetup status output")

    match = _STATUS_HEADLINE_RE.match(lines[0].strip())
    if not match:
        raise StatusParseError(f"{name}: unrecognised cryptsetup status headline {lines[0].strip()!r}")

    fields: Dict[str, str] = {}
    for line in lines[1:]:
        key, sep, value = line.strip().partition(":")
        if sep:
            fields[key.strip().lower()] = value.strip()

    return CryptStatus(
        name=name,
        active=match.group("state") == "active",
        in_use=bool(match.group("in_use")),
        type=fields.get("type"),
        device=fields.get("device"),
        loop_file=fields.get("loop"),
        mode=fields.get("mode"),
    )


def parse_luks_dump(device: str, output: str) -> LuksDump:
    """
    Parse `cryptsetup luksDump --dump-json-metadata` output.

    Raises:
        StatusParseError: Not JSON, or keyslots/tokens have the wrong shape
    """
    try:
        metadata = json.loads(output)
    except json.JSONDecodeError as e:
        raise StatusParseError(f"{device}: luksDump metadata is not JSON ({e})") from e

    if not isinstance(metadata, dict):
        raise StatusParseError(f"{device}: luksDump metadata is not an object")

    try:
        keyslots = {int(k): str(v.get("type", "")) for k, v in (metadata.get("keyslots") or {}).items()}
        tokens = tuple(
            LuksToken(
                id=int(k),
                type=str(v.get("type", "")),
                keyslots=tuple(int(s) for s in v.get("keyslots", [])),
            )
            for k, v in sorted((metadata.get("tokens") or {}).items(), key=lambda kv: int(kv[0]))
        )
    except (AttributeError, TypeError, ValueError) as e:
        raise StatusParseError(f"{device}: unexpected keyslot/token layout in luksDump metadata ({e})") from e

    return LuksDump(keyslots=keyslots, tokens=tokens)


def parse_dmsetup_ls(output: str) -> List[str]:
    """Mapping names from `dmsetup ls --target crypt` ('No devices found' -> [])."""
    names = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.lower().startswith("no devices found"):
            continue
        names.append(line.split()[0])
    return names


# ===========================================================================
# Queries
# ===========================================================================


def status(name: str) -> CryptStatus:
    """
    Query one mapping. An inactive mapping is a normal result, not an error.

    Raises:
        StatusParseError: Output could not be parsed
        CommandError: cryptsetup failed without printing a status
    """
    result = runner.run_cmd(
        [Commands.CRYPTSETUP, "status", name],
        check=False,
        timeout=Limits.CRYPTSETUP_QUERY_TIMEOUT,
    )
    output = result.stdout or result.stderr
    try:
        return parse_status(name, output)
    except StatusParseError:
        if result.returncode not in (0, CryptParams.STATUS_INACTIVE_EXIT):
            raise CommandError(result.args, result.returncode, result.stdout, result.stderr)
        raise


def is_luks(device: str) -> bool:
    result = runner.run_cmd(
        [Commands.CRYPTSETUP, "isLuks", device],
        check=False,
        timeout=Limits.CRYPTSETUP_QUERY_TIMEOUT,
    )
    return result.returncode == 0


def luks_dump(device: str) -> LuksDump:
    """
    Read keyslots and tokens of a LUKS2 header.

    Raises:
        CommandError: luksDump failed (e.g. not a LUKS2 device)
        StatusParseError: Metadata could not be parsed
    """
    result = runner.run_cmd(
        [Commands.CRYPTSETUP, "luksDump", "--dump-json-metadata", device],
        timeout=Limits.CRYPTSETUP_QUERY_TIMEOUT,
    )
    return parse_luks_dump(device, result.stdout)


def list_crypt_mappings() -> List[str]:
    """Names of all device-mapper targets of type crypt."""
    result = runner.run_cmd(
        [Commands.DMSETUP, "ls", "--target", CryptParams.CRYPT_TARGET],
        timeout=Limits.QUICK_QUERY_TIMEOUT,
    )
    return parse_dmsetup_ls(result.stdout)


def existing_signature(device: str) -> Optional[str]:
    """
    Probe a device for a filesystem/volume signature.

    Returns:
        Signature type (e.g. 'crypto_LUKS', 'ext4'), or None for a blank device
    """
    result = runner.run_cmd(
        [Commands.BLKID, "--probe", "--output", "export", device],
        check=False,
        timeout=Limits.QUICK_QUERY_TIMEOUT,
    )
    if result.returncode != 0:
        # blkid exits 2 when nothing was found
        return None
    for line in result.stdout.splitlines():
        key, _, value = line.partition("=")
        if key in ("TYPE", "PTTYPE") and value:
            return value
    return "unknown"


# ===========================================================================
# Mutations
# ===========================================================================


def format_luks(device: str, key_file, key_slot: int, force: bool = False) -> None:
    """
    luksFormat a device as LUKS2 with key_file in key_slot, non-interactively.

    Refuses to overwrite an existing signature unless force is set.

    Raises:
        FormatError: Signature present without force, or luksFormat failed
    """
    signature = existing_signature(device)
    if signature and not force:
        raise FormatError(
            f"{device}: already carries a {signature} signature; refusing to format",
            hint="Re-run with --force if the contents really are disposable",
        )
    if signature:
        _crypt_logger.warning(f"crypt.format.force: device={device}, signature={signature}")

    try:
        runner.run_cmd(
            [
                Commands.CRYPTSETUP,
                "luksFormat",
                "--type",
                CryptParams.LUKS_TYPE,
                "--batch-mode",
                "--key-file",
                str(key_file),
                "--key-slot",
                str(key_slot),
                device,
            ],
            timeout=Limits.CRYPTSETUP_FORMAT_TIMEOUT,
        )
    except CommandError as e:
        raise FormatError(f"{device}: luksFormat failed: {e.detail or e.message}") from e

    _crypt_logger.info(f"crypt.format: device={device}, bootstrap_slot={key_slot}")


def open_with_token(device: str, name: str) -> None:
    """
    Open device as /dev/mapper/<name> using enrolled tokens only.

    cryptsetup talks to the operator directly (PIN, touch), so output is
    not captured.

    Raises:
        UnlockError: No enrolled token unlocked the volume
    """
    try:
        runner.run_cmd(
            [Commands.CRYPTSETUP, "open", "--type", CryptParams.LUKS_TYPE, "--token-only", device, name],
            capture_output=False,
            timeout=Limits.CRYPTSETUP_OPEN_TIMEOUT,
        )
    except CommandError as e:
        reason = "timed out waiting for a security key" if e.timed_out else f"exit code {e.returncode}"
        raise UnlockError(
            f"{device}: token unlock failed ({reason})",
            hint="Insert a security key enrolled for this volume and touch it when it blinks",
        ) from e

    _crypt_logger.info(f"crypt.open: device={device}, name={name}")


def close(name: str) -> None:
    """
    Raises:
        CryptCloseError: cryptsetup close failed (mapping busy or missing)
    """
    try:
        runner.run_cmd([Commands.CRYPTSETUP, "close", name], timeout=Limits.CRYPTSETUP_CLOSE_TIMEOUT)
    except CommandError as e:
        raise CryptCloseError(
            f"{name}: cryptsetup close failed: {e.detail or e.message}",
            hint=f"Check for processes holding the device (fuser -vm /dev/mapper/{name})",
        ) from e

    _crypt_logger.info(f"crypt.close: name={name}")


def kill_slot(device: str, slot: int) -> None:
    """
    Wipe one keyslot.

    Raises:
        KeyRevocationError: luksKillSlot failed
    """
    try:
        runner.run_cmd(
            [Commands.CRYPTSETUP, "luksKillSlot", "--batch-mode", device, str(slot)],
            timeout=Limits.CRYPTSETUP_CLOSE_TIMEOUT,
        )
    except CommandError as e:
        raise KeyRevocationError(
            f"{device}: could not wipe bootstrap keyslot {slot}: {e.detail or e.message}",
            hint=f"Remove it by hand NOW: cryptsetup luksKillSlot {device} {slot}",
        ) from e

    _crypt_logger.info(f"crypt.kill_slot: device={device}, slot={slot}")
