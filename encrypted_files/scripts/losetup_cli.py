"""
Loop Device Binder

Attaches a backing file to the first free loop device and detaches it
again. The kernel assigns the device; its trailing number names the
mapped device and the mount point (see core/paths.py).

A loop device still held by a crypt mapping is refused on detach:
`losetup -d` would only flag it for autoclear and return success, which
hides a teardown done in the wrong order.
"""

import logging
import os
import re
from pathlib import Path
from typing import List, Optional

from encrypted_files.core import runner
from encrypted_files.core.constants import Commands, CryptParams
from encrypted_files.core.errors import BindError, CommandError, ParseError, UnbindError
from encrypted_files.core.limits import Limits

_loop_logger = logging.getLogger("encrypted_files.loop")

SYS_BLOCK = Path("/sys/block")

_TRAILING_DIGITS_RE = re.compile(r"(\d+)$")

# util-linux wording varies by release
_NO_FREE_LOOP_MARKERS = ("free loop device", "unused loop device")


def device_number(loop_device: str) -> int:
    """
    Parse the trailing number of a device path ('/dev/loop12' -> 12).

    Raises:
        ParseError: No trailing digits
    """
    match = _TRAILING_DIGITS_RE.search(str(loop_device).strip())
    if not match:
        raise ParseError(f"No device number at the end of {loop_device!r}")
    return int(match.group(1))


def _check_backing_file(file_path: Path) -> None:
    if not file_path.exists():
        raise BindError(f"{file_path}: backing file does not exist")
    if not file_path.is_file():
        raise BindError(f"{file_path}: not a regular file")
    if not os.access(file_path, os.R_OK | os.W_OK):
        raise BindError(f"{file_path}: backing file is not readable and writable")


def bind(file_path: Path) -> str:
    """
    Attach file_path to the first free loop device.

    Returns:
        Loop device path, e.g. '/dev/loop3'

    Raises:
        BindError: File inaccessible, no free loop device, or losetup failed
    """
    file_path = Path(file_path).resolve()
    _check_backing_file(file_path)

    try:
        result = runner.run_cmd(
            [Commands.LOSETUP, "--find", "--show", str(file_path)],
            timeout=Limits.LOSETUP_TIMEOUT,
        )
    except CommandError as e:
        detail = e.detail.lower()
        if any(marker in detail for marker in _NO_FREE_LOOP_MARKERS):
            raise BindError(f"{file_path}: no free loop device", hint="Detach unused loop devices (losetup -D)") from e
        raise BindError(f"{file_path}: losetup failed: {e.detail or e.message}") from e

    loop_device = result.stdout.strip()
    if not loop_device.startswith(CryptParams.LOOP_PREFIX):
        raise BindError(f"{file_path}: unexpected losetup output {loop_device!r}")

    device_number(loop_device)
    _loop_logger.info(f"loop.bind: file={file_path}, device={loop_device}")
    return loop_device


def holders(loop_device: str, sys_block: Optional[Path] = None) -> List[str]:
    """Names of block devices stacked on loop_device (e.g. ['dm-3'])."""
    holders_dir = Path(sys_block or SYS_BLOCK) / Path(loop_device).name / "holders"
    if not holders_dir.is_dir():
        return []
    return sorted(p.name for p in holders_dir.iterdir())


def unbind(loop_device: str, sys_block: Optional[Path] = None) -> None:
    """
    Detach a loop device.

    Raises:
        UnbindError: Device is still held by a mapping, or losetup failed
    """
    held_by = holders(loop_device, sys_block)
    if held_by:
        raise UnbindError(
            f"{loop_device}: still in use by {', '.join(held_by)}",
            hint=f"Close the crypt mapping on {loop_device} first (cryptsetup close <name>)",
        )

    try:
        runner.run_cmd([Commands.LOSETUP, "--detach", loop_device], timeout=Limits.LOSETUP_TIMEOUT)
    except CommandError as e:
        raise UnbindError(
            f"{loop_device}: losetup --detach failed: {e.detail or e.message}",
            hint=f"Detach by hand: losetup -d {loop_device}",
        ) from e

    _loop_logger.info(f"loop.unbind: device={loop_device}")
