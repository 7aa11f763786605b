#!/usr/bin/env python3
"""
Volume Mount Controller: close side

Strict order, each step a precondition for the next:

    1. umount <mount_point>
    2. rmdir <mount_point>
    3. cryptsetup close <name>
    4. losetup --detach <loop>

The first failure stops the sequence. The loop device is never detached
before the crypt mapping is confirmed closed.

A mount directory that exists with nothing mounted on it, or that is
already gone, is what a crash between steps 1 and 2 leaves behind; it is
logged and treated as done.
"""

import logging
from pathlib import Path
from typing import Optional

from encrypted_files.core import runner
from encrypted_files.core.constants import Commands
from encrypted_files.core.errors import CommandError, UnmountError
from encrypted_files.core.limits import Limits
from encrypted_files.scripts import cryptsetup_cli, losetup_cli
from encrypted_files.scripts.mount import is_mounted

_unmount_logger = logging.getLogger("encrypted_files.unmount")


def unmount_and_remove(mount_point: Path) -> None:
    """
    Steps 1-2.

    Raises:
        UnmountError: umount failed, or the directory could not be removed
    """
    mount_point = Path(mount_point)

    if not mount_point.exists():
        _unmount_logger.warning(f"unmount.dir_missing: path={mount_point}, treating as already removed")
        return

    if is_mounted(mount_point):
        try:
            runner.run_cmd([Commands.UMOUNT, str(mount_point)], timeout=Limits.MOUNT_TIMEOUT)
        except CommandError as e:
            raise UnmountError(
                f"{mount_point}: umount failed: {e.detail or e.message}",
                hint=f"Close files open under {mount_point} (fuser -vm {mount_point}) and retry",
            ) from e
        _unmount_logger.info(f"unmount.umount: path={mount_point}")
    else:
        _unmount_logger.warning(f"unmount.not_mounted: path={mount_point}, removing leftover directory")

    try:
        mount_point.rmdir()
    except OSError as e:
        raise UnmountError(
            f"{mount_point}: cannot remove mount directory ({e.strerror})",
            hint=f"Inspect {mount_point}; it should be empty once unmounted",
        ) from e
    _unmount_logger.info(f"unmount.rmdir: path={mount_point}")


def close_volume(mount_point: Optional[Path], mapped_name: str, loop_device: str) -> None:
    """
    Unmount, remove the mount directory, close the mapping, detach the loop device.

    mount_point is None for a mapping that follows no naming convention and
    is not mounted; steps 1-2 are skipped for it.

    Raises:
        UnmountError: Step 1 or 2 failed; nothing else was attempted
        CryptCloseError: Step 3 failed; the loop device is left bound
        UnbindError: Step 4 failed
    """
    if mount_point is not None:
        unmount_and_remove(mount_point)
    else:
        _unmount_logger.warning(f"unmount.no_mount_point: name={mapped_name}, skipping umount")
    cryptsetup_cli.close(mapped_name)
    losetup_cli.unbind(loop_device)
    _unmount_logger.info(f"unmount.close: name={mapped_name}, loop={loop_device}, mount_point={mount_point}")
