#!/usr/bin/env python3
"""
Volume Mount Controller: open side

    cryptsetup open --token-only <loop> <n>.<suffix>
    [mkfs on /dev/mapper/<n>.<suffix>]      (create only)
    mkdir <mount_root>/<n>
    mount /dev/mapper/<n>.<suffix> <mount_root>/<n>

If anything after the unlock fails, the mapping is closed again and a
mount directory created by this call is removed, so a failed open never
leaves an unlocked mapping behind.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from encrypted_files.core import runner
from encrypted_files.core.config import Settings
from encrypted_files.core.constants import Commands
from encrypted_files.core.errors import (
    CommandError,
    CryptCloseError,
    EncryptedFilesError,
    FormatError,
    MountError,
    MountPointError,
)
from encrypted_files.core.filesystems import fs_spec
from encrypted_files.core.limits import Limits
from encrypted_files.core.paths import Paths
from encrypted_files.scripts import cryptsetup_cli

_mount_logger = logging.getLogger("encrypted_files.mount")


@dataclass(frozen=True)
class OpenedVolume:
    loop_device: str
    number: int
    mapped_name: str
    mount_point: Path

    @property
    def mapper_path(self) -> Path:
        return Paths.mapper_path(self.mapped_name)


def is_mounted(path: Path) -> bool:
    """Check if path is currently a mount point."""
    return os.path.ismount(str(path))


def make_filesystem(mapper_path: Path, fs_id: str) -> None:
    """
    Raises:
        FormatError: mkfs failed
    """
    spec = fs_spec(fs_id)
    try:
        runner.run_cmd([*spec.mkfs_cmd, str(mapper_path)], timeout=Limits.MKFS_TIMEOUT)
    except CommandError as e:
        raise FormatError(f"{mapper_path}: creating {spec.display} filesystem failed: {e.detail or e.message}") from e
    _mount_logger.info(f"mount.mkfs: device={mapper_path}, fs={spec.id}")


def prepare_mount_point(mount_point: Path) -> bool:
    """
    Make sure mount_point is an empty directory.

    Returns:
        True if this call created the directory

    Raises:
        MountPointError: Path is not a directory, is not empty, is already a
            mount point, or could not be created
    """
    mount_point = Path(mount_point)
    if mount_point.exists():
        if not mount_point.is_dir():
            raise MountPointError(f"{mount_point}: exists and is not a directory")
        if is_mounted(mount_point):
            raise MountPointError(f"{mount_point}: something is already mounted here")
        if any(mount_point.iterdir()):
            raise MountPointError(
                f"{mount_point}: mount directory exists and is not empty",
                hint="Move its contents away or remove it, then retry",
            )
        _mount_logger.info(f"mount.dir.reuse: path={mount_point}")
        return False

    try:
        mount_point.mkdir(parents=True)
    except OSError as e:
        raise MountPointError(f"{mount_point}: cannot create mount directory ({e.strerror})") from e
    _mount_logger.info(f"mount.dir.create: path={mount_point}")
    return True


def mount_device(mapper_path: Path, mount_point: Path) -> None:
    """
    Raises:
        MountError: mount failed
    """
    try:
        runner.run_cmd([Commands.MOUNT, str(mapper_path), str(mount_point)], timeout=Limits.MOUNT_TIMEOUT)
    except CommandError as e:
        raise MountError(f"{mapper_path}: mount on {mount_point} failed: {e.detail or e.message}") from e
    _mount_logger.info(f"mount.mount: device={mapper_path}, mount_point={mount_point}")


def _discard_mapping(name: str, failure: EncryptedFilesError) -> None:
    try:
        cryptsetup_cli.close(name)
    except CryptCloseError as close_error:
        _mount_logger.error(f"mount.cleanup.failed: name={name}, error={close_error.message!r}")
        failure.hint = f"{failure.hint + '; ' if failure.hint else ''}mapping {name} is still open: {close_error.hint}"


def open_volume(loop_device: str, number: int, settings: Settings, make_fs: bool = False) -> OpenedVolume:
    """
    Unlock a bound loop device with a security key and mount it.

    Args:
        loop_device: e.g. '/dev/loop3'
        number: Device number of loop_device
        settings: mount_root, mapper_suffix, filesystem
        make_fs: Create settings.filesystem on the mapping first (create only)

    Returns:
        OpenedVolume

    Raises:
        UnlockError: No enrolled security key unlocked the volume
        FormatError: mkfs failed (mapping closed again)
        MountPointError: Mount directory unusable (mapping closed again)
        MountError: mount failed (mapping closed, directory removed if ours)
    """
    name = Paths.mapper_name(number, settings.mapper_suffix)
    mount_point = Paths.mount_point(settings.mount_root, number)
    volume = OpenedVolume(loop_device=loop_device, number=number, mapped_name=name, mount_point=mount_point)

    cryptsetup_cli.open_with_token(loop_device, name)

    try:
        if make_fs:
            make_filesystem(volume.mapper_path, settings.filesystem)
        created = prepare_mount_point(mount_point)
        try:
            mount_device(volume.mapper_path, mount_point)
        except MountError:
            if created:
                try:
                    mount_point.rmdir()
                except OSError as e:
                    _mount_logger.warning(f"mount.cleanup.rmdir_failed: path={mount_point}, error={e.strerror}")
            raise
    except (FormatError, MountPointError, MountError) as e:
        _mount_logger.error(f"mount.open.failed: name={name}, error={e.message!r}; closing mapping")
        _discard_mapping(name, e)
        raise
    except BaseException:
        _mount_logger.error(f"mount.open.aborted: name={name}; closing mapping")
        try:
            cryptsetup_cli.close(name)
        except CryptCloseError as close_error:
            _mount_logger.error(f"mount.cleanup.failed: name={name}, error={close_error.message!r}")
        raise

    _mount_logger.info(f"mount.open: loop={loop_device}, name={name}, mount_point={mount_point}")
    return volume
