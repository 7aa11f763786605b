# core/filesystems.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from encrypted_files.core.errors import ConfigError


@dataclass(frozen=True)
class FsSpec:
    id: str
    display: str
    mkfs_cmd: Sequence[str]  # prefix; you append <DEV>
    notes: str = ""


FS = {
    "ext4": FsSpec(
        id="ext4",
        display="ext4",
        mkfs_cmd=("mkfs.ext4", "-q"),
        notes="Default; journaled, Linux-native.",
    ),
    "btrfs": FsSpec(
        id="btrfs",
        display="Btrfs",
        mkfs_cmd=("mkfs.btrfs", "-q"),  # btrfs-progs
        notes="Needs at least 109 MiB after the LUKS2 header.",
    ),
    "xfs": FsSpec(
        id="xfs",
        display="XFS",
        mkfs_cmd=("mkfs.xfs", "-q"),  # xfsprogs
        notes="Needs at least 300 MiB; cannot be shrunk later.",
    ),
    "exfat": FsSpec(
        id="exfat",
        display="exFAT",
        mkfs_cmd=("mkfs.exfat",),
        notes="No POSIX permissions; useful for shuttling files to other OSes.",
    ),
}


def fs_spec(fs_id: str) -> FsSpec:
    if fs_id not in FS:
        raise ConfigError(f"Unsupported filesystem: {fs_id} (choose from {', '.join(sorted(FS))})")
    return FS[fs_id]
