# core/paths.py - SINGLE SOURCE OF TRUTH for naming conventions
"""
Backing files, mapped devices and mount points are all named after one
integer:

    <volumes_dir>/<n>.<backing_suffix>    backing file (create only)
    /dev/loop<m>                          loop device (kernel assigned)
    /dev/mapper/<m>.<mapper_suffix>       mapped device, m = loop number
    <mount_root>/<m>                      mount point

The mapped device and mount point follow the LOOP number, not the backing
file number, because the loop number is what is known when a file is
opened. No other module may construct these paths.
"""

import re
from pathlib import Path
from typing import Iterable, Optional

from encrypted_files.core.constants import CryptParams
from encrypted_files.core.errors import ParseError

_MAPPER_NAME_RE = re.compile(r"^(\d+)\.(.+)$")


class Paths:
    """
    Centralized naming. All paths are Path objects.

    Usage:
        from encrypted_files.core.paths import Paths
        mount_point = Paths.mount_point(settings.mount_root, 3)
    """

    MAPPER_DIR = Path(CryptParams.MAPPER_DIR)

    # ==========================================================================
    # Backing files
    # ==========================================================================

    @staticmethod
    def backing_file_name(number: int, suffix: str) -> str:
        return f"{number}.{suffix}"

    @staticmethod
    def backing_file_number(name: str, suffix: str) -> Optional[int]:
        """Return n for a name '<n>.<suffix>', else None."""
        stem, dot, ext = name.partition(".")
        if not dot or ext != suffix or not stem.isdigit():
            return None
        return int(stem)

    @classmethod
    def next_backing_number(cls, names: Iterable[str], suffix: str) -> int:
        """
        Pick the number for a new backing file: highest existing + 1.

        Gaps are never reused: {1, 2, 4} gives 5. An empty directory gives 1.
        """
        numbers = [n for n in (cls.backing_file_number(name, suffix) for name in names) if n is not None]
        return max(numbers, default=0) + 1

    @classmethod
    def next_backing_file(cls, volumes_dir: Path, suffix: str) -> Path:
        volumes_dir = Path(volumes_dir)
        names = [p.name for p in volumes_dir.iterdir()] if volumes_dir.is_dir() else []
        return volumes_dir / cls.backing_file_name(cls.next_backing_number(names, suffix), suffix)

    # ==========================================================================
    # Mapped devices
    # ==========================================================================

    @staticmethod
    def mapper_name(number: int, suffix: str) -> str:
        return f"{number}.{suffix}"

    @classmethod
    def mapper_path(cls, name: str) -> Path:
        return cls.MAPPER_DIR / name

    @staticmethod
    def mapper_number(name: str) -> int:
        """
        Parse the leading number of a mapped name ('12.unencrypted' -> 12).

        Raises:
            ParseError: Name does not start with '<digits>.'
        """
        match = _MAPPER_NAME_RE.match(name)
        if not match:
            raise ParseError(f"Mapped device name has no leading device number: {name!r}")
        return int(match.group(1))

    # ==========================================================================
    # Mount points
    # ==========================================================================

    @staticmethod
    def mount_point(mount_root: Path, number: int) -> Path:
        return Path(mount_root) / str(number)
