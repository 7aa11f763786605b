"""
Device Discovery

Nothing is recorded when a volume is opened, so every close starts by
re-deriving the live state:

    dmsetup ls --target crypt          -> mapping names
    cryptsetup status <name>           -> active?, backing loop device, backing file
    cryptsetup isLuks / luksDump       -> LUKS2 with a systemd-fido2 token?
    /proc/self/mounts                  -> where /dev/mapper/<name> is mounted

Backing files are matched by identity (same resolved path, or same inode
when both paths exist), never by substring. When several active mappings
are backed by the same file the one on the lowest loop device number wins,
and the others are logged.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from encrypted_files.core.config import Settings
from encrypted_files.core.errors import EncryptedFilesError, NotFound, ParseError
from encrypted_files.core.paths import Paths
from encrypted_files.scripts import cryptsetup_cli
from encrypted_files.scripts.losetup_cli import device_number

_discovery_logger = logging.getLogger("encrypted_files.discovery")

PROC_MOUNTS = Path("/proc/self/mounts")


@dataclass(frozen=True)
class MappedVolume:
    mapped_name: str
    loop_device: str
    backing_file: Optional[str]
    mount_point: Optional[Path]


# =============================================================================
# Mount table
# =============================================================================


def _unescape_mount_field(value: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as \ooo
    for octal, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        value = value.replace(octal, char)
    return value


def parse_mounts(text: str) -> Dict[str, Path]:
    """Map mount source -> first mount target from /proc/mounts text."""
    table: Dict[str, Path] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        source = _unescape_mount_field(parts[0])
        table.setdefault(source, Path(_unescape_mount_field(parts[1])))
    return table


def read_mounts(mounts_file: Optional[Path] = None) -> Dict[str, Path]:
    try:
        return parse_mounts(Path(mounts_file or PROC_MOUNTS).read_text(encoding="utf-8"))
    except OSError as e:
        _discovery_logger.warning(f"discovery.mounts.unreadable: path={mounts_file or PROC_MOUNTS}, error={e.strerror}")
        return {}


def resolve_mount_point(mapped_name: str, settings: Settings, mounts: Dict[str, Path]) -> Optional[Path]:
    """
    Where a mapping is (or was) mounted.

    The live mount table wins; otherwise fall back to the naming convention
    <mount_root>/<n>, which also finds a directory left behind by a crash.
    """
    mounted_at = mounts.get(str(Paths.mapper_path(mapped_name)))
    if mounted_at:
        return mounted_at
    try:
        return Paths.mount_point(settings.mount_root, Paths.mapper_number(mapped_name))
    except ParseError:
        return None


# =============================================================================
# Matching
# =============================================================================


def same_file(candidate: str, target: Path) -> bool:
    """True if candidate and target name the same file."""
    candidate_path = Path(candidate)
    try:
        if candidate_path.exists() and target.exists():
            return os.path.samefile(candidate_path, target)
    except OSError:
        pass
    return candidate_path.resolve() == target.resolve()


def find_by_backing_file(
    path: Path,
    settings: Settings,
    mounts_file: Optional[Path] = None,
) -> MappedVolume:
    """
    Find the active mapping whose loop device is backed by path.

    Returns:
        MappedVolume (lowest loop device number if several match)

    Raises:
        NotFound: No active mapping is backed by path
    """
    target = Path(path)
    candidates: List[cryptsetup_cli.CryptStatus] = []

    for name in cryptsetup_cli.list_crypt_mappings():
        try:
            status = cryptsetup_cli.status(name)
        except ParseError as e:
            _discovery_logger.warning(f"discovery.status.unparsed: name={name}, error={e.message!r}")
            continue
        if status.active and status.loop_file and status.device and same_file(status.loop_file, target):
            candidates.append(status)

    if not candidates:
        raise NotFound(f"No mapper was found for {path}")

    candidates.sort(key=lambda s: device_number(s.device))
    if len(candidates) > 1:
        _discovery_logger.warning(
            f"discovery.ambiguous: file={path}, candidates={[c.name for c in candidates]}, chosen={candidates[0].name}"
        )

    chosen = candidates[0]
    mounts = read_mounts(mounts_file)
    volume = MappedVolume(
        mapped_name=chosen.name,
        loop_device=chosen.device,
        backing_file=chosen.loop_file,
        mount_point=resolve_mount_point(chosen.name, settings, mounts),
    )
    _discovery_logger.info(f"discovery.match: file={path}, name={volume.mapped_name}, loop={volume.loop_device}")
    return volume


def find_all_fido2_active(
    settings: Settings,
    on_error: Optional[Callable[[str, EncryptedFilesError], None]] = None,
    mounts_file: Optional[Path] = None,
) -> Iterator[MappedVolume]:
    """
    Yield every active, loop-backed LUKS mapping that has a FIDO2 token.

    Lazy: each mapping is inspected only when the consumer asks for it, so
    a mapping closed by the consumer is never re-read. Mappings backed by
    anything other than a loop device (e.g. a FIDO2-unlocked system disk)
    are never yielded.

    Args:
        settings: mount_root for the mount point fallback
        on_error: Called with (name, error) when one mapping cannot be
            inspected; that mapping is skipped. Without it the error propagates.
        mounts_file: Mount table to read (tests)
    """
    names = cryptsetup_cli.list_crypt_mappings()
    for name in names:
        try:
            status = cryptsetup_cli.status(name)
            if not (status.active and status.is_loop_backed):
                continue
            if not cryptsetup_cli.is_luks(status.device):
                continue
            if not cryptsetup_cli.luks_dump(status.device).has_fido2_token:
                continue
        except EncryptedFilesError as e:
            if on_error is None:
                raise
            _discovery_logger.warning(f"discovery.inspect.failed: name={name}, error={e.message!r}")
            on_error(name, e)
            continue

        mounts = read_mounts(mounts_file)
        yield MappedVolume(
            mapped_name=name,
            loop_device=status.device,
            backing_file=status.loop_file,
            mount_point=resolve_mount_point(name, settings, mounts),
        )
