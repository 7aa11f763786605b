# core/secrets.py - bootstrap key lifecycle
"""
The bootstrap key is a throwaway LUKS passphrase that exists only long
enough to format a volume and enroll security keys against it.

Rules:
- Random bytes from the secrets module, never a fixed value
- Written only to bootstrap_key_dir (RAM-backed, /dev/shm by default)
- Mode 0600 before any byte is written
- Overwritten, fsync'd and unlinked on destruction
- Never logged
"""

import logging
import os
import secrets
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from encrypted_files.core.constants import FileNames
from encrypted_files.core.limits import Limits

_secrets_logger = logging.getLogger("encrypted_files.secrets")


def create_bootstrap_key(key_dir: Path, length: int = Limits.BOOTSTRAP_KEY_BYTES) -> Path:
    """
    Write a fresh random key file in key_dir (normally /dev/shm).

    There is no fallback directory: on a disk-backed filesystem the
    overwrite in destroy_bootstrap_key() does not guarantee the bytes are gone.

    Returns:
        Path to the key file (mode 0600)

    Raises:
        OSError: key_dir is missing or did not accept the file
    """
    key_dir = Path(key_dir)
    if not key_dir.is_dir():
        raise FileNotFoundError(f"bootstrap key directory {key_dir} does not exist")

    fd, tmp_path = tempfile.mkstemp(
        prefix=FileNames.BOOTSTRAP_KEY_PREFIX,
        suffix=FileNames.BOOTSTRAP_KEY_SUFFIX,
        dir=str(key_dir),
    )
    path = Path(tmp_path)
    try:
        os.chmod(path, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(secrets.token_bytes(length))
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        path.unlink(missing_ok=True)
        raise

    _secrets_logger.info(f"bootstrap.create: path={path}")
    return path


def destroy_bootstrap_key(path: Path) -> None:
    """
    Overwrite and delete a bootstrap key file. Missing files are ignored.

    Raises:
        OSError: The file exists but could not be overwritten or removed
    """
    path = Path(path)
    if not path.exists():
        return

    size = path.stat().st_size
    if size > 0:
        with path.open("r+b") as f:
            f.write(b"\x00" * size)
            f.flush()
            os.fsync(f.fileno())
            f.seek(0)
            f.write(os.urandom(size))
            f.flush()
            os.fsync(f.fileno())

    path.unlink()
    _secrets_logger.info(f"bootstrap.destroy: path={path}")


@contextmanager
def bootstrap_key(key_dir: Path) -> Iterator[Path]:
    """Create a bootstrap key and destroy it when the block exits, however it exits."""
    path = create_bootstrap_key(key_dir)
    try:
        yield path
    finally:
        destroy_bootstrap_key(path)
