# core/errors.py - SINGLE SOURCE OF TRUTH for the error taxonomy
"""
Every failure this tool reports is one of these classes.

Each error message names the offending file or device so the operator can
intervene by hand. ``hint`` carries the manual remediation, if there is one.
"""

from typing import Optional, Sequence


class EncryptedFilesError(Exception):
    """Base class for all operator-facing failures."""

    exit_code = 1

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint


class CommandError(EncryptedFilesError):
    """An external command exited non-zero or timed out."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: Optional[int],
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
    ):
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        self.timed_out = timed_out
        if timed_out:
            message = f"Command timed out: {' '.join(self.argv)}"
        else:
            message = f"Command failed with exit code {returncode}: {' '.join(self.argv)}"
        detail = self.detail
        if detail:
            message = f"{message}\n{detail}"
        super().__init__(message)

    @property
    def detail(self) -> str:
        return (self.stderr or self.stdout).strip()


class CommandNotFoundError(EncryptedFilesError):
    """A required binary is not on PATH."""


class ConfigError(EncryptedFilesError):
    """Configuration file or override is invalid."""


class UsageError(EncryptedFilesError):
    """Bad command line; nothing was done."""

    exit_code = 2


class PermissionDeniedError(EncryptedFilesError):
    """Operation needs root."""


# =============================================================================
# Loop device binder
# =============================================================================


class BindError(EncryptedFilesError):
    """No free loop device, or the backing file is inaccessible."""


class UnbindError(EncryptedFilesError):
    """Loop device could not be detached (usually still held by a crypt mapping)."""


class ParseError(EncryptedFilesError):
    """Malformed identifier or tool output."""


class StatusParseError(ParseError):
    """cryptsetup/dmsetup output did not match the expected schema."""


# =============================================================================
# Credential enrollment
# =============================================================================


class FormatError(EncryptedFilesError):
    """luksFormat or mkfs failed, or the target already carries a signature."""


class EnrollmentError(EncryptedFilesError):
    """A security key could not be enrolled."""


class Cancelled(EnrollmentError):
    """Operator declined a prompt, or the prompt timed out."""


class KeyRevocationError(EncryptedFilesError):
    """The bootstrap key slot could not be removed. Security defect: remediate by hand."""


# =============================================================================
# Volume mount controller
# =============================================================================


class UnlockError(EncryptedFilesError):
    """Token-only unlock failed."""


class MountPointError(EncryptedFilesError):
    """Mount directory exists and is not empty, or cannot be created."""


class MountError(EncryptedFilesError):
    """mount failed."""


class UnmountError(EncryptedFilesError):
    """umount failed, or the mount directory could not be removed."""


class CryptCloseError(EncryptedFilesError):
    """cryptsetup close failed."""


# =============================================================================
# Discovery
# =============================================================================


class NotFound(EncryptedFilesError):
    """No active mapping is backed by the requested file."""
