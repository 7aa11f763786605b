# core/runner.py - the ONE place external commands are executed
"""
Every losetup/cryptsetup/mount/udevadm call goes through run_cmd().

run_cmd() is the subprocess boundary: it logs the argv, applies a timeout,
and turns a non-zero exit or a timeout into CommandError. Components catch
CommandError and re-raise the matching error from core.errors.

Tests replace run_cmd (see tests/conftest.py) so no test touches a real
loop device or device-mapper table.
"""

import logging
import shutil
import subprocess
from typing import Mapping, Optional, Sequence

from encrypted_files.core.errors import CommandError, CommandNotFoundError
from encrypted_files.core.limits import Limits

_runner_logger = logging.getLogger("encrypted_files.runner")


def have(cmd: str) -> bool:
    """Check if a command is available in PATH."""
    return shutil.which(cmd) is not None


def require(*cmds: str) -> None:
    """
    Fail fast if any of the given binaries is missing.

    Raises:
        CommandNotFoundError: Names every missing binary
    """
    missing = [cmd for cmd in cmds if not have(cmd)]
    if missing:
        raise CommandNotFoundError(
            f"Required command(s) not found in PATH: {', '.join(missing)}",
            hint="Install cryptsetup, util-linux, systemd (systemd-cryptenroll) and the mkfs tools.",
        )


def run_cmd(
    args: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = True,
    timeout: Optional[float] = Limits.QUICK_QUERY_TIMEOUT,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external command.

    Args:
        args: argv; args[0] is looked up on PATH
        check: Raise CommandError on non-zero exit
        capture_output: Capture stdout/stderr. Pass False for commands that
            talk to the operator (PIN entry, token touch prompts).
        timeout: Seconds before the command is killed; None waits forever
        input_text: Text fed to stdin
        env: Full environment for the child; None inherits ours

    Returns:
        CompletedProcess with text stdout/stderr ("" when not captured)

    Raises:
        CommandError: Non-zero exit (when check) or timeout
        CommandNotFoundError: args[0] does not exist
    """
    argv = [str(a) for a in args]
    _runner_logger.debug(f"run.start: argv={argv}")
    try:
        result = subprocess.run(
            argv,
            capture_output=capture_output,
            text=True,
            timeout=timeout,
            input=input_text,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as e:
        raise CommandNotFoundError(f"Command not found: {argv[0]}") from e
    except subprocess.TimeoutExpired as e:
        _runner_logger.error(f"run.timeout: argv={argv}, timeout={timeout}")
        raise CommandError(argv, None, _to_text(e.stdout), _to_text(e.stderr), timed_out=True) from e

    stdout = result.stdout or ""
    stderr = result.stderr or ""
    _runner_logger.debug(f"run.done: argv={argv}, returncode={result.returncode}")

    if check and result.returncode != 0:
        _runner_logger.warning(f"run.failed: argv={argv}, returncode={result.returncode}, stderr={stderr.strip()!r}")
        raise CommandError(argv, result.returncode, stdout, stderr)

    return subprocess.CompletedProcess(argv, result.returncode, stdout, stderr)


def _to_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
