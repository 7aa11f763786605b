#!/usr/bin/env python3
"""
encrypted_files - open, close and create LUKS2 container files unlocked by FIDO2 keys

Usage:
    encrypted_files create <size_mb>        # new <n>.encrypted, enroll keys, mount
    encrypted_files open <file>...          # bind loop device, unlock with a key, mount
    encrypted_files close <file>...         # unmount, close, detach
    encrypted_files close_all               # eject every FIDO2-unlocked loop-backed volume
    encrypted_files list                    # show what close_all would eject
    encrypted_files config [--write]        # show (or persist) the effective config

Every command re-derives the live state from losetup/dmsetup/cryptsetup;
nothing is recorded between invocations. Each create/open/close is its own
transaction: a failure stops it and the error names the file or device
to look at.

Dependencies (runtime):
- cryptsetup >= 2.4 (luksDump --dump-json-metadata, open --token-only)
- systemd >= 252 (systemd-cryptenroll --unlock-key-file, FIDO2 enrollment)
- util-linux (losetup, mount, umount, blkid), dmsetup, udevadm
- mkfs for the configured filesystem
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, TextIO, Tuple

from encrypted_files.core import runner
from encrypted_files.core.config import Settings, load_config, resolve_config_path, write_config_atomic
from encrypted_files.core.constants import Commands
from encrypted_files.core.errors import (
    BindError,
    EncryptedFilesError,
    PermissionDeniedError,
    UnbindError,
    UsageError,
)
from encrypted_files.core.filesystems import FS, fs_spec
from encrypted_files.core.limits import Limits
from encrypted_files.core.logs import setup_logging
from encrypted_files.core.paths import Paths
from encrypted_files.core.version import VERSION
from encrypted_files.scripts import losetup_cli
from encrypted_files.scripts.cli_output import CLIOutput, get_output
from encrypted_files.scripts.discovery import MappedVolume, find_all_fido2_active, find_by_backing_file
from encrypted_files.scripts.enroll import enroll_volume
from encrypted_files.scripts.mount import OpenedVolume, open_volume
from encrypted_files.scripts.notify import notify_ejected
from encrypted_files.scripts.prompts import require_confirmation
from encrypted_files.scripts.unmount import close_volume

_cli_logger = logging.getLogger("encrypted_files.cli")


# =============================================================================
# Preconditions
# =============================================================================


def require_root() -> None:
    if os.geteuid() != 0:
        raise PermissionDeniedError(
            "This command manages loop devices and device-mapper targets and must run as root",
            hint="Re-run with sudo",
        )


def check_regular_files(paths: Sequence[Path]) -> List[Path]:
    """
    Validate every argument before touching anything.

    Raises:
        UsageError: An argument is not a regular file
    """
    checked = []
    for path in paths:
        path = Path(path)
        if not path.is_file():
            raise UsageError(f"{path}: Argument provided was not a file.")
        checked.append(path.resolve())
    return checked


def _release_loop(loop_device: str, failure: Optional[EncryptedFilesError] = None) -> None:
    """Detach loop_device after a failed create/open. An unbind failure is added to failure.hint, or logged."""
    try:
        losetup_cli.unbind(loop_device)
    except UnbindError as unbind_error:
        _cli_logger.error(f"cli.cleanup.unbind_failed: loop={loop_device}, error={unbind_error.message!r}")
        if failure is None:
            return
        failure.hint = f"{failure.hint + '; ' if failure.hint else ''}{loop_device} is still bound: {unbind_error.hint}"


# =============================================================================
# create
# =============================================================================


def create_backing_file(volumes_dir: Path, suffix: str, size_mb: int) -> Path:
    """
    Create <volumes_dir>/<max+1>.<suffix> of exactly size_mb MiB.

    Raises:
        UsageError: size_mb out of range
        BindError: File could not be created or allocated
    """
    if not Limits.MIN_VOLUME_SIZE_MB <= size_mb <= Limits.MAX_VOLUME_SIZE_MB:
        raise UsageError(
            f"size_mb must be between {Limits.MIN_VOLUME_SIZE_MB} and {Limits.MAX_VOLUME_SIZE_MB}, got {size_mb}"
        )

    volumes_dir = Path(volumes_dir)
    if not volumes_dir.is_dir():
        raise BindError(f"{volumes_dir}: volumes directory does not exist")

    path = Paths.next_backing_file(volumes_dir, suffix)
    size = size_mb * Limits.BYTES_PER_MB
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except OSError as e:
        raise BindError(f"{path}: cannot create backing file ({e.strerror})") from e
    try:
        os.posix_fallocate(fd, 0, size)
    except OSError as e:
        os.close(fd)
        path.unlink(missing_ok=True)
        raise BindError(f"{path}: cannot allocate {size_mb} MiB ({e.strerror})") from e
    os.close(fd)

    _cli_logger.info(f"cli.create.file: path={path}, size_mb={size_mb}")
    return path


def create_volume(
    size_mb: int,
    settings: Settings,
    out: Optional[CLIOutput] = None,
    stream: Optional[TextIO] = None,
) -> OpenedVolume:
    """
    New backing file -> loop device -> luksFormat + key enrollment -> mkfs -> mount.

    On any failure after the loop device is bound, the loop device is
    detached again. The backing file is kept and named in the error.
    """
    out = out or get_output()
    total = 5

    out.step(1, total, f"Creating {size_mb} MiB backing file in {settings.volumes_dir}")
    backing_file = create_backing_file(settings.volumes_dir, settings.backing_suffix, size_mb)
    out.info(f"Created {backing_file}")

    out.step(2, total, "Binding loop device")
    try:
        loop_device = losetup_cli.bind(backing_file)
    except EncryptedFilesError as e:
        e.hint = f"{e.hint}; {backing_file} was left on disk" if e.hint else f"{backing_file} was left on disk"
        raise
    out.info(f"{backing_file} -> {loop_device}")

    try:
        number = losetup_cli.device_number(loop_device)

        out.step(3, total, f"Formatting {loop_device} and enrolling {settings.token_count} security key(s)")
        if not settings.assume_yes:
            require_confirmation(
                f"Format {loop_device} ({backing_file}) as LUKS2? Anything in it is destroyed.",
                settings.prompt_timeout,
                cancelled_message=f"{backing_file}: format declined; nothing was written to it",
                out=out,
                stream=stream,
            )
        enroll_volume(loop_device, settings, out=out, stream=stream)

        out.step(4, total, f"Unlocking with a security key and creating {fs_spec(settings.filesystem).display}")
        out.log("Touch one of the enrolled security keys when it blinks")
        volume = open_volume(loop_device, number, settings, make_fs=True)
    except EncryptedFilesError as e:
        _cli_logger.error(f"cli.create.failed: file={backing_file}, loop={loop_device}, error={e.message!r}")
        _release_loop(loop_device, e)
        left = f"{backing_file} was left on disk; delete it if you do not need it"
        e.hint = f"{e.hint}; {left}" if e.hint else left
        raise
    except BaseException:
        _cli_logger.error(f"cli.create.aborted: file={backing_file}, loop={loop_device}; detaching, file left on disk")
        _release_loop(loop_device)
        raise

    out.step(5, total, "Done")
    out.info(f"{backing_file} is mounted at {volume.mount_point}")
    return volume


# =============================================================================
# open / close
# =============================================================================


def open_file(path: Path, settings: Settings, out: Optional[CLIOutput] = None) -> OpenedVolume:
    """Bind, unlock and mount one backing file. The loop device is released on failure."""
    out = out or get_output()
    loop_device = losetup_cli.bind(path)
    try:
        number = losetup_cli.device_number(loop_device)
        out.log(f"Touch a security key enrolled for {path} when it blinks")
        volume = open_volume(loop_device, number, settings)
    except EncryptedFilesError as e:
        _cli_logger.error(f"cli.open.failed: file={path}, loop={loop_device}, error={e.message!r}")
        _release_loop(loop_device, e)
        raise
    except BaseException:
        _cli_logger.error(f"cli.open.aborted: file={path}, loop={loop_device}; detaching")
        _release_loop(loop_device)
        raise

    out.info(f"{path} mounted at {volume.mount_point} ({loop_device}, /dev/mapper/{volume.mapped_name})")
    return volume


def eject(volume: MappedVolume, settings: Settings) -> None:
    """Close one discovered volume and notify the desktop."""
    close_volume(volume.mount_point, volume.mapped_name, volume.loop_device)
    notify_ejected(settings, volume.mapped_name, volume.loop_device)


def close_file(path: Path, settings: Settings, out: Optional[CLIOutput] = None) -> MappedVolume:
    """
    Raises:
        NotFound: No active mapping for path (nothing was touched)
    """
    out = out or get_output()
    volume = find_by_backing_file(path, settings)
    eject(volume, settings)
    out.info(f"{path} closed ({volume.mapped_name}, {volume.loop_device})")
    return volume


@dataclass
class CloseAllReport:
    closed: List[MappedVolume] = field(default_factory=list)
    failed: List[Tuple[str, EncryptedFilesError]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def close_all(settings: Settings, out: Optional[CLIOutput] = None) -> CloseAllReport:
    """
    Eject every active FIDO2-unlocked loop-backed volume.

    A failure on one volume is recorded and the rest are still processed.
    """
    out = out or get_output()
    report = CloseAllReport()

    def record_failure(name: str, error: EncryptedFilesError) -> None:
        report.failed.append((name, error))

    for volume in find_all_fido2_active(settings, on_error=record_failure):
        out.log(f"{volume.mapped_name} is a LUKS device, is open, and is unlocked via FIDO2. Closing...")
        try:
            eject(volume, settings)
        except EncryptedFilesError as e:
            _cli_logger.error(f"cli.close_all.failed: name={volume.mapped_name}, error={e.message!r}")
            record_failure(volume.mapped_name, e)
            continue
        report.closed.append(volume)
        out.info(f"{volume.mapped_name} closed ({volume.loop_device})")

    _cli_logger.info(f"cli.close_all: closed={len(report.closed)}, failed={len(report.failed)}")
    return report


# =============================================================================
# Command handlers
# =============================================================================


def _cmd_create(args, settings: Settings, out: CLIOutput) -> int:
    require_root()
    runner.require(
        Commands.LOSETUP,
        Commands.CRYPTSETUP,
        Commands.CRYPTENROLL,
        Commands.BLKID,
        Commands.UDEVADM,
        Commands.MOUNT,
        fs_spec(settings.filesystem).mkfs_cmd[0],
    )
    create_volume(args.size_mb, settings, out=out)
    return 0


def _cmd_open(args, settings: Settings, out: CLIOutput) -> int:
    paths = check_regular_files(args.files)
    require_root()
    runner.require(Commands.LOSETUP, Commands.CRYPTSETUP, Commands.MOUNT)
    for path in paths:
        open_file(path, settings, out=out)
    return 0


def _cmd_close(args, settings: Settings, out: CLIOutput) -> int:
    paths = check_regular_files(args.files)
    require_root()
    runner.require(Commands.DMSETUP, Commands.CRYPTSETUP, Commands.UMOUNT, Commands.LOSETUP)
    for path in paths:
        close_file(path, settings, out=out)
    return 0


def _cmd_close_all(args, settings: Settings, out: CLIOutput) -> int:
    require_root()
    runner.require(Commands.DMSETUP, Commands.CRYPTSETUP, Commands.UMOUNT, Commands.LOSETUP)
    out.log("Closing all block devices")
    report = close_all(settings, out=out)

    if not report.closed and not report.failed:
        out.log("No FIDO2-unlocked volumes are open")
        return 0

    rows = [(v.mapped_name, v.loop_device, v.backing_file, "closed") for v in report.closed]
    rows += [(name, "", "", f"FAILED: {error.message}") for name, error in report.failed]
    out.table("close_all", ["Mapper", "Loop device", "Backing file", "Result"], rows)

    for name, error in report.failed:
        out.error(error.message, error.hint)
    return 0 if report.ok else 1


def _cmd_list(args, settings: Settings, out: CLIOutput) -> int:
    require_root()
    runner.require(Commands.DMSETUP, Commands.CRYPTSETUP)
    failures: List[Tuple[str, EncryptedFilesError]] = []
    volumes = list(find_all_fido2_active(settings, on_error=lambda name, e: failures.append((name, e))))
    if volumes:
        out.table(
            "FIDO2-unlocked volumes",
            ["Mapper", "Loop device", "Backing file", "Mount point"],
            [(v.mapped_name, v.loop_device, v.backing_file, v.mount_point) for v in volumes],
        )
    else:
        out.log("No FIDO2-unlocked volumes are open")
    for name, error in failures:
        out.warn(f"{name}: could not be inspected: {error.message}")
    return 0


def _cmd_config(args, settings: Settings, out: CLIOutput) -> int:
    out.log(f"Config file: {args.config_path}")
    out.log(json.dumps(args.config_data, indent=2))
    if args.write:
        write_config_atomic(args.config_path, args.config_data)
        out.info(f"Written to {args.config_path}")
    return 0


# =============================================================================
# Argument parsing
# =============================================================================


class _ArgumentParser(argparse.ArgumentParser):
    """argparse that raises UsageError instead of exiting."""

    def error(self, message):
        raise UsageError(message)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="encrypted_files",
        description="Create, open and close LUKS2 container files unlocked by FIDO2 security keys",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--config", "-c", type=Path, metavar="PATH", help="Path to config.json")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging on stderr")
    parser.add_argument("--mount-root", type=Path, metavar="DIR", help="Directory holding mount points")
    parser.add_argument("--no-notify", action="store_true", help="Do not send desktop notifications")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    create = sub.add_parser("create", help="Create, format, enroll and mount a new encrypted file")
    create.add_argument("size_mb", type=_positive_int, help="Size of the new file in MiB")
    create.add_argument("--dir", type=Path, dest="volumes_dir", metavar="DIR", help="Where to create the file")
    create.add_argument("--tokens", type=_positive_int, dest="token_count", metavar="N", help="Security keys to enroll")
    create.add_argument("--filesystem", choices=sorted(FS), help="Filesystem to create")
    create.add_argument("--yes", "-y", action="store_true", help="Do not ask before formatting")
    create.add_argument("--force", action="store_true", help="Format even over an existing signature")
    create.add_argument("--timeout", type=float, metavar="SECONDS", help="Prompt timeout (0 waits forever)")
    create.set_defaults(handler=_cmd_create)

    open_ = sub.add_parser("open", help="Unlock and mount encrypted files")
    open_.add_argument("files", nargs="+", type=Path, metavar="FILE")
    open_.set_defaults(handler=_cmd_open)

    close = sub.add_parser("close", help="Unmount and close encrypted files")
    close.add_argument("files", nargs="+", type=Path, metavar="FILE")
    close.set_defaults(handler=_cmd_close)

    close_all_ = sub.add_parser("close_all", help="Close every FIDO2-unlocked loop-backed volume")
    close_all_.set_defaults(handler=_cmd_close_all)

    list_ = sub.add_parser("list", help="List FIDO2-unlocked loop-backed volumes")
    list_.set_defaults(handler=_cmd_list)

    config = sub.add_parser("config", help="Show the effective configuration")
    config.add_argument("--write", action="store_true", help="Persist it to the config file")
    config.set_defaults(handler=_cmd_config)

    return parser


def settings_for(args, config: dict) -> Settings:
    """Validated config plus this invocation's command-line overrides."""
    timeout = getattr(args, "timeout", None)
    return Settings.from_config(config).with_overrides(
        volumes_dir=getattr(args, "volumes_dir", None),
        mount_root=args.mount_root,
        token_count=getattr(args, "token_count", None),
        filesystem=getattr(args, "filesystem", None),
        prompt_timeout=timeout,
        assume_yes=True if getattr(args, "yes", False) else None,
        force_format=True if getattr(args, "force", False) else None,
        notify_enabled=False if args.no_notify else None,
    )


def main(argv: Optional[Sequence[str]] = None, out: Optional[CLIOutput] = None) -> int:
    out = out or get_output()
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
    except UsageError as e:
        parser.print_usage(sys.stderr)
        out.error(e.message)
        return e.exit_code

    setup_logging(verbose=args.verbose)
    _cli_logger.debug(f"cli.start: command={args.command}, version={VERSION}")

    try:
        args.config_path = resolve_config_path(args.config)
        args.config_data = load_config(args.config_path)
        settings = settings_for(args, args.config_data)
        if settings.log_file:
            setup_logging(verbose=args.verbose, log_file=settings.log_file)
        return args.handler(args, settings, out)
    except EncryptedFilesError as e:
        _cli_logger.error(f"cli.failed: command={args.command}, error={e.message!r}")
        out.error(e.message, e.hint)
        return e.exit_code
    except KeyboardInterrupt:
        out.error("Interrupted")
        return 130
    except Exception as e:
        _cli_logger.exception(f"cli.unexpected: command={args.command}")
        out.error(f"Unexpected error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
