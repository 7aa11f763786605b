#!/usr/bin/env python3
"""
Pytest configuration and shared fixtures for encrypted_files tests.

No test touches a real loop device, device-mapper table or security key:
every external command goes through core.runner.run_cmd, which the
fake_runner fixture replaces with a scripted FakeRunner.
"""

import io
import json
import logging
import subprocess
import sys
from pathlib import Path

# =============================================================================
# Path Setup - Execute BEFORE any test imports
# =============================================================================

_tests_dir = Path(__file__).resolve().parent
_repo_root = _tests_dir.parent

if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

REPO_ROOT = _repo_root
TESTS_DIR = _tests_dir

import pytest
from rich.console import Console

from encrypted_files.core.config import Settings, default_config
from encrypted_files.core.errors import CommandError
from encrypted_files.scripts.cli_output import CLIOutput


# =============================================================================
# Fake subprocess boundary
# =============================================================================


class FakeRunner:
    """
    Scripted stand-in for core.runner.run_cmd.

    Responses are keyed by argv prefix; the longest matching prefix wins.
    Registering the same prefix twice queues responses: each call consumes
    one until the last, which then repeats. Unmatched commands succeed with
    empty output.

    Usage:
        fake.on("cryptsetup", "status", "3.unencrypted", stdout=STATUS)
        fake.on("losetup", "--detach", returncode=1, stderr="busy")
        fake.on("cryptsetup", "open", timed_out=True)
    """

    def __init__(self):
        self.calls = []
        self._rules = {}

    def on(self, *prefix, stdout="", stderr="", returncode=0, timed_out=False, effect=None):
        self._rules.setdefault(tuple(prefix), []).append(
            {"stdout": stdout, "stderr": stderr, "returncode": returncode, "timed_out": timed_out, "effect": effect}
        )
        return self

    def _match(self, argv):
        best = None
        for prefix in self._rules:
            if tuple(argv[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return {"stdout": "", "stderr": "", "returncode": 0, "timed_out": False, "effect": None}
        queue = self._rules[best]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def __call__(self, args, *, check=True, capture_output=True, timeout=None, input_text=None, env=None):
        argv = [str(a) for a in args]
        self.calls.append(argv)
        response = self._match(argv)
        if response["effect"] is not None:
            response["effect"](argv)
        if response["timed_out"]:
            raise CommandError(argv, None, timed_out=True)
        if check and response["returncode"] != 0:
            raise CommandError(argv, response["returncode"], response["stdout"], response["stderr"])
        return subprocess.CompletedProcess(argv, response["returncode"], response["stdout"], response["stderr"])

    # Inspection helpers

    def commands(self):
        return [" ".join(argv) for argv in self.calls]

    def called(self, *prefix) -> bool:
        return any(tuple(argv[: len(prefix)]) == prefix for argv in self.calls)

    def index(self, *prefix) -> int:
        """Position of the first call starting with prefix (ValueError if none)."""
        for i, argv in enumerate(self.calls):
            if tuple(argv[: len(prefix)]) == prefix:
                return i
        raise ValueError(f"no call starting with {prefix}")


# =============================================================================
# Tool output samples
# =============================================================================


def status_output(name, loop_device, backing_file, state="active", in_use=True):
    headline = f"/dev/mapper/{name} is {state}{' and is in use' if in_use else ''}."
    if state != "active":
        return headline + "\n"
    return (
        f"{headline}\n"
        "  type:    LUKS2\n"
        "  cipher:  aes-xts-plain64\n"
        "  keysize: 512 bits\n"
        "  key location: keyring\n"
        f"  device:  {loop_device}\n"
        f"  loop:    {backing_file}\n"
        "  sector size:  512\n"
        "  offset:  32768 sectors\n"
        "  size:    65536 sectors\n"
        "  mode:    read/write\n"
    )


def luks_dump_json(keyslots, fido2_slots=()):
    """luksDump --dump-json-metadata with the given keyslots and one FIDO2 token per fido2 slot."""
    return json.dumps(
        {
            "keyslots": {str(s): {"type": "luks2", "key_size": 64} for s in keyslots},
            "tokens": {
                str(i): {"type": "systemd-fido2", "keyslots": [str(s)], "fido2-rp": "io.systemd.cryptsetup"}
                for i, s in enumerate(fido2_slots)
            },
            "segments": {"0": {"type": "crypt", "offset": "16777216"}},
            "digests": {},
            "config": {"json_size": "12288", "keyslots_size": "16744448"},
        }
    )


# =============================================================================
# Shared Fixtures
# =============================================================================


@pytest.fixture
def fake_runner(monkeypatch, tmp_path):
    """Replace the subprocess boundary; every binary counts as installed, nothing is mounted or held."""
    fake = FakeRunner()
    sys_block = tmp_path / "sys_block"
    sys_block.mkdir()
    monkeypatch.setattr("encrypted_files.scripts.losetup_cli.SYS_BLOCK", sys_block)
    mounts = tmp_path / "mounts"
    mounts.write_text("")
    monkeypatch.setattr("encrypted_files.scripts.discovery.PROC_MOUNTS", mounts)
    monkeypatch.setattr("encrypted_files.core.runner.run_cmd", fake)
    monkeypatch.setattr("encrypted_files.core.runner.have", lambda cmd: True)
    return fake


@pytest.fixture
def mount_root(tmp_path):
    root = tmp_path / "mnt"
    root.mkdir()
    return root


@pytest.fixture
def volumes_dir(tmp_path):
    directory = tmp_path / "volumes"
    directory.mkdir()
    return directory


@pytest.fixture
def settings(tmp_path, mount_root, volumes_dir):
    """Default settings pointed at temp directories, notifications off."""
    key_dir = tmp_path / "shm"
    key_dir.mkdir()
    return Settings.from_config(default_config()).with_overrides(
        volumes_dir=volumes_dir,
        mount_root=mount_root,
        bootstrap_key_dir=key_dir,
        prompt_timeout=0,
        token_poll_timeout=0,
        notify_enabled=False,
    )


@pytest.fixture
def out():
    """CLIOutput writing to in-memory consoles."""
    return CLIOutput(
        use_unicode=False,
        stdout=Console(file=io.StringIO(), width=200, highlight=False, color_system=None),
        stderr=Console(file=io.StringIO(), width=200, highlight=False, color_system=None),
    )


def captured(out):
    """(stdout, stderr) text written so far to an `out` fixture."""
    return out.console.file.getvalue(), out.err_console.file.getvalue()


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Undo setup_logging() from CLI tests so caplog keeps seeing records."""
    yield
    logger = logging.getLogger("encrypted_files")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
