"""
FIDO2 security key discovery.

Security keys show up as raw HID nodes (/dev/hidraw*). udev tags the ones
that speak FIDO with ID_SECURITY_TOKEN=1; that property is the only thing
used to tell a security key from a keyboard or a mouse.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List

from encrypted_files.core import runner
from encrypted_files.core.constants import Commands, CryptParams
from encrypted_files.core.errors import CommandError, EnrollmentError
from encrypted_files.core.limits import Limits

_token_logger = logging.getLogger("encrypted_files.tokens")

_HIDRAW_NUMBER_RE = re.compile(r"hidraw(\d+)$")


@dataclass(frozen=True)
class SecurityKey:
    device: str
    properties: Dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def label(self) -> str:
        vendor = self.properties.get("ID_VENDOR_FROM_DATABASE") or self.properties.get("ID_VENDOR", "")
        model = self.properties.get("ID_MODEL_FROM_DATABASE") or self.properties.get("ID_MODEL", "")
        name = " ".join(part for part in (vendor, model) if part).replace("_", " ")
        return f"{name} ({self.device})" if name else self.device


def _hidraw_sort_key(path: Path) -> int:
    match = _HIDRAW_NUMBER_RE.search(path.name)
    return int(match.group(1)) if match else -1


def hidraw_nodes(dev_dir: Path = Path(CryptParams.DEV_DIR)) -> List[Path]:
    """All /dev/hidraw* nodes, in device-number order."""
    return sorted(Path(dev_dir).glob(CryptParams.HIDRAW_GLOB), key=_hidraw_sort_key)


def parse_udev_properties(output: str) -> Dict[str, str]:
    """Parse `udevadm info --query=property` KEY=VALUE lines."""
    properties = {}
    for line in output.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep and key:
            properties[key] = value
    return properties


def udev_properties(node: Path) -> Dict[str, str]:
    result = runner.run_cmd(
        [Commands.UDEVADM, "info", "--query=property", "--name", str(node)],
        timeout=Limits.QUICK_QUERY_TIMEOUT,
    )
    return parse_udev_properties(result.stdout)


def is_security_key(properties: Dict[str, str]) -> bool:
    return properties.get(CryptParams.SECURITY_TOKEN_PROPERTY) == "1"


def list_security_keys(dev_dir: Path = Path(CryptParams.DEV_DIR)) -> List[SecurityKey]:
    """
    Enumerate attached FIDO2 security keys.

    A node that disappears between listing and querying (key unplugged)
    is skipped.
    """
    keys = []
    for node in hidraw_nodes(dev_dir):
        try:
            properties = udev_properties(node)
        except CommandError as e:
            _token_logger.debug(f"tokens.skip: node={node}, reason={e.detail!r}")
            continue
        if is_security_key(properties):
            keys.append(SecurityKey(device=str(node), properties=properties))
    _token_logger.debug(f"tokens.list: found={[k.device for k in keys]}")
    return keys


def wait_for_security_key(
    timeout: float,
    interval: float = Limits.TOKEN_POLL_INTERVAL,
    dev_dir: Path = Path(CryptParams.DEV_DIR),
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> SecurityKey:
    """
    Poll until exactly one security key is attached.

    More than one attached key is an error rather than a guess: the operator
    must leave only the key being enrolled plugged in.

    Raises:
        EnrollmentError: No key within timeout, or more than one key attached
    """
    deadline = clock() + timeout
    while True:
        keys = list_security_keys(dev_dir)
        if len(keys) == 1:
            _token_logger.info(f"tokens.found: device={keys[0].device}")
            return keys[0]
        if len(keys) > 1:
            raise EnrollmentError(
                f"{len(keys)} security keys attached ({', '.join(k.device for k in keys)}); cannot tell which to enroll",
                hint="Unplug every security key except the one being enrolled",
            )
        if clock() >= deadline:
            raise EnrollmentError(
                f"No security key detected within {timeout:g}s",
                hint="Check that the key is plugged in and that udev tags it with ID_SECURITY_TOKEN=1",
            )
        sleep(interval)
