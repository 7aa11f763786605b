"""
Desktop notification on eject (best effort).

The tool runs as root; the notification has to reach the desktop session
of a configured user, so notify-send is run through sudo with that user's
DISPLAY and session bus. Any failure is logged and swallowed: a missing
notification must never fail a close.
"""

import logging
import pwd

from encrypted_files.core import runner
from encrypted_files.core.config import Settings
from encrypted_files.core.constants import Commands
from encrypted_files.core.errors import CommandError, CommandNotFoundError
from encrypted_files.core.limits import Limits

_notify_logger = logging.getLogger("encrypted_files.notify")

EJECT_TITLE = "LUKS device ejected"


def session_bus_address(uid: int) -> str:
    return f"unix:path=/run/user/{uid}/bus"


def notify_ejected(settings: Settings, mapped_name: str, loop_device: str) -> bool:
    """
    Tell the configured desktop user that a volume was ejected.

    Returns:
        True if notify-send ran successfully
    """
    if not settings.notify_enabled or not settings.notify_user:
        _notify_logger.debug("notify.skip: disabled or no user configured")
        return False

    user = settings.notify_user
    try:
        uid = pwd.getpwnam(user).pw_uid
    except KeyError:
        _notify_logger.warning(f"notify.skip: unknown user={user}")
        return False

    argv = [
        Commands.SUDO,
        "-u",
        user,
        f"DISPLAY={settings.notify_display}",
        f"DBUS_SESSION_BUS_ADDRESS={session_bus_address(uid)}",
        Commands.NOTIFY_SEND,
        EJECT_TITLE,
        f"{mapped_name} {loop_device}",
    ]
    try:
        runner.run_cmd(argv, timeout=Limits.QUICK_QUERY_TIMEOUT)
    except (CommandError, CommandNotFoundError) as e:
        _notify_logger.warning(f"notify.failed: user={user}, error={e.message!r}")
        return False

    _notify_logger.info(f"notify.sent: user={user}, name={mapped_name}")
    return True
