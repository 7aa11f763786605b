"""
Operator confirmation prompts with a timeout.

A prompt blocks until the operator answers or the timeout expires.
Anything other than an explicit yes (including EOF and timeout) is a
decline: the pending step is not performed.
"""

import logging
import select
import sys
from typing import Optional, TextIO

from encrypted_files.core.constants import UserInputs
from encrypted_files.core.errors import Cancelled
from encrypted_files.scripts.cli_output import CLIOutput, get_output

_prompt_logger = logging.getLogger("encrypted_files.prompts")


class PromptTimeout(Exception):
    """No answer arrived before the deadline."""


def read_line(timeout: float, stream: Optional[TextIO] = None) -> str:
    """
    Read one line from stream, waiting at most timeout seconds (0 = forever).

    Returns:
        The line without its newline; "" on EOF

    Raises:
        PromptTimeout: Nothing was entered in time
    """
    stream = stream or sys.stdin
    if timeout and timeout > 0:
        try:
            fileno = stream.fileno()
        except (AttributeError, OSError, ValueError):
            fileno = None
        if fileno is not None:
            ready, _, _ = select.select([stream], [], [], timeout)
            if not ready:
                raise PromptTimeout(f"no answer within {timeout:g}s")
    line = stream.readline()
    return line.rstrip("\r\n")


def confirm(
    message: str,
    timeout: float,
    out: Optional[CLIOutput] = None,
    stream: Optional[TextIO] = None,
) -> bool:
    """
    Ask a yes/no question. Only 'y'/'yes' (any case) counts as yes.

    Returns:
        True for yes; False for anything else, EOF, or timeout
    """
    out = out or get_output()
    out.prompt(f"{message} [y/N] ")
    try:
        answer = read_line(timeout, stream)
    except PromptTimeout as e:
        out.log("")
        _prompt_logger.warning(f"prompt.timeout: message={message!r}, timeout={timeout}")
        out.warn(f"Prompt timed out ({e})")
        return False
    accepted = answer.strip().lower() in UserInputs.YES
    _prompt_logger.info(f"prompt.answer: message={message!r}, accepted={accepted}")
    return accepted


def require_confirmation(
    message: str,
    timeout: float,
    cancelled_message: str,
    out: Optional[CLIOutput] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Like confirm(), but a decline raises Cancelled.

    Raises:
        Cancelled: Operator declined or the prompt timed out
    """
    if not confirm(message, timeout, out=out, stream=stream):
        raise Cancelled(cancelled_message)
