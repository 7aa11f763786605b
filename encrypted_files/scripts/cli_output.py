"""
CLI Output Formatting Module (SSOT)

All operator-facing output goes through CLIOutput: progress on stdout,
errors on stderr. Log records are separate (core/logs.py).

Usage:
    from encrypted_files.scripts.cli_output import CLIOutput

    out = CLIOutput.detect()
    out.info("Volume mounted")
    out.warn("Mount point already gone")
    out.error("No mapper was found for /srv/1.encrypted")
    out.step(1, 5, "Binding loop device")
"""

import os
import sys
from typing import Optional, Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text


class CLIOutput:
    """
    Consistent CLI output on top of rich.

    Features:
    - Consistent info/warn/error markers
    - ASCII-safe symbols for consoles without UTF-8
    - Step counters for multi-step operations
    - Tables for close_all / list summaries
    """

    UNICODE_SYMBOLS = {
        "info": "✓",
        "warn": "⚠",
        "error": "✗",
        "arrow": "→",
    }

    ASCII_SYMBOLS = {
        "info": "[OK]",
        "warn": "[!!]",
        "error": "[ERROR]",
        "arrow": "->",
    }

    def __init__(
        self,
        use_unicode: bool = True,
        stdout: Optional[Console] = None,
        stderr: Optional[Console] = None,
    ):
        self.use_unicode = use_unicode
        self._symbols = self.UNICODE_SYMBOLS if use_unicode else self.ASCII_SYMBOLS
        self.console = stdout or Console(highlight=False)
        self.err_console = stderr or Console(stderr=True, highlight=False)

    @classmethod
    def detect(cls) -> "CLIOutput":
        """Pick Unicode or ASCII symbols from the stdout encoding and PYTHONIOENCODING."""
        use_unicode = True
        encoding = getattr(sys.stdout, "encoding", None) or ""
        if encoding and "utf" not in encoding.lower():
            use_unicode = False
        io_encoding = os.environ.get("PYTHONIOENCODING", "")
        if io_encoding and "utf" not in io_encoding.lower():
            use_unicode = False
        return cls(use_unicode=use_unicode)

    def info(self, message: str) -> None:
        self.console.print(Text(f"{self._symbols['info']} {message}", style="green"))

    def warn(self, message: str) -> None:
        self.err_console.print(Text(f"{self._symbols['warn']} {message}", style="yellow"))

    def error(self, message: str, hint: Optional[str] = None) -> None:
        self.err_console.print(Text(f"{self._symbols['error']} {message}", style="bold red"))
        if hint:
            self.err_console.print(Text(f"  {self._symbols['arrow']} {hint}", style="red"))

    def log(self, message: str) -> None:
        self.console.print(Text(message))

    def step(self, current: int, total: int, message: str) -> None:
        self.console.print(Text(f"Step {current}/{total}: {message}", style="cyan"))

    def prompt(self, message: str) -> None:
        """Print a prompt without a trailing newline."""
        self.console.print(Text(message, style="bold"), end="")

    def table(self, title: str, headers: Sequence[str], rows: Sequence[Sequence[object]]) -> None:
        table = Table(title=title, show_lines=False)
        for header in headers:
            table.add_column(header)
        for row in rows:
            table.add_row(*(Text("" if v is None else str(v)) for v in row))
        self.console.print(table)


_default_output = None


def get_output() -> CLIOutput:
    """Get or create default CLIOutput instance."""
    global _default_output
    if _default_output is None:
        _default_output = CLIOutput.detect()
    return _default_output
