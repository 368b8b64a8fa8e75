"""Confirmation prompts on the controlling terminal."""

from __future__ import annotations

import select
import sys
from typing import IO, Protocol


class Prompter(Protocol):
    """Asks the operator a question and waits at most `timeout` seconds.

    Returns the typed line without its newline, or None on EOF or timeout.
    May raise KeyboardInterrupt.
    """

    def ask(self, message: str, timeout: float) -> str | None: ...


class TerminalPrompter:
    """Prompt on stderr, read one line from stdin with a select() deadline."""

    def __init__(self, stdin: IO[str] | None = None, stderr: IO[str] | None = None) -> None:
        self._stdin = stdin or sys.stdin
        self._stderr = stderr or sys.stderr

    def ask(self, message: str, timeout: float) -> str | None:
        self._stderr.write(message)
        self._stderr.flush()
        ready, _, _ = select.select([self._stdin], [], [], timeout)
        if not ready:
            self._stderr.write("\n")
            return None
        line = self._stdin.readline()
        if not line:
            return None
        return line.rstrip("\r\n")
