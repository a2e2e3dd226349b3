"""Local terminal handling for interactive remote commands.

When the runner's stdin is a terminal, the local terminal is switched to raw
mode for the duration of the command and a matching remote pseudo-terminal is
requested, so keystrokes pass straight through to the remote program. The
original terminal attributes are restored on every exit path.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, Optional

from rexec.transport import ECHO, ECHOCTL, TTY_OP_ISPEED, TTY_OP_OSPEED

try:
    import termios
    import tty
except ImportError:  # Windows
    termios = None  # type: ignore[assignment]
    tty = None  # type: ignore[assignment]

if TYPE_CHECKING:
    from rexec.transport import CommandChannel

logger = logging.getLogger(__name__)

TERMINAL_TYPE = "xterm-256color"

TERMINAL_MODES = {
    ECHOCTL: 0,
    ECHO: 0,  # no local echo, the remote program echoes
    TTY_OP_ISPEED: 14400,  # 14.4 kbaud
    TTY_OP_OSPEED: 14400,
}


def _fileno(stream) -> Optional[int]:
    """File descriptor behind a stream, or None if it has no usable one."""
    fileno = getattr(stream, "fileno", None)
    if fileno is None:
        return None
    try:
        return fileno()
    except (OSError, ValueError):
        # io.UnsupportedOperation is both
        return None


def is_terminal(fd: int) -> bool:
    if termios is None:
        return False
    return os.isatty(fd)


def get_size(fd: int) -> tuple[int, int]:
    """Terminal (width, height) in characters."""
    size = os.get_terminal_size(fd)
    return size.columns, size.lines


@contextmanager
def raw_mode(fd: int) -> Iterator[None]:
    """Put the terminal on fd into raw mode, restoring its attributes on exit."""
    saved = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


@contextmanager
def interactive_terminal(channel: CommandChannel, stdin) -> Iterator[bool]:
    """Set up a remote PTY if stdin is a local terminal.

    Yields True when a PTY was requested (and the local terminal is in raw
    mode until the block exits), False when stdin is not a terminal and
    nothing was changed.
    """
    fd = _fileno(stdin)
    if fd is None or not is_terminal(fd):
        logger.debug("stdin is not a terminal, running without a PTY")
        yield False
        return

    with raw_mode(fd):
        width, height = get_size(fd)
        channel.request_pty(TERMINAL_TYPE, height, width, TERMINAL_MODES)
        logger.debug("Requested %s PTY %dx%d", TERMINAL_TYPE, width, height)
        yield True


__all__ = [
    "TERMINAL_TYPE",
    "TERMINAL_MODES",
    "is_terminal",
    "get_size",
    "raw_mode",
    "interactive_terminal",
]
