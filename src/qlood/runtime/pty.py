"""Pseudo-terminal wrapping via the system ``script`` utility.

Many CLIs block-buffer stdout when it is a pipe. Running them under
``script`` gives them a terminal, so output arrives line by line.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import sys
from collections.abc import Sequence

__all__ = ["pty_available", "wrap_with_pty"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"
IS_MACOS = sys.platform == "darwin"


def pty_available() -> bool:
    """Whether a ``script`` binary is on PATH."""
    if IS_WINDOWS:
        return False
    return shutil.which("script") is not None


def wrap_with_pty(argv: Sequence[str]) -> list[str]:
    """Return an argv that runs ``argv`` under a pseudo-terminal.

    BSD/macOS ``script`` takes the command as trailing arguments; the
    util-linux variant needs a single ``-c`` string, so the argv is
    shell-joined there. ``-e`` propagates the child's exit status.

    Falls back to the unwrapped argv when ``script`` is unavailable.
    """
    argv = list(argv)
    if not argv:
        return argv

    if not pty_available():
        logger.warning("PTY requested but `script` is unavailable; running without a terminal")
        return argv

    if IS_MACOS:
        return ["script", "-q", "/dev/null", *argv]

    return ["script", "-q", "-e", "-c", shlex.join(argv), "/dev/null"]
