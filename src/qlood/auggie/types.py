"""Result types of the auggie facade."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "INTERACTIVE_FLAGS",
    "AuthStatus",
    "ContextResult",
    "StreamOutcome",
    "UpdateStatus",
]

# Arguments that need a human at the terminal
INTERACTIVE_FLAGS = frozenset({"--login", "--logout"})


@dataclass(frozen=True)
class AuthStatus:
    """Outcome of an authentication check.

    ``success`` is False only when the check itself could not run.
    """

    success: bool
    authenticated: bool
    error: str | None = None


@dataclass(frozen=True)
class UpdateStatus:
    success: bool
    message: str
    version: str | None = None


@dataclass(frozen=True)
class ContextResult:
    success: bool
    context: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class StreamOutcome:
    """Result of a forced print-format streaming prompt.

    Attributes:
        success: the tool exited with status 0
        stdout: trimmed raw output
        stderr: raw error output
        cleaned: stdout without terminal codes and tool-call transcript
        exit_code: tool exit status, None when it never exited normally
    """

    success: bool
    stdout: str
    stderr: str
    cleaned: str
    exit_code: int | None = None
