"""Result and record types shared by the runners.

Every execution path resolves to an ``InvocationResult``; failures are
values, not exceptions.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

__all__ = [
    "FailureKind",
    "Invocation",
    "InvocationResult",
    "OutputChunk",
    "StreamSource",
]


class FailureKind(str, Enum):
    """Why an invocation did not succeed."""

    SPAWN_FAILURE = "spawn_failure"
    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"
    STREAM_ERROR = "stream_error"
    SIGNAL_DELIVERY_FAILURE = "signal_delivery_failure"
    BUSY = "busy"
    CANCELLED = "cancelled"


class StreamSource(str, Enum):
    """Which pipe a chunk came from."""

    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class OutputChunk:
    """One decoded piece of process output, in arrival order per source."""

    source: StreamSource
    text: str


@dataclass
class InvocationResult:
    """Uniform return value of every execution mode.

    Attributes:
        success: True only when the process exited with status 0
        stdout: captured stdout
        stderr: captured stderr, or a synthesized message on failure
        exit_code: process exit status (None when it never exited normally)
        failure: failure classification (None on success)
        error: raw underlying error message, kept for the audit trail
    """

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    failure: FailureKind | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Public contract: success, stdout, stderr, exit_code."""
        return {
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
        }


@dataclass(frozen=True)
class Invocation:
    """Immutable record of one resolved execution attempt."""

    command: str
    args: tuple[str, ...]
    cwd: Path
    result: InvocationResult
    timeout: float | None = None
    interactive: bool = False
    streamed: bool = False
    started_at: float = field(default_factory=time.time)
    ended_at: float = field(default_factory=time.time)

    @property
    def duration_ms(self) -> int:
        return int((self.ended_at - self.started_at) * 1000)

    @property
    def exit_code(self) -> int | None:
        return self.result.exit_code

    def preview(self, limit: int = 400) -> dict[str, str]:
        """Truncated stdout/stderr for display."""
        from ..audit.models import truncate_text

        return {
            "stdout": truncate_text(self.result.stdout, limit),
            "stderr": truncate_text(self.result.stderr, limit),
        }
