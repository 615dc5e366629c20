"""Subprocess execution: escaping, sync and streaming runners, cancellation."""

from __future__ import annotations

from .controller import CancellationController, ControllerState, RunnerBusyError
from .escaping import compose_command, escape_arg
from .process_runner import ProcessRunner, ProcessSpec, ProcessStream
from .pty import pty_available, wrap_with_pty
from .types import FailureKind, Invocation, InvocationResult, OutputChunk, StreamSource

__all__ = [
    "CancellationController",
    "ControllerState",
    "FailureKind",
    "Invocation",
    "InvocationResult",
    "OutputChunk",
    "ProcessRunner",
    "ProcessSpec",
    "ProcessStream",
    "RunnerBusyError",
    "StreamSource",
    "compose_command",
    "escape_arg",
    "pty_available",
    "wrap_with_pty",
]
