"""Cancellation controller for a runner's single in-flight process.

A controller owns at most one process handle at a time (IDLE -> RUNNING ->
IDLE). A second reservation while RUNNING is rejected instead of silently
replacing the first handle; callers that need concurrent invocations use
separate runner instances.

Escalation timing (e.g. "second Ctrl+C within a second force-kills") is
the caller's business; this class only delivers signals.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from enum import Enum

__all__ = [
    "CancellationController",
    "ControllerState",
    "RunnerBusyError",
    "deliver_signal",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class ControllerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class RunnerBusyError(RuntimeError):
    """Raised when an invocation starts while another one is active."""

    def __init__(self, active_pid: int | None, label: str = "") -> None:
        self.active_pid = active_pid
        self.label = label
        super().__init__(
            f"runner busy: invocation {label or '?'} (pid={active_pid}) is still running"
        )


def _default_interrupt() -> int:
    if IS_WINDOWS:
        return signal.CTRL_BREAK_EVENT
    return signal.SIGINT


def _default_kill() -> int:
    if IS_WINDOWS:
        return signal.SIGTERM
    return signal.SIGKILL


class CancellationController:
    """Tracks the active process handle of one runner and signals it.

    Example:
        controller = runner.controller
        if controller.has_active_invocation():
            controller.cancel_active_invocation()            # SIGINT
            ...
            controller.cancel_active_invocation(force=True)  # SIGKILL
    """

    def __init__(self) -> None:
        self._reserved = False
        self._process: asyncio.subprocess.Process | None = None
        self._label: str = ""

    @property
    def state(self) -> ControllerState:
        if self._reserved:
            return ControllerState.RUNNING
        return ControllerState.IDLE

    @property
    def active_pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def active_label(self) -> str:
        return self._label

    def reserve(self, label: str = "") -> None:
        """Move IDLE -> RUNNING before a process is spawned.

        Raises:
            RunnerBusyError: the controller is already RUNNING
        """
        if self._reserved:
            raise RunnerBusyError(self.active_pid, self._label)
        self._reserved = True
        self._label = label

    def attach(self, process: asyncio.subprocess.Process) -> None:
        """Register the spawned process as the active handle."""
        if not self._reserved:
            raise RuntimeError("attach() called without reserve()")
        self._process = process
        logger.debug(f"Active invocation registered: {self._label or '-'} pid={process.pid}")

    def release(self) -> None:
        """Return to IDLE and drop the handle."""
        if self._process is not None:
            logger.debug(
                f"Active invocation released: {self._label or '-'} pid={self._process.pid}"
            )
        self._reserved = False
        self._process = None
        self._label = ""

    def has_active_invocation(self) -> bool:
        """True iff a handle is registered and its process has not exited."""
        return self._process is not None and self._process.returncode is None

    def cancel_active_invocation(self, *, force: bool = False, sig: int | None = None) -> bool:
        """Deliver a signal to the active process group.

        Args:
            force: send a kill signal instead of an interrupt
            sig: explicit signal number, overrides ``force``

        Returns:
            False when nothing is active or delivery failed
        """
        process = self._process
        if process is None or process.returncode is not None:
            return False

        if sig is None:
            sig = _default_kill() if force else _default_interrupt()

        try:
            deliver_signal(process, sig)
        except (ProcessLookupError, PermissionError, OSError) as e:
            logger.debug(f"Signal delivery failed pid={process.pid} sig={sig}: {e}")
            return False

        logger.info(
            f"Sent signal {_signal_name(sig)} to {self._label or 'invocation'} (pid={process.pid})"
        )
        return True


def deliver_signal(process: asyncio.subprocess.Process, sig: int) -> None:
    """Send ``sig`` to the process group of ``process``.

    Processes are started in their own session, so the group id equals the
    pid and the whole tree (including a PTY wrapper's child) receives the
    signal. Falls back to the single process when its group cannot be looked up.

    Raises:
        ProcessLookupError: the process no longer exists
        OSError: the signal could not be delivered
    """
    if IS_WINDOWS:
        if sig == signal.SIGTERM:
            process.kill()
        else:
            process.send_signal(sig)
        return

    try:
        pgid = os.getpgid(process.pid)
    except ProcessLookupError:
        raise
    except OSError as e:
        logger.debug(f"getpgid failed, signalling pid only: {e}")
        process.send_signal(sig)
        return

    os.killpg(pgid, sig)


def _signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)
