"""Signal handling for the CLI.

Turns OS signals into operations on the running invocation instead of
killing the host process outright:
- SIGINT: interrupt the active invocation; a second SIGINT within the
  double-tap window force-kills it. Without an active invocation the first
  SIGINT arms exit and the second one requests shutdown.
- SIGTERM: force-kill any active invocation and request shutdown.

Configuration:
- QLOOD_SIGINT_DOUBLE_TAP_WINDOW: escalation window in seconds
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import get_config
from .runtime.controller import CancellationController

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)


class SignalManager:
    """Maps SIGINT/SIGTERM onto a runner's cancellation controller.

    Example:
        ```python
        signals = SignalManager(runner.controller)

        async def main():
            await signals.start()
            try:
                await auggie.run_stream(prompt, on_stdout=print)
            finally:
                await signals.stop()
        ```

    Attributes:
        controller: controller of the runner whose invocation is interrupted
        double_tap_window: seconds within which a second SIGINT escalates
    """

    def __init__(
        self,
        controller: CancellationController,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.controller = controller
        self.double_tap_window = (
            double_tap_window
            if double_tap_window is not None
            else get_config().sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown
        self._clock = clock

        self._last_sigint_time: float | None = None
        self._exit_armed: bool = False
        self._interrupted: bool = False
        self._shutdown_requested: bool = False
        self._force_exit: bool = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._original_sigint_handler = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """True once a signal force-killed an invocation or forced exit."""
        return self._force_exit

    @property
    def interrupted(self) -> bool:
        """True once any SIGINT or SIGTERM was handled."""
        return self._interrupted

    async def start(self) -> None:
        """Install the handlers on the running event loop."""
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self.handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self.handle_sigterm)
            logger.debug(
                f"Signal handlers installed (double_tap_window={self.double_tap_window}s)"
            )
        else:
            loop = self._loop
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: loop.call_soon_threadsafe(self.handle_sigint),
            )
            logger.debug("SIGINT handler installed on Windows")

    async def stop(self) -> None:
        """Restore the default handlers."""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except (ValueError, RuntimeError) as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._original_sigint_handler)
            except (ValueError, OSError) as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def handle_sigint(self) -> None:
        """First SIGINT interrupts, a quick second one escalates."""
        now = self._clock()
        double_tap = (
            self._last_sigint_time is not None
            and now - self._last_sigint_time < self.double_tap_window
        )
        self._last_sigint_time = now
        self._interrupted = True

        if self.controller.has_active_invocation():
            if double_tap:
                logger.warning("Double SIGINT detected, force-killing active invocation")
                self._force_exit = True
                self._cancel(force=True)
            else:
                logger.info(
                    f"SIGINT received, interrupting active invocation. "
                    f"Press Ctrl+C again within {self.double_tap_window}s to force-kill."
                )
                self._cancel(force=False)
            return

        if double_tap and self._exit_armed:
            logger.warning("Double SIGINT detected, exiting")
            self._force_exit = True
            self._request_shutdown()
            return

        self._exit_armed = True
        logger.info(f"No active invocation. Press Ctrl+C again within {self.double_tap_window}s to exit.")

    def handle_sigterm(self) -> None:
        """Force-kill the active invocation and shut down."""
        logger.info("SIGTERM received, initiating shutdown")
        self._interrupted = True
        if self.controller.has_active_invocation():
            self._force_exit = True
            self._cancel(force=True)
        self._request_shutdown()

    def _cancel(self, *, force: bool) -> None:
        if not self.controller.cancel_active_invocation(force=force):
            logger.debug("Active invocation could not be signalled (already exited?)")

    def _request_shutdown(self) -> None:
        self._shutdown_requested = True

        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)
