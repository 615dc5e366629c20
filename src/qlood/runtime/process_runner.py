"""Process runner with subprocess isolation, streaming capture and reliable termination.

This module provides:
- Synchronous-style execution of a composed shell command with a timeout
- Streaming execution of an argv, yielding output chunks as they arrive
- Optional pseudo-terminal wrapping to force line-buffered output
- Reliable termination with graceful shutdown (SIGTERM -> timeout -> SIGKILL)
- Audit entries and capture files for every external tool invocation

Key design points:
- POSIX: start_new_session=True so signals reach the whole process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Every execution method resolves to an InvocationResult, never raises for
  process failures; the caller's own cancellation still propagates
- Cleanup is shielded from cancellation so no subprocess is left behind
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import subprocess
import sys
import time
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import anyio

from .controller import CancellationController, RunnerBusyError, deliver_signal
from .escaping import compose_command
from .pty import wrap_with_pty
from .types import FailureKind, Invocation, InvocationResult, OutputChunk, StreamSource

if TYPE_CHECKING:
    from ..audit.recorder import CapturePair, SessionRecorder
    from ..metrics import Metrics

__all__ = [
    "BackgroundProcess",
    "ProcessRunner",
    "ProcessSpec",
    "ProcessStream",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

# Per-stream capture limit for the synchronous path (newest bytes are kept)
DEFAULT_MAX_BUFFER = 10 * 1024 * 1024

READ_CHUNK_SIZE = 4096

ChunkHandler = Callable[[str], None]


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a streamed subprocess.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process
        env: Environment variables (None = inherit parent)
        pty: Run under a pseudo-terminal so output is line-buffered
        stdin_bytes: Optional bytes to write to stdin
    """

    argv: list[str]
    cwd: Path
    env: Mapping[str, str] | None = None
    pty: bool = False
    stdin_bytes: bytes | None = None


class _BoundedBuffer:
    """Byte buffer that drops the oldest chunks beyond ``limit``."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._chunks: list[bytes] = []
        self._size = 0

    def append(self, chunk: bytes) -> None:
        self._chunks.append(chunk)
        self._size += len(chunk)
        while self._size > self.limit and len(self._chunks) > 1:
            removed = self._chunks.pop(0)
            self._size -= len(removed)

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def _isolation_kwargs() -> dict[str, Any]:
    """Platform-specific kwargs that put the child in its own process group."""
    if IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _exit_message(command: str, returncode: int | None) -> str:
    return f"{command} exited with code {returncode}"


@dataclass
class BackgroundProcess:
    """A detached process tracked by its runner until it exits or is killed.

    Output is drained into bounded buffers so the child never blocks on a
    full pipe; :meth:`wait` returns the final InvocationResult.
    """

    id: int
    command: str
    args: tuple[str, ...]
    cwd: Path
    process: asyncio.subprocess.Process
    started_at: float = field(default_factory=time.time)
    result: InvocationResult | None = None
    _task: asyncio.Task[InvocationResult] | None = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "command": " ".join([self.command, *self.args]),
            "pid": self.pid,
            "started_at": self.started_at,
            "running": self.running,
        }

    async def wait(self) -> InvocationResult:
        if self._task is None:
            raise RuntimeError(f"background process {self.id} was never started")
        return await asyncio.shield(self._task)


@dataclass
class ProcessRunner:
    """Cross-platform runner for the external tool and helper commands.

    One runner owns one :class:`CancellationController`, so at most one
    streaming invocation is in flight per runner. Use separate runners for
    concurrent invocations.

    Example:
        runner = ProcessRunner(tool_command="auggie", recorder=recorder)

        result = await runner.execute("auggie", ["--print", "hello"], timeout=30)

        async with runner.stream(ProcessSpec(argv=["auggie", "hi"], cwd=ws, pty=True)) as stream:
            async for chunk in stream:
                show(chunk.text)
        print(stream.result.success)
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    max_buffer: int = DEFAULT_MAX_BUFFER
    tool_command: str | None = None
    recorder: SessionRecorder | None = None
    metrics: Metrics | None = None
    controller: CancellationController = field(default_factory=CancellationController)
    last_invocation: Invocation | None = field(default=None, init=False)
    _background: dict[int, BackgroundProcess] = field(default_factory=dict, init=False, repr=False)
    _next_background_id: int = field(default=1, init=False, repr=False)

    # =========================================================================
    # Synchronous command runner
    # =========================================================================

    def is_tool_command(self, command: str) -> bool:
        return self.tool_command is not None and command == self.tool_command

    async def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | str | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        skip_metrics: bool = False,
        log_options: Mapping[str, Any] | None = None,
    ) -> InvocationResult:
        """Run ``command`` through the shell and wait for it to finish.

        The argument vector is escaped into a single shell string. When
        ``timeout`` elapses the process group gets SIGTERM, then SIGKILL
        after ``term_timeout``.

        Args:
            command: Executable name or path
            args: Arguments, escaped individually
            cwd: Working directory (default: current directory)
            timeout: Seconds before the process is terminated (None = no limit)
            env: Environment variables (None = inherit parent)
            skip_metrics: Do not count this call as a tool invocation
            log_options: Extra fields for the audit request entry

        Returns:
            InvocationResult with trimmed stdout/stderr
        """
        args = [str(arg) for arg in args]
        workdir = Path(cwd) if cwd is not None else Path.cwd()
        audited = self.is_tool_command(command)

        if audited and not skip_metrics and self.metrics is not None:
            self.metrics.inc_auggie_calls()
        if audited and self.recorder is not None:
            self.recorder.log_invocation_request(
                command, args, {"timeout": timeout, "cwd": workdir, **(log_options or {})}
            )

        started = time.time()
        command_line = compose_command(command, args)
        result = await self._run_shell(command, command_line, workdir, env, timeout)

        invocation = Invocation(
            command=command,
            args=tuple(args),
            cwd=workdir,
            result=result,
            timeout=timeout,
            started_at=started,
            ended_at=time.time(),
        )
        self.last_invocation = invocation

        if audited and self.recorder is not None:
            self.recorder.log_invocation_response(invocation)
            self.recorder.write_capture(result.stdout, result.stderr)

        return result

    async def _run_shell(
        self,
        command: str,
        command_line: str,
        cwd: Path,
        env: Mapping[str, str] | None,
        timeout: float | None,
    ) -> InvocationResult:
        logger.debug(f"[SUBPROCESS] Shell: {command_line} (cwd={cwd}, timeout={timeout})")

        try:
            process = await asyncio.create_subprocess_shell(
                command_line,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                **_isolation_kwargs(),
            )
        except OSError as e:
            logger.warning(f"Failed to start {command}: {e}")
            return InvocationResult(
                success=False,
                stderr=str(e),
                failure=FailureKind.SPAWN_FAILURE,
                error=str(e),
            )

        logger.debug(f"[SUBPROCESS] Started pid={process.pid}")

        stdout_buf = _BoundedBuffer(self.max_buffer)
        stderr_buf = _BoundedBuffer(self.max_buffer)
        readers = asyncio.create_task(
            self._collect(process, stdout_buf, stderr_buf), name=f"collect-{process.pid}"
        )

        timed_out = False
        try:
            with anyio.move_on_after(timeout) as scope:
                await asyncio.shield(readers)
                await process.wait()
            timed_out = scope.cancelled_caught
        finally:
            if process.returncode is None:
                await self.terminate(process)
            await self._finish_readers(readers)

        stdout = stdout_buf.text().strip()
        stderr = stderr_buf.text().strip()
        returncode = process.returncode

        if timed_out:
            message = f"{command} timed out after {timeout}s"
            logger.warning(f"{message} (pid={process.pid})")
            return InvocationResult(
                success=False,
                stdout=stdout,
                stderr=stderr or message,
                exit_code=None,
                failure=FailureKind.TIMEOUT,
                error=message,
            )

        if returncode != 0:
            message = _exit_message(command, returncode)
            logger.debug(f"[SUBPROCESS] {message}")
            return InvocationResult(
                success=False,
                stdout=stdout,
                stderr=stderr or message,
                exit_code=returncode,
                failure=FailureKind.NON_ZERO_EXIT,
                error=message,
            )

        logger.debug(f"[SUBPROCESS] Completed pid={process.pid} returncode=0")
        return InvocationResult(success=True, stdout=stdout, stderr=stderr, exit_code=0)

    async def _collect(
        self,
        process: asyncio.subprocess.Process,
        stdout_buf: _BoundedBuffer,
        stderr_buf: _BoundedBuffer,
    ) -> None:
        async def drain(stream: asyncio.StreamReader | None, buf: _BoundedBuffer) -> None:
            if stream is None:
                return
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                buf.append(chunk)

        await asyncio.gather(
            drain(process.stdout, stdout_buf),
            drain(process.stderr, stderr_buf),
        )

    async def _finish_readers(self, readers: asyncio.Task[None]) -> None:
        """Let readers drain what is left after exit, then stop them."""
        if readers.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(readers), timeout=self.kill_timeout)
        except asyncio.TimeoutError:
            readers.cancel()
            try:
                await readers
            except asyncio.CancelledError:
                pass

    # =========================================================================
    # Streaming process runner
    # =========================================================================

    def stream(self, spec: ProcessSpec, *, label: str = "") -> ProcessStream:
        """Start a streaming invocation of ``spec``.

        The process is spawned lazily on first iteration. Use as an async
        context manager so the process is always reaped::

            async with runner.stream(spec) as stream:
                async for chunk in stream:
                    ...
            result = stream.result
        """
        return ProcessStream(self, spec, label=label or Path(spec.argv[0]).name)

    async def spawn_and_stream(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        pty: bool = False,
        on_stdout: ChunkHandler | None = None,
        on_stderr: ChunkHandler | None = None,
    ) -> InvocationResult:
        """Run an argv and forward output chunks to callbacks as they arrive.

        No timeout applies: use the controller to cancel.

        Returns:
            InvocationResult whose stdout/stderr are the concatenated chunks
        """
        spec = ProcessSpec(
            argv=[command, *[str(arg) for arg in args]],
            cwd=Path(cwd) if cwd is not None else Path.cwd(),
            env=env,
            pty=pty,
        )
        async with self.stream(spec, label=command) as stream:
            async for chunk in stream:
                handler = on_stdout if chunk.source is StreamSource.STDOUT else on_stderr
                if handler is None:
                    continue
                try:
                    handler(chunk.text)
                except Exception as e:
                    logger.warning(f"{chunk.source.value} handler raised: {e}")

        if stream.result is None:
            raise RuntimeError(f"stream for {command} finished without a result")
        return stream.result

    # =========================================================================
    # Interactive passthrough
    # =========================================================================

    async def run_interactive(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> InvocationResult:
        """Run a command attached to this process's terminal.

        Nothing is escaped, captured or streamed; the child stays in the
        foreground process group so it can talk to the user directly.
        """
        workdir = Path(cwd) if cwd is not None else Path.cwd()
        logger.debug(f"[SUBPROCESS] Interactive: {command} {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *[str(arg) for arg in args],
                cwd=workdir,
                env=dict(env) if env is not None else None,
            )
        except OSError as e:
            message = f"Error executing interactive command: {e}"
            return InvocationResult(
                success=False,
                stderr=message,
                failure=FailureKind.SPAWN_FAILURE,
                error=str(e),
            )

        try:
            returncode = await process.wait()
        finally:
            if process.returncode is None:
                await self.terminate(process)

        if returncode != 0:
            return InvocationResult(
                success=False,
                exit_code=returncode,
                failure=FailureKind.NON_ZERO_EXIT,
                error=_exit_message(command, returncode),
            )
        return InvocationResult(success=True, exit_code=0)

    # =========================================================================
    # Background processes
    # =========================================================================

    async def start_background(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> BackgroundProcess:
        """Start ``command`` without waiting for it and track it by id.

        The process is dropped from the registry when it exits or is killed.

        Raises:
            OSError: the process could not be started
        """
        args = [str(arg) for arg in args]
        workdir = Path(cwd) if cwd is not None else Path.cwd()
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                env=dict(env) if env is not None else None,
                **_isolation_kwargs(),
            )
        except OSError as e:
            logger.warning(f"Failed to start background command {command}: {e}")
            raise

        entry = BackgroundProcess(
            id=self._next_background_id,
            command=command,
            args=tuple(args),
            cwd=workdir,
            process=process,
        )
        self._next_background_id += 1
        self._background[entry.id] = entry
        entry._task = asyncio.create_task(
            self._watch_background(entry), name=f"background-{entry.id}"
        )
        logger.debug(f"[SUBPROCESS] Background id={entry.id} pid={process.pid}: {command}")
        return entry

    async def _watch_background(self, entry: BackgroundProcess) -> InvocationResult:
        stdout_buf = _BoundedBuffer(self.max_buffer)
        stderr_buf = _BoundedBuffer(self.max_buffer)
        try:
            await self._collect(entry.process, stdout_buf, stderr_buf)
            returncode = await entry.process.wait()
        finally:
            self._background.pop(entry.id, None)

        stdout = stdout_buf.text().strip()
        stderr = stderr_buf.text().strip()
        if returncode != 0:
            message = _exit_message(entry.command, returncode)
            entry.result = InvocationResult(
                success=False,
                stdout=stdout,
                stderr=stderr or message,
                exit_code=returncode,
                failure=FailureKind.NON_ZERO_EXIT,
                error=message,
            )
        else:
            entry.result = InvocationResult(success=True, stdout=stdout, stderr=stderr, exit_code=0)
        logger.debug(f"[SUBPROCESS] Background id={entry.id} exited returncode={returncode}")
        return entry.result

    def list_background(self) -> list[BackgroundProcess]:
        """Tracked background processes, oldest first."""
        return sorted(self._background.values(), key=lambda entry: entry.id)

    async def kill_background(self, process_id: int) -> bool:
        """Terminate a tracked background process. False if the id is unknown."""
        entry = self._background.pop(process_id, None)
        if entry is None:
            return False
        if entry.running:
            await self.terminate(entry.process)
        return True

    async def close(self) -> None:
        """Terminate every tracked background process."""
        for entry in self.list_background():
            await self.kill_background(entry.id)

    async def check_command_exists(self, command: str) -> bool:
        """Whether ``command`` resolves on PATH."""
        finder = "where" if IS_WINDOWS else "which"
        result = await self.execute(finder, [command], timeout=5.0, skip_metrics=True)
        return result.success and bool(result.stdout.strip())

    # =========================================================================
    # Termination
    # =========================================================================

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate ``process`` and its group, shielded from cancellation.

        If the caller is cancelled while waiting, cleanup still completes
        before the cancellation propagates.
        """
        task = asyncio.create_task(self._terminate_process(process))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                logger.debug(f"Double cancel during subprocess termination pid={process.pid}")
            raise

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows) to the group
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit
        """
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            if IS_WINDOWS:
                await self._windows_terminate(process)
            else:
                await self._posix_signal(process, "SIGTERM")

            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            if IS_WINDOWS:
                process.kill()
            else:
                await self._posix_signal(process, "SIGKILL")

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(f"Subprocess killed pid={pid} returncode={process.returncode}")
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    async def _posix_signal(self, process: asyncio.subprocess.Process, name: str) -> None:
        """Send a named signal to the process group on POSIX systems."""
        import signal

        sig = getattr(signal, name)
        try:
            deliver_signal(process, sig)
            logger.debug(f"Sent {name} to process group of pid={process.pid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to direct signal: {e}")
            process.send_signal(sig)

    async def _windows_terminate(self, process: asyncio.subprocess.Process) -> None:
        """Send CTRL_BREAK_EVENT on Windows."""
        import os
        import signal

        try:
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()


class ProcessStream:
    """Async iterator over the output of one streaming invocation.

    Yields :class:`OutputChunk` objects in arrival order per source (no
    ordering is guaranteed between stdout and stderr). After iteration ends,
    or the stream is closed, :attr:`result` holds the InvocationResult.
    """

    def __init__(self, runner: ProcessRunner, spec: ProcessSpec, *, label: str) -> None:
        self.runner = runner
        self.spec = spec
        self.label = label
        self.result: InvocationResult | None = None
        self.pid: int | None = None
        self._agen = self._run()

    def __aiter__(self) -> ProcessStream:
        return self

    async def __anext__(self) -> OutputChunk:
        return await self._agen.__anext__()

    async def aclose(self) -> None:
        """Stop reading, terminate the process if it is still running."""
        await self._agen.aclose()
        if self.result is None:
            self.result = InvocationResult(
                success=False,
                stderr="stream closed before the process started",
                failure=FailureKind.CANCELLED,
            )

    async def __aenter__(self) -> ProcessStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _run(self) -> AsyncIterator[OutputChunk]:
        runner = self.runner
        spec = self.spec
        controller = runner.controller
        recorder = runner.recorder
        command = spec.argv[0]
        args = list(spec.argv[1:])
        started = time.time()

        try:
            controller.reserve(self.label)
        except RunnerBusyError as e:
            logger.warning(str(e))
            self.result = InvocationResult(
                success=False,
                stderr=str(e),
                failure=FailureKind.BUSY,
                error=str(e),
            )
            return

        if runner.is_tool_command(command) and runner.metrics is not None:
            runner.metrics.inc_auggie_calls()
        if recorder is not None:
            recorder.log_invocation_request(
                command, args, {"cwd": spec.cwd, "pty": spec.pty, "timeout": None}
            )
        capture: CapturePair | None = recorder.open_capture() if recorder is not None else None

        process: asyncio.subprocess.Process | None = None
        pumps: list[asyncio.Task[None]] = []
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        stream_errors: list[str] = []
        result: InvocationResult | None = None

        try:
            argv = wrap_with_pty(spec.argv) if spec.pty else list(spec.argv)
            if spec.stdin_bytes is not None or spec.pty:
                stdin_mode = asyncio.subprocess.PIPE
            else:
                stdin_mode = asyncio.subprocess.DEVNULL

            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=stdin_mode,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=spec.cwd,
                    env=dict(spec.env) if spec.env is not None else None,
                    **_isolation_kwargs(),
                )
            except OSError as e:
                logger.warning(f"Failed to start {command}: {e}")
                result = InvocationResult(
                    success=False,
                    stderr=str(e),
                    failure=FailureKind.SPAWN_FAILURE,
                    error=str(e),
                )
                return

            # Registered before any output is read
            controller.attach(process)
            self.pid = process.pid
            logger.debug(
                f"[SUBPROCESS] Streaming pid={process.pid} argv={argv[0]} "
                f"pty={spec.pty} cwd={spec.cwd}"
            )

            if spec.stdin_bytes is not None and process.stdin is not None:
                process.stdin.write(spec.stdin_bytes)
                await process.stdin.drain()
                process.stdin.close()

            queue: asyncio.Queue[OutputChunk | None] = asyncio.Queue()
            pumps = [
                asyncio.create_task(
                    _pump(process.stdout, StreamSource.STDOUT, queue, stream_errors)
                ),
                asyncio.create_task(
                    _pump(process.stderr, StreamSource.STDERR, queue, stream_errors)
                ),
            ]

            open_streams = len(pumps)
            while open_streams:
                item = await queue.get()
                if item is None:
                    open_streams -= 1
                    continue

                if item.source is StreamSource.STDOUT:
                    stdout_parts.append(item.text)
                    if capture is not None:
                        capture.append_stdout(item.text)
                else:
                    stderr_parts.append(item.text)
                    if capture is not None:
                        capture.append_stderr(item.text)

                yield item

            returncode = await process.wait()
            stdout = "".join(stdout_parts)
            stderr = "".join(stderr_parts)

            if stream_errors:
                message = stream_errors[0]
                result = InvocationResult(
                    success=False,
                    stdout=stdout,
                    stderr=stderr or message,
                    exit_code=None,
                    failure=FailureKind.STREAM_ERROR,
                    error=message,
                )
            elif returncode != 0:
                message = _exit_message(command, returncode)
                result = InvocationResult(
                    success=False,
                    stdout=stdout,
                    stderr=stderr or message,
                    exit_code=returncode,
                    failure=FailureKind.NON_ZERO_EXIT,
                    error=message,
                )
            else:
                result = InvocationResult(
                    success=True, stdout=stdout, stderr=stderr, exit_code=0
                )

        finally:
            for task in pumps:
                if not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass

            if process is not None:
                if process.stdin is not None and not process.stdin.is_closing():
                    process.stdin.close()
                if process.returncode is None:
                    logger.debug(f"Terminating abandoned stream pid={process.pid}")
                    await runner.terminate(process)

            if capture is not None:
                capture.close()
            controller.release()

            if result is None:
                result = InvocationResult(
                    success=False,
                    stdout="".join(stdout_parts),
                    stderr="".join(stderr_parts) or "stream cancelled",
                    exit_code=process.returncode if process is not None else None,
                    failure=FailureKind.CANCELLED,
                    error="stream cancelled before completion",
                )
            self.result = result

            invocation = Invocation(
                command=command,
                args=tuple(args),
                cwd=spec.cwd,
                result=result,
                streamed=True,
                started_at=started,
                ended_at=time.time(),
            )
            runner.last_invocation = invocation
            if recorder is not None:
                recorder.log_invocation_response(invocation)

            logger.debug(
                f"[SUBPROCESS] Stream finished pid={self.pid} "
                f"success={result.success} exit_code={result.exit_code}"
            )


async def _pump(
    reader: asyncio.StreamReader | None,
    source: StreamSource,
    queue: asyncio.Queue[OutputChunk | None],
    errors: list[str],
) -> None:
    """Read one pipe into ``queue``; always ends with a ``None`` sentinel."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        if reader is None:
            return
        while True:
            data = await reader.read(READ_CHUNK_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    queue.put_nowait(OutputChunk(source, tail))
                break
            text = decoder.decode(data)
            if text:
                queue.put_nowait(OutputChunk(source, text))
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(f"Error reading {source.value}: {e}")
        errors.append(f"{source.value} stream error: {e}")
    finally:
        queue.put_nowait(None)
