"""ProcessRunner unit tests.

Test coverage:
- Synchronous execution (trimming, escaping, exit codes, spawn failures)
- Timeout enforcement with graceful then forced termination
- Streaming execution (chunk fidelity, stderr, callbacks, PTY)
- Abandoned and cancelled streams leave no process behind
- Audit entries, capture files and metrics for the tool command
- Background processes tracked, listed and killed by id
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from conftest import read_entries
from qlood.audit.recorder import SessionRecorder
from qlood.metrics import Metrics
from qlood.runtime.controller import ControllerState
from qlood.runtime.process_runner import IS_WINDOWS, ProcessRunner, ProcessSpec
from qlood.runtime.pty import pty_available
from qlood.runtime.types import FailureKind, StreamSource

pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell commands")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def runner() -> ProcessRunner:
    """ProcessRunner with short timeouts for testing."""
    return ProcessRunner(term_timeout=0.5, kill_timeout=0.3)


def _process_gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


# =============================================================================
# Synchronous execution
# =============================================================================


class TestExecute:
    """execute() runs a composed shell string."""

    @pytest.mark.asyncio
    async def test_simple_command(self, workspace: Path, runner: ProcessRunner):
        result = await runner.execute("echo", ["hello world"], cwd=workspace)

        assert result.success is True
        assert result.stdout == "hello world"
        assert result.exit_code == 0
        assert result.failure is None

    @pytest.mark.asyncio
    async def test_metacharacters_reach_process_verbatim(self, workspace: Path, runner: ProcessRunner):
        token = "a;b | c $HOME `id` it's"
        result = await runner.execute("printf", ["%s", token], cwd=workspace)

        assert result.success is True
        assert result.stdout == token

    @pytest.mark.asyncio
    async def test_empty_argument_preserved(self, workspace: Path, runner: ProcessRunner):
        result = await runner.execute("sh", ["-c", 'echo "n=$# [$1]"', "zero", "", "x"], cwd=workspace)

        assert result.stdout == "n=2 []"

    @pytest.mark.asyncio
    async def test_working_directory(self, workspace: Path, runner: ProcessRunner):
        result = await runner.execute("pwd", cwd=workspace)
        assert Path(result.stdout).resolve() == workspace.resolve()

    @pytest.mark.asyncio
    async def test_env_passed(self, workspace: Path, runner: ProcessRunner):
        env = {**os.environ, "QLOOD_TEST_VALUE": "from-env"}
        result = await runner.execute("sh", ["-c", "echo $QLOOD_TEST_VALUE"], cwd=workspace, env=env)
        assert result.stdout == "from-env"

    @pytest.mark.asyncio
    async def test_non_zero_exit_keeps_stderr(self, workspace: Path, runner: ProcessRunner):
        result = await runner.execute("sh", ["-c", "echo out; echo oops >&2; exit 3"], cwd=workspace)

        assert result.success is False
        assert result.exit_code == 3
        assert result.failure is FailureKind.NON_ZERO_EXIT
        assert result.stdout == "out"
        assert result.stderr == "oops"

    @pytest.mark.asyncio
    async def test_non_zero_exit_without_stderr_synthesizes_message(
        self, workspace: Path, runner: ProcessRunner
    ):
        result = await runner.execute("sh", ["-c", "exit 4"], cwd=workspace)

        assert result.success is False
        assert result.stderr == "sh exited with code 4"
        assert result.error == "sh exited with code 4"

    @pytest.mark.asyncio
    async def test_unknown_command_is_shell_failure(self, workspace: Path, runner: ProcessRunner):
        result = await runner.execute("qlood-no-such-binary-xyz", ["x"], cwd=workspace)

        assert result.success is False
        assert result.exit_code == 127
        assert result.failure is FailureKind.NON_ZERO_EXIT

    @pytest.mark.asyncio
    async def test_spawn_failure(self, tmp_path: Path, runner: ProcessRunner):
        missing = tmp_path / "does-not-exist"
        result = await runner.execute("echo", ["hi"], cwd=missing)

        assert result.success is False
        assert result.failure is FailureKind.SPAWN_FAILURE
        assert result.exit_code is None
        assert result.stderr

    @pytest.mark.asyncio
    async def test_output_buffer_is_bounded(self, workspace: Path):
        runner = ProcessRunner(max_buffer=1024)
        result = await runner.execute(
            "sh", ["-c", "head -c 200000 /dev/zero | tr '\\000' x"], cwd=workspace
        )

        assert result.success is True
        assert 0 < len(result.stdout) < 200000
        assert set(result.stdout) == {"x"}

    @pytest.mark.asyncio
    async def test_last_invocation_recorded(self, workspace: Path, runner: ProcessRunner):
        await runner.execute("echo", ["one"], cwd=workspace, timeout=5)

        invocation = runner.last_invocation
        assert invocation is not None
        assert invocation.command == "echo"
        assert invocation.args == ("one",)
        assert invocation.timeout == 5
        assert invocation.exit_code == 0
        assert invocation.duration_ms >= 0


class TestTimeout:
    """Timeouts terminate the whole process group."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_timeout_resolves_within_bound(self, workspace: Path, runner: ProcessRunner):
        started = time.monotonic()
        result = await runner.execute("sleep", ["2"], cwd=workspace, timeout=0.2)
        elapsed = time.monotonic() - started

        assert result.success is False
        assert result.failure is FailureKind.TIMEOUT
        assert result.exit_code is None
        assert "timed out" in result.stderr
        assert elapsed < 0.2 + runner.term_timeout + runner.kill_timeout + 0.5

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_timeout_keeps_partial_output(self, workspace: Path, runner: ProcessRunner):
        result = await runner.execute("sh", ["-c", "echo started; sleep 5"], cwd=workspace, timeout=0.5)

        assert result.failure is FailureKind.TIMEOUT
        assert result.stdout == "started"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_timeout_escalates_to_kill(self, workspace: Path, runner: ProcessRunner):
        script = "trap '' TERM; echo armed; while true; do sleep 0.1; done"
        started = time.monotonic()
        result = await runner.execute("sh", ["-c", script], cwd=workspace, timeout=0.3)
        elapsed = time.monotonic() - started

        assert result.failure is FailureKind.TIMEOUT
        assert elapsed < 0.3 + runner.term_timeout + runner.kill_timeout + 1.0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_caller_cancellation_propagates(self, workspace: Path, runner: ProcessRunner):
        task = asyncio.create_task(runner.execute("sleep", ["30"], cwd=workspace))
        await asyncio.sleep(0.3)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


# =============================================================================
# Streaming execution
# =============================================================================


class TestStreaming:
    """stream() / spawn_and_stream() forward output as it arrives."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_chunks_concatenate_to_stdout(self, workspace: Path, runner: ProcessRunner):
        chunks: list[str] = []
        result = await runner.spawn_and_stream(
            "sh",
            ["-c", "printf 'a\\n'; sleep 0.05; printf 'b\\n'; sleep 0.05; printf 'c\\n'"],
            cwd=workspace,
            on_stdout=chunks.append,
        )

        assert result.success is True
        assert result.exit_code == 0
        assert "".join(chunks) == result.stdout
        assert result.stdout.strip() == "a\nb\nc"

    @pytest.mark.asyncio
    async def test_stderr_callback(self, workspace: Path, runner: ProcessRunner):
        out: list[str] = []
        err: list[str] = []
        result = await runner.spawn_and_stream(
            "sh",
            ["-c", "echo to-stdout; echo to-stderr >&2"],
            cwd=workspace,
            on_stdout=out.append,
            on_stderr=err.append,
        )

        assert result.success is True
        assert "".join(out).strip() == "to-stdout"
        assert "".join(err).strip() == "to-stderr"

    @pytest.mark.asyncio
    async def test_raising_callback_does_not_abort(self, workspace: Path, runner: ProcessRunner):
        seen: list[str] = []

        def on_stdout(text: str) -> None:
            seen.append(text)
            raise ValueError("consumer bug")

        result = await runner.spawn_and_stream(
            "sh", ["-c", "echo one; sleep 0.05; echo two"], cwd=workspace, on_stdout=on_stdout
        )

        assert result.success is True
        assert "".join(seen) == result.stdout

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, workspace: Path, runner: ProcessRunner):
        result = await runner.spawn_and_stream("sh", ["-c", "echo partial; exit 5"], cwd=workspace)

        assert result.success is False
        assert result.exit_code == 5
        assert result.failure is FailureKind.NON_ZERO_EXIT
        assert result.stdout.strip() == "partial"

    @pytest.mark.asyncio
    async def test_spawn_failure(self, workspace: Path, runner: ProcessRunner):
        result = await runner.spawn_and_stream("qlood-no-such-binary-xyz", [], cwd=workspace)

        assert result.success is False
        assert result.failure is FailureKind.SPAWN_FAILURE
        assert runner.controller.state is ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_async_iteration(self, workspace: Path, runner: ProcessRunner):
        spec = ProcessSpec(argv=["sh", "-c", "echo x; echo y >&2"], cwd=workspace)

        sources = set()
        async with runner.stream(spec) as stream:
            async for chunk in stream:
                sources.add(chunk.source)

        assert sources == {StreamSource.STDOUT, StreamSource.STDERR}
        assert stream.result is not None
        assert stream.result.success is True

    @pytest.mark.asyncio
    async def test_stdin_bytes(self, workspace: Path, runner: ProcessRunner):
        spec = ProcessSpec(argv=["cat"], cwd=workspace, stdin_bytes=b"piped input\n")

        async with runner.stream(spec) as stream:
            text = "".join([chunk.text async for chunk in stream])

        assert text == "piped input\n"

    @pytest.mark.asyncio
    async def test_multibyte_output_decoded(self, workspace: Path, runner: ProcessRunner):
        result = await runner.spawn_and_stream("printf", ["%s", "héllo ✓ 世界"], cwd=workspace)
        assert result.stdout == "héllo ✓ 世界"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_handle_registered_while_running(self, workspace: Path, runner: ProcessRunner):
        spec = ProcessSpec(argv=["sh", "-c", "echo go; sleep 0.3"], cwd=workspace)

        async with runner.stream(spec) as stream:
            async for _chunk in stream:
                assert runner.controller.state is ControllerState.RUNNING
                assert runner.controller.active_pid == stream.pid
                assert runner.controller.has_active_invocation()

        assert runner.controller.state is ControllerState.IDLE
        assert runner.controller.active_pid is None

    @pytest.mark.asyncio
    @pytest.mark.skipif(not pty_available(), reason="`script` not available")
    @pytest.mark.timeout(15)
    async def test_pty_gives_terminal(self, workspace: Path, runner: ProcessRunner):
        result = await runner.spawn_and_stream(
            "sh", ["-c", "if [ -t 1 ]; then echo is-tty; else echo no-tty; fi"],
            cwd=workspace,
            pty=True,
        )

        assert result.success is True
        assert "is-tty" in result.stdout
        assert "no-tty" not in result.stdout


class TestStreamCleanup:
    """Abandoned or cancelled streams terminate their process."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_abandoned_stream_terminates_process(self, workspace: Path, runner: ProcessRunner):
        spec = ProcessSpec(argv=["sh", "-c", "echo first; sleep 30"], cwd=workspace)

        async with runner.stream(spec) as stream:
            async for _chunk in stream:
                break

        assert stream.pid is not None
        assert _process_gone(stream.pid)
        assert stream.result is not None
        assert stream.result.failure is FailureKind.CANCELLED
        assert runner.controller.state is ControllerState.IDLE

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_cancelled_task_terminates_process(self, workspace: Path, runner: ProcessRunner):
        task = asyncio.create_task(
            runner.spawn_and_stream("sh", ["-c", "echo started; sleep 30"], cwd=workspace)
        )
        for _ in range(100):
            if runner.controller.has_active_invocation():
                break
            await asyncio.sleep(0.02)
        pid = runner.controller.active_pid
        assert pid is not None

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert _process_gone(pid)
        assert runner.controller.state is ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_close_before_start(self, workspace: Path, runner: ProcessRunner):
        stream = runner.stream(ProcessSpec(argv=["echo", "never"], cwd=workspace))
        await stream.aclose()

        assert stream.result is not None
        assert stream.result.failure is FailureKind.CANCELLED
        assert runner.controller.state is ControllerState.IDLE


# =============================================================================
# Audit trail and metrics
# =============================================================================


class TestAudit:
    """Tool invocations are recorded; other commands are not."""

    @pytest.mark.asyncio
    async def test_sync_request_response_and_capture(self, workspace: Path, debug_root: Path):
        recorder = SessionRecorder()
        runner = ProcessRunner(tool_command="echo", recorder=recorder)

        with recorder.session(debug_root) as rec:
            await runner.execute("echo", ["hello"], cwd=workspace, timeout=5)
            session_dir = rec.session_dir
            log_file = rec.log_file

        entries = read_entries(log_file)
        categories = [e["cat"] for e in entries]
        assert categories == ["SESSION_START", "AUGGIE_REQUEST", "AUGGIE_RESPONSE", "SESSION_END"]

        request, response = entries[1], entries[2]
        assert response["step"] > request["step"]
        assert request["fullCommand"] == "echo hello"
        assert request["options"]["timeout"] == 5
        assert response["success"] is True
        assert response["streamed"] is False
        assert response["stdoutLength"] == len("hello")

        assert (session_dir / "invocation_001_stdout.txt").read_text(encoding="utf-8") == "hello"
        assert (session_dir / "invocation_001_stderr.txt").read_text(encoding="utf-8") == ""

    @pytest.mark.asyncio
    async def test_other_commands_not_recorded(self, workspace: Path, debug_root: Path):
        recorder = SessionRecorder()
        runner = ProcessRunner(tool_command="auggie", recorder=recorder)

        with recorder.session(debug_root) as rec:
            await runner.execute("echo", ["quiet"], cwd=workspace)
            log_file = rec.log_file
            session_dir = rec.session_dir

        assert [e["cat"] for e in read_entries(log_file)] == ["SESSION_START", "SESSION_END"]
        assert not list(session_dir.glob("invocation_*"))

    @pytest.mark.asyncio
    async def test_stream_entries_and_capture(self, workspace: Path, debug_root: Path):
        recorder = SessionRecorder()
        runner = ProcessRunner(recorder=recorder)

        with recorder.session(debug_root) as rec:
            result = await runner.spawn_and_stream(
                "sh", ["-c", "echo out-1; echo err-1 >&2; echo out-2"], cwd=workspace
            )
            log_file = rec.log_file
            session_dir = rec.session_dir

        entries = read_entries(log_file)
        assert [e["cat"] for e in entries[1:3]] == ["AUGGIE_REQUEST", "AUGGIE_RESPONSE"]
        assert entries[2]["streamed"] is True
        assert entries[2]["success"] is True

        stdout_capture = (session_dir / "invocation_001_stdout.txt").read_text(encoding="utf-8")
        stderr_capture = (session_dir / "invocation_001_stderr.txt").read_text(encoding="utf-8")
        assert stdout_capture == result.stdout
        assert stderr_capture == result.stderr

    @pytest.mark.asyncio
    async def test_failed_invocation_records_error(self, workspace: Path, debug_root: Path):
        recorder = SessionRecorder()
        runner = ProcessRunner(tool_command="sh", recorder=recorder)

        with recorder.session(debug_root) as rec:
            await runner.execute("sh", ["-c", "exit 9"], cwd=workspace)
            log_file = rec.log_file

        response = read_entries(log_file)[2]
        assert response["success"] is False
        assert response["exitCode"] == 9
        assert response["failure"] == "non_zero_exit"
        assert response["error"] == "sh exited with code 9"

    @pytest.mark.asyncio
    async def test_metrics_counted_for_tool_only(self, workspace: Path):
        metrics = Metrics()
        runner = ProcessRunner(tool_command="echo", metrics=metrics)

        await runner.execute("echo", ["a"], cwd=workspace)
        await runner.execute("echo", ["b"], cwd=workspace, skip_metrics=True)
        await runner.execute("true", cwd=workspace)
        await runner.spawn_and_stream("echo", ["c"], cwd=workspace)

        assert metrics.snapshot().auggie_calls == 2

    @pytest.mark.asyncio
    async def test_no_session_no_files(self, workspace: Path, debug_root: Path):
        recorder = SessionRecorder()
        runner = ProcessRunner(tool_command="echo", recorder=recorder)

        result = await runner.execute("echo", ["x"], cwd=workspace)

        assert result.success is True
        assert not debug_root.exists()


class TestIsolation:
    """Processes run in their own session."""

    @pytest.mark.asyncio
    async def test_new_process_group(self, workspace: Path, runner: ProcessRunner):
        result = await runner.execute(
            sys.executable, ["-c", "import os; print(os.getpgid(0))"], cwd=workspace
        )

        assert result.success is True
        assert int(result.stdout.strip()) != os.getpgid(0)


# =============================================================================
# Background processes
# =============================================================================


class TestBackground:
    """start_background() / list_background() / kill_background()."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_finished_process_leaves_registry(self, workspace: Path, runner: ProcessRunner):
        entry = await runner.start_background("sh", ["-c", "echo done; echo warn >&2"], cwd=workspace)

        result = await asyncio.wait_for(entry.wait(), timeout=5)

        assert result.success is True
        assert result.stdout == "done"
        assert result.stderr == "warn"
        assert entry.result is result
        assert runner.list_background() == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_list_and_kill(self, workspace: Path, runner: ProcessRunner):
        first = await runner.start_background("sleep", ["30"], cwd=workspace)
        second = await runner.start_background("sleep", ["30"], cwd=workspace)

        listed = runner.list_background()
        assert [entry.id for entry in listed] == [first.id, second.id]
        assert second.id == first.id + 1
        assert listed[0].to_dict()["command"] == "sleep 30"
        assert all(entry.running for entry in listed)

        assert await runner.kill_background(first.id) is True
        assert first.running is False
        assert [entry.id for entry in runner.list_background()] == [second.id]

        result = await asyncio.wait_for(first.wait(), timeout=5)
        assert result.success is False

        await runner.close()
        assert runner.list_background() == []
        assert second.running is False

    @pytest.mark.asyncio
    async def test_kill_unknown_id(self, runner: ProcessRunner):
        assert await runner.kill_background(999) is False

    @pytest.mark.asyncio
    async def test_start_failure_raises(self, workspace: Path, runner: ProcessRunner):
        with pytest.raises(OSError):
            await runner.start_background("qlood-no-such-binary-xyz", cwd=workspace)
        assert runner.list_background() == []

    @pytest.mark.asyncio
    async def test_check_command_exists(self, runner: ProcessRunner):
        assert await runner.check_command_exists("sh") is True
        assert await runner.check_command_exists("qlood-no-such-binary-xyz") is False
