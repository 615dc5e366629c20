"""qlood command line entry point.

Wires configuration, logging, the audit session, the runner and signal
handling together, then dispatches one command.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .audit.recorder import SessionRecorder
from .auggie.invoker import AuggieInvoker
from .config import Config, get_config
from .metrics import Metrics
from .runtime.process_runner import ProcessRunner
from .runtime.types import InvocationResult
from .signal_manager import SignalManager

__all__ = ["build_parser", "main", "parse_args", "run_command", "setup_logging"]

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130  # 128 + SIGINT


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qlood",
        description="Drive the auggie CLI with audited, cancellable invocations.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Record an audit session under <cwd>/.qlood/debug (or QLOOD_DEBUG_DIR)",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Project directory the tool runs in (default: current directory)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    prompt = sub.add_parser("prompt", help="Send a prompt to auggie")
    prompt.add_argument("text", help="Prompt text")
    prompt.add_argument("--stream", action="store_true", help="Print output as it arrives")
    prompt.add_argument("--print", dest="use_print", action="store_true", help="Use --print format")
    prompt.add_argument("--no-pty", action="store_true", help="Do not wrap streaming runs in a PTY")
    prompt.add_argument(
        "--with-context",
        action="store_true",
        help="Attach the project's .qlood context files (not with --stream)",
    )
    prompt.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds before a non-streaming prompt is terminated",
    )

    raw = sub.add_parser("raw", help="Pass arguments straight to auggie")
    raw.add_argument("args", nargs=argparse.REMAINDER, help="auggie arguments")

    sub.add_parser("auth", help="Check whether auggie is logged in")
    sub.add_parser("update", help="Install or update auggie via npm")
    context = sub.add_parser("context", help="Ask auggie for a project overview")
    context.add_argument(
        "--summarize",
        action="store_true",
        help="Condense the project context into a testing summary",
    )

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse the command line.

    Leading options after `raw` are not known to qlood; argparse reports them
    as unrecognized, so they are put back in front of the passthrough args.
    """
    parser = build_parser()
    args, extra = parser.parse_known_args(argv)
    if extra:
        if args.command != "raw":
            parser.error(f"unrecognized arguments: {' '.join(extra)}")
        args.args = [*extra, *args.args]
    return args


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _write_stderr(text: str) -> None:
    sys.stderr.write(text)
    sys.stderr.flush()


def _report(result: InvocationResult, recorder: SessionRecorder) -> int:
    if result.stdout:
        print(result.stdout)
    if not result.success:
        if result.stderr:
            print(result.stderr, file=sys.stderr)
        recorder.log_system_output(result.stderr or result.error or "", "error")
        return EXIT_FAILURE
    return EXIT_OK


async def _dispatch(
    args: argparse.Namespace,
    auggie: AuggieInvoker,
    recorder: SessionRecorder,
    cwd: Path,
) -> int:
    if args.command == "prompt":
        if args.stream:
            result = await auggie.execute_custom_prompt_stream(
                args.text,
                cwd=cwd,
                use_print_format=args.use_print,
                pty=not args.no_pty,
                on_stdout=_write_stdout,
                on_stderr=_write_stderr,
            )
            if not result.success:
                recorder.log_system_output(result.stderr or result.error or "", "error")
                logger.error(f"auggie failed: {result.error or result.stderr}")
                return EXIT_FAILURE
            return EXIT_OK

        if args.with_context:
            result = await auggie.execute_context_prompt(args.text, cwd=cwd, timeout=args.timeout)
            return _report(result, recorder)

        result = await auggie.execute_custom_prompt(
            args.text,
            cwd=cwd,
            use_print_format=args.use_print,
            timeout=args.timeout,
        )
        return _report(result, recorder)

    if args.command == "raw":
        result = await auggie.execute_raw_command(args.args, cwd=cwd)
        return _report(result, recorder)

    if args.command == "auth":
        status = await auggie.check_authentication()
        if not status.success:
            print(status.error, file=sys.stderr)
            return EXIT_FAILURE
        print("authenticated" if status.authenticated else "not authenticated")
        return EXIT_OK if status.authenticated else EXIT_FAILURE

    if args.command == "update":
        update = await auggie.ensure_up_to_date()
        print(update.message, file=sys.stdout if update.success else sys.stderr)
        if update.version:
            print(f"version: {update.version}")
        return EXIT_OK if update.success else EXIT_FAILURE

    if args.command == "context":
        if args.summarize:
            context = await auggie.summarize_project_context(cwd)
        else:
            context = await auggie.get_project_context(cwd)
        if not context.success:
            print(context.error, file=sys.stderr)
            return EXIT_FAILURE
        print(context.context)
        return EXIT_OK

    raise ValueError(f"Unknown command: {args.command}")


async def run_command(args: argparse.Namespace, config: Config) -> int:
    """Run one parsed command with an audit session and signal handling.

    The audit session, when enabled, is closed on every exit path.
    """
    cwd = Path(args.cwd).expanduser().resolve() if args.cwd else Path.cwd()

    recorder = SessionRecorder(preview_length=config.preview_length)
    metrics = Metrics()
    runner = ProcessRunner(
        term_timeout=config.term_timeout,
        tool_command=config.auggie_command,
        recorder=recorder,
        metrics=metrics,
    )
    auggie = AuggieInvoker(runner, config)
    signals = SignalManager(runner.controller, double_tap_window=config.sigint_double_tap_window)

    command_task: asyncio.Task[int] | None = None
    shutdown_watcher: asyncio.Task[None] | None = None
    interrupted = False

    async def _watch_shutdown() -> None:
        await signals.wait_for_shutdown()
        logger.info("Shutdown requested, cancelling command...")
        if command_task is not None and not command_task.done():
            command_task.cancel()

    with contextlib.ExitStack() as stack:
        if args.debug or config.debug:
            stack.enter_context(recorder.session(config.resolve_debug_dir(cwd)))

        await signals.start()
        try:
            command_task = asyncio.create_task(
                _dispatch(args, auggie, recorder, cwd), name=f"qlood-{args.command}"
            )
            shutdown_watcher = asyncio.create_task(_watch_shutdown(), name="shutdown-watcher")
            try:
                code = await command_task
            except asyncio.CancelledError:
                # A cancelled runner call has already reaped its subprocess
                if not signals.is_shutdown_requested:
                    raise
                interrupted = True
                code = EXIT_INTERRUPTED
                recorder.log_system_output(f"{args.command} interrupted by signal", "warning")
        finally:
            if shutdown_watcher is not None and not shutdown_watcher.done():
                shutdown_watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await shutdown_watcher
            await runner.close()
            await signals.stop()
            logger.debug(f"Invocation counters: {metrics.snapshot().to_dict()}")

    if interrupted:
        logger.warning(f"{args.command} interrupted, exiting with code {EXIT_INTERRUPTED}")
        return EXIT_INTERRUPTED
    if signals.is_force_exit:
        logger.warning("Force exit requested, terminating with exit code 130")
        return EXIT_INTERRUPTED
    return code


class JsonSerializingFormatter(logging.Formatter):
    """Formatter that renders dict and model arguments as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.args, tuple) and record.args:
            new_args = []
            for arg in record.args:
                try:
                    if hasattr(arg, "model_dump"):
                        new_args.append(json.dumps(arg.model_dump(), ensure_ascii=False))
                    elif isinstance(arg, dict):
                        new_args.append(json.dumps(arg, ensure_ascii=False, default=str))
                    else:
                        new_args.append(arg)
                except (TypeError, ValueError):
                    new_args.append(arg)
            record.args = tuple(new_args)
        return super().format(record)


def setup_logging(config: Config) -> None:
    """stderr at INFO by default, or a DEBUG log file with QLOOD_LOG_DEBUG."""
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(JsonSerializingFormatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        ))
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # Third-party libraries stay at WARNING
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("qlood").setLevel(log_level)


def main(argv: list[str] | None = None) -> None:
    """Console entry point."""
    config = get_config()
    setup_logging(config)
    args = parse_args(argv)
    logger.debug(f"Starting qlood {__version__}: {config}")

    try:
        code = asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        code = EXIT_INTERRUPTED
    sys.exit(code)


if __name__ == "__main__":
    main()
