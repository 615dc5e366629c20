"""Facade over the external ``auggie`` binary.

Builds argument vectors for prompts, picks the execution mode and maps raw
process results onto the higher-level result types. All process handling
lives in :class:`~qlood.runtime.ProcessRunner`.

Example:
    runner = ProcessRunner(tool_command=config.auggie_command, recorder=recorder)
    auggie = AuggieInvoker(runner, config)

    result = await auggie.execute_custom_prompt("Summarize the tests", use_print_format=True)

    outcome = await auggie.run_stream("Explain main.py", on_stdout=print)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import replace
from pathlib import Path

from ..config import Config, get_config
from ..context import load_project_context, render_context_prompt, truncate_payload
from ..runtime.process_runner import ProcessRunner, ProcessSpec, ProcessStream
from ..runtime.types import FailureKind, InvocationResult
from .output import clean_markdown
from .types import (
    INTERACTIVE_FLAGS,
    AuthStatus,
    ContextResult,
    StreamOutcome,
    UpdateStatus,
)

__all__ = [
    "AuggieInvoker",
    "DEFAULT_CONTEXT_PROMPT",
    "SUMMARY_INSTRUCTION",
]

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_PROMPT = (
    "Analyze the project structure and provide a comprehensive overview of the "
    "codebase including main files, dependencies, and project purpose"
)

SUMMARY_INSTRUCTION = (
    "Rewrite the project context below into a concise summary for end-to-end "
    "testing: tech stack, how to run the project locally, key pages and routes, "
    "and test-relevant utilities. Derive everything from the inputs."
)

NPM_PACKAGE = "@augmentcode/auggie"
INSTALL_TIMEOUT = 120.0

ChunkHandler = Callable[[str], None]


class AuggieInvoker:
    """Runs prompts and management commands through the external tool.

    Args:
        runner: process runner; its ``tool_command`` should match
            ``config.auggie_command`` so invocations are audited
        config: configuration (default: process-wide config)
        timeout: default timeout for synchronous prompts (None = no limit)
    """

    def __init__(
        self,
        runner: ProcessRunner,
        config: Config | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        self.runner = runner
        self.config = config or get_config()
        self.timeout = timeout

    @property
    def command(self) -> str:
        return self.config.auggie_command

    # =========================================================================
    # Prompts
    # =========================================================================

    def build_prompt_args(
        self,
        prompt: str,
        *,
        use_print_format: bool = False,
        flags: Sequence[str] = (),
    ) -> list[str]:
        """Arguments for a non-interactive prompt.

        The configuration file and compact output flag always come first,
        then either ``--print <prompt>`` or the extra flags and the prompt.
        """
        args = ["--mcp-config", str(self.config.auggie_config_file), "--compact"]
        if use_print_format:
            args.extend(["--print", prompt])
        else:
            args.extend(flags)
            args.append(prompt)
        return args

    async def execute_custom_prompt(
        self,
        prompt: str,
        *,
        cwd: Path | str | None = None,
        use_print_format: bool = False,
        flags: Sequence[str] = (),
        timeout: float | None = None,
    ) -> InvocationResult:
        """Run a prompt and wait for the complete answer."""
        args = self.build_prompt_args(prompt, use_print_format=use_print_format, flags=flags)
        return await self.runner.execute(
            self.command,
            args,
            cwd=cwd,
            timeout=timeout if timeout is not None else self.timeout,
            log_options={"use_print_format": use_print_format, "flags": list(flags)},
        )

    def stream_prompt(
        self,
        prompt: str,
        *,
        cwd: Path | str | None = None,
        use_print_format: bool = False,
        pty: bool = True,
        flags: Sequence[str] = (),
    ) -> ProcessStream:
        """Async iterator over the output of a prompt."""
        args = self.build_prompt_args(prompt, use_print_format=use_print_format, flags=flags)
        spec = ProcessSpec(
            argv=[self.command, *args],
            cwd=Path(cwd) if cwd is not None else Path.cwd(),
            pty=pty,
        )
        return self.runner.stream(spec, label=self.command)

    async def execute_custom_prompt_stream(
        self,
        prompt: str,
        *,
        cwd: Path | str | None = None,
        use_print_format: bool = False,
        pty: bool = True,
        flags: Sequence[str] = (),
        on_stdout: ChunkHandler | None = None,
        on_stderr: ChunkHandler | None = None,
    ) -> InvocationResult:
        """Run a prompt, forwarding output chunks to callbacks as they arrive."""
        args = self.build_prompt_args(prompt, use_print_format=use_print_format, flags=flags)
        return await self.runner.spawn_and_stream(
            self.command,
            args,
            cwd=cwd,
            pty=pty,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
        )

    async def run_stream(
        self,
        prompt: str,
        *,
        cwd: Path | str | None = None,
        on_stdout: ChunkHandler | None = None,
        on_stderr: ChunkHandler | None = None,
    ) -> StreamOutcome:
        """Stream a print-format prompt under a PTY and clean up the answer."""
        result = await self.execute_custom_prompt_stream(
            prompt,
            cwd=cwd,
            use_print_format=True,
            pty=True,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
        )
        raw = result.stdout.strip()
        return StreamOutcome(
            success=result.success,
            stdout=raw,
            stderr=result.stderr,
            cleaned=clean_markdown(raw),
            exit_code=result.exit_code,
        )

    async def get_project_context(
        self,
        cwd: Path | str | None = None,
        prompt: str | None = None,
    ) -> ContextResult:
        result = await self.execute_custom_prompt(
            prompt or DEFAULT_CONTEXT_PROMPT,
            cwd=cwd,
            use_print_format=True,
        )
        if not result.success:
            return ContextResult(
                success=False,
                error=result.stderr or "Failed to get project context with Auggie",
            )
        return ContextResult(success=True, context=result.stdout)

    async def execute_context_prompt(
        self,
        instruction: str,
        *,
        cwd: Path | str | None = None,
        previous: str = "",
        timeout: float | None = None,
    ) -> InvocationResult:
        """Run ``instruction`` with the project's context files attached.

        Sections are cut to the workflow limits so the prompt stays within
        the OS argument size limit.
        """
        workdir = Path(cwd) if cwd is not None else Path.cwd()
        payload = load_project_context(workdir)
        if previous:
            payload = replace(payload, previous=previous)
        payload = truncate_payload(payload, self.config.workflow_limits, self.runner.recorder)
        return await self.execute_custom_prompt(
            render_context_prompt(instruction, payload),
            cwd=workdir,
            use_print_format=True,
            timeout=timeout,
        )

    async def summarize_project_context(
        self,
        cwd: Path | str | None = None,
        *,
        timeout: float | None = None,
    ) -> ContextResult:
        """Condense the project's context into a testing-focused summary.

        Uses ``.qlood/notes/context.md`` when present, otherwise asks the
        tool for a fresh overview first. Sections are cut to the summary
        limits.
        """
        workdir = Path(cwd) if cwd is not None else Path.cwd()
        payload = load_project_context(workdir)
        if not payload.context.strip():
            overview = await self.get_project_context(workdir)
            if not overview.success:
                return overview
            payload = replace(payload, context=overview.context or "")

        payload = truncate_payload(payload, self.config.summary_limits, self.runner.recorder)
        result = await self.execute_custom_prompt(
            render_context_prompt(SUMMARY_INSTRUCTION, payload),
            cwd=workdir,
            use_print_format=True,
            timeout=timeout,
        )
        if not result.success:
            return ContextResult(
                success=False,
                error=result.stderr or "Failed to summarize project context with Auggie",
            )
        return ContextResult(success=True, context=clean_markdown(result.stdout))

    # =========================================================================
    # Management commands
    # =========================================================================

    async def execute_raw_command(
        self,
        args: Sequence[str],
        *,
        cwd: Path | str | None = None,
        timeout: float | None = None,
    ) -> InvocationResult:
        """Pass arguments straight to the tool.

        Login and logout need the user's terminal: they run attached to it
        and produce no captured output.
        """
        args = [str(arg) for arg in args]
        if any(arg in INTERACTIVE_FLAGS for arg in args):
            logger.debug(f"Interactive auggie command: {args}")
            return await self.runner.run_interactive(self.command, args, cwd=cwd)

        return await self.runner.execute(
            self.command,
            args,
            cwd=cwd,
            timeout=timeout if timeout is not None else self.timeout,
        )

    async def check_authentication(self) -> AuthStatus:
        """Probe whether the tool holds a session token."""
        result = await self.runner.execute(
            self.command, ["--print-augment-token"], skip_metrics=True
        )

        if result.failure is FailureKind.SPAWN_FAILURE:
            return AuthStatus(
                success=False,
                authenticated=False,
                error=f"Error checking authentication: {result.stderr}",
            )

        if result.success and result.stdout.strip():
            return AuthStatus(success=True, authenticated=True)

        if "API URL not specified" in result.stderr:
            logger.debug("auggie reports no API URL: not logged in")
        return AuthStatus(success=True, authenticated=False)

    async def ensure_up_to_date(self) -> UpdateStatus:
        """Install the tool if missing, update it and report its version."""
        if not await self.runner.check_command_exists(self.command):
            logger.info(f"{self.command} not found, installing {NPM_PACKAGE}")
            installed = await self.runner.execute(
                "npm", ["install", "-g", NPM_PACKAGE], timeout=INSTALL_TIMEOUT
            )
            if not installed.success:
                return UpdateStatus(
                    success=False,
                    message=f"Failed to install Auggie CLI: {installed.stderr}",
                )

        updated = await self.runner.execute(
            "npm", ["install", "-g", f"{NPM_PACKAGE}@latest"], timeout=INSTALL_TIMEOUT
        )
        if not updated.success:
            return UpdateStatus(
                success=False,
                message=f"Failed to update Auggie CLI: {updated.stderr}",
            )

        version = await self.runner.execute(self.command, ["--version"], skip_metrics=True)
        return UpdateStatus(
            success=True,
            message="Auggie CLI is up-to-date",
            version=version.stdout.strip() if version.success else "unknown",
        )

    # =========================================================================
    # Cancellation
    # =========================================================================

    def has_active_invocation(self) -> bool:
        return self.runner.controller.has_active_invocation()

    def cancel_active_invocation(self, *, force: bool = False) -> bool:
        return self.runner.controller.cancel_active_invocation(force=force)
