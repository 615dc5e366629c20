"""Session recorder: append-only JSONL audit log plus per-invocation captures.

Layout under the audit root::

    <root>/debug_session_<id>/debug-<id>.jsonl
    <root>/debug_session_<id>/invocation_001_stdout.txt
    <root>/debug_session_<id>/invocation_001_stderr.txt

Only the newest ``max_sessions`` session directories are kept; older ones
are deleted as a whole when a new session starts.

Recording never raises into the caller: filesystem errors are logged and
the entry is dropped.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from .models import AuditEntry, truncate_payload, truncate_text

if TYPE_CHECKING:
    from ..runtime.types import Invocation

__all__ = [
    "CapturePair",
    "SessionInfo",
    "SessionRecorder",
    "prune_sessions",
]

logger = logging.getLogger(__name__)

SESSION_DIR_PREFIX = "debug_session_"
LEGACY_FILE_PREFIX = "debug-"
LEGACY_FILE_SUFFIX = ".txt"
DEFAULT_MAX_SESSIONS = 5
DEFAULT_PREVIEW_LENGTH = 400
ARG_PREVIEW_LENGTH = 300

_RESERVED_FIELDS = frozenset({"ts", "step", "cat"})


def make_session_id(now: datetime | None = None) -> str:
    """Filesystem-safe id derived from the current UTC time."""
    now = now or datetime.now(timezone.utc)
    stamp = now.isoformat(timespec="microseconds").replace("+00:00", "")
    return stamp.replace(":", "-").replace(".", "-")


def _recency(path: Path) -> tuple[float, str]:
    try:
        return path.stat().st_mtime, path.name
    except OSError:
        return 0.0, path.name


def prune_sessions(root: Path, keep: int, legacy_keep: int | None = None) -> list[Path]:
    """Delete session directories beyond ``keep`` and legacy log files beyond
    ``legacy_keep`` (defaults to ``keep``).

    Both kinds are ordered newest first by modification time, ties broken
    by name, which embeds the creation timestamp.

    Returns:
        Paths that were removed
    """
    removed: list[Path] = []
    if not root.is_dir():
        return removed

    sessions = sorted(
        (p for p in root.iterdir() if p.is_dir() and p.name.startswith(SESSION_DIR_PREFIX)),
        key=_recency,
        reverse=True,
    )
    for stale in sessions[max(keep, 0):]:
        try:
            shutil.rmtree(stale)
            removed.append(stale)
        except OSError as e:
            logger.warning(f"Failed to delete old debug session {stale.name}: {e}")

    legacy = sorted(
        (
            p
            for p in root.iterdir()
            if p.is_file()
            and p.name.startswith(LEGACY_FILE_PREFIX)
            and p.name.endswith(LEGACY_FILE_SUFFIX)
        ),
        key=_recency,
        reverse=True,
    )
    legacy_keep = keep if legacy_keep is None else legacy_keep
    for stale in legacy[max(legacy_keep, 0):]:
        try:
            stale.unlink()
            removed.append(stale)
        except OSError as e:
            logger.warning(f"Failed to delete old debug file {stale.name}: {e}")

    return removed


@dataclass(frozen=True)
class SessionInfo:
    """Snapshot of the recorder state."""

    enabled: bool
    session_id: str | None
    session_dir: Path | None
    log_file: Path | None
    step_counter: int


class CapturePair:
    """Append-mode writers for one invocation's full stdout/stderr text."""

    def __init__(self, session_dir: Path, index: int) -> None:
        self.index = index
        self.stdout_path = session_dir / f"invocation_{index:03d}_stdout.txt"
        self.stderr_path = session_dir / f"invocation_{index:03d}_stderr.txt"
        self._files: dict[str, IO[str]] = {}
        # Both files exist even when a stream stays silent
        for path in (self.stdout_path, self.stderr_path):
            path.touch(exist_ok=True)

    def _write(self, key: str, path: Path, text: str) -> None:
        if not text:
            return
        try:
            handle = self._files.get(key)
            if handle is None:
                handle = path.open("a", encoding="utf-8")
                self._files[key] = handle
            handle.write(text)
            handle.flush()
        except OSError as e:
            logger.warning(f"Failed to write capture {path.name}: {e}")

    def append_stdout(self, text: str) -> None:
        self._write("stdout", self.stdout_path, text)

    def append_stderr(self, text: str) -> None:
        self._write("stderr", self.stderr_path, text)

    def close(self) -> None:
        for handle in self._files.values():
            try:
                handle.close()
            except OSError:
                pass
        self._files.clear()

    def __enter__(self) -> CapturePair:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SessionRecorder:
    """Audit-logging context spanning many invocations.

    One instance per application; pass it to the runners that should be
    audited. Use :meth:`session` to guarantee :meth:`disable` runs on every
    exit path.

    Example:
        recorder = SessionRecorder()
        with recorder.session(project / ".qlood" / "debug"):
            result = await runner.execute("auggie", ["--print", prompt])
    """

    def __init__(
        self,
        preview_length: int = DEFAULT_PREVIEW_LENGTH,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ) -> None:
        self.preview_length = preview_length
        self.max_sessions = max_sessions

        self._enabled = False
        self._auto_enabled = False
        self._session_id: str | None = None
        self._session_dir: Path | None = None
        self._log_file: Path | None = None
        self._step = 0
        self._invocation_index = 0

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def session_dir(self) -> Path | None:
        return self._session_dir

    @property
    def log_file(self) -> Path | None:
        return self._log_file

    def enable(self, root_dir: Path | str, *, silent: bool = False) -> Path | None:
        """Start a new session under ``root_dir``.

        Prunes old sessions first so that, including the new one, at most
        ``max_sessions`` remain. Does nothing when already enabled.

        Returns:
            The session directory, or None if it could not be created
        """
        if self._enabled:
            return self._session_dir

        root = Path(root_dir)
        session_id = make_session_id()
        session_dir = root / f"{SESSION_DIR_PREFIX}{session_id}"

        try:
            root.mkdir(parents=True, exist_ok=True)
            prune_sessions(root, self.max_sessions - 1, legacy_keep=self.max_sessions)
            session_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Failed to create debug session under {root}: {e}")
            return None

        self._enabled = True
        self._session_id = session_id
        self._session_dir = session_dir
        self._log_file = session_dir / f"debug-{session_id}.jsonl"
        self._step = 0
        self._invocation_index = 0

        self.write_entry("SESSION_START", {
            "workingDirectory": str(Path.cwd()),
            "pythonVersion": platform.python_version(),
            "platform": sys.platform,
            "pid": os.getpid(),
        })

        if silent:
            logger.debug(f"Debug session started: {session_dir}")
        else:
            logger.info(f"Debug logging enabled: {session_dir}")
        return session_dir

    def auto_enable(self, root_dir: Path | str) -> Path | None:
        """Enable silently, once."""
        if not self._auto_enabled:
            self._auto_enabled = True
            return self.enable(root_dir, silent=True)
        return self._session_dir

    def disable(self) -> None:
        """Write the closing entry and clear the session state."""
        if not self._enabled:
            return

        self.write_entry("SESSION_END", {"totalSteps": self._step})
        logger.debug(f"Debug session closed: {self._session_dir} ({self._step} steps)")

        self._enabled = False
        self._auto_enabled = False
        self._session_id = None
        self._session_dir = None
        self._log_file = None
        self._step = 0
        self._invocation_index = 0

    @contextmanager
    def session(self, root_dir: Path | str, *, silent: bool = False) -> Iterator[SessionRecorder]:
        """Scope a session: enable on entry, disable on any exit."""
        self.enable(root_dir, silent=silent)
        try:
            yield self
        finally:
            self.disable()

    def session_info(self) -> SessionInfo:
        return SessionInfo(
            enabled=self._enabled,
            session_id=self._session_id,
            session_dir=self._session_dir,
            log_file=self._log_file,
            step_counter=self._step,
        )

    # ------------------------------------------------------------------
    # entries
    # ------------------------------------------------------------------

    def truncate(self, text: str | None, limit: int | None = None) -> str | None:
        return truncate_text(text, limit or self.preview_length)

    def write_entry(self, category: str, data: Mapping[str, Any] | None = None) -> int | None:
        """Append one entry to the session log.

        Returns:
            The entry's step number, or None when nothing was written
        """
        if not self._enabled or self._log_file is None:
            return None

        payload = {k: v for k, v in (data or {}).items() if k not in _RESERVED_FIELDS}
        # Normalize to plain JSON types before truncation
        payload = json.loads(json.dumps(payload, default=str))
        payload = truncate_payload(payload, self.preview_length)

        self._step += 1
        entry = AuditEntry(step=self._step, cat=category, **payload)

        try:
            with self._log_file.open("a", encoding="utf-8") as f:
                f.write(entry.to_json_line())
        except OSError as e:
            logger.warning(f"Failed to write debug log: {e}")
            return None
        return entry.step

    def log_invocation_request(
        self,
        command: str,
        args: Sequence[str],
        options: Mapping[str, Any] | None = None,
    ) -> int | None:
        """Record an invocation about to be launched."""
        from ..runtime.escaping import compose_command

        args = [str(arg) for arg in args]
        options = dict(options or {})
        return self.write_entry("AUGGIE_REQUEST", {
            "command": command,
            "args": [truncate_text(arg, ARG_PREVIEW_LENGTH) for arg in args],
            "options": {
                "timeout": options.get("timeout"),
                "cwd": str(options["cwd"]) if options.get("cwd") is not None else None,
                "pty": options.get("pty"),
                "usePrintFormat": options.get("use_print_format"),
                "flags": options.get("flags"),
            },
            "fullCommand": compose_command(command, args),
        })

    def log_invocation_response(self, invocation: Invocation) -> int | None:
        """Record the outcome of a resolved invocation."""
        result = invocation.result
        return self.write_entry("AUGGIE_RESPONSE", {
            "command": invocation.command,
            "success": result.success,
            "exitCode": result.exit_code,
            "failure": result.failure.value if result.failure else None,
            "durationMs": invocation.duration_ms,
            "streamed": invocation.streamed,
            "stdoutLength": len(result.stdout),
            "stderrLength": len(result.stderr),
            "stdoutPreview": result.stdout or None,
            "stderrPreview": result.stderr or None,
            "error": result.error,
        })

    def log_error(self, context: str, error: BaseException) -> int | None:
        return self.write_entry("ERROR", {
            "context": context,
            "error": {
                "name": type(error).__name__,
                "message": str(error),
            },
        })

    def log_system_output(self, output: Any, kind: str = "info") -> int | None:
        text = output if isinstance(output, str) else str(output if output is not None else "")
        return self.write_entry("SYSTEM_OUTPUT", {
            "type": kind,
            "length": len(text),
            "preview": text,
        })

    def log_truncation(self, label: str, original_length: int, limit: int) -> int | None:
        return self.write_entry("TRUNCATE", {
            "label": label,
            "originalLength": original_length,
            "limit": limit,
            "omitted": max(original_length - limit, 0),
        })

    # ------------------------------------------------------------------
    # capture files
    # ------------------------------------------------------------------

    def next_invocation_index(self) -> int:
        """1-based counter naming the capture files of this session."""
        self._invocation_index += 1
        return self._invocation_index

    def open_capture(self, index: int | None = None) -> CapturePair | None:
        """Create the capture pair for an invocation, if a session is active."""
        if not self._enabled or self._session_dir is None:
            return None
        if index is None:
            index = self.next_invocation_index()
        try:
            return CapturePair(self._session_dir, index)
        except OSError as e:
            logger.warning(f"Failed to create capture files: {e}")
            return None

    def write_capture(self, stdout: str, stderr: str, index: int | None = None) -> CapturePair | None:
        """Persist full output of a completed invocation."""
        capture = self.open_capture(index)
        if capture is None:
            return None
        with capture:
            capture.append_stdout(stdout)
            capture.append_stderr(stderr)
        return capture
