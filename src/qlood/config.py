"""qlood environment configuration.

Environment variables:
    QLOOD_AUGGIE_COMMAND: external analysis binary (default: auggie)

    QLOOD_AUGGIE_CONFIG: configuration file passed to every non-interactive
        invocation (default: ~/.qlood/auggie-mcp.json)

    QLOOD_DEBUG: open an audit session at startup
        - true/1/yes/on = enabled
        - anything else = disabled (default)

    QLOOD_DEBUG_DIR: audit root directory (default: <cwd>/.qlood/debug)

    QLOOD_LOG_DEBUG: python logging to a temp file at DEBUG level
        (default: stderr at INFO)

    QLOOD_PREVIEW_LENGTH: max characters of any string kept in an audit
        entry (default 400, clamped to 100-2000)

    QLOOD_TERM_TIMEOUT: grace period in seconds between SIGTERM and SIGKILL
        (default 2.0, clamped to 0.1-30)

    QLOOD_SIGINT_DOUBLE_TAP_WINDOW: a second Ctrl+C within this many seconds
        force-kills the running invocation (default 1.0, clamped to 0.1-10)

    QLOOD_MAX_WFUP_CONTEXT / QLOOD_MAX_WFUP_STRUCTURE / QLOOD_MAX_WFUP_CONFIG /
    QLOOD_MAX_WFUP_PREV: truncation limits for workflow-update payloads.
        The first three fall back to QLOOD_MAX_WF_CONTEXT / _STRUCTURE /
        _CONFIG.

    QLOOD_MAX_SUM_CONTEXT / QLOOD_MAX_SUM_STRUCTURE / QLOOD_MAX_SUM_CONFIG:
        truncation limits for context-summary payloads.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

__all__ = [
    "Config",
    "ContextLimits",
    "get_config",
    "load_config",
    "reload_config",
]

DEFAULT_AUGGIE_COMMAND = "auggie"
DEFAULT_PREVIEW_LENGTH = 400
DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_DOUBLE_TAP_WINDOW = 1.0


@dataclass(frozen=True)
class ContextLimits:
    """Per-section character limits for context payloads sent to the tool."""

    context: int
    structure: int
    config: int
    previous: int | None = None


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_int(*values: str | None, default: int) -> int:
    """Return the first value that parses as a positive int."""
    for value in values:
        if not value or not value.strip():
            continue
        try:
            parsed = int(value)
        except ValueError:
            continue
        if parsed > 0:
            return parsed
    return default


def _parse_float(value: str | None, default: float, low: float, high: float) -> float:
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return max(low, min(parsed, high))


def _default_auggie_config() -> Path:
    return Path.home() / ".qlood" / "auggie-mcp.json"


@dataclass
class Config:
    """qlood configuration.

    Attributes:
        auggie_command: external tool binary
        auggie_config_file: configuration file passed with every prompt
        debug: open an audit session at startup
        debug_dir: audit root (None = <cwd>/.qlood/debug)
        log_debug: python logging to a temp file
        log_file: log file path (set when log_debug=True)
        preview_length: audit entry preview length
        term_timeout: SIGTERM -> SIGKILL grace period (seconds)
        sigint_double_tap_window: Ctrl+C escalation window (seconds)
        workflow_limits: limits for workflow-update payloads
        summary_limits: limits for context-summary payloads
    """

    auggie_command: str = DEFAULT_AUGGIE_COMMAND
    auggie_config_file: Path = field(default_factory=_default_auggie_config)
    debug: bool = False
    debug_dir: Path | None = None
    log_debug: bool = False
    log_file: str | None = None
    preview_length: int = DEFAULT_PREVIEW_LENGTH
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    sigint_double_tap_window: float = DEFAULT_DOUBLE_TAP_WINDOW
    workflow_limits: ContextLimits = field(
        default_factory=lambda: ContextLimits(context=8000, structure=8000, config=4000, previous=12000)
    )
    summary_limits: ContextLimits = field(
        default_factory=lambda: ContextLimits(context=12000, structure=12000, config=6000)
    )

    def resolve_debug_dir(self, cwd: Path | None = None) -> Path:
        """Audit root for a project directory."""
        if self.debug_dir is not None:
            return self.debug_dir
        return (cwd or Path.cwd()) / ".qlood" / "debug"

    def __repr__(self) -> str:
        return (
            f"Config(auggie_command={self.auggie_command}, "
            f"auggie_config_file={self.auggie_config_file}, "
            f"debug={self.debug}, "
            f"debug_dir={self.debug_dir}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"preview_length={self.preview_length}, "
            f"term_timeout={self.term_timeout}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """Log file path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "qlood"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"qlood_debug_{timestamp}.log"

    return str(log_file.resolve())


def _load_workflow_limits(env: Mapping[str, str]) -> ContextLimits:
    return ContextLimits(
        context=_parse_int(
            env.get("QLOOD_MAX_WFUP_CONTEXT"), env.get("QLOOD_MAX_WF_CONTEXT"), default=8000
        ),
        structure=_parse_int(
            env.get("QLOOD_MAX_WFUP_STRUCTURE"), env.get("QLOOD_MAX_WF_STRUCTURE"), default=8000
        ),
        config=_parse_int(
            env.get("QLOOD_MAX_WFUP_CONFIG"), env.get("QLOOD_MAX_WF_CONFIG"), default=4000
        ),
        previous=_parse_int(env.get("QLOOD_MAX_WFUP_PREV"), default=12000),
    )


def _load_summary_limits(env: Mapping[str, str]) -> ContextLimits:
    return ContextLimits(
        context=_parse_int(env.get("QLOOD_MAX_SUM_CONTEXT"), default=12000),
        structure=_parse_int(env.get("QLOOD_MAX_SUM_STRUCTURE"), default=12000),
        config=_parse_int(env.get("QLOOD_MAX_SUM_CONFIG"), default=6000),
    )


def load_config() -> Config:
    """Load configuration from environment variables."""
    env = os.environ
    log_debug = _parse_bool(env.get("QLOOD_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    auggie_config = env.get("QLOOD_AUGGIE_CONFIG")
    debug_dir = env.get("QLOOD_DEBUG_DIR")

    return Config(
        auggie_command=(env.get("QLOOD_AUGGIE_COMMAND") or "").strip() or DEFAULT_AUGGIE_COMMAND,
        auggie_config_file=Path(auggie_config).expanduser() if auggie_config else _default_auggie_config(),
        debug=_parse_bool(env.get("QLOOD_DEBUG"), default=False),
        debug_dir=Path(debug_dir).expanduser() if debug_dir else None,
        log_debug=log_debug,
        log_file=log_file,
        preview_length=max(
            100, min(_parse_int(env.get("QLOOD_PREVIEW_LENGTH"), default=DEFAULT_PREVIEW_LENGTH), 2000)
        ),
        term_timeout=_parse_float(env.get("QLOOD_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT, 0.1, 30.0),
        sigint_double_tap_window=_parse_float(
            env.get("QLOOD_SIGINT_DOUBLE_TAP_WINDOW"), DEFAULT_DOUBLE_TAP_WINDOW, 0.1, 10.0
        ),
        workflow_limits=_load_workflow_limits(env),
        summary_limits=_load_summary_limits(env),
    )


# Lazily loaded process-wide configuration
_config: Config | None = None


def get_config() -> Config:
    """Return the cached configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config
