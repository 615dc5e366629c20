"""Project context payloads handed to the external tool, with size limits.

The project directory keeps three context sections under ``.qlood/``:

    notes/context.md         -> context
    project-structure.json   -> structure
    qlood.json               -> config

Each section is cut to a configurable number of characters before being
embedded in a prompt; every cut is recorded as a TRUNCATE audit entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .audit.recorder import SessionRecorder
    from .config import ContextLimits

__all__ = [
    "ContextPayload",
    "load_project_context",
    "render_context_prompt",
    "truncate_payload",
    "truncate_section",
]

logger = logging.getLogger(__name__)

PROJECT_DIR_NAME = ".qlood"
CONTEXT_FILE = Path("notes") / "context.md"
STRUCTURE_FILE = Path("project-structure.json")
CONFIG_FILE = Path("qlood.json")


def truncate_section(
    text: str | None,
    limit: int,
    label: str = "section",
    recorder: SessionRecorder | None = None,
) -> str:
    """Cut ``text`` to ``limit`` characters and append an omission note."""
    text = str(text or "")
    if len(text) <= limit:
        return text

    omitted = len(text) - limit
    if recorder is not None:
        recorder.log_truncation(label, len(text), limit)
    logger.debug(f"Truncated {label}: {len(text)} -> {limit} chars")
    return f"{text[:limit]}\n\n...[truncated {omitted} chars from {label}]"


@dataclass(frozen=True)
class ContextPayload:
    context: str = ""
    structure: str = ""
    config: str = ""
    previous: str = ""


def truncate_payload(
    payload: ContextPayload,
    limits: ContextLimits,
    recorder: SessionRecorder | None = None,
) -> ContextPayload:
    """Apply per-section limits. ``previous`` is only cut when a limit is set."""
    previous = payload.previous
    if limits.previous is not None:
        previous = truncate_section(previous, limits.previous, "existing-workflow", recorder)

    return replace(
        payload,
        context=truncate_section(payload.context, limits.context, "context", recorder),
        structure=truncate_section(payload.structure, limits.structure, "structure", recorder),
        config=truncate_section(payload.config, limits.config, "config", recorder),
        previous=previous,
    )


def _read_optional(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""
    except OSError as e:
        logger.warning(f"Failed to read {path}: {e}")
        return ""


def load_project_context(cwd: Path | str) -> ContextPayload:
    """Read the context sections of a project; missing files are empty."""
    base = Path(cwd) / PROJECT_DIR_NAME
    return ContextPayload(
        context=_read_optional(base / CONTEXT_FILE),
        structure=_read_optional(base / STRUCTURE_FILE),
        config=_read_optional(base / CONFIG_FILE),
    )


_SECTION_TITLES = (
    ("context", "Project context"),
    ("structure", "Project structure (JSON)"),
    ("config", "Qlood test config (JSON)"),
    ("previous", "Existing workflow"),
)


def render_context_prompt(instruction: str, payload: ContextPayload) -> str:
    """Prompt text: the instruction followed by every non-empty section."""
    parts = [instruction.strip()]
    for name, title in _SECTION_TITLES:
        text = getattr(payload, name).strip()
        if text:
            parts.append(f'{title}:\n"""\n{text}\n"""')
    return "\n\n".join(parts)
