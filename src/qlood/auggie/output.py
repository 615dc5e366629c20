"""Clean up terminal output captured from the external tool.

Output captured through a PTY carries colour codes, carriage returns and
the tool's own tool-call transcript. ``clean_markdown`` keeps only the
prose and code blocks of the final answer.
"""

from __future__ import annotations

import re

__all__ = ["clean_markdown", "strip_ansi"]

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences and normalize line endings."""
    text = _ANSI_RE.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _is_artifact(line: str) -> bool:
    return (
        line.startswith("<")
        or "Tool call:" in line
        or "Tool result:" in line
        or ("... (" in line and "more lines)" in line)
    )


def clean_markdown(raw: str | None) -> str:
    """Drop tool-call blocks and progress lines, keep fenced code intact."""
    if not raw:
        return ""

    kept: list[str] = []
    in_code = False
    in_tool_call = False
    skip_robot = False

    for line in strip_ansi(raw).split("\n"):
        stripped = line.strip()

        if stripped.startswith("```"):
            in_code = not in_code
            kept.append(line)
            continue
        if in_code:
            kept.append(line)
            continue

        if stripped.startswith("<function_calls>") or "\U0001f527 Tool call:" in stripped:
            in_tool_call = True
            continue
        if stripped.startswith("</function_calls>") or "\U0001f4cb Tool result:" in stripped:
            in_tool_call = False
            skip_robot = True
            continue
        if in_tool_call:
            continue

        if _is_artifact(stripped) or (skip_robot and stripped.startswith("\U0001f916")):
            skip_robot = False
            continue

        kept.append(line)

    return _BLANK_RUN_RE.sub("\n\n", "\n".join(kept)).strip()
