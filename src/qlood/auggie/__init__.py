"""Integration with the external ``auggie`` analysis CLI."""

from __future__ import annotations

from .invoker import DEFAULT_CONTEXT_PROMPT, SUMMARY_INSTRUCTION, AuggieInvoker
from .output import clean_markdown, strip_ansi
from .types import INTERACTIVE_FLAGS, AuthStatus, ContextResult, StreamOutcome, UpdateStatus

__all__ = [
    "DEFAULT_CONTEXT_PROMPT",
    "INTERACTIVE_FLAGS",
    "SUMMARY_INSTRUCTION",
    "AuggieInvoker",
    "AuthStatus",
    "ContextResult",
    "StreamOutcome",
    "UpdateStatus",
    "clean_markdown",
    "strip_ansi",
]
