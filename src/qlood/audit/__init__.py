"""Audit trail for external tool invocations.

Entries are stored in append-only JSONL files, one directory per session,
alongside full stdout/stderr captures of every invocation.
"""

from __future__ import annotations

from .models import AuditEntry, truncate_payload, truncate_text
from .recorder import CapturePair, SessionInfo, SessionRecorder, prune_sessions

__all__ = [
    "AuditEntry",
    "CapturePair",
    "SessionInfo",
    "SessionRecorder",
    "prune_sessions",
    "truncate_payload",
    "truncate_text",
]
