"""Audit entry model and preview helpers.

Entries are serialized as compact single-line JSON. Field names follow the
on-disk log format: ``ts``, ``step``, ``cat`` and then the payload.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "AuditEntry",
    "TRUNCATION_MARKER",
    "iso_now",
    "truncate_payload",
    "truncate_text",
]

TRUNCATION_MARKER = "... (truncated {omitted} chars)"


def iso_now() -> str:
    """UTC timestamp in ISO-8601 with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def truncate_text(text: str | None, limit: int) -> str | None:
    """Keep the first ``limit`` characters and note how many were dropped."""
    if text is None or len(text) <= limit:
        return text
    omitted = len(text) - limit
    return text[:limit] + TRUNCATION_MARKER.format(omitted=omitted)


def truncate_payload(value: Any, limit: int) -> Any:
    """Recursively truncate long strings inside dicts, lists and tuples."""
    if isinstance(value, str):
        return truncate_text(value, limit)
    if isinstance(value, dict):
        return {k: truncate_payload(v, limit) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [truncate_payload(item, limit) for item in value]
    return value


class AuditEntry(BaseModel):
    """One line of a session log.

    The category and bookkeeping fields are fixed; everything else the
    caller passes is kept as extra fields in insertion order.
    """

    model_config = ConfigDict(
        extra="allow",
        frozen=True,
        populate_by_name=True,
    )

    ts: str = Field(default_factory=iso_now)
    step: int
    cat: str

    def to_json_line(self) -> str:
        return self.model_dump_json() + "\n"
