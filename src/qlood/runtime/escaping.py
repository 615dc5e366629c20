"""Shell argument escaping for composed command lines.

Only the synchronous runner builds a single shell string; the streaming
runner passes an argv straight to the OS and never escapes.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

__all__ = ["compose_command", "escape_arg"]

# Whitespace or any character a POSIX shell would interpret
_NEEDS_QUOTING = re.compile(r"[|()\[\]{};'\"\\$`<>&*?\s]")

# Replacement for a single quote inside a quoted token
_QUOTE_ESCAPE = "'\"'\"'"


def escape_arg(token: str) -> str:
    """Quote ``token`` for a POSIX shell when it contains metacharacters.

    Tokens without whitespace or shell metacharacters are returned as-is,
    so escaping is not idempotent: escaping an already quoted token quotes
    it again. An empty token becomes '' so it keeps its position.
    """
    token = str(token)
    if not token:
        return "''"
    if _NEEDS_QUOTING.search(token):
        return "'" + token.replace("'", _QUOTE_ESCAPE) + "'"
    return token


def compose_command(command: str, args: Iterable[str] = ()) -> str:
    """Join ``command`` and its escaped arguments into one shell string."""
    parts = [command]
    parts.extend(escape_arg(arg) for arg in args)
    return " ".join(parts)
