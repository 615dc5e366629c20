"""qlood - audited, cancellable orchestration of the auggie CLI.

Environment variables:
    QLOOD_AUGGIE_COMMAND: tool binary (default: auggie)
    QLOOD_DEBUG: record an audit session (default: false)
    QLOOD_LOG_DEBUG: write python logs to a temp file at DEBUG level

Usage:
    qlood prompt "Summarize the test suite" --stream
"""

__version__ = "0.3.0"

from .app import main

__all__ = ["__version__", "main"]
