"""Live invocation counters.

A ``Metrics`` instance is shared by the runners and the CLI; listeners get
a snapshot after every change.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass

__all__ = ["Metrics", "MetricsSnapshot"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricsSnapshot:
    llm_calls: int = 0
    auggie_calls: int = 0
    tool_calls: int = 0
    last_tool: str = ""

    def to_dict(self) -> dict[str, int | str]:
        return asdict(self)


Listener = Callable[[MetricsSnapshot], None]


class Metrics:
    """Counters for LLM calls, external tool invocations and tool calls."""

    def __init__(self) -> None:
        self._llm_calls = 0
        self._auggie_calls = 0
        self._tool_calls = 0
        self._last_tool = ""
        self._listeners: list[Listener] = []

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            llm_calls=self._llm_calls,
            auggie_calls=self._auggie_calls,
            tool_calls=self._tool_calls,
            last_tool=self._last_tool,
        )

    def inc_llm_calls(self) -> None:
        self._llm_calls += 1
        self._emit()

    def inc_auggie_calls(self) -> None:
        self._auggie_calls += 1
        self._emit()

    def inc_tool_calls(self, tool_name: str = "") -> None:
        self._tool_calls += 1
        self._last_tool = str(tool_name or "")
        self._emit()

    def on_update(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to updates. Returns a function that unsubscribes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Metrics listener failed: {e}")
