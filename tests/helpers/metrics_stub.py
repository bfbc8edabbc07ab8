from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any


class StubMetrics:
    """Records every metric call so tests can assert on names and tags."""

    def __init__(self) -> None:
        self.increment_calls: list[dict[str, Any]] = []
        self.gauge_calls: list[dict[str, Any]] = []
        self.timing_calls: list[dict[str, Any]] = []
        self.alert_calls: list[dict[str, Any]] = []

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self.increment_calls.append({"metric": metric, "value": value, "tags": tags or {}})

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self.gauge_calls.append({"metric": metric, "value": value, "tags": tags or {}})

    def timing(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self.timing_calls.append({"metric": metric, "value": value, "tags": tags or {}})

    @contextmanager
    def timer(self, metric: str, *, tags: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        block_tags: dict[str, Any] = dict(tags or {})
        try:
            yield block_tags
        finally:
            self.timing(metric, 0.0, tags=block_tags)

    def alert(self, metric: str, **fields: Any) -> None:
        self.alert_calls.append({"metric": metric, **fields})

    def names(self) -> set[str]:
        calls = self.increment_calls + self.gauge_calls + self.timing_calls + self.alert_calls
        return {call["metric"] for call in calls}
