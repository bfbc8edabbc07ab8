"""Billing metrics: structured log lines, mirrored to StatsD when configured."""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from statsd import StatsClient

from app.config import Settings, settings

logger = logging.getLogger("app.metrics")


class MetricsReporter:
    """Emit counters, gauges, timings and alerts under a single namespace."""

    def __init__(self, config: Settings = settings) -> None:
        self._disabled = config.metrics_disable
        self._namespace = config.metrics_namespace or "billing"
        self._backend = (config.metrics_backend or "stdout").lower()
        self._sample_rate = max(0.0, min(config.metrics_sample_rate, 1.0))
        self._schema_version = config.metrics_schema_version
        self._statsd: StatsClient | None = None
        if self._backend == "statsd" and not self._disabled:
            try:
                self._statsd = StatsClient(
                    host=config.metrics_statsd_host,
                    port=config.metrics_statsd_port,
                    prefix="",
                )
            except OSError as exc:  # pragma: no cover - socket setup failure
                self._report_backend_error("statsd.init", exc)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._emit("counter", metric, value, tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("gauge", metric, value, tags)

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("timing", metric, value_ms, tags)

    @contextmanager
    def timer(self, metric: str, *, tags: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        """Time a block; callers may add tags (e.g. ``outcome``) to the yielded dict."""
        block_tags: dict[str, Any] = dict(tags or {})
        started = time.perf_counter()
        try:
            yield block_tags
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self.timing(metric, elapsed_ms, tags=block_tags)

    def alert(
        self,
        metric: str,
        *,
        value: float,
        threshold: float,
        severity: str,
        tags: dict[str, Any] | None = None,
    ) -> None:
        """Structured alert, e.g. a ledger row that exhausted its retries."""
        if self._disabled:
            return
        logger.warning(
            "billing.alert",
            extra={
                "metrics": {
                    "metric": self._qualify(metric),
                    "value": round(float(value), 4),
                    "threshold": round(float(threshold), 4),
                    "severity": severity,
                    "schema_version": self._schema_version,
                    "tags": tags or {},
                }
            },
        )
        if self._statsd is not None:
            self._send(lambda client, name: client.incr(f"{name}.alert"), metric)

    def _emit(
        self, kind: str, metric: str, value: float | None, tags: dict[str, Any] | None
    ) -> None:
        if self._disabled or value is None:
            return
        rate = 1.0 if kind == "gauge" else self._sample_rate
        if rate < 1.0 and secrets.randbelow(1_000_000) / 1_000_000 > rate:
            return
        name = self._qualify(metric)
        payload: dict[str, Any] = {
            "metric": name,
            "value": round(float(value), 4),
            "type": kind,
            "tags": tags or {},
        }
        if rate < 1.0:
            payload["sample_rate"] = round(rate, 4)
        logger.info("billing.metric", extra={"metrics": payload})
        if self._statsd is None:
            return
        if kind == "timing":
            self._send(lambda client, n: client.timing(n, value, rate=rate), metric)
        elif kind == "gauge":
            self._send(lambda client, n: client.gauge(n, value), metric)
        else:
            self._send(lambda client, n: client.incr(n, value, rate=rate), metric)

    def _send(self, op, metric: str) -> None:
        name = self._qualify(metric)
        try:
            op(self._statsd, name)
        except OSError as exc:  # pragma: no cover - UDP send failure
            self._report_backend_error(name, exc)

    def _qualify(self, metric: str) -> str:
        trimmed = (metric or "").strip()
        if trimmed.startswith(f"{self._namespace}."):
            return trimmed
        return f"{self._namespace}.{trimmed}" if trimmed else self._namespace

    def _report_backend_error(self, metric: str, exc: Exception) -> None:
        logger.warning(
            "metrics.backend_error",
            extra={"metric": metric, "backend": self._backend, "error": type(exc).__name__},
        )


metrics = MetricsReporter()
