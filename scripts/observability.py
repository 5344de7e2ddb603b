#!/usr/bin/env python3
"""prefetch-recall observability. Zero external deps.

Provides:
- Structured JSON logging via stdlib logging
- Thread-safe in-process metrics counters
- Timing context manager for latency tracking

Recall runs on worker threads and predictive prefetch runs on timer
threads, so every metrics mutation goes through one lock.

Usage:
    from observability import get_logger, metrics, timed

    log = get_logger("reranker")
    log.info("rerank_skipped", reason="below_threshold", count=4, threshold=10)

    metrics.inc("rerank_fallbacks")

    with timed("multi_recall"):
        candidates = orchestrator.multi_recall(query, config)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone

LOG_LEVEL_ENV = "PREFETCH_RECALL_LOG_LEVEL"


# ---------------------------------------------------------------------------
# Structured JSON Formatter
# ---------------------------------------------------------------------------

class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record):
        entry = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname.lower(),
            "component": getattr(record, "component", record.name),
            "event": record.getMessage(),
            "thread": record.threadName,
        }
        if getattr(record, "data", None):
            entry["data"] = record.data
        return json.dumps(entry, default=str, ensure_ascii=False)


class StructuredLogger:
    """Logger that takes keyword arguments as structured data."""

    def __init__(self, name):
        self.name = name
        self._logger = logging.getLogger(f"prefetch-recall.{name}")
        if not self._logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(JSONFormatter())
            self._logger.addHandler(handler)
            self._logger.setLevel(
                getattr(logging, os.environ.get(LOG_LEVEL_ENV, "INFO").upper(), logging.INFO)
            )
            self._logger.propagate = False

    def _log(self, level, event, **kwargs):
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="",
            lno=0,
            msg=event,
            args=(),
            exc_info=None,
        )
        record.component = self.name
        record.data = kwargs if kwargs else None
        self._logger.handle(record)

    def debug(self, event: str, **kwargs) -> None:
        self._log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs) -> None:
        self._log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs) -> None:
        self._log(logging.WARNING, event, **kwargs)

    def error(self, event: str, **kwargs) -> None:
        self._log(logging.ERROR, event, **kwargs)


def get_logger(component: str) -> StructuredLogger:
    """Get a structured logger for a component."""
    return StructuredLogger(component)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class Metrics:
    """In-process metrics collector shared by pipeline and prefetch threads.

    Tracks counters and observations (for histograms/gauges).
    Can be dumped as JSON for external collection.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int | float] = {}
        self._observations: dict[str, list[float]] = {}

    def inc(self, name: str, value: int | float = 1) -> None:
        """Increment a counter."""
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def observe(self, name: str, value: float) -> None:
        """Record an observation (e.g., latency, size)."""
        with self._lock:
            self._observations.setdefault(name, []).append(value)

    def get(self, name: str) -> int | float:
        """Get counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def summary(self) -> dict:
        """Return metrics summary as dict."""
        with self._lock:
            result: dict = {"counters": dict(self._counters)}
            for name, values in self._observations.items():
                if values:
                    result.setdefault("observations", {})[name] = {
                        "count": len(values),
                        "min": min(values),
                        "max": max(values),
                        "avg": sum(values) / len(values),
                    }
        return result

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._counters.clear()
            self._observations.clear()


# Global metrics instance
metrics = Metrics()


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------

@contextmanager
def timed(operation: str, logger: StructuredLogger | None = None) -> Generator[None, None, None]:
    """Context manager that times an operation and records the metric.

    Usage:
        with timed("rerank_http", log):
            scored = scorer.score(query, documents, top_n)
    """
    start = time.monotonic()
    try:
        yield
    finally:
        elapsed_ms = (time.monotonic() - start) * 1000
        metrics.observe(f"{operation}_ms", elapsed_ms)
        if logger:
            logger.debug(f"{operation}_complete", duration_ms=round(elapsed_ms, 2))
