#!/usr/bin/env python3
"""prefetch-recall multi-source recall — parallel sources, ordered merge, dedup.

Runs every enabled recall source for a query (concurrently, on a small
thread pool), tags each candidate with its source, concatenates the lists
in the configured source order and collapses duplicate texts. Merge order
never depends on which source answered first, so "first seen wins" in
:func:`dedupe` is deterministic.

Configuration (prefetch-recall.json, "engine" section):
    {
      "enabled_sources": ["keyword", "semantic"],
      "keyword_top_k": 10,
      "semantic_top_k": 10,
      "source_timeout": 10.0
    }
"""

from __future__ import annotations

import os
import sys
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from observability import get_logger, metrics, timed
from recall_sources import RecallSource, SourceUnavailable
from recall_types import Candidate, SourceKind

_log = get_logger("multi_recall")


# ---------------------------------------------------------------------------
# Dedup
# ---------------------------------------------------------------------------


def dedupe(candidates: list[Candidate]) -> list[Candidate]:
    """Drop candidates whose trimmed text was already seen.

    Order-preserving and pure. Empty or whitespace-only texts are removed
    outright rather than collapsed onto one empty key. The first occurrence
    wins regardless of source or score.
    """
    seen: set[str] = set()
    unique: list[Candidate] = []
    for cand in candidates:
        key = (cand.text or "").strip()
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(cand)
    return unique


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@dataclass
class RecallOutcome:
    """Merged recall output plus per-source diagnostics."""

    merged: list[Candidate] = field(default_factory=list)
    deduped: list[Candidate] = field(default_factory=list)
    source_counts: dict[str, int] = field(default_factory=dict)
    failed_sources: list[str] = field(default_factory=list)

    def diagnostics(self) -> dict:
        return {
            "source_counts": dict(self.source_counts),
            "failed_sources": list(self.failed_sources),
            "merged": len(self.merged),
            "deduped": len(self.deduped),
        }


class RecallOrchestrator:
    """Runs the configured recall sources and merges their candidates.

    Args:
        sources: Mapping of source name ("keyword", "semantic") to source.
            Which of them run, and in what order, comes from the config's
            ``enabled_sources`` on each call, and each source receives that
            call's config snapshot rather than being reconfigured in place.
    """

    def __init__(self, sources: dict[str, RecallSource]):
        self.sources = dict(sources)

    def configure(self, config) -> None:
        for source in self.sources.values():
            source.configure(config)

    def _active(self, config) -> list[tuple[str, RecallSource]]:
        active = []
        for name in config.enabled_sources:
            source = self.sources.get(name)
            if source is None:
                _log.debug("recall_source_not_registered", source=name)
                continue
            active.append((name, source))
        return active

    def recall(self, query: str, config) -> RecallOutcome:
        """Run all enabled sources and return merged + deduped candidates."""
        outcome = RecallOutcome()
        if not query or not query.strip():
            return outcome
        active = self._active(config)
        if not active:
            _log.info("multi_recall_no_sources")
            return outcome

        with timed("multi_recall"):
            per_source = self._run_sources(query, active, config)

        for name, candidates in per_source:
            if candidates is None:
                outcome.failed_sources.append(name)
                candidates = []
            outcome.source_counts[name] = len(candidates)
            tag = SourceKind(name)
            outcome.merged.extend(c.with_source(tag) for c in candidates)

        outcome.deduped = dedupe(outcome.merged)
        _log.info(
            "multi_recall_complete",
            query=query,
            source_counts=outcome.source_counts,
            failed=outcome.failed_sources,
            merged=len(outcome.merged),
            deduped=len(outcome.deduped),
        )
        return outcome

    def multi_recall(self, query: str, config) -> list[Candidate]:
        """Merged, deduplicated candidates for *query*."""
        return self.recall(query, config).deduped

    def _run_sources(self, query, active, config) -> list[tuple[str, list[Candidate] | None]]:
        """Fire all sources, then collect in configured order.

        ``None`` marks a failed or timed-out source. A hung source is left to
        finish on its worker thread; the pool is not joined.
        """
        pool = ThreadPoolExecutor(max_workers=len(active), thread_name_prefix="recall")
        try:
            futures: list[tuple[str, Future]] = [
                (name, pool.submit(source.recall, query, config.top_k_for(name), config))
                for name, source in active
            ]
            deadline = time.monotonic() + config.source_timeout
            collected = []
            for name, future in futures:
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    collected.append((name, self._result(name, future, remaining)))
                except SourceUnavailable as exc:
                    metrics.inc("recall_source_failures")
                    _log.warning("recall_source_unavailable", source=name, error=str(exc))
                    collected.append((name, None))
            return collected
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _result(name: str, future: Future, timeout: float) -> list[Candidate]:
        try:
            return list(future.result(timeout=timeout) or [])
        except FutureTimeout as exc:
            raise SourceUnavailable(f"{name} timed out") from exc
        except Exception as exc:
            raise SourceUnavailable(f"{name} failed: {exc}") from exc
