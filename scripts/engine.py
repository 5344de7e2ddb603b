#!/usr/bin/env python3
"""prefetch-recall engine — recall, dedup, rerank and cache on every generation.

Wires the pipeline together and owns its shared state:

    execute(query)
        1. last-result cache hit (same query, fresh)   -> CACHED
        2. prefetch cache hit (query == predicted one) -> rerank -> PREFETCHED
        3. multi-source recall -> dedup -> rerank       -> COMPLETED
        4. store in last-result cache, return

Only one ``execute`` runs at a time. A call arriving while another is in
flight returns ``SKIPPED`` immediately; it is not queued.

Inbound host events map onto methods:
    generation-started  -> generation_started(query, dry_run)
    user-input-changed  -> user_input_changed(partial_text)
    chat-switched       -> chat_switched()

No recall or rerank failure escapes ``execute``; total backend failure
produces an empty result list. Configuration errors do raise.

Usage:
    engine = build_engine(load_config(workspace), lexical_index=index,
                          vector_indexes={"memory": memory_db})
    result = engine.execute("龙在森林中")
    for cand in result.results:
        inject(cand.text)
"""

from __future__ import annotations

import os
import sys
import threading
import time
from collections import deque
from collections.abc import Callable

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from engine_config import EngineConfig
from multi_recall import RecallOrchestrator
from observability import get_logger, metrics
from prefetcher import PredictivePrefetcher
from recall_sources import (
    KeywordRecall,
    LexicalIndex,
    RecallSource,
    SemanticBackend,
    SemanticRecall,
    VectorIndex,
)
from recall_types import Candidate, ExecuteStatus, PipelineResult
from reranker import Reranker
from ttl_cache import SingleSlotCache

_log = get_logger("engine")

MAX_CHAT_MESSAGES = 50


class RecallEngine:
    """Retrieval orchestration for one chat session.

    Args:
        config: Validated configuration snapshot.
        sources: Recall sources keyed by name ("keyword", "semantic").
        reranker: Rerank policy object (default: HTTP/cross-encoder per config).
        clock: Monotonic clock in seconds, shared by both caches.
        timer_factory: Debounce timer constructor for the prefetcher.
    """

    def __init__(self, config: EngineConfig, sources: dict[str, RecallSource],
                 reranker: Reranker | None = None,
                 clock: Callable[[], float] = time.monotonic,
                 timer_factory=threading.Timer):
        self._config = config.validate()
        self._orchestrator = RecallOrchestrator(sources)
        self._orchestrator.configure(self._config)
        self._reranker = reranker or Reranker()
        self._busy = threading.Lock()

        self._last_results: SingleSlotCache[Candidate] = SingleSlotCache(
            config.last_result_cache_ttl, clock=clock, name="last_result",
        )
        self._messages: deque[str] = deque(maxlen=MAX_CHAT_MESSAGES)
        self._history: deque[str] = deque(maxlen=config.query_history_size)
        self._prefetcher = PredictivePrefetcher(
            recall_fn=self._orchestrator.multi_recall,
            config_fn=lambda: self._config,
            context_fn=lambda: list(self._messages),
            cache=SingleSlotCache(config.prefetch_cache_ttl, clock=clock, name="prefetch"),
            timer_factory=timer_factory,
        )
        _log.info(
            "engine_init",
            sources=sorted(sources),
            enabled_sources=list(config.enabled_sources),
            rerank_provider=config.rerank_provider,
            predictive=config.enable_predictive,
        )

    # -- configuration ------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def prefetcher(self) -> PredictivePrefetcher:
        return self._prefetcher

    def update_config(self, **changes) -> EngineConfig:
        """Apply config changes. Takes effect on the next execute/prefetch cycle.

        Raises ConfigError and leaves the current config untouched when the
        result would be invalid.
        """
        updated = self._config.with_updates(**changes)
        self._last_results.set_ttl(updated.last_result_cache_ttl)
        self._prefetcher.cache.set_ttl(updated.prefetch_cache_ttl)
        if updated.query_history_size != self._history.maxlen:
            self._history = deque(self._history, maxlen=updated.query_history_size)
        self._config = updated
        _log.info("config_updated", keys=sorted(changes))
        return updated

    def set_enabled(self, enabled: bool) -> None:
        self.update_config(enabled=bool(enabled))

    # -- pipeline -----------------------------------------------------------

    def execute(self, query: str) -> PipelineResult:
        """Run the retrieval pipeline for *query*. Never raises on backend failure."""
        if not self._busy.acquire(blocking=False):
            metrics.inc("execute_skipped")
            _log.info("execute_skipped", reason="busy", query=query)
            return PipelineResult(ExecuteStatus.SKIPPED, query, diagnostics={"reason": "busy"})
        start = time.monotonic()
        try:
            return self._execute_locked(query, self._config, start)
        finally:
            self._busy.release()

    def _execute_locked(self, query: str, config: EngineConfig, start: float) -> PipelineResult:
        if not config.enabled:
            return PipelineResult(ExecuteStatus.DISABLED, query)
        if not query or not query.strip():
            return PipelineResult(ExecuteStatus.COMPLETED, query,
                                  diagnostics={"reason": "empty_query"})

        cached = self._last_results.get(query)
        if cached is not None:
            metrics.inc("execute_cache_hits")
            _log.info("execute_cache_hit", query=query, results=len(cached))
            return PipelineResult(ExecuteStatus.CACHED, query, cached,
                                  diagnostics={"cache": "last_result"})

        diagnostics: dict = {}
        failed = False
        try:
            prefetched = self._prefetcher.lookup(query)
            if prefetched is not None:
                status = ExecuteStatus.PREFETCHED
                candidates = prefetched
                metrics.inc("execute_prefetch_hits")
                diagnostics["cache"] = "prefetch"
                diagnostics["deduped"] = len(candidates)
            else:
                status = ExecuteStatus.COMPLETED
                outcome = self._orchestrator.recall(query, config)
                candidates = outcome.deduped
                diagnostics.update(outcome.diagnostics())

            results, rerank_outcome = self._reranker.rerank_with_outcome(query, candidates, config)
            diagnostics["rerank"] = rerank_outcome
        except Exception as exc:
            _log.error("execute_failed", query=query, error=str(exc))
            status, results = ExecuteStatus.COMPLETED, []
            diagnostics["error"] = str(exc)
            failed = True

        # failed runs are not cached
        if not failed:
            self._last_results.put(query, results)
            self._history.append(query)
        metrics.inc("execute_runs")

        elapsed_ms = round((time.monotonic() - start) * 1000, 2)
        diagnostics["elapsed_ms"] = elapsed_ms
        metrics.observe("execute_ms", elapsed_ms)
        _log.info("execute_complete", query=query, status=status.value,
                  results=len(results), elapsed_ms=elapsed_ms)
        return PipelineResult(status, query, results, diagnostics)

    # -- host events --------------------------------------------------------

    def generation_started(self, query: str, dry_run: bool = False) -> PipelineResult:
        """generation-started event. Dry runs are skipped when configured."""
        if dry_run and self._config.skip_dry_run:
            _log.debug("generation_dry_run_skipped")
            return PipelineResult(ExecuteStatus.SKIPPED, query, diagnostics={"reason": "dry_run"})
        result = self.execute(query)
        if not result.skipped:
            self.record_message(query)
        return result

    def user_input_changed(self, partial_text: str) -> bool:
        """user-input-changed event. Returns True if a prefetch was scheduled."""
        if not self._config.enabled:
            return False
        return self._prefetcher.on_input(partial_text)

    def record_message(self, text: str) -> None:
        """Append a chat message to the predictive context window."""
        if text and text.strip():
            self._messages.append(text)

    def chat_switched(self) -> None:
        """chat-switched event: clear both caches, the transcript and the prefetcher."""
        self._last_results.clear()
        self._prefetcher.reset()
        self._messages.clear()
        self._history.clear()
        _log.info("chat_switched")

    def shutdown(self) -> None:
        self._prefetcher.reset()

    # -- stats --------------------------------------------------------------

    @property
    def query_history(self) -> list[str]:
        return list(self._history)

    def stats(self) -> dict:
        return {
            "enabled": self._config.enabled,
            "busy": self._busy.locked(),
            "prefetch_state": self._prefetcher.state.value,
            "predicted_query": self._prefetcher.predicted_query,
            "query_history_size": len(self._history),
            "caches": [self._last_results.stats(), self._prefetcher.cache.stats()],
            "metrics": metrics.summary(),
            "config": self._config.redacted(),
        }


def build_engine(config: EngineConfig, lexical_index: LexicalIndex | None = None,
                 vector_indexes: dict[str, VectorIndex] | None = None,
                 reranker: Reranker | None = None, **kwargs) -> RecallEngine:
    """Assemble an engine from backend objects.

    ``vector_indexes`` maps semantic backend names ("corpus", "memory",
    "summary") to vector indexes. Each recall queries them in the order given
    by that cycle's ``config.semantic_backends``.
    """
    vector_indexes = vector_indexes or {}
    order = list(config.semantic_backends) + [n for n in vector_indexes if n not in config.semantic_backends]
    backends = [SemanticBackend(name, vector_indexes[name]) for name in order if name in vector_indexes]
    sources: dict[str, RecallSource] = {
        "keyword": KeywordRecall(lexical_index, config.max_keywords, config.min_keyword_length),
        "semantic": SemanticRecall(backends, config.semantic_threshold),
    }
    return RecallEngine(config, sources, reranker=reranker, **kwargs)
