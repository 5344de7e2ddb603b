#!/usr/bin/env python3
"""prefetch-recall predictive prefetch — guess the next query while the user types.

State machine::

    IDLE --input--> DEBOUNCING --delay--> PREDICTING --> PREFETCHING --> IDLE
                      ^    |
                      +----+  new input restarts the timer

Predicting joins the last ``context_window_size`` chat messages with the
in-progress input, extracts keywords and uses the top three as the
predicted query. Prefetching runs recall + dedup only; reranking happens
when ``execute`` consumes the entry, since it is query-sensitive.

Every input event or reset bumps a generation counter. A prefetch that
finishes for a superseded generation drops its result instead of writing
the cache.
"""

from __future__ import annotations

import os
import sys
import threading
from collections.abc import Callable
from enum import Enum

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from keyword_extractor import extract
from observability import get_logger, metrics, timed
from recall_types import Candidate
from ttl_cache import SingleSlotCache

_log = get_logger("prefetcher")

PREDICTED_QUERY_KEYWORDS = 3


class PrefetchState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    PREDICTING = "predicting"
    PREFETCHING = "prefetching"


def predict_query(context_messages: list[str], partial_input: str,
                  max_keywords: int, min_length: int) -> str:
    """Form a predicted query from recent chat context plus partial input."""
    combined = " ".join([*context_messages, partial_input]).strip()
    keywords = extract(combined, max_keywords, min_length)
    return " ".join(keywords[:PREDICTED_QUERY_KEYWORDS])


class PredictivePrefetcher:
    """Debounced speculative recall driven by input-change events.

    Args:
        recall_fn: ``callable(query, config) -> list[Candidate]`` running
            recall + dedup for a query.
        config_fn: Returns the current EngineConfig snapshot. Read once per
            input event and once when the timer fires.
        context_fn: Returns recent chat messages, oldest first.
        cache: Single-slot cache receiving ``(predicted_query, candidates)``.
        timer_factory: ``threading.Timer``-compatible constructor.
    """

    def __init__(self, recall_fn: Callable[[str, object], list[Candidate]],
                 config_fn: Callable[[], object],
                 context_fn: Callable[[], list[str]],
                 cache: SingleSlotCache,
                 timer_factory=threading.Timer):
        self._recall_fn = recall_fn
        self._config_fn = config_fn
        self._context_fn = context_fn
        self.cache = cache
        self._timer_factory = timer_factory

        self._lock = threading.Lock()
        self._state = PrefetchState.IDLE
        self._timer = None
        self._generation = 0
        self._predicted_query: str | None = None

    # -- introspection ------------------------------------------------------

    @property
    def state(self) -> PrefetchState:
        with self._lock:
            return self._state

    @property
    def predicted_query(self) -> str | None:
        with self._lock:
            return self._predicted_query

    # -- events -------------------------------------------------------------

    def on_input(self, text: str) -> bool:
        """Handle a user-input-changed event. Returns True if a timer was armed."""
        config = self._config_fn()
        if not config.enable_predictive or not text or len(text) < config.min_input_length:
            return False

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                metrics.inc("prefetch_cancelled")
            self._generation += 1
            generation = self._generation
            timer = self._timer_factory(
                config.predictive_delay / 1000.0, self._fire, args=(text, generation),
            )
            timer.daemon = True
            self._timer = timer
            self._state = PrefetchState.DEBOUNCING
        timer.start()
        _log.debug("prefetch_debounce_armed", delay_ms=config.predictive_delay, length=len(text))
        return True

    def reset(self) -> None:
        """Cancel any pending timer, drop the cached prefetch, go IDLE."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            self._state = PrefetchState.IDLE
            self._predicted_query = None
        self.cache.clear()
        _log.info("prefetch_reset")

    def lookup(self, query: str) -> list[Candidate] | None:
        """Prefetched candidates for *query* if it was predicted and is still fresh."""
        return self.cache.get(query)

    # -- timer callback -----------------------------------------------------

    def _fire(self, text: str, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            self._state = PrefetchState.PREDICTING

        config = self._config_fn()
        try:
            context = list(self._context_fn() or [])
            window = context[-config.context_window_size:] if config.context_window_size else []
            query = predict_query(window, text, config.max_keywords, config.min_keyword_length)
            if not query:
                _log.debug("prefetch_no_prediction")
                return

            with self._lock:
                if generation != self._generation:
                    return
                self._predicted_query = query
                self._state = PrefetchState.PREFETCHING

            _log.info("prefetch_started", predicted_query=query)
            with timed("prefetch"):
                candidates = self._recall_fn(query, config)

            with self._lock:
                if generation != self._generation:
                    _log.debug("prefetch_superseded", predicted_query=query)
                    return
                self.cache.put(query, candidates)
            metrics.inc("prefetch_runs")
            _log.info("prefetch_complete", predicted_query=query, results=len(candidates))
        except Exception as exc:
            _log.error("prefetch_failed", error=str(exc))
        finally:
            with self._lock:
                if generation == self._generation:
                    self._state = PrefetchState.IDLE
