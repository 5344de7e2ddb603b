#!/usr/bin/env python3
"""Recall sources — narrow adapters over external lexical and vector backends.

Every source implements :class:`RecallSource`:

    recall(query, top_k, config=None) -> list[Candidate]

When a config snapshot is passed, its limits and backend selection apply
to that call only; the adapter itself is not modified, so a config update
never reaches a recall that is already running.

Sources are best-effort. A backend that raises or is unavailable yields an
empty list and a warning log entry; nothing propagates to the orchestrator.

Backends are duck-typed and injected at construction time:

    LexicalIndex.search(keyword: str, limit: int) -> list[dict]
    VectorIndex.search(query: str, top_k: int, threshold: float) -> list[dict]

Hit dicts carry ``text`` (or ``content``), an optional score under
``matchScore`` / ``similarity`` / ``score`` and optional ``metadata``.
"""

from __future__ import annotations

import math
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from keyword_extractor import extract
from observability import get_logger, metrics, timed
from recall_types import Candidate, SourceKind

_log = get_logger("recall_sources")

DEFAULT_HIT_SCORE = 0.5
_SCORE_KEYS = ("matchScore", "similarity", "score")


class SourceUnavailable(RuntimeError):
    """A recall source failed or timed out."""


# ---------------------------------------------------------------------------
# Backend contracts
# ---------------------------------------------------------------------------

class LexicalIndex(ABC):
    """External keyword index queried one keyword at a time."""

    @abstractmethod
    def search(self, keyword: str, limit: int) -> list[dict]:
        ...


class VectorIndex(ABC):
    """External vector-search backend."""

    @abstractmethod
    def search(self, query: str, top_k: int, threshold: float) -> list[dict]:
        ...


def hit_to_candidate(hit: dict, source: SourceKind, **extra_meta: Any) -> Candidate | None:
    """Normalize one backend hit. Returns None for hits without text."""
    text = hit.get("text") or hit.get("content") or ""
    if not isinstance(text, str) or not text.strip():
        return None
    score = DEFAULT_HIT_SCORE
    for key in _SCORE_KEYS:
        value = hit.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
            score = float(value)
            break
    metadata = dict(hit.get("metadata") or {})
    metadata.update(extra_meta)
    return Candidate(text=text, score=score, source=source, metadata=metadata)


def _by_score(candidates: list[Candidate], top_k: int) -> list[Candidate]:
    # stable: equal scores keep backend order
    return sorted(candidates, key=lambda c: c.score, reverse=True)[:top_k]


# ---------------------------------------------------------------------------
# RecallSource interface
# ---------------------------------------------------------------------------

class RecallSource(ABC):
    """One retrieval strategy feeding the orchestrator."""

    kind: SourceKind

    @abstractmethod
    def recall(self, query: str, top_k: int, config=None) -> list[Candidate]:
        """Return at most *top_k* candidates, best first.

        *config* is the snapshot of the cycle making the call; None means
        use the settings from the last ``configure``.
        """
        ...

    def configure(self, config) -> None:
        """Pick up a new EngineConfig snapshot. Default: nothing to do."""


# ---------------------------------------------------------------------------
# Keyword recall
# ---------------------------------------------------------------------------

class KeywordRecall(RecallSource):
    """Extract keywords from the query and look each one up in a lexical index.

    The per-keyword limit is ``ceil(top_k / n_keywords)`` so the merged pool
    stays close to *top_k* before the final sort and truncation.
    """

    kind = SourceKind.KEYWORD

    def __init__(self, index: LexicalIndex | None, max_keywords: int = 5,
                 min_keyword_length: int = 2):
        self.index = index
        self.max_keywords = max_keywords
        self.min_keyword_length = min_keyword_length

    def configure(self, config) -> None:
        self.max_keywords = config.max_keywords
        self.min_keyword_length = config.min_keyword_length

    def recall(self, query: str, top_k: int, config=None) -> list[Candidate]:
        if self.index is None:
            _log.warning("keyword_index_missing")
            return []
        if top_k <= 0:
            return []
        if config is not None:
            max_keywords, min_length = config.max_keywords, config.min_keyword_length
        else:
            max_keywords, min_length = self.max_keywords, self.min_keyword_length
        keywords = extract(query, max_keywords, min_length)
        if not keywords:
            _log.debug("keyword_recall_no_keywords", query=query)
            return []

        per_keyword = math.ceil(top_k / len(keywords))
        hits: list[Candidate] = []
        try:
            with timed("keyword_recall"):
                for keyword in keywords:
                    for raw in self.index.search(keyword, per_keyword) or []:
                        cand = hit_to_candidate(raw, self.kind, keyword=keyword)
                        if cand is not None:
                            hits.append(cand)
        except Exception as exc:
            metrics.inc("recall_source_failures")
            _log.warning("keyword_recall_failed", error=str(exc))
            return []

        result = _by_score(hits, top_k)
        _log.debug("keyword_recall_done", keywords=keywords, hits=len(hits), returned=len(result))
        return result


# ---------------------------------------------------------------------------
# Semantic recall
# ---------------------------------------------------------------------------

@dataclass
class SemanticBackend:
    """A named, independently toggleable vector backend."""

    name: str
    index: VectorIndex
    enabled: bool = True


class SemanticRecall(RecallSource):
    """Query every enabled vector backend in sequence and merge their hits.

    Backends run in the order of the config's ``semantic_backends``; their
    outputs are concatenated, sorted by score and truncated to *top_k*. A
    failing backend is logged and skipped.
    """

    kind = SourceKind.SEMANTIC

    def __init__(self, backends: list[SemanticBackend] | None = None,
                 threshold: float = 0.3):
        self.backends = list(backends or [])
        self.threshold = threshold

    def configure(self, config) -> None:
        self.threshold = config.semantic_threshold
        self.set_enabled(config.semantic_backends)

    def set_enabled(self, names) -> None:
        """Enable exactly *names*, in that order; other backends go last, disabled."""
        order = {name: i for i, name in enumerate(names)}
        for backend in self.backends:
            backend.enabled = backend.name in order
        self.backends = sorted(self.backends, key=lambda b: order.get(b.name, len(order)))

    def _selected(self, config) -> list[SemanticBackend]:
        if config is None:
            return [b for b in self.backends if b.enabled]
        by_name = {b.name: b for b in self.backends}
        return [by_name[name] for name in config.semantic_backends if name in by_name]

    def recall(self, query: str, top_k: int, config=None) -> list[Candidate]:
        if top_k <= 0:
            return []
        threshold = config.semantic_threshold if config is not None else self.threshold
        hits: list[Candidate] = []
        for backend in self._selected(config):
            try:
                with timed(f"semantic_recall_{backend.name}"):
                    raw_hits = backend.index.search(query, top_k, threshold) or []
            except Exception as exc:
                metrics.inc("recall_source_failures")
                _log.warning("semantic_backend_failed", backend=backend.name, error=str(exc))
                continue
            count = 0
            for raw in raw_hits:
                cand = hit_to_candidate(raw, self.kind, backend=backend.name)
                if cand is not None:
                    hits.append(cand)
                    count += 1
            _log.debug("semantic_backend_done", backend=backend.name, hits=count)
        return _by_score(hits, top_k)
