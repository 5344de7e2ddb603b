#!/usr/bin/env python3
"""prefetch-recall reranker — second-pass scoring of merged candidates.

Policy, in order:
    1. Reranking disabled, or no model/endpoint configured -> original order,
       truncated to ``final_top_k``.
    2. Fewer candidates than ``rerank_threshold`` (0 disables the check) ->
       original order, truncated. Small sets are not worth the round trip.
    3. Otherwise ask the scorer for ``{index, relevance_score}`` items and map
       them back onto the submitted candidates, in the scorer's order.
    4. Any scorer failure -> same as 1. Reranking never raises.

HTTP contract (``rerank_provider = "http"``):
    POST <rerank_api_url><path>   for path in rerank_paths, first success wins
    {"model": ..., "query": ..., "documents": [...], "top_n": final_top_k}
    Authorization: Bearer <rerank_api_key>

    -> {"results": [{"index": 0, "relevance_score": 0.93, "document": ...}]}
"""

from __future__ import annotations

import json
import os
import sys
import urllib.error
import urllib.request
from typing import Any

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from observability import get_logger, metrics, timed
from recall_types import Candidate, RankedCandidate

_log = get_logger("reranker")

OUTCOME_EMPTY = "empty"
OUTCOME_DISABLED = "disabled"
OUTCOME_BELOW_THRESHOLD = "below_threshold"
OUTCOME_RERANKED = "reranked"
OUTCOME_FALLBACK = "fallback"


class RerankUnavailable(RuntimeError):
    """The scoring service could not produce a usable ranking."""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def parse_rerank_response(data: Any, n_documents: int) -> list[tuple[int, float]]:
    """Validate a rerank response body and return ``(index, score)`` pairs.

    Raises RerankUnavailable when ``results`` is missing or not a list, or
    when an item has no usable index or score.
    """
    if not isinstance(data, dict) or not isinstance(data.get("results"), list):
        raise RerankUnavailable("response has no 'results' array")
    pairs: list[tuple[int, float]] = []
    for item in data["results"]:
        if not isinstance(item, dict):
            raise RerankUnavailable(f"result item is not an object: {item!r}")
        index = item.get("index")
        score = item.get("relevance_score", item.get("score"))
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < n_documents:
            raise RerankUnavailable(f"result index out of range: {index!r}")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise RerankUnavailable(f"result score is not numeric: {score!r}")
        pairs.append((index, float(score)))
    return pairs


# ---------------------------------------------------------------------------
# HTTP scorer
# ---------------------------------------------------------------------------


class HttpRerankScorer:
    """Calls a Jina/Cohere-style ``/rerank`` endpoint.

    Each path in *paths* is appended to *base_url* and tried in order until
    one returns a well-formed response.
    """

    def __init__(self, base_url: str, api_key: str, model: str,
                 paths: tuple[str, ...] = ("/rerank",), timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.paths = tuple(paths)
        self.timeout = timeout

    def endpoints(self) -> list[str]:
        return [self.base_url + "/" + p.lstrip("/") for p in self.paths]

    def score(self, query: str, documents: list[str], top_n: int) -> list[tuple[int, float]]:
        payload = json.dumps({
            "model": self.model,
            "query": query,
            "documents": documents,
            "top_n": top_n,
        }, ensure_ascii=False).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        last_error = "no endpoints configured"
        for url in self.endpoints():
            req = urllib.request.Request(url, data=payload, headers=headers, method="POST")
            try:
                with timed("rerank_http"):
                    with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                        body = resp.read().decode("utf-8")
                return parse_rerank_response(json.loads(body), len(documents))
            except urllib.error.HTTPError as e:
                last_error = f"HTTP {e.code}"
            except (urllib.error.URLError, TimeoutError, OSError) as e:
                last_error = f"transport error: {e}"
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                last_error = f"invalid JSON: {e}"
            except RerankUnavailable as e:
                last_error = str(e)
            _log.warning("rerank_endpoint_failed", url=url, error=last_error)

        raise RerankUnavailable(f"all rerank endpoints failed, last error: {last_error}")


# ---------------------------------------------------------------------------
# Reranker
# ---------------------------------------------------------------------------


class Reranker:
    """Applies the rerank policy using a scorer built from the config.

    Args:
        scorer_factory: Optional ``callable(config) -> scorer`` override; the
            scorer must expose ``score(query, documents, top_n)``. Used by
            tests and by hosts with their own rerank client.
    """

    def __init__(self, scorer_factory=None):
        self._scorer_factory = scorer_factory or build_scorer

    def rerank(self, query: str, candidates: list[Candidate], config) -> list[Candidate]:
        return self.rerank_with_outcome(query, candidates, config)[0]

    def rerank_with_outcome(self, query: str, candidates: list[Candidate],
                            config) -> tuple[list[Candidate], str]:
        """Rerank and also report which policy branch was taken."""
        top_k = config.final_top_k
        original = list(candidates)[:top_k]

        if not _rerank_configured(config):
            _log.debug("rerank_not_configured", enabled=config.enable_reranking,
                       provider=config.rerank_provider)
            return original, OUTCOME_DISABLED

        if not candidates:
            return [], OUTCOME_EMPTY

        threshold = config.rerank_threshold
        if threshold > 0 and len(candidates) < threshold:
            _log.info("rerank_skipped", reason="below_threshold",
                      count=len(candidates), threshold=threshold)
            return original, OUTCOME_BELOW_THRESHOLD

        documents = [c.text for c in candidates]
        metrics.inc("rerank_calls")
        try:
            scorer = self._scorer_factory(config)
            with timed("rerank"):
                pairs = scorer.score(query, documents, top_k)
            if not isinstance(pairs, list):
                raise RerankUnavailable("scorer returned no ranking")
        except Exception as exc:
            metrics.inc("rerank_fallbacks")
            _log.error(
                "rerank_failed",
                error=str(exc),
                provider=config.rerank_provider,
                api_url=config.rerank_api_url,
                model=config.rerank_model,
                has_api_key=bool(config.rerank_api_key),
            )
            return original, OUTCOME_FALLBACK

        ranked = [
            RankedCandidate.from_candidate(candidates[index], score, index)
            for index, score in pairs[:top_k]
        ]
        _log.info("rerank_complete", submitted=len(candidates), returned=len(ranked))
        return ranked, OUTCOME_RERANKED


def _rerank_configured(config) -> bool:
    if not config.enable_reranking or not config.rerank_model:
        return False
    if config.rerank_provider == "http":
        return bool(config.rerank_api_url)
    return True


def build_scorer(config):
    """Scorer for ``config.rerank_provider``."""
    if config.rerank_provider == "cross_encoder":
        from cross_encoder_reranker import CrossEncoderScorer

        return CrossEncoderScorer(config.rerank_model)
    return HttpRerankScorer(
        base_url=config.rerank_api_url,
        api_key=config.rerank_api_key,
        model=config.rerank_model,
        paths=config.rerank_paths,
        timeout=config.rerank_timeout,
    )
