"""prefetch-recall optional local cross-encoder scorer.

Scores (query, document) pairs with a sentence-transformers CrossEncoder,
e.g. BAAI/bge-reranker-base. Entirely optional; requires the
``cross-encoder`` extra. Returns the same ``(index, score)`` ranking as the
HTTP rerank endpoint so the Reranker policy stays shared.
"""
from __future__ import annotations

import os
import sys
import threading

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from reranker import RerankUnavailable

_CE_MODELS: dict = {}
_CE_AVAILABLE = None
_LOAD_LOCK = threading.Lock()


def _check_available() -> bool:
    global _CE_AVAILABLE
    if _CE_AVAILABLE is not None:
        return _CE_AVAILABLE
    try:
        from sentence_transformers import CrossEncoder  # noqa: F401
        _CE_AVAILABLE = True
    except ImportError:
        _CE_AVAILABLE = False
    return _CE_AVAILABLE


class CrossEncoderScorer:
    """CPU-friendly cross-encoder scorer; models are loaded once per name."""

    def __init__(self, model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"):
        if not _check_available():
            raise RerankUnavailable("sentence-transformers required for cross_encoder provider")
        from sentence_transformers import CrossEncoder
        with _LOAD_LOCK:
            if model not in _CE_MODELS:
                _CE_MODELS[model] = CrossEncoder(model)
        self.model_name = model
        self._model = _CE_MODELS[model]

    def score(self, query: str, documents: list[str], top_n: int) -> list[tuple[int, float]]:
        if not documents:
            return []
        raw = self._model.predict([(query, doc) for doc in documents])
        ranked = sorted(
            ((i, float(s)) for i, s in enumerate(raw)),
            key=lambda pair: pair[1],
            reverse=True,
        )
        return ranked[:top_n]

    @staticmethod
    def is_available() -> bool:
        """Check if the cross-encoder package is importable."""
        return _check_available()
