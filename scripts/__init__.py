# prefetch-recall: hybrid recall and reranking for chat context injection
# Package: prefetch_recall (maps to scripts/ via pyproject.toml package-dir)

"""prefetch-recall: multi-source retrieval engine for LLM chat sessions.

Core modules:
    engine                 — execute(query) pipeline, host events, single-flight guard
    multi_recall           — parallel recall sources, ordered merge, dedup
    recall_sources         — RecallSource interface, keyword and semantic adapters
    keyword_extractor      — stop-word filtered, importance-weighted keywords
    reranker               — threshold-gated rerank over HTTP with safe fallback
    cross_encoder_reranker — optional local sentence-transformers scorer
    prefetcher             — debounced predictive prefetch state machine
    ttl_cache              — single-slot TTL cache
    engine_config          — immutable, validated configuration snapshots
    corpus_index           — in-memory JSONL lexical index
    observability          — structured JSON logging + metrics
"""

__version__ = "0.3.0"
