"""Engine configuration — immutable snapshots, JSON loading, strict validation.

Configuration (prefetch-recall.json):
    {
      "engine": {
        "keyword_top_k": 10,
        "semantic_top_k": 10,
        "final_top_k": 10,
        "enable_reranking": true,
        "rerank_provider": "http",
        "rerank_model": "jina-reranker-v2-base-multilingual",
        "rerank_api_url": "https://api.example.com",
        "rerank_threshold": 10,
        "enable_predictive": true,
        "predictive_delay": 500,
        "prefetch_cache_ttl": 10000
      }
    }

camelCase names (``keywordTopK``, ``prefetchCacheTTL`` ...) are accepted as
aliases. Durations named ``*_delay`` / ``*_ttl`` are milliseconds; ``*_timeout``
values are seconds.

Invalid values are rejected with :class:`ConfigError`; nothing is clamped.
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import asdict, dataclass, fields, replace
from typing import Any

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from observability import get_logger

_log = get_logger("engine_config")

CONFIG_FILENAME = "prefetch-recall.json"
CONFIG_SECTION = "engine"
RERANK_KEY_ENV = "PREFETCH_RECALL_RERANK_KEY"

KNOWN_SOURCES = ("keyword", "semantic")
KNOWN_SEMANTIC_BACKENDS = ("corpus", "memory", "summary")
RERANK_PROVIDERS = ("http", "cross_encoder")

_INT_FIELDS = (
    "keyword_top_k", "semantic_top_k", "final_top_k", "rerank_threshold",
    "predictive_delay", "prefetch_cache_ttl", "last_result_cache_ttl",
    "max_keywords", "min_keyword_length", "context_window_size",
    "min_input_length", "query_history_size",
)
_TIMEOUT_FIELDS = ("rerank_timeout", "source_timeout")
_BOOL_FIELDS = ("enable_reranking", "enable_predictive", "skip_dry_run", "enabled")
_STR_FIELDS = ("rerank_model", "rerank_api_url", "rerank_api_key")
_TUPLE_FIELDS = ("rerank_paths", "enabled_sources", "semantic_backends")

_CAMEL_ALIASES = {
    "keywordTopK": "keyword_top_k",
    "semanticTopK": "semantic_top_k",
    "finalTopK": "final_top_k",
    "enableReranking": "enable_reranking",
    "rerankProvider": "rerank_provider",
    "rerankModel": "rerank_model",
    "rerankApiUrl": "rerank_api_url",
    "rerankApiKey": "rerank_api_key",
    "rerankThreshold": "rerank_threshold",
    "rerankPaths": "rerank_paths",
    "rerankTimeout": "rerank_timeout",
    "enablePredictive": "enable_predictive",
    "predictiveDelay": "predictive_delay",
    "prefetchCacheTTL": "prefetch_cache_ttl",
    "prefetchCacheTime": "prefetch_cache_ttl",
    "lastResultCacheTTL": "last_result_cache_ttl",
    "maxKeywords": "max_keywords",
    "minKeywordLength": "min_keyword_length",
    "contextWindowSize": "context_window_size",
    "contextMessages": "context_window_size",
    "minInputLength": "min_input_length",
    "semanticThreshold": "semantic_threshold",
    "enabledSources": "enabled_sources",
    "semanticBackends": "semantic_backends",
    "sourceTimeout": "source_timeout",
    "skipDryRun": "skip_dry_run",
    "queryHistorySize": "query_history_size",
}


class ConfigError(ValueError):
    """Configuration rejected at load or update time."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("invalid configuration: " + "; ".join(self.problems))


@dataclass(frozen=True)
class EngineConfig:
    """Immutable snapshot of every engine tunable."""

    keyword_top_k: int = 10
    semantic_top_k: int = 10
    final_top_k: int = 10

    enable_reranking: bool = True
    rerank_provider: str = "http"
    rerank_model: str = ""
    rerank_api_url: str = ""
    rerank_api_key: str = ""
    rerank_threshold: int = 10
    rerank_paths: tuple[str, ...] = ("/rerank", "/v1/rerank", "/api/rerank")
    rerank_timeout: float = 15.0

    enable_predictive: bool = True
    predictive_delay: int = 500
    prefetch_cache_ttl: int = 10000
    last_result_cache_ttl: int = 5000
    min_input_length: int = 5

    max_keywords: int = 5
    min_keyword_length: int = 2
    context_window_size: int = 3

    semantic_threshold: float = 0.3
    enabled_sources: tuple[str, ...] = KNOWN_SOURCES
    semantic_backends: tuple[str, ...] = KNOWN_SEMANTIC_BACKENDS
    source_timeout: float = 10.0

    skip_dry_run: bool = True
    query_history_size: int = 10
    enabled: bool = True

    # -- validation ---------------------------------------------------------

    def validate(self) -> "EngineConfig":
        """Return self if valid, else raise ConfigError listing every problem."""
        problems: list[str] = []

        for name in _INT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                problems.append(f"{name} must be an integer, got {value!r}")
            elif value < 0:
                problems.append(f"{name} must be >= 0, got {value}")

        for name in _TIMEOUT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                problems.append(f"{name} must be a positive number of seconds, got {value!r}")

        for name in _BOOL_FIELDS:
            if not isinstance(getattr(self, name), bool):
                problems.append(f"{name} must be a boolean, got {getattr(self, name)!r}")

        for name in _STR_FIELDS:
            if not isinstance(getattr(self, name), str):
                problems.append(f"{name} must be a string")

        th = self.semantic_threshold
        if isinstance(th, bool) or not isinstance(th, (int, float)) or not 0 <= th <= 1:
            problems.append(f"semantic_threshold must be within [0, 1], got {th!r}")

        if self.rerank_provider not in RERANK_PROVIDERS:
            problems.append(
                f"rerank_provider must be one of {', '.join(RERANK_PROVIDERS)}, "
                f"got {self.rerank_provider!r}"
            )

        if not self.rerank_paths:
            problems.append("rerank_paths must list at least one path")
        elif not all(isinstance(p, str) and p for p in self.rerank_paths):
            problems.append("rerank_paths entries must be non-empty strings")

        problems.extend(_check_names("enabled_sources", self.enabled_sources, KNOWN_SOURCES))
        problems.extend(_check_names(
            "semantic_backends", self.semantic_backends, KNOWN_SEMANTIC_BACKENDS,
        ))

        if problems:
            raise ConfigError(problems)
        return self

    # -- construction -------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        """Build and validate a config from a (possibly camelCase) dict."""
        valid = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        unknown = []
        for key, value in data.items():
            name = _CAMEL_ALIASES.get(key, key)
            if name not in valid:
                unknown.append(key)
                continue
            if name in _TUPLE_FIELDS and isinstance(value, list):
                value = tuple(value)
            kwargs[name] = value
        if unknown:
            _log.warning("unknown_engine_config_keys", keys=sorted(unknown))
        return cls(**kwargs).validate()

    def with_updates(self, **changes: Any) -> "EngineConfig":
        """Return a new validated snapshot with *changes* applied."""
        normalized = {}
        for key, value in changes.items():
            name = _CAMEL_ALIASES.get(key, key)
            if name in _TUPLE_FIELDS and isinstance(value, list):
                value = tuple(value)
            normalized[name] = value
        try:
            updated = replace(self, **normalized)
        except TypeError as exc:
            raise ConfigError([str(exc)]) from exc
        return updated.validate()

    def top_k_for(self, source: str) -> int:
        if source == "keyword":
            return self.keyword_top_k
        return self.semantic_top_k

    def redacted(self) -> dict:
        """Config as a dict with the API key masked, for stats and logs."""
        data = asdict(self)
        data["rerank_api_key"] = "***" if self.rerank_api_key else ""
        return data


def _check_names(field_name: str, names: tuple[str, ...], known: tuple[str, ...]) -> list[str]:
    problems = []
    if not isinstance(names, tuple):
        return [f"{field_name} must be a list of names"]
    for name in names:
        if name not in known:
            problems.append(f"{field_name} has unknown entry {name!r}")
    if len(set(names)) != len(names):
        problems.append(f"{field_name} has duplicate entries")
    return problems


def config_path(workspace: str) -> str:
    return os.path.join(workspace, CONFIG_FILENAME)


def load_config(workspace: str) -> EngineConfig:
    """Load the engine section of ``prefetch-recall.json`` from *workspace*.

    A missing file yields defaults. An unreadable or invalid file raises
    ConfigError; the engine must not start on a config it cannot trust.
    """
    path = config_path(workspace)
    section: dict[str, Any] = {}
    if os.path.isfile(path):
        try:
            with open(path, encoding="utf-8") as f:
                cfg = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError([f"cannot read {path}: {e}"]) from e
        if not isinstance(cfg, dict):
            raise ConfigError([f"{path} must contain a JSON object"])
        section = cfg.get(CONFIG_SECTION, {})
        if not isinstance(section, dict):
            raise ConfigError([f"'{CONFIG_SECTION}' section must be an object"])
    else:
        _log.info("config_file_missing", path=path, using="defaults")

    config = EngineConfig.from_dict(section)
    env_key = os.environ.get(RERANK_KEY_ENV)
    if env_key and not config.rerank_api_key:
        config = config.with_updates(rerank_api_key=env_key)
    _log.info(
        "config_loaded",
        path=path,
        rerank_provider=config.rerank_provider,
        has_api_key=bool(config.rerank_api_key),
        enable_predictive=config.enable_predictive,
    )
    return config
