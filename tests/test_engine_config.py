#!/usr/bin/env python3
"""Tests for engine_config.py — defaults, validation, loading."""

import json
import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "scripts"))
from engine_config import (
    CONFIG_FILENAME,
    RERANK_KEY_ENV,
    ConfigError,
    EngineConfig,
    load_config,
)


class TestDefaults(unittest.TestCase):
    def test_documented_defaults(self):
        cfg = EngineConfig().validate()
        self.assertEqual((cfg.keyword_top_k, cfg.semantic_top_k, cfg.final_top_k), (10, 10, 10))
        self.assertEqual(cfg.rerank_threshold, 10)
        self.assertEqual(cfg.predictive_delay, 500)
        self.assertEqual(cfg.prefetch_cache_ttl, 10000)
        self.assertEqual(cfg.last_result_cache_ttl, 5000)
        self.assertEqual(cfg.rerank_paths, ("/rerank", "/v1/rerank", "/api/rerank"))
        self.assertEqual(cfg.enabled_sources, ("keyword", "semantic"))

    def test_top_k_for(self):
        cfg = EngineConfig(keyword_top_k=3, semantic_top_k=7)
        self.assertEqual(cfg.top_k_for("keyword"), 3)
        self.assertEqual(cfg.top_k_for("semantic"), 7)


class TestValidation(unittest.TestCase):
    def assertInvalid(self, **kwargs):
        with self.assertRaises(ConfigError) as ctx:
            EngineConfig(**kwargs).validate()
        return ctx.exception

    def test_negative_int(self):
        err = self.assertInvalid(final_top_k=-1)
        self.assertIn("final_top_k", err.problems[0])

    def test_bool_is_not_an_int(self):
        self.assertInvalid(keyword_top_k=True)

    def test_zero_allowed(self):
        EngineConfig(final_top_k=0, rerank_threshold=0, predictive_delay=0).validate()

    def test_timeout_must_be_positive(self):
        self.assertInvalid(rerank_timeout=0)
        self.assertInvalid(source_timeout=-1.0)

    def test_threshold_range(self):
        self.assertInvalid(semantic_threshold=1.5)
        EngineConfig(semantic_threshold=1).validate()

    def test_unknown_provider(self):
        self.assertInvalid(rerank_provider="openai")

    def test_unknown_source(self):
        self.assertInvalid(enabled_sources=("keyword", "graph"))

    def test_duplicate_backend(self):
        self.assertInvalid(semantic_backends=("memory", "memory"))

    def test_empty_paths(self):
        self.assertInvalid(rerank_paths=())

    def test_all_problems_reported(self):
        err = self.assertInvalid(final_top_k=-1, enabled="yes")
        self.assertEqual(len(err.problems), 2)
        self.assertIsInstance(err, ValueError)


class TestFromDict(unittest.TestCase):
    def test_camel_case_aliases(self):
        cfg = EngineConfig.from_dict({
            "keywordTopK": 4,
            "prefetchCacheTTL": 2000,
            "contextMessages": 5,
            "enabledSources": ["semantic"],
        })
        self.assertEqual(cfg.keyword_top_k, 4)
        self.assertEqual(cfg.prefetch_cache_ttl, 2000)
        self.assertEqual(cfg.context_window_size, 5)
        self.assertEqual(cfg.enabled_sources, ("semantic",))

    def test_unknown_keys_ignored(self):
        cfg = EngineConfig.from_dict({"final_top_k": 3, "priority": 100})
        self.assertEqual(cfg.final_top_k, 3)

    def test_invalid_value_rejected(self):
        with self.assertRaises(ConfigError):
            EngineConfig.from_dict({"rerankThreshold": "ten"})

    def test_with_updates_is_new_snapshot(self):
        base = EngineConfig()
        updated = base.with_updates(final_top_k=2, rerankPaths=["/x"])
        self.assertEqual(base.final_top_k, 10)
        self.assertEqual(updated.final_top_k, 2)
        self.assertEqual(updated.rerank_paths, ("/x",))

    def test_redacted(self):
        self.assertEqual(EngineConfig(rerank_api_key="sk").redacted()["rerank_api_key"], "***")
        self.assertEqual(EngineConfig().redacted()["rerank_api_key"], "")


class TestLoadConfig(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.mkdtemp()
        patcher = patch.dict(os.environ, {}, clear=False)
        patcher.start()
        self.addCleanup(patcher.stop)
        os.environ.pop(RERANK_KEY_ENV, None)

    def tearDown(self):
        shutil.rmtree(self.td, ignore_errors=True)

    def _write(self, content):
        with open(os.path.join(self.td, CONFIG_FILENAME), "w", encoding="utf-8") as f:
            f.write(content)

    def test_missing_file_gives_defaults(self):
        self.assertEqual(load_config(self.td), EngineConfig())

    def test_reads_engine_section(self):
        self._write(json.dumps({"engine": {"finalTopK": 4, "rerank_model": "m"}, "server": {}}))
        cfg = load_config(self.td)
        self.assertEqual(cfg.final_top_k, 4)
        self.assertEqual(cfg.rerank_model, "m")

    def test_bad_json(self):
        self._write("{not json")
        with self.assertRaises(ConfigError):
            load_config(self.td)

    def test_non_object_section(self):
        self._write(json.dumps({"engine": [1, 2]}))
        with self.assertRaises(ConfigError):
            load_config(self.td)

    def test_invalid_values_fail_load(self):
        self._write(json.dumps({"engine": {"final_top_k": -5}}))
        with self.assertRaises(ConfigError):
            load_config(self.td)

    def test_api_key_from_environment(self):
        os.environ[RERANK_KEY_ENV] = "sk-env"
        self.assertEqual(load_config(self.td).rerank_api_key, "sk-env")

    def test_file_key_wins_over_environment(self):
        os.environ[RERANK_KEY_ENV] = "sk-env"
        self._write(json.dumps({"engine": {"rerankApiKey": "sk-file"}}))
        self.assertEqual(load_config(self.td).rerank_api_key, "sk-file")


if __name__ == "__main__":
    unittest.main()
