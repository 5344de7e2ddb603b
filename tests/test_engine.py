#!/usr/bin/env python3
"""Tests for engine.py — execute pipeline, caches, single-flight, host events."""

import os
import sys
import threading
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "scripts"))
from engine import RecallEngine, build_engine
from engine_config import ConfigError, EngineConfig
from recall_sources import LexicalIndex, RecallSource, VectorIndex
from recall_types import Candidate, ExecuteStatus, SourceKind


class FakeClock:
    def __init__(self):
        self.now = 50.0

    def __call__(self):
        return self.now


class FakeTimer:
    created = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.function = function
        self.args = args or ()
        self.cancelled = False
        self.daemon = False
        FakeTimer.created.append(self)

    def start(self):
        pass

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


class CountingSource(RecallSource):
    def __init__(self, texts, entered=None, gate=None):
        self.texts = texts
        self.entered = entered
        self.gate = gate
        self.calls = 0

    def recall(self, query, top_k, config=None):
        self.calls += 1
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        return [Candidate(t, 0.5, SourceKind.KEYWORD) for t in self.texts][:top_k]


class FixedLexicalIndex(LexicalIndex):
    def __init__(self, hits):
        self.hits = hits

    def search(self, keyword, limit):
        return list(self.hits)[:limit]


class FixedVectorIndex(VectorIndex):
    def __init__(self, hits):
        self.hits = hits

    def search(self, query, top_k, threshold):
        return list(self.hits)[:top_k]


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        FakeTimer.created = []
        self.clock = FakeClock()
        self.keyword = CountingSource(["k1", "k2"])
        self.semantic = CountingSource(["s1", "k1"])
        self.engine = self._engine(EngineConfig())

    def tearDown(self):
        self.engine.shutdown()

    def _engine(self, config, **kwargs):
        return RecallEngine(
            config,
            {"keyword": self.keyword, "semantic": self.semantic},
            clock=self.clock,
            timer_factory=FakeTimer,
            **kwargs,
        )


class TestExecute(EngineTestCase):
    def test_recall_dedup_and_truncate(self):
        self.engine.update_config(final_top_k=2)
        result = self.engine.execute("龙在森林中")
        self.assertEqual(result.status, ExecuteStatus.COMPLETED)
        self.assertEqual([c.text for c in result.results], ["k1", "k2"])
        self.assertEqual(result.diagnostics["merged"], 4)
        self.assertEqual(result.diagnostics["deduped"], 3)
        self.assertEqual(result.diagnostics["rerank"], "disabled")
        self.assertIn("elapsed_ms", result.diagnostics)

    def test_repeat_query_served_from_cache(self):
        first = self.engine.execute("龙在森林中")
        second = self.engine.execute("龙在森林中")
        self.assertEqual(second.status, ExecuteStatus.CACHED)
        self.assertEqual(second.results, first.results)
        self.assertEqual(self.keyword.calls, 1)

    def test_cache_expires(self):
        self.engine.execute("龙在森林中")
        self.clock.now += 5.0
        result = self.engine.execute("龙在森林中")
        self.assertEqual(result.status, ExecuteStatus.COMPLETED)
        self.assertEqual(self.keyword.calls, 2)

    def test_different_query_misses_cache(self):
        self.engine.execute("龙在森林中")
        self.assertEqual(self.engine.execute("城堡里的国王").status, ExecuteStatus.COMPLETED)

    def test_empty_query(self):
        result = self.engine.execute("   ")
        self.assertEqual(result.results, [])
        self.assertEqual(result.diagnostics["reason"], "empty_query")
        self.assertEqual(self.keyword.calls, 0)

    def test_disabled(self):
        self.engine.set_enabled(False)
        result = self.engine.execute("龙在森林中")
        self.assertEqual(result.status, ExecuteStatus.DISABLED)
        self.assertEqual(self.keyword.calls, 0)
        self.assertFalse(self.engine.user_input_changed("龙在森林中出现"))

    def test_unexpected_failure_yields_empty_result(self):
        reranker = MagicMock()
        reranker.rerank_with_outcome.side_effect = RuntimeError("boom")
        engine = self._engine(EngineConfig(), reranker=reranker)
        result = engine.execute("龙在森林中")
        self.assertEqual(result.status, ExecuteStatus.COMPLETED)
        self.assertEqual(result.results, [])
        self.assertEqual(result.diagnostics["error"], "boom")

    def test_all_sources_failing_yields_empty_result(self):
        class Broken(RecallSource):
            def recall(self, query, top_k, config=None):
                raise ConnectionError("offline")

        engine = RecallEngine(EngineConfig(), {"keyword": Broken(), "semantic": Broken()})
        result = engine.execute("龙在森林中")
        self.assertEqual(result.results, [])
        self.assertEqual(result.diagnostics["failed_sources"], ["keyword", "semantic"])

    def test_query_history_bounded(self):
        self.engine.update_config(query_history_size=2)
        for q in ("q1 森林", "q2 森林", "q3 森林"):
            self.engine.execute(q)
        self.assertEqual(self.engine.query_history, ["q2 森林", "q3 森林"])


class TestSingleFlight(EngineTestCase):
    def test_concurrent_execute_is_skipped(self):
        entered, gate = threading.Event(), threading.Event()
        self.keyword = CountingSource(["k1"], entered=entered, gate=gate)
        engine = self._engine(EngineConfig())
        results = {}

        worker = threading.Thread(target=lambda: results.setdefault("first", engine.execute("龙")))
        worker.start()
        try:
            self.assertTrue(entered.wait(5))
            second = engine.execute("龙")
            self.assertTrue(second.skipped)
            self.assertEqual(second.diagnostics["reason"], "busy")
            self.assertTrue(engine.stats()["busy"])
        finally:
            gate.set()
            worker.join(5)
        self.assertEqual(results["first"].status, ExecuteStatus.COMPLETED)
        self.assertEqual(self.keyword.calls, 1)
        self.assertFalse(engine.stats()["busy"])


class TestPrefetchIntegration(EngineTestCase):
    def test_prefetched_results_consumed(self):
        self.assertTrue(self.engine.user_input_changed("龙在森林中"))
        FakeTimer.created[-1].fire()
        self.assertEqual(self.keyword.calls, 1)

        result = self.engine.execute("龙在森林中")
        self.assertEqual(result.status, ExecuteStatus.PREFETCHED)
        self.assertEqual([c.text for c in result.results], ["k1", "k2", "s1"])
        self.assertEqual(self.keyword.calls, 1)

    def test_prediction_mismatch_runs_full_recall(self):
        self.engine.user_input_changed("龙在森林中")
        FakeTimer.created[-1].fire()
        result = self.engine.execute("城堡里的国王")
        self.assertEqual(result.status, ExecuteStatus.COMPLETED)
        self.assertEqual(self.keyword.calls, 2)

    def test_chat_switch_discards_prefetch_and_cache(self):
        self.engine.execute("城堡里的国王")
        self.engine.user_input_changed("龙在森林中")
        FakeTimer.created[-1].fire()
        self.engine.chat_switched()

        self.assertEqual(self.engine.execute("龙在森林中").status, ExecuteStatus.COMPLETED)
        self.assertEqual(self.engine.execute("城堡里的国王").status, ExecuteStatus.COMPLETED)
        self.assertEqual(self.engine.query_history, ["龙在森林中", "城堡里的国王"])

    def test_chat_switch_cancels_pending_timer(self):
        self.engine.user_input_changed("龙在森林中")
        self.engine.chat_switched()
        self.assertTrue(FakeTimer.created[-1].cancelled)

    def test_generation_messages_feed_prediction(self):
        self.engine.generation_started("洞穴深处")
        self.engine.user_input_changed("森林中出现了")
        FakeTimer.created[-1].fire()
        self.assertEqual(self.engine.prefetcher.predicted_query, "洞穴深处 森林中出现了")


class TestHostEvents(EngineTestCase):
    def test_dry_run_skipped(self):
        result = self.engine.generation_started("龙在森林中", dry_run=True)
        self.assertEqual(result.status, ExecuteStatus.SKIPPED)
        self.assertEqual(result.diagnostics["reason"], "dry_run")
        self.assertEqual(self.keyword.calls, 0)

    def test_dry_run_executes_when_not_skipped(self):
        self.engine.update_config(skip_dry_run=False)
        result = self.engine.generation_started("龙在森林中", dry_run=True)
        self.assertEqual(result.status, ExecuteStatus.COMPLETED)

    def test_update_config_rejects_invalid(self):
        with self.assertRaises(ConfigError):
            self.engine.update_config(final_top_k=-1)
        with self.assertRaises(ConfigError):
            self.engine.update_config(no_such_option=1)
        self.assertEqual(self.engine.config.final_top_k, 10)

    def test_update_config_camel_case(self):
        self.engine.update_config(finalTopK=1)
        self.assertEqual(self.engine.config.final_top_k, 1)

    def test_stats_redacts_key(self):
        self.engine.update_config(rerank_api_key="sk-secret")
        stats = self.engine.stats()
        self.assertEqual(stats["config"]["rerank_api_key"], "***")
        self.assertEqual(stats["prefetch_state"], "idle")
        self.assertEqual([c["name"] for c in stats["caches"]], ["last_result", "prefetch"])


class RecordingVectorIndex(VectorIndex):
    """Vector index that logs its name on each search and can block on a gate."""

    def __init__(self, name, hits, log, entered=None, gate=None):
        self.name = name
        self.hits = hits
        self.log = log
        self.entered = entered
        self.gate = gate

    def search(self, query, top_k, threshold):
        self.log.append(self.name)
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        return list(self.hits)[:top_k]


class TestConfigSnapshots(unittest.TestCase):
    def test_update_during_execute_keeps_starting_config(self):
        entered, gate = threading.Event(), threading.Event()
        calls = []
        corpus = RecordingVectorIndex("corpus", [{"text": "c1", "similarity": 0.9}], calls,
                                      entered=entered, gate=gate)
        memory = RecordingVectorIndex("memory", [{"text": "m1", "similarity": 0.5}], calls)
        engine = build_engine(EngineConfig(semantic_backends=("corpus", "memory")),
                              vector_indexes={"corpus": corpus, "memory": memory},
                              timer_factory=FakeTimer)
        results = {}
        worker = threading.Thread(target=lambda: results.setdefault("run", engine.execute("森林")))
        worker.start()
        try:
            self.assertTrue(entered.wait(5))
            engine.update_config(semantic_backends=("corpus",))
        finally:
            gate.set()
            worker.join(5)
        self.assertEqual([c.text for c in results["run"].results], ["c1", "m1"])

        corpus.gate = None
        engine.update_config(last_result_cache_ttl=0)
        self.assertEqual([c.text for c in engine.execute("森林").results], ["c1"])

    def test_reenabled_backend_follows_config_order(self):
        calls = []
        corpus = RecordingVectorIndex("corpus", [], calls)
        memory = RecordingVectorIndex("memory", [], calls)
        engine = build_engine(EngineConfig(semantic_backends=("memory",)),
                              vector_indexes={"corpus": corpus, "memory": memory},
                              timer_factory=FakeTimer)
        engine.update_config(semantic_backends=("corpus", "memory"))
        engine.execute("森林")
        self.assertEqual(calls, ["corpus", "memory"])


class TestFailedRuns(EngineTestCase):
    def test_failed_run_is_not_cached(self):
        reranker = MagicMock()
        reranker.rerank_with_outcome.side_effect = [
            RuntimeError("transient"),
            ([Candidate("k1", 0.5, SourceKind.KEYWORD)], "disabled"),
        ]
        engine = self._engine(EngineConfig(), reranker=reranker)
        first = engine.execute("龙在森林中")
        self.assertEqual(first.diagnostics["error"], "transient")

        second = engine.execute("龙在森林中")
        self.assertEqual(second.status, ExecuteStatus.COMPLETED)
        self.assertEqual([c.text for c in second.results], ["k1"])
        self.assertEqual(self.keyword.calls, 2)
        self.assertEqual(engine.query_history, ["龙在森林中"])

    def test_busy_generation_does_not_record_message(self):
        entered, gate = threading.Event(), threading.Event()
        self.keyword = CountingSource(["k1"], entered=entered, gate=gate)
        engine = self._engine(EngineConfig())
        worker = threading.Thread(target=engine.execute, args=("龙",))
        worker.start()
        try:
            self.assertTrue(entered.wait(5))
            self.assertTrue(engine.generation_started("洞穴深处").skipped)
        finally:
            gate.set()
            worker.join(5)

        engine.user_input_changed("森林中出现了")
        FakeTimer.created[-1].fire()
        self.assertEqual(engine.prefetcher.predicted_query, "森林中出现了")


class TestBuildEngine(unittest.TestCase):
    def test_duplicate_across_sources_collapsed(self):
        lexical = FixedLexicalIndex([{"text": "龙出现在森林", "matchScore": 0.9}])
        memory = FixedVectorIndex([
            {"text": "龙出现在森林", "similarity": 0.7},
            {"text": "森林中的精灵", "similarity": 0.6},
        ])
        config = EngineConfig(enable_reranking=False, final_top_k=10)
        engine = build_engine(config, lexical_index=lexical, vector_indexes={"memory": memory})
        try:
            result = engine.execute("龙在森林中")
        finally:
            engine.shutdown()
        self.assertEqual(
            [(c.text, c.score, c.source) for c in result.results],
            [("龙出现在森林", 0.9, SourceKind.KEYWORD), ("森林中的精灵", 0.6, SourceKind.SEMANTIC)],
        )

    def test_semantic_backends_follow_config_order(self):
        config = EngineConfig(semantic_backends=("summary", "memory"))
        indexes = {"memory": FixedVectorIndex([]), "summary": FixedVectorIndex([]),
                   "corpus": FixedVectorIndex([])}
        engine = build_engine(config, vector_indexes=indexes)
        semantic = engine._orchestrator.sources["semantic"]
        self.assertEqual([b.name for b in semantic.backends], ["summary", "memory", "corpus"])
        self.assertEqual([b.enabled for b in semantic.backends], [True, True, False])

    def test_missing_lexical_index_tolerated(self):
        engine = build_engine(EngineConfig())
        self.assertEqual(engine.execute("龙在森林中").results, [])


if __name__ == "__main__":
    unittest.main()
