"""Tests for the forgetting engine: entropy, decay, cold storage, merge, promotion."""

import time

import pytest

from devmemory.config import Config
from devmemory.facts import FactStore
from devmemory.forgetting import ForgettingEngine, classify_entropy

DAY = 86400.0


@pytest.fixture
def engine(tmp_storage, config):
    return ForgettingEngine(tmp_storage, config)


class TestEntropy:
    def test_empty_store(self, engine):
        stats = engine.get_entropy_stats()
        assert stats.entropy == 0.0
        assert stats.status == "healthy"
        assert stats.needs_compaction is False
        assert stats.total_facts == 0

    def test_fresh_accessed_facts_are_healthy(self, engine, add_fact):
        now = time.time()
        for i in range(10):
            add_fact(f"fact {i}", last_accessed=now, access_count=1)
        stats = engine.get_entropy_stats(max_facts=100, now=now)
        # Only capacity pressure: 0.30 * 10/100
        assert stats.entropy == pytest.approx(0.03)
        assert stats.never_accessed == 0
        assert stats.low_relevance_count == 0

    def test_worst_case_is_one(self, engine, add_fact):
        now = time.time()
        for i in range(5):
            add_fact(f"stale {i}", created_at=now - 60 * DAY, relevance_score=0.1)
        stats = engine.get_entropy_stats(max_facts=5, now=now)
        assert stats.entropy == 1.0
        assert stats.status == "needs_cleanup"
        assert stats.needs_compaction is True
        assert stats.avg_age_days == pytest.approx(60.0, abs=0.1)

    def test_mixed_signals(self, engine, add_fact):
        now = time.time()
        add_fact("old never used", created_at=now - 15 * DAY, relevance_score=0.2)
        add_fact("fresh used", created_at=now - 15 * DAY, last_accessed=now)
        stats = engine.get_entropy_stats(max_facts=4, now=now)
        # 0.30*0.5 + 0.20*0.5 + 0.25*0.5 + 0.25*0.5
        assert stats.entropy == pytest.approx(0.5)
        assert stats.status == "moderate"
        assert stats.cold_facts == 0

    @pytest.mark.parametrize("value,status", [
        (0.0, "healthy"), (0.39, "healthy"), (0.4, "moderate"),
        (0.69, "moderate"), (0.7, "needs_cleanup"), (1.0, "needs_cleanup"),
    ])
    def test_classification(self, value, status):
        assert classify_entropy(value) == status


class TestDecay:
    def test_accessed_fact_decays_with_staleness(self, engine, tmp_storage, add_fact):
        now = time.time()
        fact = add_fact("stale", last_accessed=now - 10 * DAY, relevance_score=1.0)
        result = engine.apply_relevance_decay(decay_rate=0.033, now=now)
        assert result == {"decayed": 1}
        assert tmp_storage.get_fact(fact.id).relevance_score == pytest.approx(1.0 - 0.33)

    def test_floor(self, engine, tmp_storage, add_fact):
        now = time.time()
        fact = add_fact("ancient", last_accessed=now - 100 * DAY, relevance_score=0.5)
        engine.apply_relevance_decay(now=now)
        assert tmp_storage.get_fact(fact.id).relevance_score == pytest.approx(0.1)

    def test_never_accessed_grace_period(self, engine, tmp_storage, add_fact):
        now = time.time()
        young = add_fact("young", created_at=now - 3 * DAY)
        old = add_fact("old", created_at=now - 10 * DAY)
        engine.apply_relevance_decay(never_accessed_penalty=0.1, now=now)
        assert tmp_storage.get_fact(young.id).relevance_score == 1.0
        assert tmp_storage.get_fact(old.id).relevance_score == pytest.approx(0.9)

    def test_monotonic_and_bounded(self, engine, tmp_storage, add_fact):
        now = time.time()
        facts = [
            add_fact("a", last_accessed=now - 2 * DAY, relevance_score=0.8),
            add_fact("b", created_at=now - 30 * DAY, relevance_score=0.35),
            add_fact("c", created_at=now - DAY),
        ]
        previous = {f.id: f.relevance_score for f in facts}
        for _ in range(10):
            engine.apply_relevance_decay(now=now)
            for f in facts:
                score = tmp_storage.get_fact(f.id).relevance_score
                assert 0.1 <= score <= previous[f.id]
                previous[f.id] = score

    async def test_kebab_pascal_scenario(self, tmp_storage, no_embedder, add_fact):
        now = time.time()
        engine = ForgettingEngine(tmp_storage, Config(max_facts=100, openrouter_api_key="k"))
        kebab = add_fact("Use kebab-case for files", created_at=now - 10 * DAY)
        pascal = add_fact(
            "Use PascalCase for components",
            created_at=now - 10 * DAY,
            last_accessed=now,
            access_count=5,
            recall_count=5,
            relevance_score=0.9,
        )

        engine.apply_relevance_decay()
        assert tmp_storage.get_fact(kebab.id).relevance_score <= 0.9
        decayed = tmp_storage.get_fact(pascal.id).relevance_score

        matches = await FactStore(tmp_storage, no_embedder).search("PascalCase components")
        assert matches[0].fact.id == pascal.id
        assert tmp_storage.get_fact(pascal.id).relevance_score >= decayed


class TestColdStorage:
    def test_demote_moves_low_relevance(self, engine, tmp_storage, add_fact):
        low = add_fact("low", relevance_score=0.2)
        high = add_fact("high", relevance_score=0.9)
        result = engine.demote_to_cold_storage(relevance_threshold=0.3)
        assert result == {"demoted": 1, "ids": [low.id]}
        assert tmp_storage.get_fact(low.id) is None
        assert tmp_storage.get_fact(high.id) is not None

        cold = engine.list_cold_facts()
        assert [c.id for c in cold] == [low.id]
        assert cold[0].archive_reason == "low_relevance"
        assert cold[0].text == "low"

    def test_promoted_facts_never_demoted(self, engine, tmp_storage, add_fact):
        kept = add_fact("promoted", relevance_score=0.1, promoted_to="CLAUDE.md")
        assert engine.demote_to_cold_storage()["demoted"] == 0
        assert tmp_storage.get_fact(kept.id) is not None

    def test_purge_by_archive_age(self, engine, add_fact):
        now = time.time()
        old = add_fact("old", relevance_score=0.1)
        engine.demote_to_cold_storage(now=now - 100 * DAY)
        recent = add_fact("recent", relevance_score=0.1)
        engine.demote_to_cold_storage(now=now - 10 * DAY)

        assert engine.purge_cold_facts(retention_days=90, now=now) == {"purged": 1}
        assert [c.id for c in engine.list_cold_facts()] == [recent.id]
        assert old.id not in [c.id for c in engine.list_cold_facts()]

    def test_restore(self, engine, tmp_storage, add_fact):
        fact = add_fact("bring me back", relevance_score=0.15, access_count=4, category="style")
        engine.demote_to_cold_storage()

        before = time.time()
        assert engine.restore_from_cold_storage(fact.id) == {"restored": True, "id": fact.id}
        restored = tmp_storage.get_fact(fact.id)
        assert restored.relevance_score == 0.5
        assert restored.last_accessed >= before
        assert restored.updated_at >= before
        assert restored.access_count == 4
        assert restored.category == "style"
        assert engine.list_cold_facts() == []

    def test_restore_missing(self, engine):
        result = engine.restore_from_cold_storage("fact_missing")
        assert result["restored"] is False
        assert "not found" in result["error"]


class TestMerge:
    def test_three_similar_keeps_most_relevant(self, engine, tmp_storage, add_fact):
        a = add_fact("a", embedding=[1.0, 0.0, 0.0], relevance_score=0.6)
        b = add_fact("b", embedding=[0.99, 0.01, 0.0], relevance_score=0.9)
        c = add_fact("c", embedding=[0.98, 0.02, 0.0], relevance_score=0.7)

        result = engine.merge_similar_facts(threshold=0.95)
        assert result["merged"] == 2
        remaining = [f.id for f in tmp_storage.list_facts()]
        assert remaining == [b.id]
        assert {d["deleted"] for d in result["details"]} == {a.id, c.id}

    def test_tie_keeps_first(self, engine, tmp_storage, add_fact):
        first = add_fact("first", embedding=[1.0, 0.0])
        add_fact("second", embedding=[1.0, 0.0])
        assert engine.merge_similar_facts()["merged"] == 1
        assert [f.id for f in tmp_storage.list_facts()] == [first.id]

    def test_dissimilar_and_unembedded_untouched(self, engine, tmp_storage, add_fact):
        add_fact("x", embedding=[1.0, 0.0])
        add_fact("y", embedding=[0.0, 1.0])
        add_fact("no vector")
        assert engine.merge_similar_facts() == {"merged": 0, "details": []}
        assert len(tmp_storage.list_facts()) == 3


class TestPromotion:
    def test_candidates_scenario(self, engine, add_fact):
        wanted = add_fact("often used", relevance_score=0.9, access_count=5)
        add_fact("rarely used", relevance_score=0.9, access_count=1)
        candidates = engine.get_promotion_candidates(min_relevance=0.8, min_access_count=3)
        assert [f.id for f in candidates] == [wanted.id]

    def test_candidates_ordering_and_exclusion(self, engine, add_fact):
        b = add_fact("b", relevance_score=0.9, access_count=3)
        a = add_fact("a", relevance_score=1.0, access_count=3)
        c = add_fact("c", relevance_score=0.9, access_count=8)
        add_fact("done", relevance_score=1.0, access_count=9, promoted_to="CLAUDE.md")
        assert [f.id for f in engine.get_promotion_candidates()] == [a.id, c.id, b.id]

    def test_mark_promoted_idempotent(self, engine, tmp_storage, add_fact):
        fact = add_fact("rule-worthy")
        first = engine.mark_fact_promoted(fact.id, "CLAUDE.md")
        assert first["promoted"] is True
        second = engine.mark_fact_promoted(fact.id, "other.md")
        assert second["promoted"] is False
        assert second["already_promoted"] is True
        assert tmp_storage.get_fact(fact.id).promoted_to == "CLAUDE.md"

    def test_mark_promoted_unknown(self, engine):
        result = engine.mark_fact_promoted("fact_missing", "CLAUDE.md")
        assert result["promoted"] is False
        assert "error" in result


class TestMetricsAndCompaction:
    def test_record_and_history(self, engine, add_fact):
        add_fact("something")
        first = engine.record_memory_metric("manual")
        second = engine.record_memory_metric("session_end")
        assert first.total_facts == 1
        history = engine.get_memory_metrics()
        assert [m.action_taken for m in history] == ["session_end", "manual"]
        assert history[0] == second

    def test_compact_runs_pipeline(self, engine, tmp_storage, add_fact):
        now = time.time()
        add_fact("weak", created_at=now - 20 * DAY, relevance_score=0.35)
        add_fact("dup one", embedding=[1.0, 0.0], last_accessed=now)
        add_fact("dup two", embedding=[1.0, 0.0], last_accessed=now)

        result = engine.compact()
        assert set(result["results"]) == {"decay", "demote", "merge", "purge"}
        assert result["results"]["demote"]["demoted"] == 1
        assert result["results"]["merge"]["merged"] == 1
        assert result["after"]["total_facts"] == 1
        assert result["after"]["cold_facts"] == 1
        assert engine.get_memory_metrics()[0].action_taken == "full_compact"

    def test_auto_compact_below_threshold(self, engine, add_fact):
        add_fact("fresh", last_accessed=time.time())
        result = engine.auto_compact(threshold=0.7)
        assert result["compacted"] is False
        assert result["reason"] == "below_threshold"
        assert engine.get_memory_metrics() == []

    def test_auto_compact_above_threshold(self, engine, add_fact):
        add_fact("stale", created_at=time.time() - 60 * DAY, relevance_score=0.1)
        result = engine.auto_compact(threshold=0.0)
        assert result["compacted"] is True
        assert engine.get_memory_metrics()[0].action_taken == "auto_compact"

    def test_auto_compact_agrees_with_needs_compaction_at_threshold(self, tmp_storage, add_fact):
        engine = ForgettingEngine(tmp_storage, Config(max_facts=5, openrouter_api_key="k"))
        for i in range(5):
            add_fact(f"fresh {i}", relevance_score=0.2 if i < 3 else 0.9)
        stats = engine.get_entropy_stats()
        # 0.30*5/5 + 0.25*5/5 + 0.25*3/5, age ~0
        assert stats.entropy == 0.7
        assert stats.needs_compaction is False

        result = engine.auto_compact(threshold=0.7)
        assert result["compacted"] is False
        assert engine.get_memory_metrics() == []

    def test_empty_store_never_auto_compacts(self, engine):
        assert engine.get_entropy_stats().needs_compaction is False
        assert engine.auto_compact(threshold=0.0)["compacted"] is False
