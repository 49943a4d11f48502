"""Forgetting engine: entropy scoring, decay, demotion, merge, purge, promotion.

The active fact table is kept small by a periodic pass:

    decay -> demote to cold storage -> merge near-duplicates -> purge old cold facts

Entropy is a plain weighted blend of four pressure signals so the numbers
stay auditable and the thresholds tunable::

    0.30 * min(1, total / max_facts)
  + 0.20 * min(1, avg_age_days / 30)
  + 0.25 * never_accessed / total
  + 0.25 * count(relevance < 0.3) / total

All multi-row operations run in a single transaction.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Set

from .config import Config, load_config
from .models import RELEVANCE_FLOOR, ColdFact, Fact, MemoryMetric
from .similarity import cosine_similarity
from .storage import _FACT_INSERT_COLUMNS, MemoryStorage

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0

# Entropy weights
CAPACITY_WEIGHT = 0.30
AGE_WEIGHT = 0.20
NEVER_ACCESSED_WEIGHT = 0.25
LOW_RELEVANCE_WEIGHT = 0.25
AGE_SATURATION_DAYS = 30.0
LOW_RELEVANCE = 0.3

HEALTHY_BELOW = 0.4
MODERATE_BELOW = 0.7

RESTORED_RELEVANCE = 0.5


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class EntropyStats:
    entropy: float
    status: str  # healthy | moderate | needs_cleanup
    needs_compaction: bool
    total_facts: int
    cold_facts: int
    max_facts: int
    avg_relevance: float
    never_accessed: int
    low_relevance_count: int
    avg_age_days: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_entropy(entropy: float) -> str:
    if entropy < HEALTHY_BELOW:
        return "healthy"
    if entropy < MODERATE_BELOW:
        return "moderate"
    return "needs_cleanup"


class ForgettingEngine:
    """Maintenance operations over the raw fact tables."""

    def __init__(self, storage: MemoryStorage, config: Optional[Config] = None) -> None:
        self.storage = storage
        self.config = config or load_config()

    # ------------------------------------------------------------------
    # Entropy
    # ------------------------------------------------------------------

    def get_entropy_stats(
        self,
        max_facts: Optional[int] = None,
        now: Optional[float] = None,
    ) -> EntropyStats:
        max_facts = max_facts or self.config.max_facts
        now = time.time() if now is None else now

        row = self.storage.query(
            """SELECT COUNT(*) AS total,
                      AVG(relevance_score) AS avg_relevance,
                      AVG(? - created_at) AS avg_age,
                      SUM(CASE WHEN last_accessed IS NULL THEN 1 ELSE 0 END) AS never_accessed,
                      SUM(CASE WHEN relevance_score < ? THEN 1 ELSE 0 END) AS low_relevance
                 FROM facts""",
            (now, LOW_RELEVANCE),
        )[0]
        cold = self.storage.scalar("SELECT COUNT(*) FROM facts_cold") or 0

        total = row["total"] or 0
        never_accessed = row["never_accessed"] or 0
        low_relevance = row["low_relevance"] or 0
        avg_age_days = max(0.0, (row["avg_age"] or 0.0) / SECONDS_PER_DAY)
        avg_relevance = row["avg_relevance"] if row["avg_relevance"] is not None else 0.0

        if total == 0:
            entropy = 0.0
        else:
            entropy = (
                CAPACITY_WEIGHT * _clamp01(total / max(1, max_facts))
                + AGE_WEIGHT * _clamp01(avg_age_days / AGE_SATURATION_DAYS)
                + NEVER_ACCESSED_WEIGHT * _clamp01(never_accessed / total)
                + LOW_RELEVANCE_WEIGHT * _clamp01(low_relevance / total)
            )
        entropy = round(_clamp01(entropy), 2)

        return EntropyStats(
            entropy=entropy,
            status=classify_entropy(entropy),
            needs_compaction=entropy > self.config.entropy_threshold,
            total_facts=total,
            cold_facts=cold,
            max_facts=max_facts,
            avg_relevance=round(avg_relevance, 3),
            never_accessed=never_accessed,
            low_relevance_count=low_relevance,
            avg_age_days=round(avg_age_days, 1),
        )

    # ------------------------------------------------------------------
    # Decay
    # ------------------------------------------------------------------

    def apply_relevance_decay(
        self,
        decay_rate: Optional[float] = None,
        never_accessed_penalty: Optional[float] = None,
        now: Optional[float] = None,
    ) -> Dict[str, int]:
        """Lower relevance of stale facts.

        Accessed facts decay in proportion to days since last access.
        Never-accessed facts past the grace period pay a flat penalty.
        Scores never go up and never below the floor.
        """
        rate = self.config.decay_rate if decay_rate is None else decay_rate
        penalty = (
            self.config.never_accessed_penalty
            if never_accessed_penalty is None
            else never_accessed_penalty
        )
        now = time.time() if now is None else now
        grace_cutoff = now - self.config.never_accessed_grace_days * SECONDS_PER_DAY

        rows = self.storage.query(
            "SELECT id, relevance_score, last_accessed, created_at FROM facts"
        )
        updates = []
        for row in rows:
            current = row["relevance_score"] if row["relevance_score"] is not None else 1.0
            if row["last_accessed"] is not None:
                days = max(0.0, (now - row["last_accessed"]) / SECONDS_PER_DAY)
                new = current * (1.0 - rate * days)
            elif row["created_at"] < grace_cutoff:
                new = current - penalty
            else:
                continue
            new = min(current, max(RELEVANCE_FLOOR, new))
            if new < current:
                updates.append((new, now, row["id"]))

        if updates:
            with self.storage.transaction() as conn:
                conn.executemany(
                    "UPDATE facts SET relevance_score = ?, updated_at = ? WHERE id = ?",
                    updates,
                )
        logger.info("Relevance decay: decayed=%d (rate=%.3f penalty=%.2f)", len(updates), rate, penalty)
        return {"decayed": len(updates)}

    # ------------------------------------------------------------------
    # Cold storage
    # ------------------------------------------------------------------

    def demote_to_cold_storage(
        self,
        relevance_threshold: Optional[float] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Move unpromoted facts below *relevance_threshold* into ``facts_cold``."""
        threshold = (
            self.config.demotion_threshold if relevance_threshold is None else relevance_threshold
        )
        now = time.time() if now is None else now

        with self.storage.transaction() as conn:
            ids = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM facts WHERE relevance_score < ? AND promoted_to IS NULL "
                    "ORDER BY rowid",
                    (threshold,),
                ).fetchall()
            ]
            for fid in ids:
                conn.execute(
                    f"INSERT INTO facts_cold ({_FACT_INSERT_COLUMNS}, archived_at, archive_reason) "
                    f"SELECT {_FACT_INSERT_COLUMNS}, ?, 'low_relevance' FROM facts WHERE id = ?",
                    (now, fid),
                )
                conn.execute("DELETE FROM facts WHERE id = ?", (fid,))

        if ids:
            logger.info("Demoted %d facts to cold storage", len(ids))
        return {"demoted": len(ids), "ids": ids}

    def purge_cold_facts(
        self,
        retention_days: Optional[int] = None,
        now: Optional[float] = None,
    ) -> Dict[str, int]:
        days = self.config.cold_retention_days if retention_days is None else retention_days
        now = time.time() if now is None else now
        cutoff = now - days * SECONDS_PER_DAY
        with self.storage.transaction() as conn:
            purged = conn.execute(
                "DELETE FROM facts_cold WHERE archived_at < ?", (cutoff,)
            ).rowcount
        if purged:
            logger.info("Purged %d cold facts older than %d days", purged, days)
        return {"purged": purged}

    def list_cold_facts(self, limit: int = 50) -> List[ColdFact]:
        rows = self.storage.query(
            "SELECT * FROM facts_cold ORDER BY archived_at DESC, rowid DESC LIMIT ?", (limit,)
        )
        return [ColdFact.from_row(r) for r in rows]

    def restore_from_cold_storage(
        self, fact_id: str, now: Optional[float] = None
    ) -> Dict[str, Any]:
        """Bring a cold fact back with a fresh-start relevance of 0.5."""
        now = time.time() if now is None else now
        with self.storage.transaction() as conn:
            row = conn.execute("SELECT * FROM facts_cold WHERE id = ?", (fact_id,)).fetchone()
            if row is None:
                return {"restored": False, "error": f"Fact {fact_id} not found in cold storage"}
            cold = ColdFact.from_row(row)
            fact = Fact(
                id=cold.id,
                text=cold.text,
                category=cold.category,
                scope=cold.scope,
                model=cold.model,
                embedding=cold.embedding,
                source_context=cold.source_context,
                created_at=cold.created_at,
                updated_at=now,
                last_accessed=now,
                access_count=cold.access_count,
                recall_count=cold.recall_count,
                relevance_score=RESTORED_RELEVANCE,
                promoted_to=cold.promoted_to,
            )
            conn.execute(
                f"INSERT OR REPLACE INTO facts ({_FACT_INSERT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                MemoryStorage.fact_params(fact),
            )
            conn.execute("DELETE FROM facts_cold WHERE id = ?", (fact_id,))
        logger.info("Restored fact %s from cold storage", fact_id)
        return {"restored": True, "id": fact_id}

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge_similar_facts(self, threshold: Optional[float] = None) -> Dict[str, Any]:
        """Delete near-duplicate facts, keeping the more relevant one of each pair.

        Pairwise O(n^2) over embedded facts. Demotion and purge keep the
        active set small enough for this to stay cheap.
        """
        threshold = self.config.merge_similarity_threshold if threshold is None else threshold
        facts = [f for f in self.storage.list_facts() if f.embedding]

        to_delete: Set[str] = set()
        details: List[Dict[str, Any]] = []
        for i, first in enumerate(facts):
            if first.id in to_delete:
                continue
            for second in facts[i + 1:]:
                if second.id in to_delete:
                    continue
                similarity = cosine_similarity(first.embedding, second.embedding)
                if similarity < threshold:
                    continue
                if second.relevance_score > first.relevance_score:
                    keep, drop = second, first
                else:
                    keep, drop = first, second
                to_delete.add(drop.id)
                details.append({
                    "kept": keep.id,
                    "deleted": drop.id,
                    "similarity": round(similarity, 4),
                })
                if drop is first:
                    break

        if to_delete:
            with self.storage.transaction() as conn:
                conn.executemany("DELETE FROM facts WHERE id = ?", [(fid,) for fid in to_delete])
            logger.info("Merged %d near-duplicate facts", len(to_delete))
        return {"merged": len(to_delete), "details": details}

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    def get_promotion_candidates(
        self,
        min_relevance: Optional[float] = None,
        min_access_count: Optional[int] = None,
    ) -> List[Fact]:
        min_relevance = (
            self.config.promotion_min_relevance if min_relevance is None else min_relevance
        )
        min_access_count = (
            self.config.promotion_min_access if min_access_count is None else min_access_count
        )
        rows = self.storage.query(
            """SELECT * FROM facts
                WHERE promoted_to IS NULL
                  AND relevance_score >= ?
                  AND access_count >= ?
                ORDER BY relevance_score DESC, access_count DESC, rowid""",
            (min_relevance, min_access_count),
        )
        return [Fact.from_row(r) for r in rows]

    def mark_fact_promoted(self, fact_id: str, destination: str) -> Dict[str, Any]:
        """Record that a fact became a rule. Promoting twice is a no-op."""
        with self.storage.transaction() as conn:
            row = conn.execute(
                "SELECT promoted_to FROM facts WHERE id = ?", (fact_id,)
            ).fetchone()
            if row is None:
                return {"promoted": False, "error": f"Fact {fact_id} not found"}
            if row["promoted_to"] is not None:
                return {
                    "promoted": False,
                    "already_promoted": True,
                    "promoted_to": row["promoted_to"],
                }
            conn.execute(
                "UPDATE facts SET promoted_to = ?, updated_at = ? WHERE id = ?",
                (destination, time.time(), fact_id),
            )
        logger.info("Promoted fact %s to %s", fact_id, destination)
        return {"promoted": True, "id": fact_id, "promoted_to": destination}

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_memory_metric(self, action: str = "manual") -> MemoryMetric:
        stats = self.get_entropy_stats()
        metric = MemoryMetric(
            timestamp=time.time(),
            total_facts=stats.total_facts,
            cold_facts=stats.cold_facts,
            entropy_score=stats.entropy,
            avg_relevance=stats.avg_relevance,
            never_accessed=stats.never_accessed,
            action_taken=action,
        )
        conn = self.storage._get_conn()
        conn.execute(
            """INSERT INTO memory_metrics (timestamp, total_facts, cold_facts, entropy_score,
                                           avg_relevance, never_accessed, action_taken)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (metric.timestamp, metric.total_facts, metric.cold_facts, metric.entropy_score,
             metric.avg_relevance, metric.never_accessed, metric.action_taken),
        )
        conn.commit()
        return metric

    def get_memory_metrics(self, limit: int = 30) -> List[MemoryMetric]:
        """Newest first."""
        rows = self.storage.query(
            "SELECT * FROM memory_metrics ORDER BY timestamp DESC, id DESC LIMIT ?", (limit,)
        )
        return [MemoryMetric.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def compact(self, action: str = "full_compact") -> Dict[str, Any]:
        before = self.get_entropy_stats()
        results = {
            "decay": self.apply_relevance_decay(),
            "demote": self.demote_to_cold_storage(),
            "merge": self.merge_similar_facts(),
            "purge": self.purge_cold_facts(),
        }
        self.record_memory_metric(action)
        after = self.get_entropy_stats()
        logger.info(
            "Compaction (%s): entropy %.2f -> %.2f, facts %d -> %d",
            action, before.entropy, after.entropy, before.total_facts, after.total_facts,
        )
        return {"before": before.to_dict(), "after": after.to_dict(), "results": results}

    def auto_compact(self, threshold: Optional[float] = None) -> Dict[str, Any]:
        """Compact only when entropy is above *threshold*, as ``needs_compaction`` reports."""
        threshold = self.config.entropy_threshold if threshold is None else threshold
        stats = self.get_entropy_stats()
        if stats.entropy <= threshold:
            logger.debug("Auto-compact skipped: entropy %.2f <= %.2f", stats.entropy, threshold)
            return {
                "compacted": False,
                "reason": "below_threshold",
                "entropy": stats.entropy,
                "threshold": threshold,
            }
        result = self.compact("auto_compact")
        result["compacted"] = True
        return result
