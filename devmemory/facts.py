"""Fact store: CRUD plus ranked search with access tracking.

Ranking is semantic (cosine over stored embeddings) when the query can be
embedded and at least one candidate has a vector; otherwise it is lexical.
Candidates without a vector are always scored lexically, and a fact whose
text equals the query scores 1.0 in either mode.
Every fact a tracked search returns is reinforced, which is the only way a
fact's relevance ever goes up.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .models import RELEVANCE_CEILING, Fact, generate_id
from .similarity import cosine_similarity, lexical_score
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

ACCESS_BOOST = 0.1


@dataclass
class FactMatch:
    """A search hit."""

    fact: Fact
    score: float
    mode: str  # "semantic" | "lexical"

    def to_dict(self) -> Dict[str, Any]:
        d = self.fact.to_dict()
        d["score"] = round(self.score, 4)
        d["relevance"] = round(self.score * 100)
        d["mode"] = self.mode
        return d


class FactStore:
    """Facts API used by the CLI, the HTTP API and the sync collaborator."""

    def __init__(self, storage: MemoryStorage, embedder: Any) -> None:
        self.storage = storage
        self.embedder = embedder

    async def store(
        self,
        text: str,
        category: Optional[str] = None,
        scope: Optional[str] = None,
        model: Optional[str] = None,
        source_context: Optional[str] = None,
    ) -> str:
        """Embed (when possible) and insert a fact. Returns its ID."""
        result = await self.embedder.embed(text)
        now = time.time()
        fact = Fact(
            id=generate_id("fact"),
            text=text,
            category=category or "general",
            scope=scope or "local",
            model=model,
            embedding=result.vector,
            source_context=source_context,
            created_at=now,
            updated_at=now,
        )
        self.storage.insert_fact(fact)
        logger.debug(
            "Stored fact %s (category=%s, embedded=%s)", fact.id, fact.category, result.ok
        )
        return fact.id

    async def search(
        self,
        query: str,
        category: Optional[str] = None,
        model: Optional[str] = None,
        scope: Optional[str] = None,
        limit: int = 10,
        track_access: bool = True,
    ) -> List[FactMatch]:
        candidates = self.storage.list_facts(category=category, model=model, scope=scope)
        if not candidates or limit <= 0:
            return []

        query_result = await self.embedder.embed(query)
        semantic = query_result.ok and any(f.embedding for f in candidates)

        exact = query.strip().lower()
        scored = []
        for f in candidates:
            if f.text.strip().lower() == exact:
                score = 1.0
            elif semantic and f.embedding:
                score = cosine_similarity(query_result.vector, f.embedding)
            else:
                # Rows stored while the provider was down are scored lexically.
                score = lexical_score(query, f.text)
            scored.append((f, score))

        mode = "semantic" if semantic else "lexical"
        # sort() is stable, so equal scores keep row order.
        scored.sort(key=lambda pair: pair[1], reverse=True)
        matches = [FactMatch(fact=f, score=s, mode=mode) for f, s in scored if s > 0][:limit]

        if track_access and matches:
            now = time.time()
            self.storage.record_access([m.fact.id for m in matches], now=now)
            for m in matches:
                m.fact = dataclasses.replace(
                    m.fact,
                    last_accessed=now,
                    access_count=m.fact.access_count + 1,
                    recall_count=m.fact.recall_count + 1,
                    relevance_score=min(RELEVANCE_CEILING, m.fact.relevance_score + ACCESS_BOOST),
                )

        return matches

    def get(self, fact_id: str) -> Optional[Fact]:
        return self.storage.get_fact(fact_id)

    def delete(self, fact_id: str) -> bool:
        deleted = self.storage.delete_fact(fact_id)
        if not deleted:
            logger.debug("delete: fact %s not found", fact_id)
        return deleted

    def get_all(self, scope: Optional[str] = None) -> List[Fact]:
        """All active facts, for export and sync. Does not count as access."""
        return self.storage.list_facts(scope=scope)
