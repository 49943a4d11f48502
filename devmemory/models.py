"""Record types for facts, cold facts, proposals, PRD chunks and metrics.

Rows come out of SQLite as ``sqlite3.Row``; ``from_row`` turns them into
plain dataclasses so callers never hold on to live rows.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

RELEVANCE_FLOOR = 0.1
RELEVANCE_CEILING = 1.0


def generate_id(prefix: str) -> str:
    """``<prefix>_<epoch-ms>_<random>``; unique enough for a single writer."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)[:7]}"


def clamp_relevance(value: Optional[float]) -> float:
    if value is None:
        return RELEVANCE_CEILING
    return max(RELEVANCE_FLOOR, min(RELEVANCE_CEILING, float(value)))


def embedding_to_json(vector: Optional[List[float]]) -> Optional[str]:
    if vector is None:
        return None
    return json.dumps([float(v) for v in vector])


def json_to_embedding(raw: Optional[str]) -> List[float]:
    """Decode a stored embedding. Malformed JSON yields an empty vector."""
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Unparseable stored embedding; treating as empty")
        return []
    if not isinstance(data, list):
        return []
    try:
        return [float(v) for v in data]
    except (TypeError, ValueError):
        return []


class ChunkType(str, Enum):
    """PRD chunk types. Definition order is retrieval priority (first wins)."""

    CONSTRAINT = "constraint"
    CRITERIA = "criteria"
    GOAL = "goal"
    TECHNICAL = "technical"
    DESCRIPTION = "description"
    LIST = "list"

    @property
    def priority(self) -> int:
        return list(ChunkType).index(self)

    @classmethod
    def parse(cls, value: Optional[str]) -> "ChunkType":
        try:
            return cls(value)
        except ValueError:
            return cls.DESCRIPTION


class ProposalStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


VOTE_CHOICES = ("approve", "reject")


@dataclass
class Fact:
    """A stored statement plus the metadata the forgetting engine works on."""

    id: str
    text: str
    category: str = "general"
    scope: str = "local"
    model: Optional[str] = None
    embedding: Optional[List[float]] = None
    source_context: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0
    last_accessed: Optional[float] = None
    access_count: int = 0
    recall_count: int = 0
    relevance_score: float = RELEVANCE_CEILING
    promoted_to: Optional[str] = None

    def __post_init__(self) -> None:
        self.relevance_score = clamp_relevance(self.relevance_score)
        self.access_count = max(0, int(self.access_count or 0))
        self.recall_count = max(0, int(self.recall_count or 0))
        if not self.category:
            self.category = "general"
        if not self.scope:
            self.scope = "local"

    @property
    def is_promoted(self) -> bool:
        return self.promoted_to is not None

    @classmethod
    def _row_kwargs(cls, row: Mapping[str, Any]) -> Dict[str, Any]:
        raw = row["embedding"]
        return {
            "id": row["id"],
            "text": row["fact"],
            "category": row["category"],
            "scope": row["scope"],
            "model": row["model"],
            "embedding": json_to_embedding(raw) if raw is not None else None,
            "source_context": row["source_context"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "last_accessed": row["last_accessed"],
            "access_count": row["access_count"],
            "recall_count": row["recall_count"],
            "relevance_score": row["relevance_score"],
            "promoted_to": row["promoted_to"],
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Fact":
        return cls(**cls._row_kwargs(row))

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        d = asdict(self)
        if not include_embedding:
            d.pop("embedding", None)
        return d


@dataclass
class ColdFact(Fact):
    """A demoted fact, waiting for purge or restore."""

    archived_at: float = 0.0
    archive_reason: str = "low_relevance"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ColdFact":
        kwargs = cls._row_kwargs(row)
        kwargs["archived_at"] = row["archived_at"]
        kwargs["archive_reason"] = row["archive_reason"]
        return cls(**kwargs)


@dataclass
class Proposal:
    """A candidate team rule moving through pending -> accepted/rejected."""

    id: str
    rule: str
    category: str = "pattern"
    rationale: str = ""
    source_context: Optional[str] = None
    status: ProposalStatus = ProposalStatus.PENDING
    votes: List[Dict[str, Any]] = field(default_factory=list)
    synced: bool = False
    remote_id: Optional[str] = None
    created_at: float = 0.0
    decided_at: Optional[float] = None

    def __post_init__(self) -> None:
        self.status = ProposalStatus(self.status)
        if self.status is ProposalStatus.PENDING:
            self.decided_at = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Proposal":
        try:
            votes = json.loads(row["votes"] or "[]")
        except (TypeError, ValueError):
            logger.warning("Proposal %s has unreadable votes; treating as none", row["id"])
            votes = []
        return cls(
            id=row["id"],
            rule=row["rule"],
            category=row["category"] or "pattern",
            rationale=row["rationale"] or "",
            source_context=row["source_context"],
            status=row["status"] or ProposalStatus.PENDING.value,
            votes=votes if isinstance(votes, list) else [],
            synced=bool(row["synced"]),
            remote_id=row["remote_id"],
            created_at=row["created_at"],
            decided_at=row["decided_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class PRDChunk:
    id: str
    prd_id: str
    section: str
    content: str
    chunk_type: ChunkType = ChunkType.DESCRIPTION
    embedding: Optional[List[float]] = None
    file_name: Optional[str] = None
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PRDChunk":
        raw = row["embedding"]
        return cls(
            id=row["id"],
            prd_id=row["prd_id"],
            section=row["section"],
            content=row["content"],
            chunk_type=ChunkType.parse(row["chunk_type"]),
            embedding=json_to_embedding(raw) if raw is not None else None,
            file_name=row["file_name"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class MemoryMetric:
    """Append-only entropy snapshot."""

    timestamp: float
    total_facts: int
    cold_facts: int
    entropy_score: float
    avg_relevance: float
    never_accessed: int
    action_taken: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MemoryMetric":
        return cls(
            timestamp=row["timestamp"],
            total_facts=row["total_facts"],
            cold_facts=row["cold_facts"],
            entropy_score=row["entropy_score"],
            avg_relevance=row["avg_relevance"],
            never_accessed=row["never_accessed"],
            action_taken=row["action_taken"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
