"""PRD chunking and token-budgeted context retrieval.

Documents are split on ``##`` headings, then on blank lines, then (for long
paragraphs) greedily by sentence. Each chunk gets one type so retrieval can
favour constraints and acceptance criteria when similarities are close.
"""

from __future__ import annotations

import functools
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import ChunkType, PRDChunk, embedding_to_json, generate_id
from .similarity import cosine_similarity, lexical_score
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500
MIN_PARAGRAPH_CHARS = 30
# Approximation: ~4 chars per token.
CHARS_PER_TOKEN = 4
# Similarities closer than this are ordered by chunk type instead.
TYPE_TIEBREAK_MARGIN = 0.1
LOW_SIMILARITY = 0.1
MIN_SECTIONS_BEFORE_CUTOFF = 3
CONTEXT_HEADER = "## Relevant PRD Context\n\n"

_SECTION_SPLIT_RE = re.compile(r"(?=^##\s+)", re.MULTILINE)
_HEADING_RE = re.compile(r"^##\s+(.+)$", re.MULTILINE)
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

# First match wins; the order is the classification tie-break.
_TYPE_PATTERNS = (
    (ChunkType.CRITERIA, re.compile(
        r"acceptance\s+criteria|\bgiven\b.*\bwhen\b.*\bthen\b", re.IGNORECASE | re.DOTALL)),
    (ChunkType.CONSTRAINT, re.compile(
        r"\bmust\s+not\b|\bmust\s+never\b|\brequired\b|\bshall\b|\bconstraints?\b", re.IGNORECASE)),
    (ChunkType.GOAL, re.compile(
        r"\b(?:goals?|objectives?|purpose|aims?|targets?)\b", re.IGNORECASE)),
    (ChunkType.TECHNICAL, re.compile(
        r"\b(?:apis?|endpoints?|database|schemas?|interfaces?|components?)\b", re.IGNORECASE)),
    (ChunkType.LIST, re.compile(r"^\s*(?:[-*+]|\d+[.)])\s", re.MULTILINE)),
)


def detect_chunk_type(content: str) -> ChunkType:
    for chunk_type, pattern in _TYPE_PATTERNS:
        if pattern.search(content):
            return chunk_type
    return ChunkType.DESCRIPTION


def _split_sentences(paragraph: str, chunk_size: int) -> List[str]:
    """Greedy sentence packing; a sentence is never split.

    A short trailing piece is dropped like a short paragraph would be.
    """
    pieces: List[str] = []
    current = ""
    for sentence in _SENTENCE_SPLIT_RE.split(paragraph):
        sentence = sentence.strip()
        if not sentence:
            continue
        if current and len(current) + 1 + len(sentence) > chunk_size:
            pieces.append(current)
            current = sentence
        else:
            current = f"{current} {sentence}" if current else sentence
    if len(current) > MIN_PARAGRAPH_CHARS:
        pieces.append(current)
    return pieces


def chunk_prd(content: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[Dict[str, Any]]:
    """Split a markdown PRD into ``{"section", "content", "type"}`` dicts."""
    chunks: List[Dict[str, Any]] = []
    for section in _SECTION_SPLIT_RE.split(content or ""):
        if not section.strip():
            continue

        heading = _HEADING_RE.match(section)
        if heading:
            title = heading.group(1).strip()
            body = section[heading.end():].strip()
        else:
            title = "Introduction"
            body = section.strip()

        for para in _PARAGRAPH_SPLIT_RE.split(body):
            para = para.strip()
            if len(para) < MIN_PARAGRAPH_CHARS:
                continue
            pieces = [para] if len(para) <= chunk_size else _split_sentences(para, chunk_size)
            for piece in pieces:
                chunks.append({
                    "section": title,
                    "content": piece,
                    "type": detect_chunk_type(piece),
                })
    return chunks


@dataclass
class PRDContext:
    context: str
    top_relevance: int
    sections: List[str] = field(default_factory=list)
    chunk_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "top_relevance": self.top_relevance,
            "sections": list(self.sections),
            "chunk_count": self.chunk_count,
        }


def _compare_ranked(a: tuple, b: tuple) -> int:
    """Similarity first; near-ties go to the higher-priority chunk type."""
    sim_a, chunk_a = a
    sim_b, chunk_b = b
    if abs(sim_a - sim_b) > TYPE_TIEBREAK_MARGIN:
        return -1 if sim_a > sim_b else 1
    return chunk_a.chunk_type.priority - chunk_b.chunk_type.priority


class PRDStore:
    """Stores chunked PRDs and assembles context windows for a task."""

    def __init__(
        self,
        storage: MemoryStorage,
        embedder: Any,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.storage = storage
        self.embedder = embedder
        self.chunk_size = chunk_size

    async def store_prd(
        self,
        content: str,
        prd_id: str,
        file_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Chunk, embed and store a PRD, replacing any earlier version of *prd_id*."""
        pieces = chunk_prd(content, chunk_size=self.chunk_size)
        results = await self.embedder.embed_batch([p["content"] for p in pieces]) if pieces else []

        now = time.time()
        stored: List[PRDChunk] = [
            PRDChunk(
                id=generate_id("prd"),
                prd_id=prd_id,
                section=piece["section"],
                content=piece["content"],
                chunk_type=piece["type"],
                embedding=result.vector,
                file_name=file_name,
                created_at=now,
            )
            for piece, result in zip(pieces, results)
        ]

        with self.storage.transaction() as conn:
            removed = conn.execute("DELETE FROM prd_chunks WHERE prd_id = ?", (prd_id,)).rowcount
            conn.executemany(
                """INSERT INTO prd_chunks (id, prd_id, section, content, chunk_type,
                                           embedding, file_name, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (c.id, c.prd_id, c.section, c.content, c.chunk_type.value,
                     embedding_to_json(c.embedding), c.file_name, c.created_at)
                    for c in stored
                ],
            )

        logger.info(
            "Stored PRD %s: %d chunks (replaced %d)", prd_id, len(stored), removed
        )
        return {
            "prd_id": prd_id,
            "chunk_count": len(stored),
            "sections": list(dict.fromkeys(c.section for c in stored)),
        }

    def get_chunks(self, prd_id: Optional[str] = None) -> List[PRDChunk]:
        if prd_id:
            rows = self.storage.query(
                "SELECT * FROM prd_chunks WHERE prd_id = ? ORDER BY rowid", (prd_id,)
            )
        else:
            rows = self.storage.query("SELECT * FROM prd_chunks ORDER BY rowid")
        return [PRDChunk.from_row(r) for r in rows]

    async def get_context(
        self,
        query: str,
        max_tokens: int = 2000,
        prd_id: Optional[str] = None,
    ) -> Optional[PRDContext]:
        """Assemble the most relevant chunks into a markdown context window.

        Returns None when there are no chunks to draw from.
        """
        chunks = self.get_chunks(prd_id)
        if not chunks:
            return None

        query_result = await self.embedder.embed(query)
        if query_result.ok and any(c.embedding for c in chunks):
            ranked = [(cosine_similarity(query_result.vector, c.embedding), c) for c in chunks]
        else:
            ranked = [(lexical_score(query, c.content), c) for c in chunks]
        ranked.sort(key=functools.cmp_to_key(_compare_ranked))

        context = CONTEXT_HEADER
        max_chars = max_tokens * CHARS_PER_TOKEN
        sections: List[str] = []
        included = 0

        for similarity, chunk in ranked:
            if similarity < LOW_SIMILARITY and len(sections) >= MIN_SECTIONS_BEFORE_CUTOFF:
                continue
            new_section = chunk.section not in sections
            prefix = f"### {chunk.section}\n" if new_section else ""
            text = f"{prefix}{chunk.content}\n\n"
            if len(context) + len(text) > max_chars:
                break
            if new_section:
                sections.append(chunk.section)
            context += text
            included += 1

        return PRDContext(
            context=context.strip(),
            top_relevance=round(ranked[0][0] * 100),
            sections=sections,
            chunk_count=included,
        )

    def list_prds(self) -> List[Dict[str, Any]]:
        rows = self.storage.query(
            """SELECT prd_id, file_name, COUNT(*) AS chunk_count, MIN(created_at) AS created_at
                 FROM prd_chunks
                GROUP BY prd_id
                ORDER BY MIN(created_at)"""
        )
        return [dict(r) for r in rows]

    def delete_prd(self, prd_id: str) -> bool:
        conn = self.storage._get_conn()
        cur = conn.execute("DELETE FROM prd_chunks WHERE prd_id = ?", (prd_id,))
        conn.commit()
        return cur.rowcount > 0

    def clear_prds(self) -> int:
        conn = self.storage._get_conn()
        cur = conn.execute("DELETE FROM prd_chunks")
        conn.commit()
        logger.info("Cleared %d PRD chunks", cur.rowcount)
        return cur.rowcount
