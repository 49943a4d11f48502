"""SQLite storage layer.

Single-file database with:
* Active facts plus a cold archive with the same shape
* Rule proposals, PRD chunks, sync-state key/values
* An append-only memory metrics log
* Auto-create schema on first use

Embeddings are stored as JSON text and compared by linear scan; the store is
sized for a few thousand rows, not for an ANN index.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .models import Fact, embedding_to_json

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_FACT_COLUMNS = """
    id TEXT PRIMARY KEY,
    fact TEXT NOT NULL,
    category TEXT DEFAULT 'general',
    scope TEXT DEFAULT 'local',
    model TEXT,
    embedding TEXT,
    source_context TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    last_accessed REAL,
    access_count INTEGER DEFAULT 0,
    recall_count INTEGER DEFAULT 0,
    relevance_score REAL DEFAULT 1.0,
    promoted_to TEXT
"""

_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS facts (
{_FACT_COLUMNS}
);

CREATE INDEX IF NOT EXISTS idx_facts_category ON facts(category);
CREATE INDEX IF NOT EXISTS idx_facts_scope ON facts(scope);
CREATE INDEX IF NOT EXISTS idx_facts_model ON facts(model);

-- Demoted facts: same shape plus archive stamp
CREATE TABLE IF NOT EXISTS facts_cold (
{_FACT_COLUMNS},
    archived_at REAL NOT NULL,
    archive_reason TEXT DEFAULT 'low_relevance'
);

CREATE INDEX IF NOT EXISTS idx_facts_cold_archived ON facts_cold(archived_at);

CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    rule TEXT NOT NULL,
    category TEXT DEFAULT 'pattern',
    rationale TEXT DEFAULT '',
    source_context TEXT,
    status TEXT DEFAULT 'pending',
    votes TEXT DEFAULT '[]',
    synced INTEGER DEFAULT 0,
    remote_id TEXT,
    created_at REAL NOT NULL,
    decided_at REAL
);

CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status);

CREATE TABLE IF NOT EXISTS prd_chunks (
    id TEXT PRIMARY KEY,
    prd_id TEXT NOT NULL,
    section TEXT,
    content TEXT NOT NULL,
    chunk_type TEXT,
    embedding TEXT,
    file_name TEXT,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_prd_prd_id ON prd_chunks(prd_id);

CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS memory_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    total_facts INTEGER NOT NULL,
    cold_facts INTEGER NOT NULL,
    entropy_score REAL NOT NULL,
    avg_relevance REAL NOT NULL,
    never_accessed INTEGER NOT NULL,
    action_taken TEXT
)
"""

# Columns added after the first release; older databases get them on open.
_DECAY_COLUMNS = (
    ("last_accessed REAL", "last_accessed"),
    ("access_count INTEGER DEFAULT 0", "access_count"),
    ("recall_count INTEGER DEFAULT 0", "recall_count"),
    ("relevance_score REAL DEFAULT 1.0", "relevance_score"),
    ("promoted_to TEXT", "promoted_to"),
)

_FACT_INSERT_COLUMNS = (
    "id, fact, category, scope, model, embedding, source_context, "
    "created_at, updated_at, last_accessed, access_count, recall_count, "
    "relevance_score, promoted_to"
)


class MemoryStorage:
    """SQLite-backed storage for facts, proposals, PRD chunks and metrics."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path is None:
            from .config import load_config

            db_path = load_config().db_path
        self.db_path = db_path

        # Ensure parent directory exists
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "MemoryStorage":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several statements as one commit; roll back and re-raise on error."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return self._get_conn().execute(sql, tuple(params)).fetchall()

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self._get_conn().execute(sql, tuple(params)).fetchone()
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA_SQL)

        def _col_exists(table: str, col: str) -> bool:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
            return any(r[1] == col for r in rows)

        def _add_col(table: str, coldef: str, colname: str) -> None:
            if _col_exists(table, colname):
                return
            try:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {coldef}")
                logger.info("Schema migration: added %s.%s", table, colname)
            except sqlite3.OperationalError as exc:
                logger.debug("Schema migration skipped for %s.%s: %s", table, colname, exc)

        for table in ("facts", "facts_cold"):
            for coldef, colname in _DECAY_COLUMNS:
                _add_col(table, coldef, colname)

        # Indexes on decay columns need the columns to exist first.
        conn.execute("CREATE INDEX IF NOT EXISTS idx_facts_relevance ON facts(relevance_score)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_facts_last_accessed ON facts(last_accessed)")
        conn.commit()

    # ------------------------------------------------------------------
    # Fact CRUD
    # ------------------------------------------------------------------

    @staticmethod
    def fact_params(fact: Fact) -> tuple:
        return (
            fact.id,
            fact.text,
            fact.category,
            fact.scope,
            fact.model,
            embedding_to_json(fact.embedding),
            fact.source_context,
            fact.created_at,
            fact.updated_at,
            fact.last_accessed,
            fact.access_count,
            fact.recall_count,
            fact.relevance_score,
            fact.promoted_to,
        )

    def insert_fact(self, fact: Fact) -> str:
        """Insert a fact row. Returns the fact ID."""
        conn = self._get_conn()
        conn.execute(
            f"INSERT INTO facts ({_FACT_INSERT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            self.fact_params(fact),
        )
        conn.commit()
        return fact.id

    def get_fact(self, fact_id: str) -> Optional[Fact]:
        row = self._get_conn().execute(
            "SELECT * FROM facts WHERE id = ?", (fact_id,)
        ).fetchone()
        return Fact.from_row(row) if row else None

    def list_facts(
        self,
        category: Optional[str] = None,
        model: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> List[Fact]:
        """Active facts in insertion order, optionally filtered."""
        sql = "SELECT * FROM facts WHERE 1=1"
        params: List[Any] = []
        if category:
            sql += " AND category = ?"
            params.append(category)
        if model:
            sql += " AND model = ?"
            params.append(model)
        if scope:
            sql += " AND scope = ?"
            params.append(scope)
        sql += " ORDER BY rowid"
        return [Fact.from_row(r) for r in self.query(sql, params)]

    def delete_fact(self, fact_id: str) -> bool:
        """Delete an active fact. Returns True if found."""
        conn = self._get_conn()
        cur = conn.execute("DELETE FROM facts WHERE id = ?", (fact_id,))
        conn.commit()
        return cur.rowcount > 0

    def record_access(self, fact_ids: Sequence[str], now: Optional[float] = None) -> int:
        """Bump access bookkeeping and boost relevance (+0.1, capped at 1.0)."""
        if not fact_ids:
            return 0
        now = time.time() if now is None else now
        updated = 0
        with self.transaction() as conn:
            for fid in fact_ids:
                cur = conn.execute(
                    """
                    UPDATE facts
                       SET last_accessed = ?,
                           access_count = COALESCE(access_count, 0) + 1,
                           recall_count = COALESCE(recall_count, 0) + 1,
                           relevance_score = MIN(COALESCE(relevance_score, 1.0) + 0.1, 1.0)
                     WHERE id = ?
                    """,
                    (now, fid),
                )
                updated += cur.rowcount
        return updated

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    def get_sync_state(self, key: str) -> Optional[str]:
        row = self._get_conn().execute(
            "SELECT value FROM sync_state WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_sync_state(self, key: str, value: str) -> None:
        """Last write wins per key."""
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, time.time()),
        )
        conn.commit()

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return database statistics."""
        conn = self._get_conn()

        def grouped(sql: str) -> Dict[str, int]:
            return {(r[0] or "null"): r[1] for r in conn.execute(sql).fetchall()}

        return {
            "facts": {
                "total": self.scalar("SELECT COUNT(*) FROM facts"),
                "cold": self.scalar("SELECT COUNT(*) FROM facts_cold"),
                "by_category": grouped("SELECT category, COUNT(*) FROM facts GROUP BY category"),
                "by_scope": grouped("SELECT scope, COUNT(*) FROM facts GROUP BY scope"),
                "promoted": self.scalar("SELECT COUNT(*) FROM facts WHERE promoted_to IS NOT NULL"),
            },
            "proposals": {
                "pending": self.scalar("SELECT COUNT(*) FROM proposals WHERE status = 'pending'"),
                "total": self.scalar("SELECT COUNT(*) FROM proposals"),
            },
            "prds": {
                "total": self.scalar("SELECT COUNT(DISTINCT prd_id) FROM prd_chunks"),
                "chunks": self.scalar("SELECT COUNT(*) FROM prd_chunks"),
            },
        }
