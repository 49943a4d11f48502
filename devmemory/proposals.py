"""Rule proposals: pending -> accepted/rejected, with remote-sync bookkeeping."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, List, Optional

from .models import VOTE_CHOICES, Proposal, ProposalStatus, generate_id
from .storage import MemoryStorage

logger = logging.getLogger(__name__)


class ProposalStore:
    def __init__(self, storage: MemoryStorage) -> None:
        self.storage = storage

    def create(
        self,
        rule: str,
        category: Optional[str] = None,
        rationale: Optional[str] = None,
        source_context: Optional[str] = None,
    ) -> str:
        """Insert a pending proposal. Returns its ID."""
        pid = generate_id("proposal")
        conn = self.storage._get_conn()
        conn.execute(
            """INSERT INTO proposals (id, rule, category, rationale, source_context,
                                      status, votes, synced, created_at)
               VALUES (?, ?, ?, ?, ?, 'pending', '[]', 0, ?)""",
            (pid, rule, category or "pattern", rationale or "", source_context, time.time()),
        )
        conn.commit()
        return pid

    def get(self, proposal_id: str) -> Optional[Proposal]:
        rows = self.storage.query("SELECT * FROM proposals WHERE id = ?", (proposal_id,))
        return Proposal.from_row(rows[0]) if rows else None

    def list(self, status: str = "pending") -> List[Proposal]:
        """Proposals with *status*, newest first."""
        rows = self.storage.query(
            "SELECT * FROM proposals WHERE status = ? ORDER BY created_at DESC, rowid DESC",
            (ProposalStatus(status).value,),
        )
        return [Proposal.from_row(r) for r in rows]

    def update(
        self,
        proposal_id: str,
        status: Optional[str] = None,
        synced: Optional[bool] = None,
        remote_id: Optional[str] = None,
        votes: Optional[List[dict]] = None,
    ) -> bool:
        """Sparse update: only the supplied fields change.

        Returns False when nothing was supplied or the proposal does not exist.
        """
        sets: List[str] = []
        params: List[Any] = []

        if status is not None:
            new_status = ProposalStatus(status)
            sets.append("status = ?")
            params.append(new_status.value)
            if new_status is ProposalStatus.PENDING:
                sets.append("decided_at = NULL")
            else:
                # Stamp only on the transition out of pending.
                sets.append("decided_at = CASE WHEN status = 'pending' THEN ? ELSE decided_at END")
                params.append(time.time())
        if synced is not None:
            sets.append("synced = ?")
            params.append(1 if synced else 0)
        if remote_id is not None:
            sets.append("remote_id = ?")
            params.append(remote_id)
        if votes is not None:
            sets.append("votes = ?")
            params.append(json.dumps(list(votes)))

        if not sets:
            return False

        params.append(proposal_id)
        conn = self.storage._get_conn()
        cur = conn.execute(f"UPDATE proposals SET {', '.join(sets)} WHERE id = ?", params)
        conn.commit()
        return cur.rowcount > 0

    def vote(self, proposal_id: str, vote: str, comment: str = "") -> bool:
        """Append a vote. Existing votes are never rewritten."""
        if vote not in VOTE_CHOICES:
            raise ValueError(f"vote must be one of {VOTE_CHOICES}, got {vote!r}")
        with self.storage.transaction() as conn:
            row = conn.execute(
                "SELECT votes FROM proposals WHERE id = ?", (proposal_id,)
            ).fetchone()
            if row is None:
                return False
            try:
                votes = json.loads(row["votes"] or "[]")
            except ValueError:
                logger.warning("Proposal %s had unreadable votes; starting a new list", proposal_id)
                votes = []
            votes.append({"vote": vote, "comment": comment or "", "timestamp": time.time()})
            conn.execute(
                "UPDATE proposals SET votes = ? WHERE id = ?", (json.dumps(votes), proposal_id)
            )
        return True

    def get_unsynced(self) -> List[Proposal]:
        """Pending proposals the sync collaborator has not pushed yet."""
        rows = self.storage.query(
            "SELECT * FROM proposals WHERE synced = 0 AND status = 'pending' ORDER BY rowid"
        )
        return [Proposal.from_row(r) for r in rows]

    def mark_synced(self, proposal_id: str, remote_id: Optional[str] = None) -> bool:
        """Flip ``synced`` once. A second call for the same proposal returns False."""
        conn = self.storage._get_conn()
        cur = conn.execute(
            "UPDATE proposals SET synced = 1, remote_id = COALESCE(?, remote_id) "
            "WHERE id = ? AND synced = 0",
            (remote_id, proposal_id),
        )
        conn.commit()
        return cur.rowcount > 0
