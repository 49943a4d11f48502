"""Tests for the FastAPI HTTP API.

Uses httpx AsyncClient against the FastAPI app. We manually initialise
the module-level state that normally comes from the lifespan handler,
pointing it at a temp database so no real project DB is touched.
"""

from __future__ import annotations

import time

import pytest
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

import devmemory.api as api_module
from devmemory.api import app
from devmemory.config import Config
from devmemory.facts import FactStore
from devmemory.forgetting import ForgettingEngine
from devmemory.middleware import APIKeyMiddleware
from devmemory.prd import PRDStore
from devmemory.proposals import ProposalStore
from devmemory.storage import MemoryStorage


SAMPLE_PRD = """\
## Constraints
The system must not store secrets in the notes database.

## Goals
The goal is to make notes searchable for the whole team.
"""


@pytest.fixture(autouse=True)
def _init_api_state(tmp_path, no_embedder):
    """Wire the api module globals to a temp DB so every test starts clean."""
    cfg = Config(
        project_root=str(tmp_path),
        db_path=str(tmp_path / "api.db"),
        openrouter_api_key="test-key",
    )
    storage = MemoryStorage(cfg.db_path)

    api_module._config = cfg
    api_module._storage = storage
    api_module._embedder = no_embedder
    api_module._facts = FactStore(storage, no_embedder)
    api_module._proposals = ProposalStore(storage)
    api_module._prds = PRDStore(storage, no_embedder)
    api_module._engine = ForgettingEngine(storage, cfg)
    api_module._start_time = time.time()

    yield

    storage.close()
    for name in ("_config", "_storage", "_embedder", "_facts", "_proposals", "_prds", "_engine"):
        setattr(api_module, name, None)


@pytest.fixture
async def client():
    """Create a test HTTP client against the FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _store(client, text, **extra):
    resp = await client.post("/v1/facts", json={"text": text, **extra})
    assert resp.status_code == 200
    return resp.json()["id"]


# ---------------------------------------------------------------------------
# Health / stats
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestHealth:
    async def test_health_returns_ok(self, client):
        resp = await client.get("/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["embeddings"] is False

    async def test_stats_after_store(self, client):
        await _store(client, "Use kebab-case for files")
        resp = await client.get("/v1/stats")
        assert resp.status_code == 200
        assert resp.json()["facts"]["total"] == 1

    async def test_uninitialised_returns_503(self, client):
        api_module._storage = None
        resp = await client.get("/v1/stats")
        assert resp.status_code == 503
        assert resp.json()["status_code"] == 503


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestFacts:
    async def test_store_and_search(self, client):
        fid = await _store(client, "Use kebab-case for files", category="naming")
        resp = await client.post("/v1/facts/search", json={"query": "kebab files"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["count"] == 1
        assert data["search_mode"] == "lexical"
        assert data["results"][0]["id"] == fid
        assert data["results"][0]["access_count"] == 1

    async def test_store_validation_error(self, client):
        resp = await client.post("/v1/facts", json={})
        assert resp.status_code == 422
        resp = await client.post("/v1/facts", json={"text": "x", "scope": "global"})
        assert resp.status_code == 422

    async def test_list_and_delete(self, client):
        fid = await _store(client, "temporary fact", scope="team")
        resp = await client.get("/v1/facts", params={"scope": "team"})
        assert resp.json()["count"] == 1

        resp = await client.delete(f"/v1/facts/{fid}")
        assert resp.json() == {"deleted": True, "id": fid}
        resp = await client.delete(f"/v1/facts/{fid}")
        assert resp.json()["deleted"] is False

    async def test_promotion_flow(self, client):
        fid = await _store(client, "Always pin dependencies")
        for _ in range(3):
            await client.post("/v1/facts/search", json={"query": "pin dependencies"})

        resp = await client.get("/v1/facts/candidates")
        assert [c["id"] for c in resp.json()["candidates"]] == [fid]

        resp = await client.post(f"/v1/facts/{fid}/promote", json={"destination": "CLAUDE.md"})
        assert resp.json()["promoted"] is True
        resp = await client.post(f"/v1/facts/{fid}/promote", json={"destination": "CLAUDE.md"})
        assert resp.status_code == 200
        assert resp.json()["already_promoted"] is True

        resp = await client.get("/v1/facts/candidates")
        assert resp.json()["count"] == 0

    async def test_promote_unknown(self, client):
        resp = await client.post("/v1/facts/fact_missing/promote", json={"destination": "x"})
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestProposals:
    async def test_lifecycle(self, client):
        resp = await client.post("/v1/proposals", json={"rule": "Run tests before push"})
        pid = resp.json()["id"]

        resp = await client.get("/v1/proposals/unsynced")
        assert [p["id"] for p in resp.json()["proposals"]] == [pid]

        resp = await client.post(f"/v1/proposals/{pid}/votes", json={"vote": "approve"})
        assert resp.json()["voted"] is True

        resp = await client.patch(f"/v1/proposals/{pid}", json={"status": "accepted"})
        assert resp.json()["updated"] is True

        resp = await client.get("/v1/proposals", params={"status": "accepted"})
        items = resp.json()["proposals"]
        assert items[0]["status"] == "accepted"
        assert items[0]["decided_at"] is not None
        assert len(items[0]["votes"]) == 1

    async def test_invalid_vote_rejected(self, client):
        pid = (await client.post("/v1/proposals", json={"rule": "r"})).json()["id"]
        resp = await client.post(f"/v1/proposals/{pid}/votes", json={"vote": "maybe"})
        assert resp.status_code == 422

    async def test_update_errors(self, client):
        pid = (await client.post("/v1/proposals", json={"rule": "r"})).json()["id"]
        assert (await client.patch(f"/v1/proposals/{pid}", json={})).status_code == 400
        resp = await client.patch("/v1/proposals/proposal_missing", json={"synced": True})
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# PRDs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestPRDs:
    async def test_ingest_and_context(self, client):
        resp = await client.post("/v1/prds", json={"prd_id": "notes", "content": SAMPLE_PRD})
        assert resp.json()["chunk_count"] == 2

        resp = await client.post("/v1/prds/context", json={"query": "notes database"})
        data = resp.json()
        assert data["found"] is True
        assert data["sections"][0] == "Constraints"
        assert data["context"].startswith("## Relevant PRD Context")

        resp = await client.get("/v1/prds")
        assert resp.json()["count"] == 1

        resp = await client.delete("/v1/prds/notes")
        assert resp.json()["deleted"] is True

        resp = await client.post("/v1/prds/context", json={"query": "notes"})
        assert resp.json() == {"found": False, "context": None}


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestMaintenance:
    async def test_entropy_and_compact(self, client):
        await _store(client, "something to remember")
        resp = await client.get("/v1/entropy")
        assert 0.0 <= resp.json()["entropy"] <= 1.0

        resp = await client.post("/v1/compact", json={})
        assert resp.json()["compacted"] is True

        resp = await client.get("/v1/metrics/history")
        assert resp.json()["metrics"][0]["action_taken"] == "full_compact"

    async def test_auto_compact_skips(self, client):
        resp = await client.post("/v1/compact", json={"auto": True, "threshold": 0.9})
        assert resp.json()["compacted"] is False

    async def test_cold_restore(self, client):
        fid = await _store(client, "fading fact")
        conn = api_module._storage._get_conn()
        conn.execute("UPDATE facts SET relevance_score = 0.1 WHERE id = ?", (fid,))
        conn.commit()
        api_module._engine.demote_to_cold_storage()

        resp = await client.get("/v1/cold")
        assert [f["id"] for f in resp.json()["facts"]] == [fid]

        resp = await client.post(f"/v1/cold/{fid}/restore")
        assert resp.json() == {"restored": True, "id": fid}
        resp = await client.post(f"/v1/cold/{fid}/restore")
        assert resp.status_code == 404


@pytest.mark.asyncio
class TestSyncState:
    async def test_put_and_get(self, client):
        assert (await client.get("/v1/sync-state/last_pull")).status_code == 404
        resp = await client.put("/v1/sync-state/last_pull", json={"value": "2026-01-01"})
        assert resp.status_code == 200
        resp = await client.get("/v1/sync-state/last_pull")
        assert resp.json() == {"key": "last_pull", "value": "2026-01-01"}


@pytest.mark.asyncio
class TestAPIKey:
    async def test_key_required_except_health(self):
        guarded = FastAPI()

        @guarded.get("/v1/health")
        async def _health():
            return {"status": "ok"}

        @guarded.get("/v1/stats")
        async def _stats():
            return {"ok": True}

        guarded.add_middleware(APIKeyMiddleware, api_key="secret")
        transport = ASGITransport(app=guarded)
        async with AsyncClient(transport=transport, base_url="http://test") as c:
            assert (await c.get("/v1/health")).status_code == 200
            assert (await c.get("/v1/stats")).status_code == 401
            assert (await c.get("/v1/stats", headers={"X-API-Key": "wrong"})).status_code == 401
            assert (await c.get("/v1/stats", headers={"X-API-Key": "secret"})).status_code == 200
