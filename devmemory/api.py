"""FastAPI HTTP API for the dev-memory store.

Endpoints:
    GET    /v1/health                  -- Health check
    GET    /v1/stats                   -- Table counts
    GET    /v1/entropy                 -- Entropy score and pressure signals
    GET    /v1/metrics/history         -- Recorded entropy snapshots (newest first)
    POST   /v1/facts                   -- Store a fact
    POST   /v1/facts/search            -- Ranked search (semantic or lexical)
    GET    /v1/facts                   -- Export facts
    DELETE /v1/facts/{id}              -- Delete a fact
    GET    /v1/facts/candidates        -- Promotion candidates
    POST   /v1/facts/{id}/promote      -- Mark a fact promoted
    POST   /v1/proposals               -- Create a rule proposal
    GET    /v1/proposals               -- List proposals by status
    GET    /v1/proposals/unsynced      -- Pending proposals not yet pushed
    PATCH  /v1/proposals/{id}          -- Sparse update
    POST   /v1/proposals/{id}/votes    -- Append a vote
    POST   /v1/prds                    -- Ingest (or replace) a PRD
    POST   /v1/prds/context            -- Token-budgeted PRD context for a task
    GET    /v1/prds                    -- List stored PRDs
    DELETE /v1/prds/{id}               -- Delete one PRD
    POST   /v1/compact                 -- Full or entropy-gated compaction
    GET    /v1/cold                    -- List cold facts
    POST   /v1/cold/{id}/restore       -- Restore a cold fact
    GET    /v1/sync-state/{key}        -- Read a sync-state value
    PUT    /v1/sync-state/{key}        -- Write a sync-state value

Run: ``python -m devmemory.api``
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from .config import Config, load_config
from .embeddings import create_embedder
from .facts import FactStore
from .forgetting import ForgettingEngine
from .middleware import APIKeyMiddleware, AuditLogMiddleware
from .prd import PRDStore
from .proposals import ProposalStore
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared state (initialised in lifespan)
# ---------------------------------------------------------------------------

_config: Optional[Config] = None
_storage: Optional[MemoryStorage] = None
_embedder: Any = None
_facts: Optional[FactStore] = None
_proposals: Optional[ProposalStore] = None
_prds: Optional[PRDStore] = None
_engine: Optional[ForgettingEngine] = None
_start_time: float = 0.0


def _require(component: Any, name: str) -> Any:
    if component is None:
        raise HTTPException(503, f"{name} not initialised")
    return component


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown logic."""
    global _config, _storage, _embedder, _facts, _proposals, _prds, _engine, _start_time

    _config = load_config()
    errors = _config.validate()
    if errors:
        logger.warning("Config validation warnings: %s", errors)

    _storage = MemoryStorage(_config.db_path)
    _embedder = create_embedder(_config)
    _facts = FactStore(_storage, _embedder)
    _proposals = ProposalStore(_storage)
    _prds = PRDStore(_storage, _embedder, chunk_size=_config.prd_chunk_size)
    _engine = ForgettingEngine(_storage, _config)
    _start_time = time.time()

    logger.info(
        "Memory API ready -- db=%s emb_model=%s embeddings=%s",
        _config.db_path,
        _config.embedding_model,
        "on" if _config.embeddings_enabled else "off",
    )

    yield

    _storage.close()
    _storage = None


app = FastAPI(
    title="Dev Memory API",
    version="0.1.0",
    lifespan=lifespan,
)

# Last added runs first.
app.add_middleware(AuditLogMiddleware)

_api_key = load_config().api_key
if _api_key:
    app.add_middleware(APIKeyMiddleware, api_key=_api_key)
    logger.info("API key authentication enabled")
else:
    logger.warning("No DEV_MEMORY_API_KEY set -- API is UNAUTHENTICATED")


# --- Centralized error handling ---

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    logger.warning("HTTP %d: %s (path=%s)", exc.status_code, exc.detail, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "status_code": exc.status_code},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    logger.warning("Validation error: %s (path=%s)", str(exc)[:200], request.url.path)
    return JSONResponse(
        status_code=422,
        content={"error": "Validation error", "detail": exc.errors()},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.exception("Unhandled error: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class StoreFactRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=10000)
    category: str = "general"
    scope: str = Field(default="local", pattern="^(local|team)$")
    model: Optional[str] = None
    source_context: Optional[str] = None


class SearchFactsRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    category: Optional[str] = None
    model: Optional[str] = None
    scope: Optional[str] = None
    limit: int = Field(default=10, ge=1, le=100)
    track_access: bool = True


class PromoteRequest(BaseModel):
    destination: str = Field(..., min_length=1, max_length=500)


class ProposalRequest(BaseModel):
    rule: str = Field(..., min_length=1, max_length=5000)
    category: str = "pattern"
    rationale: str = ""
    source_context: Optional[str] = None


class ProposalUpdateRequest(BaseModel):
    status: Optional[str] = Field(default=None, pattern="^(pending|accepted|rejected)$")
    synced: Optional[bool] = None
    remote_id: Optional[str] = None


class VoteRequest(BaseModel):
    vote: str = Field(..., pattern="^(approve|reject)$")
    comment: str = Field(default="", max_length=2000)


class PRDRequest(BaseModel):
    prd_id: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)
    file_name: Optional[str] = None


class PRDContextRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=5000)
    max_tokens: Optional[int] = Field(default=None, ge=100, le=100000)
    prd_id: Optional[str] = None


class CompactRequest(BaseModel):
    auto: bool = Field(default=False, description="Only compact when entropy is above threshold")
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SyncStateRequest(BaseModel):
    value: str = Field(..., max_length=100000)


# ---------------------------------------------------------------------------
# Health / stats
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> Dict[str, Any]:
    return {
        "status": "ok" if _storage is not None else "starting",
        "uptime_s": round(time.time() - _start_time, 1) if _start_time else 0.0,
        "embeddings": bool(getattr(_embedder, "available", False)),
    }


@app.get("/v1/stats")
async def stats() -> Dict[str, Any]:
    storage: MemoryStorage = _require(_storage, "Storage")
    return storage.stats()


@app.get("/v1/entropy")
async def entropy(max_facts: Optional[int] = Query(default=None, ge=1)) -> Dict[str, Any]:
    engine: ForgettingEngine = _require(_engine, "Forgetting engine")
    return engine.get_entropy_stats(max_facts=max_facts).to_dict()


@app.get("/v1/metrics/history")
async def metrics_history(limit: int = Query(default=30, ge=1, le=1000)) -> Dict[str, Any]:
    engine: ForgettingEngine = _require(_engine, "Forgetting engine")
    metrics = engine.get_memory_metrics(limit=limit)
    return {"count": len(metrics), "metrics": [m.to_dict() for m in metrics]}


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------

@app.post("/v1/facts")
async def store_fact(req: StoreFactRequest) -> Dict[str, Any]:
    facts: FactStore = _require(_facts, "Fact store")
    fact_id = await facts.store(
        req.text,
        category=req.category,
        scope=req.scope,
        model=req.model,
        source_context=req.source_context,
    )
    return {"stored": True, "id": fact_id}


@app.post("/v1/facts/search")
async def search_facts(req: SearchFactsRequest) -> Dict[str, Any]:
    facts: FactStore = _require(_facts, "Fact store")
    matches = await facts.search(
        req.query,
        category=req.category,
        model=req.model,
        scope=req.scope,
        limit=req.limit,
        track_access=req.track_access,
    )
    return {
        "query": req.query,
        "count": len(matches),
        "search_mode": matches[0].mode if matches else None,
        "results": [m.to_dict() for m in matches],
    }


@app.get("/v1/facts")
async def list_facts(scope: Optional[str] = Query(default=None)) -> Dict[str, Any]:
    facts: FactStore = _require(_facts, "Fact store")
    all_facts = facts.get_all(scope=scope)
    return {"count": len(all_facts), "facts": [f.to_dict() for f in all_facts]}


@app.get("/v1/facts/candidates")
async def promotion_candidates(
    min_relevance: Optional[float] = Query(default=None, ge=0.0, le=1.0),
    min_access_count: Optional[int] = Query(default=None, ge=0),
) -> Dict[str, Any]:
    engine: ForgettingEngine = _require(_engine, "Forgetting engine")
    candidates = engine.get_promotion_candidates(
        min_relevance=min_relevance, min_access_count=min_access_count
    )
    return {"count": len(candidates), "candidates": [f.to_dict() for f in candidates]}


@app.delete("/v1/facts/{fact_id}")
async def delete_fact(fact_id: str) -> Dict[str, Any]:
    facts: FactStore = _require(_facts, "Fact store")
    return {"deleted": facts.delete(fact_id), "id": fact_id}


@app.post("/v1/facts/{fact_id}/promote")
async def promote_fact(fact_id: str, req: PromoteRequest) -> Dict[str, Any]:
    engine: ForgettingEngine = _require(_engine, "Forgetting engine")
    result = engine.mark_fact_promoted(fact_id, req.destination)
    if not result["promoted"] and "error" in result:
        raise HTTPException(404, result["error"])
    return result


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

@app.post("/v1/proposals")
async def create_proposal(req: ProposalRequest) -> Dict[str, Any]:
    proposals: ProposalStore = _require(_proposals, "Proposal store")
    pid = proposals.create(
        req.rule,
        category=req.category,
        rationale=req.rationale,
        source_context=req.source_context,
    )
    return {"created": True, "id": pid}


@app.get("/v1/proposals")
async def list_proposals(
    status: str = Query(default="pending", pattern="^(pending|accepted|rejected)$"),
) -> Dict[str, Any]:
    proposals: ProposalStore = _require(_proposals, "Proposal store")
    items = proposals.list(status=status)
    return {"status": status, "count": len(items), "proposals": [p.to_dict() for p in items]}


@app.get("/v1/proposals/unsynced")
async def unsynced_proposals() -> Dict[str, Any]:
    proposals: ProposalStore = _require(_proposals, "Proposal store")
    items = proposals.get_unsynced()
    return {"count": len(items), "proposals": [p.to_dict() for p in items]}


@app.patch("/v1/proposals/{proposal_id}")
async def update_proposal(proposal_id: str, req: ProposalUpdateRequest) -> Dict[str, Any]:
    proposals: ProposalStore = _require(_proposals, "Proposal store")
    if req.status is None and req.synced is None and req.remote_id is None:
        raise HTTPException(400, "Provide at least one of 'status', 'synced', 'remote_id'")
    updated = proposals.update(
        proposal_id, status=req.status, synced=req.synced, remote_id=req.remote_id
    )
    if not updated:
        raise HTTPException(404, f"Proposal {proposal_id} not found")
    return {"updated": True, "id": proposal_id}


@app.post("/v1/proposals/{proposal_id}/votes")
async def vote_proposal(proposal_id: str, req: VoteRequest) -> Dict[str, Any]:
    proposals: ProposalStore = _require(_proposals, "Proposal store")
    if not proposals.vote(proposal_id, req.vote, req.comment):
        raise HTTPException(404, f"Proposal {proposal_id} not found")
    return {"voted": True, "id": proposal_id, "vote": req.vote}


# ---------------------------------------------------------------------------
# PRDs
# ---------------------------------------------------------------------------

@app.post("/v1/prds")
async def ingest_prd(req: PRDRequest) -> Dict[str, Any]:
    prds: PRDStore = _require(_prds, "PRD store")
    return await prds.store_prd(req.content, req.prd_id, file_name=req.file_name)


@app.post("/v1/prds/context")
async def prd_context(req: PRDContextRequest) -> Dict[str, Any]:
    prds: PRDStore = _require(_prds, "PRD store")
    max_tokens = req.max_tokens or (_config.prd_max_tokens if _config else 2000)
    ctx = await prds.get_context(req.query, max_tokens=max_tokens, prd_id=req.prd_id)
    if ctx is None:
        return {"found": False, "context": None}
    return {"found": True, **ctx.to_dict()}


@app.get("/v1/prds")
async def list_prds() -> Dict[str, Any]:
    prds: PRDStore = _require(_prds, "PRD store")
    items = prds.list_prds()
    return {"count": len(items), "prds": items}


@app.delete("/v1/prds/{prd_id}")
async def delete_prd(prd_id: str) -> Dict[str, Any]:
    prds: PRDStore = _require(_prds, "PRD store")
    return {"deleted": prds.delete_prd(prd_id), "prd_id": prd_id}


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@app.post("/v1/compact")
async def compact(req: Optional[CompactRequest] = None) -> Dict[str, Any]:
    engine: ForgettingEngine = _require(_engine, "Forgetting engine")
    req = req or CompactRequest()
    if req.auto:
        return engine.auto_compact(threshold=req.threshold)
    result = engine.compact()
    result["compacted"] = True
    return result


@app.get("/v1/cold")
async def list_cold(limit: int = Query(default=50, ge=1, le=1000)) -> Dict[str, Any]:
    engine: ForgettingEngine = _require(_engine, "Forgetting engine")
    cold = engine.list_cold_facts(limit=limit)
    return {"count": len(cold), "facts": [f.to_dict() for f in cold]}


@app.post("/v1/cold/{fact_id}/restore")
async def restore_cold(fact_id: str) -> Dict[str, Any]:
    engine: ForgettingEngine = _require(_engine, "Forgetting engine")
    result = engine.restore_from_cold_storage(fact_id)
    if not result["restored"]:
        raise HTTPException(404, result["error"])
    return result


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------

@app.get("/v1/sync-state/{key}")
async def get_sync_state(key: str) -> Dict[str, Any]:
    storage: MemoryStorage = _require(_storage, "Storage")
    value = storage.get_sync_state(key)
    if value is None:
        raise HTTPException(404, f"No sync state for {key!r}")
    return {"key": key, "value": value}


@app.put("/v1/sync-state/{key}")
async def put_sync_state(key: str, req: SyncStateRequest) -> Dict[str, Any]:
    storage: MemoryStorage = _require(_storage, "Storage")
    storage.set_sync_state(key, req.value)
    return {"key": key, "value": req.value}


def main() -> None:
    """Run the API server via uvicorn."""
    import uvicorn

    cfg = load_config()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    logger.info("Starting Dev Memory API on %s:%d", cfg.api_host, cfg.api_port)
    uvicorn.run(
        "devmemory.api:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
