"""Shared fixtures for dev-memory tests."""

from __future__ import annotations

import hashlib
import time
from typing import List

import pytest

from devmemory.config import Config
from devmemory.embeddings import EmbeddingResult
from devmemory.models import Fact, generate_id
from devmemory.storage import MemoryStorage


# ---------------------------------------------------------------------------
# Ensure no real API calls leak out
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch, tmp_path):
    """Dummy API key and a temp project root so nothing touches the real repo."""
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-key-for-pytest")
    monkeypatch.setenv("DEV_MEMORY_PROJECT_ROOT", str(tmp_path))
    monkeypatch.delenv("DEV_MEMORY_CONFIG", raising=False)
    monkeypatch.delenv("DEV_MEMORY_DB", raising=False)


# ---------------------------------------------------------------------------
# Storage fixture (temporary DB)
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_storage(tmp_path):
    """Create a fresh MemoryStorage backed by a temp SQLite file."""
    s = MemoryStorage(db_path=str(tmp_path / "memory" / "local.db"))
    yield s
    s.close()


@pytest.fixture
def config(tmp_path):
    return Config(
        project_root=str(tmp_path),
        db_path=str(tmp_path / "memory" / "local.db"),
        openrouter_api_key="test-key",
    )


# ---------------------------------------------------------------------------
# Mock embedders
# ---------------------------------------------------------------------------

class FakeEmbedder:
    """Deterministic mock embedder that returns predictable vectors.

    The vector is derived from an MD5 of the text so that identical
    texts always produce the same vector, useful for round-trip tests.
    """

    available = True

    def __init__(self, dimensions: int = 8):
        self.dimensions = dimensions
        self.call_count = 0

    async def embed(self, text: str) -> EmbeddingResult:
        self.call_count += 1
        return EmbeddingResult.of(self._deterministic_vector(text))

    async def embed_batch(self, texts: List[str]) -> List[EmbeddingResult]:
        self.call_count += 1
        return [EmbeddingResult.of(self._deterministic_vector(t)) for t in texts]

    def _deterministic_vector(self, text: str) -> List[float]:
        digest = hashlib.md5(text.encode("utf-8")).digest()
        vec = [digest[i] / 255.0 + 0.01 for i in range(self.dimensions)]
        # Normalise to unit length
        mag = max(sum(v * v for v in vec) ** 0.5, 1e-9)
        return [v / mag for v in vec]


class UnavailableEmbedder:
    """Behaves like a provider whose initialisation failed."""

    available = False

    def __init__(self):
        self.call_count = 0

    async def embed(self, text: str) -> EmbeddingResult:
        self.call_count += 1
        return EmbeddingResult.unavailable("no provider")

    async def embed_batch(self, texts: List[str]) -> List[EmbeddingResult]:
        self.call_count += 1
        return [EmbeddingResult.unavailable("no provider") for _ in texts]


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def no_embedder():
    return UnavailableEmbedder()


# ---------------------------------------------------------------------------
# Direct fact insertion (bypasses embedding and lets tests pick timestamps)
# ---------------------------------------------------------------------------

def make_fact(storage: MemoryStorage, text: str, **overrides) -> Fact:
    now = time.time()
    fields = {
        "id": generate_id("fact"),
        "text": text,
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    fact = Fact(**fields)
    storage.insert_fact(fact)
    return fact


@pytest.fixture
def add_fact(tmp_storage):
    def _add(text: str, **overrides) -> Fact:
        return make_fact(tmp_storage, text, **overrides)

    return _add
