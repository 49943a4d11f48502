"""Embedding providers.

``OpenRouterEmbeddings`` uses raw ``requests`` (NOT the OpenAI SDK) to call an
OpenAI-compatible ``/embeddings`` endpoint.  Features:

* Async-friendly (uses ``asyncio.to_thread`` around blocking requests)
* Batch support: send multiple texts in one call
* Retry with exponential back-off
* Simple in-memory LRU cache for repeated texts

Embeddings are optional. Every call returns an ``EmbeddingResult``; callers
branch on ``result.ok`` and fall back to lexical matching when it is not.
Nothing here raises to the caller because a vector is missing.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import requests

from .config import Config, load_config

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Raised when the embedding API returns an error."""


@dataclass(frozen=True)
class EmbeddingResult:
    """Either a vector or the reason there is none."""

    vector: Optional[List[float]] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.vector is not None

    @classmethod
    def of(cls, vector: List[float]) -> "EmbeddingResult":
        return cls(vector=list(vector))

    @classmethod
    def unavailable(cls, reason: str) -> "EmbeddingResult":
        return cls(vector=None, reason=reason)


class NullEmbeddings:
    """Provider used when embeddings are switched off."""

    available = False

    async def embed(self, text: str) -> EmbeddingResult:
        return EmbeddingResult.unavailable("embeddings disabled")

    async def embed_batch(self, texts: List[str]) -> List[EmbeddingResult]:
        return [EmbeddingResult.unavailable("embeddings disabled") for _ in texts]


class OpenRouterEmbeddings:
    """Lightweight async wrapper around an OpenAI-compatible embeddings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        base_url: Optional[str] = None,
        max_retries: int = 3,
        cache_size: int = 1024,
        config: Optional[Config] = None,
    ) -> None:
        cfg = config or load_config()
        self.api_key: str = api_key if api_key is not None else cfg.openrouter_api_key
        self.model: str = model or cfg.embedding_model
        self.dimensions: int = dimensions or cfg.embedding_dimensions
        self.base_url: str = (base_url or cfg.openrouter_base_url).rstrip("/")
        self.max_retries: int = max(1, max_retries)

        self._url = f"{self.base_url}/embeddings"
        self._headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        self._cache_size = cache_size
        self._cache: dict[str, List[float]] = {}
        self._cache_order: list[str] = []

        # Initialization is attempted once and remembered either way.
        self._init_attempted = False
        self._init_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Lazy initialization
    # ------------------------------------------------------------------

    def _ensure_ready(self) -> bool:
        if not self._init_attempted:
            self._init_attempted = True
            if not self.api_key:
                self._init_error = "no API key configured"
            elif not self.base_url.startswith(("http://", "https://")):
                self._init_error = f"invalid base URL {self.base_url!r}"
            if self._init_error:
                logger.debug("Embedding provider unavailable: %s", self._init_error)
        return self._init_error is None

    @property
    def available(self) -> bool:
        return self._ensure_ready()

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cache_key(self, text: str) -> str:
        return hashlib.md5(text.encode("utf-8")).hexdigest()

    def _cache_get(self, text: str) -> Optional[List[float]]:
        return self._cache.get(self._cache_key(text))

    def _cache_put(self, text: str, vector: List[float]) -> None:
        key = self._cache_key(text)
        if key in self._cache:
            return
        if len(self._cache_order) >= self._cache_size:
            evict = self._cache_order.pop(0)
            self._cache.pop(evict, None)
        self._cache[key] = vector
        self._cache_order.append(key)

    # ------------------------------------------------------------------
    # Low-level HTTP call with retries
    # ------------------------------------------------------------------

    def _call_api(self, texts: List[str]) -> List[List[float]]:
        """Blocking HTTP POST with exponential back-off."""
        payload = {
            "model": self.model,
            "input": texts,
        }

        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                resp = requests.post(
                    self._url,
                    headers=self._headers,
                    json=payload,
                    timeout=60,
                )
                if resp.status_code == 200:
                    return self._parse_response(resp, len(texts))

                if resp.status_code in (429, 500, 502, 503, 504):
                    wait = 2 ** attempt
                    logger.debug(
                        "Embedding endpoint %s (attempt %d/%d), retrying in %ds",
                        resp.status_code, attempt + 1, self.max_retries, wait,
                    )
                    last_exc = EmbeddingError(f"HTTP {resp.status_code}: {resp.text[:200]}")
                    if attempt + 1 < self.max_retries:
                        time.sleep(wait)
                    continue

                raise EmbeddingError(f"HTTP {resp.status_code}: {resp.text[:500]}")

            except requests.RequestException as exc:
                wait = 2 ** attempt
                logger.debug(
                    "Embedding request error (attempt %d/%d): %s, retrying in %ds",
                    attempt + 1, self.max_retries, exc, wait,
                )
                last_exc = exc
                if attempt + 1 < self.max_retries:
                    time.sleep(wait)

        raise EmbeddingError(f"Failed after {self.max_retries} retries: {last_exc}")

    @staticmethod
    def _parse_response(resp: requests.Response, expected: int) -> List[List[float]]:
        """Pull one vector per input out of a 200 body, in input order."""
        try:
            data = resp.json()
            items = sorted(data["data"], key=lambda d: d["index"])
            vectors = [[float(v) for v in item["embedding"]] for item in items]
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingError(f"Malformed embedding response: {exc!r}") from exc
        if len(vectors) != expected or not all(vectors):
            raise EmbeddingError(
                f"Malformed embedding response: expected {expected} vectors, got {len(vectors)}"
            )
        return vectors

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> EmbeddingResult:
        """Embed a single text string."""
        if not self._ensure_ready():
            return EmbeddingResult.unavailable(self._init_error or "unavailable")

        cached = self._cache_get(text)
        if cached is not None:
            return EmbeddingResult.of(cached)

        try:
            vectors = await asyncio.to_thread(self._call_api, [text])
            vec = vectors[0]
        except (EmbeddingError, IndexError) as exc:
            logger.debug("Embedding failed, falling back to lexical: %s", exc)
            return EmbeddingResult.unavailable(str(exc))

        self._cache_put(text, vec)
        return EmbeddingResult.of(vec)

    async def embed_batch(self, texts: List[str]) -> List[EmbeddingResult]:
        """Embed multiple texts in one API call."""
        if not self._ensure_ready():
            reason = self._init_error or "unavailable"
            return [EmbeddingResult.unavailable(reason) for _ in texts]

        results: List[EmbeddingResult] = [EmbeddingResult.unavailable("pending")] * len(texts)
        uncached_indices: List[int] = []
        uncached_texts: List[str] = []

        for i, text in enumerate(texts):
            cached = self._cache_get(text)
            if cached is not None:
                results[i] = EmbeddingResult.of(cached)
                continue
            uncached_indices.append(i)
            uncached_texts.append(text)

        if uncached_texts:
            try:
                vectors = await asyncio.to_thread(self._call_api, uncached_texts)
            except EmbeddingError as exc:
                logger.debug("Batch embedding failed, falling back to lexical: %s", exc)
                for idx in uncached_indices:
                    results[idx] = EmbeddingResult.unavailable(str(exc))
                return results
            for idx, vec in zip(uncached_indices, vectors):
                results[idx] = EmbeddingResult.of(vec)
                self._cache_put(texts[idx], vec)

        return results


def create_embedder(config: Optional[Config] = None):
    """Return the provider the configuration asks for."""
    cfg = config or load_config()
    if not cfg.embeddings_enabled:
        logger.info("Embeddings disabled by configuration; using lexical search")
        return NullEmbeddings()
    return OpenRouterEmbeddings(
        api_key=cfg.openrouter_api_key,
        model=cfg.embedding_model,
        dimensions=cfg.embedding_dimensions,
        base_url=cfg.openrouter_base_url,
        max_retries=cfg.embed_max_retries,
        cache_size=cfg.embed_cache_size,
        config=cfg,
    )
