"""Configuration for the dev-memory store.

Loads from environment variables with sensible defaults.
Optionally reads a config.json file.

Note:
    Environment variables use the ``DEV_MEMORY_*`` prefix. The embedding
    endpoint keeps the conventional ``OPENROUTER_*`` names.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class Config:
    """Central configuration for the store, the forgetting engine and the API."""

    # Storage
    project_root: str = ""  # resolved in load_config()
    db_path: str = ""  # resolved in load_config()

    # Embeddings (OpenAI-compatible endpoint)
    embeddings_enabled: bool = True
    openrouter_api_key: str = ""
    embedding_model: str = "sentence-transformers/all-minilm-l6-v2"
    embedding_dimensions: int = 384
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    embed_max_retries: int = 3
    embed_cache_size: int = 1024

    # Memory management
    max_facts: int = 1000
    decay_rate: float = 0.033
    never_accessed_penalty: float = 0.1
    never_accessed_grace_days: int = 7
    demotion_threshold: float = 0.3
    cold_retention_days: int = 90
    merge_similarity_threshold: float = 0.95
    entropy_threshold: float = 0.7
    promotion_min_relevance: float = 0.8
    promotion_min_access: int = 3

    # PRD retrieval
    prd_chunk_size: int = 500
    prd_max_tokens: int = 2000

    # API
    # Security: bind to localhost by default.
    api_host: str = "127.0.0.1"
    api_port: int = 8788
    api_key: str = ""

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty == OK)."""
        errors: list[str] = []
        if self.embeddings_enabled and not self.openrouter_api_key:
            errors.append("OPENROUTER_API_KEY is not set; search falls back to lexical matching")
        if self.max_facts < 1:
            errors.append("DEV_MEMORY_MAX_FACTS must be >= 1")
        if not 0.0 < self.decay_rate < 1.0:
            errors.append("DEV_MEMORY_DECAY_RATE must be between 0 and 1")
        if not 0.0 <= self.demotion_threshold <= 1.0:
            errors.append("DEV_MEMORY_DEMOTION_THRESHOLD must be between 0 and 1")
        if not 0.0 < self.merge_similarity_threshold <= 1.0:
            errors.append("DEV_MEMORY_MERGE_THRESHOLD must be in (0, 1]")
        if self.prd_chunk_size < 50:
            errors.append("DEV_MEMORY_PRD_CHUNK_SIZE must be >= 50")
        if self.api_port < 1 or self.api_port > 65535:
            errors.append("DEV_MEMORY_PORT must be 1-65535")
        return errors


def _to_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: Optional[str] = None) -> Config:
    """Build a Config from environment variables, optionally overlaid with a JSON file.

    Environment variables (all optional):
        OPENROUTER_API_KEY
        OPENROUTER_BASE_URL
        DEV_MEMORY_CONFIG
        DEV_MEMORY_PROJECT_ROOT
        DEV_MEMORY_DB
        DEV_MEMORY_EMBEDDINGS
        DEV_MEMORY_MODEL
        DEV_MEMORY_DIMENSIONS
        DEV_MEMORY_MAX_FACTS
        DEV_MEMORY_DECAY_RATE
        DEV_MEMORY_DEMOTION_THRESHOLD
        DEV_MEMORY_COLD_RETENTION_DAYS
        DEV_MEMORY_MERGE_THRESHOLD
        DEV_MEMORY_ENTROPY_THRESHOLD
        DEV_MEMORY_PRD_CHUNK_SIZE
        DEV_MEMORY_HOST
        DEV_MEMORY_PORT
        DEV_MEMORY_API_KEY
    """
    cfg = Config()

    # --- JSON file overlay ------------------------------------------------
    json_path = config_path or os.environ.get("DEV_MEMORY_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if not hasattr(cfg, key):
                logger.debug("Ignoring unknown config key %r", key)
                continue
            expected_type = type(getattr(cfg, key))
            try:
                if expected_type is bool and isinstance(val, str):
                    setattr(cfg, key, _to_bool(val))
                else:
                    setattr(cfg, key, expected_type(val))
            except (ValueError, TypeError):
                logger.warning("Skipping bad config value %s=%r", key, val)

    # --- Environment variable overlay -------------------------------------
    env_map: dict[str, tuple[str, type]] = {
        "OPENROUTER_API_KEY": ("openrouter_api_key", str),
        "OPENROUTER_BASE_URL": ("openrouter_base_url", str),
        "DEV_MEMORY_PROJECT_ROOT": ("project_root", str),
        "DEV_MEMORY_DB": ("db_path", str),
        "DEV_MEMORY_EMBEDDINGS": ("embeddings_enabled", bool),
        "DEV_MEMORY_MODEL": ("embedding_model", str),
        "DEV_MEMORY_DIMENSIONS": ("embedding_dimensions", int),
        "DEV_MEMORY_MAX_FACTS": ("max_facts", int),
        "DEV_MEMORY_DECAY_RATE": ("decay_rate", float),
        "DEV_MEMORY_DEMOTION_THRESHOLD": ("demotion_threshold", float),
        "DEV_MEMORY_COLD_RETENTION_DAYS": ("cold_retention_days", int),
        "DEV_MEMORY_MERGE_THRESHOLD": ("merge_similarity_threshold", float),
        "DEV_MEMORY_ENTROPY_THRESHOLD": ("entropy_threshold", float),
        "DEV_MEMORY_PRD_CHUNK_SIZE": ("prd_chunk_size", int),
        "DEV_MEMORY_HOST": ("api_host", str),
        "DEV_MEMORY_PORT": ("api_port", int),
        "DEV_MEMORY_API_KEY": ("api_key", str),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is None:
            continue
        try:
            setattr(cfg, attr, _to_bool(val) if cast is bool else cast(val))
        except (ValueError, TypeError):
            logger.warning("Ignoring invalid %s=%r", env_key, val)

    # --- Default path resolution ------------------------------------------
    if not cfg.project_root:
        cfg.project_root = os.getcwd()
    if not cfg.db_path:
        cfg.db_path = str(Path(cfg.project_root) / ".workflow" / "memory" / "local.db")

    return cfg
