"""memarchive configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from memarchive.utils import json_loads

CONFIG_FILENAME = "config.json"


def _default_data_dir() -> Path:
    return Path(os.environ.get("MEMARCHIVE_DATA_DIR", Path.cwd() / "memory"))


class StoreConfig(BaseModel):
    semantic_dirname: str = "semantic"
    episodic_dirname: str = "episodic"
    index_filename: str = "clues.json"
    audit_filename: str = "audit.jsonl"
    lock_filename: str = ".archive.lock"


class IndexConfig(BaseModel):
    token_budget: int = 20_000
    chars_per_token: int = 4
    group_summary_chars: int = 240


class RetrievalConfig(BaseModel):
    top_k: int = 5
    max_hops: int = 1
    min_relevance: float = 0.15
    stale_after_days: int = 30
    excerpt_chars: int = 600


class ConsolidationConfig(BaseModel):
    enabled: bool = True
    match_threshold: float = 0.5
    summary_match_threshold: float = 0.6
    max_document_tokens: int = 1_500
    preference_promotion_count: int = 2


class SessionConfig(BaseModel):
    lock_timeout: float = 10.0
    lock_poll_interval: float = 0.05
    oracle_timeout: float = 300.0
    episodic_expiry_days: int = 30
    max_episodic_field_chars: int = 400
    routing_top_k: int = 8


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    store: StoreConfig = Field(default_factory=StoreConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    @property
    def semantic_dir(self) -> Path:
        return self.data_dir / self.store.semantic_dirname

    @property
    def episodic_dir(self) -> Path:
        return self.data_dir / self.store.episodic_dirname

    @property
    def index_path(self) -> Path:
        return self.data_dir / self.store.index_filename

    @property
    def audit_path(self) -> Path:
        return self.data_dir / self.store.audit_filename

    @property
    def lock_path(self) -> Path:
        return self.data_dir / self.store.lock_filename

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.semantic_dir, self.episodic_dir]:
            d.mkdir(parents=True, exist_ok=True)

    @classmethod
    def load(cls, data_dir: Path | str | None = None, global_path: Path | str | None = None) -> "Config":
        """Layered load: defaults < global config.json < project config.json."""
        merged: dict[str, Any] = {}
        if global_path is not None:
            merged = _merge(merged, _read_raw(Path(global_path)))
        root = Path(data_dir) if data_dir is not None else _default_data_dir()
        merged = _merge(merged, _read_raw(root / CONFIG_FILENAME))
        merged["data_dir"] = root
        return cls.model_validate(merged)


def _read_raw(path: Path) -> dict[str, Any]:
    """Missing or unparseable files contribute nothing."""
    try:
        data = json_loads(path.read_bytes())
    except (OSError, ValueError):
        return {}
    if not isinstance(data, dict):
        return {}
    data.pop("data_dir", None)
    return data


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out
