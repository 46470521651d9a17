#!/usr/bin/env python3
"""
Memory configuration — immutable settings objects passed into every component.

Defaults can be overridden by an optional JSON file (deep-merged over the
defaults) and a few environment variables:

- OLLAMA_HOST      host for every ollama-kind provider
- LLAMACPP_HOST    host for every openai-kind provider
- MEMHUB_DATA_DIR  data directory (memory.db, MEMORY.md, daily/)
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, asdict, is_dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".local/share/memhub"
DEFAULT_CONFIG_FILE = Path.home() / ".config/memhub/config.json"

OLLAMA_HOST = "http://localhost:11434"
LLAMACPP_HOST = "http://localhost:8080"


def _from_dict(cls, data: Optional[dict]):
    """Build a (possibly nested) config dataclass, ignoring unknown keys."""
    if not data:
        return cls()
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        default = getattr(cls(), f.name)
        if is_dataclass(default) and isinstance(value, dict):
            value = _from_dict(type(default), value)
        elif isinstance(default, tuple) and isinstance(value, (list, tuple)):
            if default and is_dataclass(default[0]):
                value = tuple(
                    v if is_dataclass(v) else _from_dict(type(default[0]), v) for v in value
                )
            else:
                value = tuple(value)
        kwargs[f.name] = value
    return cls(**kwargs)


# ── Providers ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProviderConfig:
    """One embedding or completion backend."""
    kind: str = "ollama"          # "ollama" or "openai" (llama.cpp / any /v1 server)
    host: str = OLLAMA_HOST
    model: str = "qwen3:14b"
    timeout: float = 60.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ProviderConfig":
        return _from_dict(cls, data)


def _default_chain() -> tuple:
    return (
        ProviderConfig(kind="openai", host=LLAMACPP_HOST, model="scout"),
        ProviderConfig(kind="ollama", host=OLLAMA_HOST, model="qwen3:14b"),
        ProviderConfig(kind="ollama", host=OLLAMA_HOST, model="gemma3:27b"),
    )


@dataclass(frozen=True)
class EmbeddingSettings:
    kind: str = "ollama"          # "ollama" or "local" (sentence-transformers)
    host: str = OLLAMA_HOST
    model: str = "nomic-embed-text"
    dimensions: int = 768
    timeout: float = 10.0


# ── Subsystem settings ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class ClusterSettings:
    similarity_threshold: float = 0.55   # join an existing cluster above this mean similarity
    link_threshold: float = 0.4          # cross-cluster link candidates above this
    search_k: int = 10
    new_link_strength: float = 0.5
    link_step: float = 0.1
    cooccurrence_step: float = 0.05
    prune_below: float = 0.3
    linked_strength_floor: float = 0.3
    default_importance: float = 0.5
    person_names: tuple = ()


@dataclass(frozen=True)
class HybridSettings:
    vector_weight: float = 0.6
    bm25_weight: float = 0.4
    vector_threshold: float = 0.4


@dataclass(frozen=True)
class IngestSettings:
    dedup_threshold: float = 0.85
    section_threshold: float = 0.3
    catch_all_section: str = "Other"


@dataclass(frozen=True)
class FlushSettings:
    flush_ratio: float = 0.80
    transcript_ratio: float = 0.5
    keep_last: int = 10


@dataclass(frozen=True)
class HeartbeatSettings:
    enabled: bool = True
    interval_hours: float = 2
    warmup_minutes: float = 5
    daily_retention_days: int = 7


# ── Top-level config ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MemoryConfig:
    """Everything the memory hub needs, in one immutable object."""
    data_dir: str = str(DEFAULT_DATA_DIR)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    naming: ProviderConfig = field(
        default_factory=lambda: ProviderConfig(kind="ollama", model="gemma3:4b", timeout=30.0)
    )
    completion_chain: tuple = field(default_factory=_default_chain)
    clusters: ClusterSettings = field(default_factory=ClusterSettings)
    hybrid: HybridSettings = field(default_factory=HybridSettings)
    ingest: IngestSettings = field(default_factory=IngestSettings)
    flush: FlushSettings = field(default_factory=FlushSettings)
    heartbeat: HeartbeatSettings = field(default_factory=HeartbeatSettings)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def db_file(self) -> Path:
        return self.data_path / "memory.db"

    @property
    def memory_file(self) -> Path:
        return self.data_path / "MEMORY.md"

    @property
    def user_file(self) -> Path:
        return self.data_path / "USER.md"

    @property
    def daily_dir(self) -> Path:
        return self.data_path / "daily"

    @property
    def archive_dir(self) -> Path:
        return self.daily_dir / "archive"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryConfig":
        return _from_dict(cls, data)


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into a copy of base."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env(data: dict) -> dict:
    ollama = os.environ.get("OLLAMA_HOST")
    llamacpp = os.environ.get("LLAMACPP_HOST")
    data_dir = os.environ.get("MEMHUB_DATA_DIR")

    def _host_for(kind: str, current: str) -> str:
        if kind == "ollama" and ollama:
            return ollama
        if kind == "openai" and llamacpp:
            return llamacpp
        return current

    if data_dir:
        data["data_dir"] = data_dir
    emb = data["embedding"]
    if emb.get("kind") == "ollama" and ollama:
        emb["host"] = ollama
    data["naming"]["host"] = _host_for(data["naming"]["kind"], data["naming"]["host"])
    for provider in data["completion_chain"]:
        provider["host"] = _host_for(provider.get("kind", "ollama"), provider.get("host", OLLAMA_HOST))
    return data


def load_config(path: Optional[Path] = None) -> MemoryConfig:
    """Load config: defaults, deep-merged with the JSON file, then env overrides."""
    data = MemoryConfig().to_dict()
    config_file = Path(path) if path else DEFAULT_CONFIG_FILE
    if config_file.exists():
        try:
            with open(config_file) as f:
                data = deep_merge(data, json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[Config] Could not read {config_file}: {e}; using defaults")
    data["completion_chain"] = [dict(p) for p in data["completion_chain"]]
    return MemoryConfig.from_dict(_apply_env(data))
