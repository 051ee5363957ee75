from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, SecretStr, ValidationError, field_validator


BACKEND_CHOICES = ("auto", "gpu", "remote", "openai", "cpu", "hashing")
WORKER_MODES = ("process", "thread")

DEFAULT_CACHE_ROOT = os.path.join(os.path.expanduser("~"), ".cache", "vecgrep")


@dataclass
class VecgrepConfig:
    # Storage
    workspace_dir: str = "."
    db_path: str = ""  # explicit store directory; derived from workspace_dir when empty

    # Backend selection
    backend: str = "auto"
    model_cache_dir: str = os.path.join(DEFAULT_CACHE_ROOT, "models")
    model_name_cpu: str = "all-MiniLM-L6-v2"
    model_name_gpu: str = "BAAI/bge-small-en-v1.5"
    prefer_remote: bool = False
    remote_url: str = "http://localhost:11434"
    remote_model: str = "nomic-embed-text"
    openai_api_key: SecretStr = field(default_factory=lambda: SecretStr(""))
    openai_embedding_model: str = "text-embedding-3-small"
    hashing_dimensions: int = 384

    # Sharding / parallelism
    shard_count: int = 4
    worker_count: int = 0  # 0 = cpu_count - 1, capped at the shards involved
    worker_mode: str = "process"
    parallel_index: bool = True
    parallel_search: bool = False
    files_per_task: int = 16

    # Chunking
    chunk_size_tokens: int = 256
    overlap_tokens: int = 32
    tokenizer_path: str = ""

    # Indexing behavior
    embedding_batch_size: int = 32
    max_file_size_mb: int = 2

    verbose: bool = False


class AllowedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    workspace_dir: str = "."
    db_path: str = ""

    backend: str = "auto"
    model_cache_dir: str = os.path.join(DEFAULT_CACHE_ROOT, "models")
    model_name_cpu: str = "all-MiniLM-L6-v2"
    model_name_gpu: str = "BAAI/bge-small-en-v1.5"
    prefer_remote: bool = False
    remote_url: str = "http://localhost:11434"
    remote_model: str = "nomic-embed-text"
    openai_api_key: SecretStr = SecretStr("")
    openai_embedding_model: str = "text-embedding-3-small"
    hashing_dimensions: int = 384

    shard_count: int = 4
    worker_count: int = 0
    worker_mode: str = "process"
    parallel_index: bool = True
    parallel_search: bool = False
    files_per_task: int = 16

    chunk_size_tokens: int = 256
    overlap_tokens: int = 32
    tokenizer_path: str = ""

    embedding_batch_size: int = 32
    max_file_size_mb: int = 2

    verbose: bool = False

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, value: str) -> str:
        value = str(value).lower()
        if value not in BACKEND_CHOICES:
            raise ValueError(f"backend must be one of {', '.join(BACKEND_CHOICES)}")
        return value

    @field_validator("worker_mode")
    @classmethod
    def validate_worker_mode(cls, value: str) -> str:
        value = str(value).lower()
        if value not in WORKER_MODES:
            raise ValueError(f"worker_mode must be one of {', '.join(WORKER_MODES)}")
        return value

    @field_validator("shard_count", "files_per_task", "embedding_batch_size", "hashing_dimensions")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if int(value) < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("worker_count")
    @classmethod
    def validate_worker_count(cls, value: int) -> int:
        if int(value) < 0:
            raise ValueError("worker_count must be >= 0 (0 selects a default)")
        return value

    @field_validator("overlap_tokens")
    @classmethod
    def validate_overlap(cls, value: int, info):  # type: ignore[override]
        chunk_size = info.data.get("chunk_size_tokens", 256)
        if int(value) >= int(chunk_size):
            raise ValueError("overlap_tokens must be less than chunk_size_tokens")
        return value


def normalize_store_path(path: str) -> str:
    return os.path.realpath(os.path.abspath(os.path.expanduser(path)))


def resolve_store_path(cfg: VecgrepConfig) -> str:
    """Directory holding the shard files for the configured project.

    An explicit ``db_path`` wins. Otherwise each workspace gets its own
    directory under the user cache, keyed by its resolved path.
    """
    if cfg.db_path:
        return normalize_store_path(cfg.db_path)
    workspace = os.path.realpath(os.path.abspath(cfg.workspace_dir or "."))
    digest = hashlib.sha256(workspace.encode("utf-8")).hexdigest()[:16]
    return normalize_store_path(os.path.join(DEFAULT_CACHE_ROOT, "projects", digest))


def load_config(path: Optional[str] = None) -> VecgrepConfig:
    """Load config from YAML.

    Default path: ~/.config/vecgrep/vecgrep_mcp.yaml

    Example:

        workspace_dir: /Users/you/src/project
        backend: auto
        shard_count: 4
    """

    if path is None:
        env_path = os.environ.get("VECGREP_CONFIG_PATH")
        if env_path:
            path = env_path
        else:
            path = os.path.join(
                os.path.expanduser("~"), ".config", "vecgrep", "vecgrep_mcp.yaml"
            )

    if not os.path.exists(path):
        return VecgrepConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    try:
        validated = AllowedConfig.model_validate(data or {})
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc

    cfg = VecgrepConfig(**validated.model_dump())

    cfg.workspace_dir = os.path.abspath(os.path.expanduser(cfg.workspace_dir))
    cfg.model_cache_dir = os.path.abspath(os.path.expanduser(cfg.model_cache_dir))
    if cfg.db_path:
        cfg.db_path = os.path.abspath(os.path.expanduser(cfg.db_path))
    if cfg.tokenizer_path and not os.path.exists(cfg.tokenizer_path):
        logging.warning(
            "tokenizer_path %s does not exist; chunk sizes will use whitespace tokens.",
            cfg.tokenizer_path,
        )

    return cfg
