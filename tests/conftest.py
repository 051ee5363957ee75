from typing import Dict, List, Optional

import numpy as np
import pytest

from vecgrep_mcp.config import VecgrepConfig
from vecgrep_mcp.embeddings import BackendProbe, BackendSpec, hash_vector
from vecgrep_mcp.service import SearchService


class FakeBackend:
    """Embedding backend double with controllable probe, init and vectors."""

    def __init__(
        self,
        name: str = "fake",
        *,
        available: bool = True,
        fail_init: bool = False,
        dimensions: int = 16,
        parallel_safe: bool = True,
        vectors: Optional[Dict[str, List[float]]] = None,
    ) -> None:
        self.name = name
        self.parallel_safe = parallel_safe
        self._available = available
        self._fail_init = fail_init
        self._dimensions = dimensions
        self._vectors = vectors or {}
        self.fail_embed = False
        self.init_calls = 0
        self.probe_calls = 0
        self.batches: List[List[str]] = []
        self.disposed = False

    @property
    def identity(self) -> str:
        return f"{self.name}:{self._dimensions}"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def probe(self) -> BackendProbe:
        self.probe_calls += 1
        return BackendProbe(self._available, "fake probe")

    async def initialize(self) -> None:
        self.init_calls += 1
        if self._fail_init:
            raise RuntimeError("init failed")

    def _vector(self, text: str) -> np.ndarray:
        if text in self._vectors:
            return np.asarray(self._vectors[text], dtype=np.float32)
        return hash_vector(text, self._dimensions)

    async def embed(self, text: str) -> np.ndarray:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts) -> np.ndarray:
        texts = list(texts)
        if self.fail_embed:
            raise RuntimeError("embedding failed")
        self.batches.append(texts)
        if not texts:
            return np.zeros((0, self._dimensions), dtype=np.float32)
        return np.stack([self._vector(t) for t in texts])

    async def dispose(self) -> None:
        self.disposed = True

    def spec(self) -> Optional[BackendSpec]:
        return None

    @property
    def embedded_texts(self) -> int:
        return sum(len(b) for b in self.batches)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> VecgrepConfig:
        workspace = tmp_path / "workspace"
        workspace.mkdir(exist_ok=True)
        values = dict(
            workspace_dir=str(workspace),
            db_path=str(tmp_path / "store"),
            backend="hashing",
            hashing_dimensions=64,
            shard_count=2,
            parallel_index=False,
            parallel_search=False,
            worker_mode="thread",
        )
        values.update(overrides)
        return VecgrepConfig(**values)

    return _make


@pytest.fixture(autouse=True)
def _clear_service_registry():
    yield
    SearchService._instances.clear()
