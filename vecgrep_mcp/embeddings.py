from __future__ import annotations

import asyncio
import hashlib
import importlib.util
import logging
import random
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from .config import BACKEND_CHOICES, VecgrepConfig
from .errors import BackendUnavailableError, ConfigurationError, OperationCancelled


AUTO_PRIORITY = ("gpu", "remote", "cpu", "hashing")
EXPLICIT_ONLY = ("openai",)


@dataclass
class BackendProbe:
    available: bool
    reason: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BackendSpec:
    """Picklable recipe for rebuilding an equivalent backend in another process."""

    name: str
    options: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------
@runtime_checkable
class EmbeddingBackend(Protocol):
    name: str
    parallel_safe: bool

    @property
    def identity(self) -> str:
        ...

    @property
    def dimensions(self) -> Optional[int]:
        ...

    async def probe(self) -> BackendProbe:
        ...

    async def initialize(self) -> None:
        ...

    async def embed(self, text: str) -> np.ndarray:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        ...

    async def dispose(self) -> None:
        ...

    def spec(self) -> Optional[BackendSpec]:
        ...


class _BaseBackend:
    name = "base"
    parallel_safe = True

    def __init__(self, *, batch_size: int = 32) -> None:
        self.batch_size = max(1, int(batch_size))
        self._dimensions: Optional[int] = None

    @property
    def identity(self) -> str:
        return self.name

    @property
    def dimensions(self) -> Optional[int]:
        return self._dimensions

    async def embed(self, text: str) -> np.ndarray:
        vecs = await self.embed_batch([text])
        return vecs[0]

    async def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        texts_list = list(texts)
        if not texts_list:
            return np.zeros((0, self._dimensions or 0), dtype=np.float32)
        parts: List[np.ndarray] = []
        for i in range(0, len(texts_list), self.batch_size):
            parts.append(await self._embed_many(texts_list[i:i + self.batch_size]))
        return np.vstack(parts).astype(np.float32, copy=False)

    async def _embed_many(self, texts: List[str]) -> np.ndarray:
        raise NotImplementedError

    async def dispose(self) -> None:
        return None

    def spec(self) -> Optional[BackendSpec]:
        return None


# ---------------------------------------------------------------------------
# Feature-hashing back-end  (no model, always available)
# ---------------------------------------------------------------------------
_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")
_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")


def _features(text: str) -> List[str]:
    feats: List[str] = []
    for word in _WORD_RE.findall(text):
        lowered = word.lower()
        feats.append(lowered)
        parts = [p.lower() for piece in word.split("_") for p in _CAMEL_RE.findall(piece)]
        if len(parts) > 1:
            feats.extend(p for p in parts if len(p) > 1)
    return feats


def hash_vector(text: str, dimensions: int) -> np.ndarray:
    vec = np.zeros(dimensions, dtype=np.float32)
    for feat in _features(text):
        digest = hashlib.blake2b(feat.encode("utf-8"), digest_size=8).digest()
        idx = int.from_bytes(digest[:4], "little") % dimensions
        sign = 1.0 if digest[4] & 1 else -1.0
        vec[idx] += sign
    norm = float(np.linalg.norm(vec))
    if norm > 0:
        vec /= norm
    return vec


class HashingBackend(_BaseBackend):
    """Signed feature hashing of identifier and word tokens."""

    name = "hashing"
    parallel_safe = True

    def __init__(self, dimensions: int = 384, *, batch_size: int = 32) -> None:
        super().__init__(batch_size=batch_size)
        self._dimensions = max(1, int(dimensions))

    @property
    def identity(self) -> str:
        return f"hashing:{self._dimensions}"

    async def probe(self) -> BackendProbe:
        return BackendProbe(True, "always available", {"dimensions": self._dimensions})

    async def initialize(self) -> None:
        return None

    async def _embed_many(self, texts: List[str]) -> np.ndarray:
        dim = int(self._dimensions or 1)
        return np.stack([hash_vector(t, dim) for t in texts])

    def spec(self) -> Optional[BackendSpec]:
        return BackendSpec("hashing", {"dimensions": self._dimensions, "batch_size": self.batch_size})


# ---------------------------------------------------------------------------
# sentence-transformers back-ends  (local model, thread pool)
# ---------------------------------------------------------------------------
class _SentenceTransformerBackend(_BaseBackend):
    device = "cpu"

    def __init__(self, model_name: str, *, cache_dir: str = "", batch_size: int = 32) -> None:
        super().__init__(batch_size=batch_size)
        self.model_name = model_name
        self.cache_dir = cache_dir
        self._model: Any = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def identity(self) -> str:
        return f"{self.name}:{self.model_name}"

    def _load_model(self) -> Any:
        from sentence_transformers import SentenceTransformer

        return SentenceTransformer(
            self.model_name,
            device=self.device,
            cache_folder=self.cache_dir or None,
        )

    async def initialize(self) -> None:
        if self._model is not None:
            return
        # The model lives in-process; CUDA contexts do not survive a fork.
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"vecgrep-{self.name}")
        loop = asyncio.get_running_loop()
        try:
            self._model = await loop.run_in_executor(self._executor, self._load_model)
        except Exception:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            raise
        self._dimensions = int(self._model.get_sentence_embedding_dimension())

    async def _embed_many(self, texts: List[str]) -> np.ndarray:
        if self._model is None or self._executor is None:
            raise RuntimeError(f"{self.identity} backend is not initialized")
        model = self._model

        def _encode() -> np.ndarray:
            vecs = model.encode(
                texts,
                batch_size=max(1, min(128, len(texts))),
                normalize_embeddings=True,
                show_progress_bar=False,
            )
            return np.asarray(vecs, dtype=np.float32)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, _encode)

    async def dispose(self) -> None:
        self._model = None
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None


class GpuBackend(_SentenceTransformerBackend):
    name = "gpu"
    # One model per device.
    parallel_safe = False

    async def probe(self) -> BackendProbe:
        if importlib.util.find_spec("torch") is None:
            return BackendProbe(False, "torch is not installed")
        if importlib.util.find_spec("sentence_transformers") is None:
            return BackendProbe(False, "sentence-transformers is not installed")

        def _detect() -> Optional[str]:
            import torch

            if torch.cuda.is_available():
                return "cuda"
            mps = getattr(torch.backends, "mps", None)
            if mps is not None and mps.is_available():
                return "mps"
            return None

        device = await asyncio.to_thread(_detect)
        if device is None:
            return BackendProbe(False, "no CUDA or MPS device")
        self.device = device
        return BackendProbe(True, f"{device} device available", {"device": device})


class CpuBackend(_SentenceTransformerBackend):
    name = "cpu"
    parallel_safe = True

    async def probe(self) -> BackendProbe:
        if importlib.util.find_spec("sentence_transformers") is None:
            return BackendProbe(False, "sentence-transformers is not installed")
        return BackendProbe(True, "sentence-transformers importable", {"model": self.model_name})

    def spec(self) -> Optional[BackendSpec]:
        return BackendSpec(
            "cpu",
            {"model_name": self.model_name, "cache_dir": self.cache_dir, "batch_size": self.batch_size},
        )


# ---------------------------------------------------------------------------
# HTTP back-ends  (Ollama-compatible server, OpenAI)
# ---------------------------------------------------------------------------
class _HttpBackend(_BaseBackend):
    _retry_statuses = {408, 429, 500, 502, 503, 504}

    def __init__(self, *, batch_size: int = 32, max_retries: int = 3) -> None:
        super().__init__(batch_size=batch_size)
        self._client: Optional["httpx.AsyncClient"] = None
        self._lock = asyncio.Lock()
        self._max_retries = max(1, int(max_retries))

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _get_client(self) -> "httpx.AsyncClient":
        import httpx

        async with self._lock:
            if self._client is None:
                timeout = httpx.Timeout(connect=10.0, read=120.0, write=10.0, pool=10.0)
                limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
                self._client = httpx.AsyncClient(timeout=timeout, limits=limits, headers=self._headers())
            return self._client

    async def _post_with_retry(self, url: str, *, json: Dict[str, Any]) -> "httpx.Response":
        import httpx

        for attempt in range(self._max_retries):
            client = await self._get_client()
            try:
                resp = await client.post(url, json=json)
                if resp.status_code in self._retry_statuses:
                    raise httpx.HTTPStatusError("Retryable response", request=resp.request, response=resp)
                resp.raise_for_status()
                return resp
            except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError):
                if attempt >= self._max_retries - 1:
                    raise
                backoff = 0.5 * (2 ** attempt) + random.random() * 0.1
                logging.debug("Embedding request to %s failed; retrying in %.2fs", url, backoff)
                await asyncio.sleep(backoff)
        raise RuntimeError("Retry loop exited unexpectedly.")

    async def initialize(self) -> None:
        if self._dimensions is not None:
            return
        vec = await self._embed_many(["dimension probe"])
        if vec.ndim != 2 or vec.shape[0] != 1 or vec.shape[1] == 0:
            raise RuntimeError(f"{self.identity} returned an empty embedding")
        self._dimensions = int(vec.shape[1])

    async def dispose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class RemoteServerBackend(_HttpBackend):
    """Ollama-compatible inference server (``/api/embed``)."""

    name = "remote"
    parallel_safe = True

    def __init__(self, model_name: str, url: str = "http://localhost:11434", *, batch_size: int = 32) -> None:
        super().__init__(batch_size=batch_size)
        self.model_name = model_name
        self.url = url.rstrip("/")

    @property
    def identity(self) -> str:
        return f"remote:{self.model_name}"

    async def probe(self) -> BackendProbe:
        import httpx

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(2.0)) as client:
                resp = await client.get(f"{self.url}/api/tags")
                resp.raise_for_status()
                models = [m.get("name", "") for m in resp.json().get("models", [])]
        except (httpx.HTTPError, ValueError) as exc:
            return BackendProbe(False, f"server at {self.url} unreachable: {exc}")
        return BackendProbe(True, f"server at {self.url}", {"models": models})

    async def _embed_many(self, texts: List[str]) -> np.ndarray:
        resp = await self._post_with_retry(
            f"{self.url}/api/embed",
            json={"model": self.model_name, "input": texts},
        )
        vectors = resp.json().get("embeddings", [])
        if len(vectors) != len(texts):
            raise RuntimeError(f"Expected {len(texts)} embeddings, server returned {len(vectors)}")
        return np.asarray(vectors, dtype=np.float32)

    def spec(self) -> Optional[BackendSpec]:
        return BackendSpec("remote", {"model_name": self.model_name, "url": self.url, "batch_size": self.batch_size})


class OpenAIBackend(_HttpBackend):
    """OpenAI-compatible ``/embeddings`` endpoint."""

    name = "openai"
    parallel_safe = True

    def __init__(
        self,
        model_name: str,
        api_key: str,
        api_base: str = "https://api.openai.com/v1",
        *,
        batch_size: int = 32,
    ) -> None:
        super().__init__(batch_size=batch_size)
        self.model_name = model_name
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")

    @property
    def identity(self) -> str:
        return f"openai:{self.model_name}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def probe(self) -> BackendProbe:
        if not self.api_key:
            return BackendProbe(False, "openai_api_key is not configured")
        return BackendProbe(True, "API key configured", {"model": self.model_name})

    async def _embed_many(self, texts: List[str]) -> np.ndarray:
        resp = await self._post_with_retry(
            f"{self.api_base}/embeddings",
            json={"model": self.model_name, "input": texts},
        )
        data = sorted(resp.json()["data"], key=lambda item: item.get("index", 0))
        return np.asarray([item["embedding"] for item in data], dtype=np.float32)

    def spec(self) -> Optional[BackendSpec]:
        return BackendSpec(
            "openai",
            {
                "model_name": self.model_name,
                "api_key": self.api_key,
                "api_base": self.api_base,
                "batch_size": self.batch_size,
            },
        )


# ---------------------------------------------------------------------------
# Construction & selection
# ---------------------------------------------------------------------------
def create_backend(spec: BackendSpec) -> EmbeddingBackend:
    opts = dict(spec.options)
    if spec.name == "hashing":
        return HashingBackend(**opts)
    if spec.name == "cpu":
        return CpuBackend(**opts)
    if spec.name == "remote":
        return RemoteServerBackend(**opts)
    if spec.name == "openai":
        return OpenAIBackend(**opts)
    raise ConfigurationError(f"Backend {spec.name!r} cannot be rebuilt from a spec")


def backend_for_name(cfg: VecgrepConfig, name: str) -> EmbeddingBackend:
    batch = cfg.embedding_batch_size
    if name == "gpu":
        return GpuBackend(cfg.model_name_gpu, cache_dir=cfg.model_cache_dir, batch_size=batch)
    if name == "remote":
        return RemoteServerBackend(cfg.remote_model, cfg.remote_url, batch_size=batch)
    if name == "cpu":
        return CpuBackend(cfg.model_name_cpu, cache_dir=cfg.model_cache_dir, batch_size=batch)
    if name == "hashing":
        return HashingBackend(cfg.hashing_dimensions, batch_size=batch)
    if name == "openai":
        return OpenAIBackend(
            cfg.openai_embedding_model,
            cfg.openai_api_key.get_secret_value(),
            batch_size=batch,
        )
    raise ConfigurationError(f"Unknown embedding backend {name!r}; expected one of {', '.join(BACKEND_CHOICES)}")


def default_candidates(cfg: VecgrepConfig) -> List[EmbeddingBackend]:
    names = [n for n in AUTO_PRIORITY if n != "remote" or cfg.prefer_remote]
    return [backend_for_name(cfg, n) for n in names]


def choose_backend(probes: Mapping[str, BackendProbe], requested: str) -> List[str]:
    """Names to try initialising, in order.

    ``auto`` yields every available candidate in priority order. An explicit
    name yields only itself and raises when its probe failed.
    """
    requested = (requested or "auto").lower()
    if requested == "auto":
        order = list(AUTO_PRIORITY) + [n for n in probes if n not in AUTO_PRIORITY]
        return [n for n in order if n in probes and probes[n].available]
    if requested not in AUTO_PRIORITY and requested not in EXPLICIT_ONLY:
        raise ConfigurationError(
            f"Unknown embedding backend {requested!r}; expected one of {', '.join(BACKEND_CHOICES)}"
        )
    probe = probes.get(requested)
    if probe is None or not probe.available:
        reason = probe.reason if probe is not None else "not probed"
        raise BackendUnavailableError(f"Embedding backend {requested!r} is unavailable: {reason}")
    return [requested]


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Backend selection cancelled")


async def _probe(backend: EmbeddingBackend) -> BackendProbe:
    try:
        probe = await backend.probe()
    except Exception as exc:
        logging.warning("Probe of %s backend failed", backend.name, exc_info=True)
        probe = BackendProbe(False, f"probe raised: {exc}")
    logging.debug("Backend %s probe: %s", backend.name, probe)
    return probe


def _auto_order(pool: Sequence[EmbeddingBackend]) -> List[EmbeddingBackend]:
    rank = {name: i for i, name in enumerate(AUTO_PRIORITY)}
    return sorted(pool, key=lambda b: rank.get(b.name, len(rank)))


async def select_backend(
    cfg: VecgrepConfig,
    candidates: Optional[Sequence[EmbeddingBackend]] = None,
    cancel: Optional[threading.Event] = None,
) -> EmbeddingBackend:
    """Pick and initialise the embedding backend ``cfg.backend`` asks for.

    ``auto`` walks the candidates in priority order, checking and initialising
    one at a time, and stops at the first that comes up; later candidates are
    never touched.
    """
    requested = (cfg.backend or "auto").lower()
    if requested != "auto":
        if requested not in AUTO_PRIORITY and requested not in EXPLICIT_ONLY:
            raise ConfigurationError(
                f"Unknown embedding backend {requested!r}; expected one of {', '.join(BACKEND_CHOICES)}"
            )
        backend = next((c for c in candidates or [] if c.name == requested), None) or backend_for_name(
            cfg, requested
        )
        _check_cancel(cancel)
        choose_backend({backend.name: await _probe(backend)}, requested)
        _check_cancel(cancel)
        try:
            await backend.initialize()
        except Exception as exc:
            raise BackendUnavailableError(f"Embedding backend {requested!r} failed to initialize: {exc}") from exc
        logging.info("Using embedding backend %s (dim=%s)", backend.identity, backend.dimensions)
        return backend

    pool = list(candidates) if candidates is not None else default_candidates(cfg)
    for backend in _auto_order(pool):
        _check_cancel(cancel)
        probe = await _probe(backend)
        if not probe.available:
            continue
        _check_cancel(cancel)
        try:
            await backend.initialize()
        except Exception:
            logging.warning("Embedding backend %s failed to initialize; trying next", backend.name, exc_info=True)
            await backend.dispose()
            continue
        logging.info("Using embedding backend %s (dim=%s)", backend.identity, backend.dimensions)
        return backend
    raise BackendUnavailableError("No embedding backend could be initialized")
