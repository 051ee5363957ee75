from __future__ import annotations

import asyncio
import enum
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Optional, Tuple, Union

from .chunking import Chunker, ChunkerOptions
from .config import VecgrepConfig, normalize_store_path, resolve_store_path
from .discovery import read_text
from .embeddings import EmbeddingBackend, select_backend
from .errors import BackendMismatchError, NotInitializedError, ServiceDisposedError
from .indexing import IndexBatchResult, Indexer, IndexProgress
from .searching import SearchOptions, SearchOutcome, Searcher, SIMILAR_MIN_SCORE, with_highlights
from .store import IndexStats, ShardSet
from .workers import WorkerPool


class ServiceState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DISPOSED = "disposed"


@dataclass
class FileChangeEvent:
    event_type: str  # added | modified | deleted
    file_path: str
    content: Optional[str] = None


@dataclass
class ServiceEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ServiceStatus:
    state: str
    ready: bool
    indexing: bool
    backend: Optional[str]
    stats: Optional[IndexStats]
    error: Optional[str] = None


EventListener = Callable[[ServiceEvent], None]
FileInput = Union[str, Tuple[str, Optional[str]]]


class SearchService:
    """Per-project façade over one backend, one chunker and one shard set.

    Instances are registered per resolved store path; use ``get_instance``
    rather than constructing directly so two callers never open the same
    shard files.
    """

    _instances: ClassVar[Dict[str, "SearchService"]] = {}
    _registry_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, cfg: VecgrepConfig, backend: Optional[EmbeddingBackend] = None) -> None:
        self.cfg = cfg
        self.store_path = resolve_store_path(cfg)
        self.state = ServiceState.UNINITIALIZED
        self.chunker_options = ChunkerOptions(
            max_chunk_tokens=cfg.chunk_size_tokens,
            overlap_tokens=cfg.overlap_tokens,
            respect_boundaries=True,
            tokenizer_path=cfg.tokenizer_path,
        )
        self._backend = backend
        self._shards: Optional[ShardSet] = None
        self._indexer: Optional[Indexer] = None
        self._searcher: Optional[Searcher] = None
        self._search_pool: Optional[WorkerPool] = None
        self._listeners: List[EventListener] = []
        self._init_lock = asyncio.Lock()
        self._indexing = False
        self._last_error: Optional[str] = None

    # -- registry ---------------------------------------------------------

    @classmethod
    def get_instance(cls, cfg: VecgrepConfig, backend: Optional[EmbeddingBackend] = None) -> "SearchService":
        key = resolve_store_path(cfg)
        with cls._registry_lock:
            inst = cls._instances.get(key)
            if inst is None:
                inst = cls(cfg, backend=backend)
                cls._instances[key] = inst
            return inst

    @classmethod
    def remove_instance(cls, store_path: str) -> Optional["SearchService"]:
        key = normalize_store_path(store_path)
        with cls._registry_lock:
            return cls._instances.pop(key, None)

    @classmethod
    def all_instances(cls) -> List["SearchService"]:
        with cls._registry_lock:
            return list(cls._instances.values())

    @classmethod
    async def reset_all_instances(cls) -> None:
        for inst in cls.all_instances():
            await inst.dispose()
        with cls._registry_lock:
            cls._instances.clear()

    # -- events -----------------------------------------------------------

    def on_event(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, type_: str, **data: Any) -> None:
        event = ServiceEvent(type=type_, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logging.warning("Service event listener raised on %s", type_, exc_info=True)

    def _on_progress(self, progress: IndexProgress) -> None:
        self._emit(
            "indexing-progress",
            phase=progress.phase,
            current=progress.current,
            total=progress.total,
            file_path=progress.file_path,
            shard_id=progress.shard_id,
            chunks=progress.chunks,
        )

    # -- lifecycle --------------------------------------------------------

    @property
    def backend(self) -> Optional[EmbeddingBackend]:
        return self._backend

    def _require_ready(self) -> None:
        if self.state is ServiceState.DISPOSED:
            raise ServiceDisposedError(f"Service for {self.store_path} has been disposed")
        if self.state is not ServiceState.READY:
            raise NotInitializedError(f"Service for {self.store_path} is {self.state.value}; call initialize() first")

    async def initialize(self, rebuild: bool = False, cancel: Optional[threading.Event] = None) -> None:
        if self.state is ServiceState.DISPOSED:
            raise ServiceDisposedError(f"Service for {self.store_path} has been disposed")
        async with self._init_lock:
            if self.state is ServiceState.READY and not rebuild:
                return
            self.state = ServiceState.INITIALIZING
            logging.info("Initializing search service at %s", self.store_path)
            try:
                if self._backend is None:
                    self._backend = await select_backend(self.cfg, cancel=cancel)
                await self._open_store(rebuild)
            except BaseException as exc:
                self.state = ServiceState.UNINITIALIZED
                self._last_error = str(exc) or exc.__class__.__name__
                if self._shards is not None:
                    await self._shards.dispose()
                    self._shards = None
                self._emit("error", message=self._last_error, operation="initialize")
                raise
            self.state = ServiceState.READY
            self._last_error = None
        self._emit("ready", backend=self._backend.identity, store_path=self.store_path)

    async def _open_store(self, rebuild: bool) -> None:
        backend = self._backend
        assert backend is not None
        await self._close_search_pool()
        if self._shards is not None:
            await self._shards.dispose()
            self._shards = None
        shards = ShardSet(self.store_path, self.cfg.shard_count)
        if rebuild:
            logging.info("Rebuilding index at %s", self.store_path)
            await shards.destroy()
        shards.open()
        self._shards = shards
        for sid in shards.existing_shard_ids():
            identity, dim = await (await shards.store(sid)).binding()
            if identity and identity != backend.identity:
                raise BackendMismatchError(
                    f"Index at {self.store_path} was built with {identity}; current backend is "
                    f"{backend.identity}. Rebuild the index to switch backends."
                )
            if dim and backend.dimensions and dim != backend.dimensions:
                raise BackendMismatchError(
                    f"Index at {self.store_path} holds {dim}-dimensional vectors; current backend "
                    f"produces {backend.dimensions}. Rebuild the index to switch backends."
                )
        chunker = Chunker(self.chunker_options)
        self._indexer = Indexer(shards, backend, chunker, on_progress=self._on_progress)
        self._searcher = Searcher(shards, backend)

    async def dispose(self) -> None:
        if self.state is ServiceState.DISPOSED:
            return
        self.state = ServiceState.DISPOSED
        with self._registry_lock:
            if self._instances.get(self.store_path) is self:
                self._instances.pop(self.store_path, None)
        await self._close_search_pool()
        shards, self._shards = self._shards, None
        backend, self._backend = self._backend, None
        self._indexer = None
        self._searcher = None
        if shards is not None:
            await shards.dispose()
        if backend is not None:
            try:
                await backend.dispose()
            except Exception:
                logging.warning("Failed to dispose embedding backend", exc_info=True)
        logging.info("Disposed search service at %s", self.store_path)

    # -- paths ------------------------------------------------------------

    def resolve_path(self, file_path: str) -> str:
        path = os.path.expanduser(file_path)
        if not os.path.isabs(path):
            path = os.path.join(self.cfg.workspace_dir or ".", path)
        return os.path.abspath(path)

    # -- search -----------------------------------------------------------

    def _use_pool_for_search(self) -> bool:
        assert self._shards is not None
        return bool(self.cfg.parallel_search) and len(self._shards.existing_shard_ids()) > 1

    async def _search_pool_for(self, shard_ids: List[int]) -> WorkerPool:
        """Read-only pool kept for the service lifetime; rebuilt when the shard set grows."""
        assert self._shards is not None
        pool = self._search_pool
        if pool is not None and pool.shard_ids == sorted(shard_ids):
            return pool
        await self._close_search_pool()
        pool = WorkerPool(
            store_root=self.store_path,
            shard_count=self._shards.shard_count,
            shard_ids=shard_ids,
            backend_spec=None,
            chunker_options=self.chunker_options,
            worker_count=self.cfg.worker_count,
            mode=self.cfg.worker_mode,
        )
        pool.start()
        self._search_pool = pool
        return pool

    async def _close_search_pool(self) -> None:
        pool, self._search_pool = self._search_pool, None
        if pool is not None:
            await pool.close()

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> SearchOutcome:
        self._require_ready()
        assert self._searcher is not None and self._shards is not None and self._backend is not None
        opts = options or SearchOptions()
        if not self._use_pool_for_search():
            return await self._searcher.search(query, opts)
        if opts.limit <= 0:
            return SearchOutcome()
        query_vector = await self._backend.embed(query)
        pool = await self._search_pool_for(self._shards.existing_shard_ids())
        outcome = await pool.search(query_vector, opts)
        if opts.return_context:
            outcome.results = with_highlights(outcome.results, query, opts.context_lines)
        return outcome

    async def find_similar(
        self,
        code: str,
        limit: int = 10,
        min_score: float = SIMILAR_MIN_SCORE,
    ) -> SearchOutcome:
        self._require_ready()
        return await self.search(code, SearchOptions(limit=limit, min_score=min_score))

    # -- indexing ---------------------------------------------------------

    async def index_file(self, file_path: str, content: Optional[str] = None) -> int:
        self._require_ready()
        assert self._indexer is not None
        path = self.resolve_path(file_path)
        if content is None:
            content = await asyncio.to_thread(read_text, path)
        chunks = await self._indexer.index_file(path, content)
        if chunks > 0:
            self._emit("file-indexed", file_path=path, chunks=chunks)
        return chunks

    async def delete_file(self, file_path: str) -> None:
        self._require_ready()
        assert self._indexer is not None
        path = self.resolve_path(file_path)
        await self._indexer.delete_file(path)
        self._emit("file-deleted", file_path=path)

    async def on_file_change(self, event: FileChangeEvent) -> None:
        self._require_ready()
        kind = event.event_type.lower()
        if kind in ("added", "modified"):
            await self.index_file(event.file_path, event.content)
        elif kind == "deleted":
            await self.delete_file(event.file_path)
        else:
            raise ValueError(f"Unknown file change type: {event.event_type!r}")

    def _use_pool_for_index(self, shard_ids: List[int]) -> bool:
        backend = self._backend
        return (
            bool(self.cfg.parallel_index)
            and len(shard_ids) > 1
            and backend is not None
            and backend.parallel_safe
            and backend.spec() is not None
        )

    async def index_files(
        self,
        files: Iterable[FileInput],
        cancel: Optional[threading.Event] = None,
    ) -> IndexBatchResult:
        self._require_ready()
        assert self._indexer is not None and self._shards is not None and self._backend is not None
        items: List[Tuple[str, Optional[str]]] = []
        for item in files:
            if isinstance(item, str):
                items.append((self.resolve_path(item), None))
            else:
                items.append((self.resolve_path(item[0]), item[1]))
        shard_ids = sorted({self._shards.shard_for(p) for p, _ in items})

        self._indexing = True
        self._emit("indexing-started", total_files=len(items), shards=len(shard_ids))
        try:
            if self._use_pool_for_index(shard_ids):
                pool = WorkerPool(
                    store_root=self.store_path,
                    shard_count=self._shards.shard_count,
                    shard_ids=shard_ids,
                    backend_spec=self._backend.spec(),
                    chunker_options=self.chunker_options,
                    worker_count=self.cfg.worker_count,
                    mode=self.cfg.worker_mode,
                    files_per_task=self.cfg.files_per_task,
                )
                async with pool:
                    result = await pool.index_files(items, cancel=cancel, on_progress=self._on_progress)
            else:
                result = await self._indexer.index_files(items, cancel=cancel)
        except BaseException as exc:
            self._last_error = str(exc) or exc.__class__.__name__
            self._emit("error", message=self._last_error, operation="index_files")
            raise
        finally:
            self._indexing = False
        self._emit(
            "indexing-complete",
            files_indexed=result.files_indexed,
            files_skipped=result.files_skipped,
            chunks_written=result.chunks_written,
            errors=len(result.errors),
            cancelled=result.cancelled,
        )
        return result

    # -- status -----------------------------------------------------------

    async def get_stats(self) -> IndexStats:
        self._require_ready()
        assert self._shards is not None
        return await self._shards.stats()

    async def get_status(self) -> ServiceStatus:
        self._require_ready()
        return ServiceStatus(
            state=self.state.value,
            ready=True,
            indexing=self._indexing,
            backend=self._backend.identity if self._backend is not None else None,
            stats=await self.get_stats(),
            error=self._last_error,
        )

    async def clear(self) -> None:
        self._require_ready()
        assert self._indexer is not None
        await self._close_search_pool()
        await self._indexer.clear()
        self._emit("cleared", store_path=self.store_path)
