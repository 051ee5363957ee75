from __future__ import annotations

import asyncio
import logging
import multiprocessing
import os
import threading
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .chunking import Chunker, ChunkerOptions
from .embeddings import BackendSpec, create_backend
from .errors import ConfigurationError, WorkerPoolError
from .indexing import IndexBatchResult, Indexer, IndexProgress, ProgressCallback, emit_progress
from .searching import SearchOptions, SearchOutcome, merge_results, search_shards
from .store import SearchResult, ShardSet, shard_for_path


def compute_unit_count(requested: int, shard_count: int) -> int:
    default = max(1, (os.cpu_count() or 2) - 1)
    return max(1, min(int(requested) or default, max(1, int(shard_count))))


def assign_shards(shard_ids: Sequence[int], unit_count: int) -> List[List[int]]:
    """Round-robin over sorted shard ids; units left without shards are dropped."""
    ordered = sorted(set(shard_ids))
    units: List[List[int]] = [[] for _ in range(max(1, unit_count))]
    for pos, sid in enumerate(ordered):
        units[pos % len(units)].append(sid)
    return [u for u in units if u]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
@dataclass
class UnitConfig:
    unit_id: int
    store_root: str
    shard_count: int
    shard_ids: List[int]
    backend_spec: Optional[BackendSpec]
    chunker_options: ChunkerOptions


@dataclass
class IndexTask:
    task_id: int
    files: List[Tuple[str, Optional[str]]]


@dataclass
class SearchTask:
    task_id: int
    query_vector: np.ndarray
    options: SearchOptions


@dataclass
class ProgressEvent:
    unit_id: int
    task_id: int
    events: List[IndexProgress] = field(default_factory=list)


@dataclass
class UnitResult:
    unit_id: int
    task_id: int
    index: Optional[IndexBatchResult] = None
    progress: Optional[ProgressEvent] = None
    search: Dict[int, List[SearchResult]] = field(default_factory=dict)
    shard_errors: Dict[int, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Unit side: runs inside the unit's process or thread
# ---------------------------------------------------------------------------
@dataclass
class _UnitState:
    config: UnitConfig
    loop: asyncio.AbstractEventLoop
    shards: ShardSet
    backend: Any
    indexer: Optional[Indexer]


# Each unit executor has exactly one worker, so thread-local state is unit-local in both modes.
_UNIT = threading.local()


def _unit_init(config: UnitConfig) -> None:
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    shards = ShardSet(config.store_root, config.shard_count, shard_ids=config.shard_ids)
    shards.open()
    backend = None
    indexer = None
    if config.backend_spec is not None:
        backend = create_backend(config.backend_spec)
        loop.run_until_complete(backend.initialize())
        indexer = Indexer(shards, backend, Chunker(config.chunker_options))
    _UNIT.state = _UnitState(config=config, loop=loop, shards=shards, backend=backend, indexer=indexer)


def _state() -> _UnitState:
    state = getattr(_UNIT, "state", None)
    if state is None:
        raise RuntimeError("Worker unit not initialized")
    return state


def _run_index(task: IndexTask) -> UnitResult:
    state = _state()
    if state.indexer is None:
        raise ConfigurationError("Worker unit has no embedding backend; cannot index")
    events: List[IndexProgress] = []
    result = state.loop.run_until_complete(state.indexer.index_files(task.files, on_progress=events.append))
    return UnitResult(
        unit_id=state.config.unit_id,
        task_id=task.task_id,
        index=result,
        progress=ProgressEvent(unit_id=state.config.unit_id, task_id=task.task_id, events=events),
    )


def _run_search(task: SearchTask) -> UnitResult:
    state = _state()
    per_shard = state.loop.run_until_complete(
        search_shards(state.shards, task.query_vector, task.options, state.shards.existing_shard_ids())
    )
    out = UnitResult(unit_id=state.config.unit_id, task_id=task.task_id)
    for sid, res in per_shard.items():
        if isinstance(res, ConfigurationError):
            raise res
        if isinstance(res, BaseException):
            out.shard_errors[sid] = str(res) or res.__class__.__name__
        else:
            out.search[sid] = res  # type: ignore[assignment]
    return out


def _unit_close() -> None:
    state = getattr(_UNIT, "state", None)
    if state is None:
        return
    try:
        state.loop.run_until_complete(state.shards.dispose())
        if state.backend is not None:
            state.loop.run_until_complete(state.backend.dispose())
    finally:
        state.loop.close()
        _UNIT.state = None


# ---------------------------------------------------------------------------
# Pool side
# ---------------------------------------------------------------------------
@dataclass
class _Unit:
    config: UnitConfig
    executor: Executor


class WorkerPool:
    """Distributes per-shard indexing and search over OS-level worker units.

    ``mode="process"`` gives every unit its own spawned process; ``"thread"``
    gives it a dedicated thread. Either way a unit owns its shards exclusively
    for the duration of the pool, with its own event loop, store connections
    and embedding backend. A pool built without a backend spec only reads, so
    it may stay open across writes made elsewhere; shard stores notice those
    through ``PRAGMA data_version``.

    Index progress is reported per batch: a unit's events for one
    ``files_per_task`` batch reach ``on_progress`` together when that batch
    returns. Configuration errors raised inside a unit are re-raised as-is.
    """

    def __init__(
        self,
        *,
        store_root: str,
        shard_count: int,
        shard_ids: Sequence[int],
        backend_spec: Optional[BackendSpec],
        chunker_options: ChunkerOptions,
        worker_count: int = 0,
        mode: str = "process",
        files_per_task: int = 16,
    ) -> None:
        if mode not in ("process", "thread"):
            raise ConfigurationError(f"Unknown worker mode {mode!r}")
        self.store_root = store_root
        self.shard_count = int(shard_count)
        self.mode = mode
        self.files_per_task = max(1, int(files_per_task))
        ids = sorted(set(shard_ids))
        self.shard_ids = ids
        self.unit_count = compute_unit_count(worker_count, len(ids))
        self.assignment = assign_shards(ids, self.unit_count)
        self._backend_spec = backend_spec
        self._chunker_options = chunker_options
        self._units: List[_Unit] = []
        self._task_ids = 0
        self._closed = False

    def _make_executor(self, config: UnitConfig) -> Executor:
        if self.mode == "process":
            return ProcessPoolExecutor(
                max_workers=1,
                mp_context=multiprocessing.get_context("spawn"),
                initializer=_unit_init,
                initargs=(config,),
            )
        return ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"vecgrep-unit-{config.unit_id}",
            initializer=_unit_init,
            initargs=(config,),
        )

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("WorkerPool is closed")
        if self._units:
            return
        for unit_id, shard_ids in enumerate(self.assignment):
            config = UnitConfig(
                unit_id=unit_id,
                store_root=self.store_root,
                shard_count=self.shard_count,
                shard_ids=list(shard_ids),
                backend_spec=self._backend_spec,
                chunker_options=self._chunker_options,
            )
            self._units.append(_Unit(config=config, executor=self._make_executor(config)))
        logging.debug("Started %d %s worker units: %s", len(self._units), self.mode, self.assignment)

    def _next_task_id(self) -> int:
        self._task_ids += 1
        return self._task_ids

    async def __aenter__(self) -> "WorkerPool":
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- indexing ---------------------------------------------------------

    async def index_files(
        self,
        files: Sequence[Tuple[str, Optional[str]]],
        *,
        cancel: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IndexBatchResult:
        self.start()
        shard_to_unit = {sid: i for i, unit in enumerate(self._units) for sid in unit.config.shard_ids}
        per_unit: List[List[Tuple[str, Optional[str]]]] = [[] for _ in self._units]
        total = IndexBatchResult()
        for path, content in files:
            unit_idx = shard_to_unit.get(shard_for_path(path, self.shard_count))
            if unit_idx is None:
                total.errors[path] = "shard not assigned to this pool"
                continue
            per_unit[unit_idx].append((path, content))

        files_total = sum(len(f) for f in per_unit)
        done = 0
        loop = asyncio.get_running_loop()

        async def _drive(unit: _Unit, unit_files: List[Tuple[str, Optional[str]]]) -> IndexBatchResult:
            nonlocal done
            res = IndexBatchResult()
            for start in range(0, len(unit_files), self.files_per_task):
                if cancel is not None and cancel.is_set():
                    res.cancelled = True
                    break
                task = IndexTask(task_id=self._next_task_id(), files=unit_files[start:start + self.files_per_task])
                try:
                    unit_result: UnitResult = await asyncio.wrap_future(
                        unit.executor.submit(_run_index, task), loop=loop
                    )
                except ConfigurationError:
                    raise
                except Exception as exc:
                    raise _UnitFailed(unit, unit_files[start:], exc) from exc
                if unit_result.index is not None:
                    res.merge(unit_result.index)
                if unit_result.progress is not None:
                    for event in unit_result.progress.events:
                        done += 1
                        emit_progress(
                            on_progress,
                            IndexProgress(
                                event.phase, done, files_total, event.file_path, event.shard_id, event.chunks
                            ),
                        )
            return res

        active = [(u, f) for u, f in zip(self._units, per_unit) if f]
        outcomes = await asyncio.gather(*(_drive(u, f) for u, f in active), return_exceptions=True)

        shard_errors: Dict[int, str] = {}
        failed_units = 0
        for (unit, _), outcome in zip(active, outcomes):
            if isinstance(outcome, _UnitFailed):
                failed_units += 1
                logging.error("Worker unit %d failed", unit.config.unit_id, exc_info=outcome.cause)
                message = f"worker unit {unit.config.unit_id} failed: {outcome.cause}"
                for sid in unit.config.shard_ids:
                    shard_errors[sid] = message
                for path, _content in outcome.remaining:
                    total.errors[path] = message
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                total.merge(outcome)
        if active and failed_units == len(active):
            raise WorkerPoolError("Every worker unit failed during indexing", shard_errors)
        return total

    # -- search -----------------------------------------------------------

    async def search(self, query_vector: np.ndarray, options: SearchOptions) -> SearchOutcome:
        self.start()
        loop = asyncio.get_running_loop()
        futures = [
            asyncio.wrap_future(
                unit.executor.submit(_run_search, SearchTask(self._next_task_id(), query_vector, options)),
                loop=loop,
            )
            for unit in self._units
        ]
        outcomes = await asyncio.gather(*futures, return_exceptions=True)

        lists: List[List[SearchResult]] = []
        shard_errors: Dict[int, str] = {}
        queried = 0
        for unit, outcome in zip(self._units, outcomes):
            if isinstance(outcome, ConfigurationError):
                raise outcome
            if isinstance(outcome, BaseException):
                logging.error("Worker unit %d failed during search", unit.config.unit_id, exc_info=outcome)
                for sid in unit.config.shard_ids:
                    shard_errors[sid] = f"worker unit {unit.config.unit_id} failed: {outcome}"
                queried += len(unit.config.shard_ids)
                continue
            lists.extend(outcome.search.values())
            shard_errors.update(outcome.shard_errors)
            queried += len(outcome.search) + len(outcome.shard_errors)
        if queried and len(shard_errors) == queried:
            raise WorkerPoolError("Every shard failed during search", shard_errors)
        return SearchOutcome(
            results=merge_results(lists, options.limit, options.min_score),
            shard_errors=shard_errors,
        )

    # -- lifecycle --------------------------------------------------------

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        units, self._units = self._units, []
        loop = asyncio.get_running_loop()
        for unit in units:
            try:
                await asyncio.wrap_future(unit.executor.submit(_unit_close), loop=loop)
            except Exception:
                logging.warning("Worker unit %d did not shut down cleanly", unit.config.unit_id, exc_info=True)
            await asyncio.to_thread(unit.executor.shutdown, True, cancel_futures=True)


class _UnitFailed(Exception):
    def __init__(self, unit: _Unit, remaining: List[Tuple[str, Optional[str]]], cause: BaseException) -> None:
        super().__init__(str(cause))
        self.unit = unit
        self.remaining = remaining
        self.cause = cause
