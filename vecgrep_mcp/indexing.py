from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from .chunking import Chunker, content_hash
from .discovery import read_text
from .embeddings import EmbeddingBackend
from .errors import ConfigurationError
from .store import IndexRecord, ShardSet


@dataclass
class IndexProgress:
    phase: str  # started | file | skipped | error | complete
    current: int
    total: int
    file_path: str = ""
    shard_id: Optional[int] = None
    chunks: int = 0


ProgressCallback = Callable[[IndexProgress], None]


@dataclass
class IndexBatchResult:
    files_indexed: int = 0
    files_skipped: int = 0
    chunks_written: int = 0
    errors: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    def merge(self, other: "IndexBatchResult") -> None:
        self.files_indexed += other.files_indexed
        self.files_skipped += other.files_skipped
        self.chunks_written += other.chunks_written
        self.errors.update(other.errors)
        self.cancelled = self.cancelled or other.cancelled


def emit_progress(callback: Optional[ProgressCallback], event: IndexProgress) -> None:
    """Deliver a progress event; listener failures never reach the indexer."""
    if callback is None:
        return
    try:
        callback(event)
    except Exception:
        logging.warning("Progress listener raised", exc_info=True)


class Indexer:
    def __init__(
        self,
        shards: ShardSet,
        backend: EmbeddingBackend,
        chunker: Chunker,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.shards = shards
        self.backend = backend
        self.chunker = chunker
        self.on_progress = on_progress

    async def _index_one(self, file_path: str, content: str) -> Tuple[int, int, bool]:
        """Returns (shard_id, chunks_written, skipped)."""
        store = await self.shards.store_for_path(file_path)
        digest = content_hash(content)
        existing = await store.hashes.get(file_path)
        if existing is not None and existing.content_hash == digest:
            return store.shard_id, 0, True

        try:
            chunks = await asyncio.to_thread(self.chunker.chunk, content, file_path)
            if chunks:
                vectors = await self.backend.embed_batch([c.content for c in chunks])
            else:
                vectors = np.zeros((0, self.backend.dimensions or 0), dtype=np.float32)
            if len(vectors) != len(chunks):
                raise RuntimeError(
                    f"Backend returned {len(vectors)} vectors for {len(chunks)} chunks of {file_path}"
                )
            records = [
                IndexRecord(chunk=chunk, chunk_index=i, embedding=vectors[i], shard_id=store.shard_id)
                for i, chunk in enumerate(chunks)
            ]
            async with store.transaction():
                await store.delete_by_file(file_path)
                await store.upsert(records, identity=self.backend.identity)
                await store.hashes.set(file_path, digest, len(records))
        except BaseException:
            try:
                await store.hashes.evict(file_path)
            except Exception:
                logging.warning("Failed to evict hash for %s", file_path, exc_info=True)
            raise
        return store.shard_id, len(records), False

    async def index_file(self, file_path: str, content: str) -> int:
        """Index one file; returns the number of chunks written (0 when unchanged)."""
        _, written, _ = await self._index_one(file_path, content)
        return written

    async def delete_file(self, file_path: str) -> None:
        store = await self.shards.store_for_path(file_path)
        async with store.transaction():
            await store.delete_by_file(file_path)
            await store.hashes.evict(file_path)

    async def index_files(
        self,
        files: Iterable[Tuple[str, Optional[str]]],
        *,
        cancel: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IndexBatchResult:
        """Index ``(path, content)`` pairs; ``None`` content is read from disk."""
        items = list(files)
        callback = on_progress or self.on_progress
        result = IndexBatchResult()
        total = len(items)
        for pos, (file_path, content) in enumerate(items, 1):
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                logging.info("Indexing cancelled after %d of %d files", pos - 1, total)
                break
            try:
                text = content if content is not None else await asyncio.to_thread(read_text, file_path)
                shard_id, written, skipped = await self._index_one(file_path, text)
            except (asyncio.CancelledError, KeyboardInterrupt, ConfigurationError):
                raise
            except Exception as exc:
                logging.warning("Failed to index %s", file_path, exc_info=True)
                result.errors[file_path] = str(exc) or exc.__class__.__name__
                emit_progress(callback, IndexProgress("error", pos, total, file_path))
                continue
            if skipped:
                result.files_skipped += 1
                emit_progress(callback, IndexProgress("skipped", pos, total, file_path, shard_id))
            else:
                result.files_indexed += 1
                result.chunks_written += written
                emit_progress(callback, IndexProgress("file", pos, total, file_path, shard_id, written))
        return result

    async def clear(self) -> None:
        await self.shards.clear()

    def shard_ids_for(self, paths: Iterable[str]) -> List[int]:
        return sorted({self.shards.shard_for(p) for p in paths})
