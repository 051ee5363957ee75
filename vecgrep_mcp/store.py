from __future__ import annotations

import asyncio
import fnmatch
import glob
import hashlib
import importlib.util
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite
import numpy as np

from .chunking import Chunk
from .errors import ConfigurationError, DimensionMismatchError


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS records (
    file_path TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    content TEXT NOT NULL,
    language TEXT NOT NULL,
    function_name TEXT,
    content_hash TEXT NOT NULL,
    vector BLOB NOT NULL,
    indexed_at REAL NOT NULL,
    PRIMARY KEY (file_path, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_records_language ON records(language);

CREATE TABLE IF NOT EXISTS file_hashes (
    file_path TEXT PRIMARY KEY,
    content_hash TEXT NOT NULL,
    chunk_count INTEGER NOT NULL,
    indexed_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS store_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

MANIFEST_NAME = "manifest.json"


def normalize_path(file_path: str) -> str:
    return os.path.normpath(file_path).replace("\\", "/")


def shard_for_path(file_path: str, shard_count: int) -> int:
    """Stable shard id for a path; identical across runs and processes."""
    if shard_count <= 1:
        return 0
    digest = hashlib.sha256(normalize_path(file_path).encode("utf-8")).hexdigest()
    return int(digest[:16], 16) % shard_count


def shard_filename(shard_id: int) -> str:
    return f"shard-{shard_id:03d}.db"


@dataclass
class IndexRecord:
    chunk: Chunk
    chunk_index: int
    embedding: np.ndarray
    shard_id: int


@dataclass
class SearchResult:
    file_path: str
    chunk_index: int
    content: str
    similarity_score: float
    shard_id: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    highlight: Optional[str] = None


@dataclass
class SearchFilters:
    path_prefix: Optional[str] = None
    path_glob: Optional[str] = None
    languages: Optional[Sequence[str]] = None

    def is_empty(self) -> bool:
        return not (self.path_prefix or self.path_glob or self.languages)

    def matches(self, file_path: str, language: str) -> bool:
        if self.path_prefix and not file_path.startswith(self.path_prefix):
            return False
        if self.path_glob and not fnmatch.fnmatchcase(file_path, self.path_glob):
            return False
        if self.languages and language not in set(self.languages):
            return False
        return True


@dataclass
class IndexStats:
    total_files: int = 0
    total_chunks: int = 0
    database_size_bytes: int = 0
    last_indexed_at: Optional[float] = None

    def merge(self, other: "IndexStats") -> "IndexStats":
        times = [t for t in (self.last_indexed_at, other.last_indexed_at) if t is not None]
        return IndexStats(
            total_files=self.total_files + other.total_files,
            total_chunks=self.total_chunks + other.total_chunks,
            database_size_bytes=self.database_size_bytes + other.database_size_bytes,
            last_indexed_at=max(times) if times else None,
        )


@dataclass
class FileHashEntry:
    content_hash: str
    chunk_count: int
    indexed_at: float


@dataclass
class _VectorCache:
    key: Tuple[int, int]
    rowids: List[int]
    paths: List[str]
    chunk_indexes: List[int]
    languages: List[str]
    matrix: np.ndarray  # rows L2-normalised
    faiss_index: Any = None


_FAISS_AVAILABLE: Optional[bool] = None


def _faiss_available() -> bool:
    global _FAISS_AVAILABLE
    if _FAISS_AVAILABLE is None:
        _FAISS_AVAILABLE = importlib.util.find_spec("faiss") is not None
    return _FAISS_AVAILABLE


def _to_score(cos: np.ndarray) -> np.ndarray:
    return np.clip((cos + 1.0) / 2.0, 0.0, 1.0)


class FileHashTable:
    """Per-shard ``file_path -> content hash`` view."""

    def __init__(self, store: "ShardStore") -> None:
        self._store = store

    async def get(self, file_path: str) -> Optional[FileHashEntry]:
        async with self._store._guard() as db:
            async with db.execute(
                "SELECT content_hash, chunk_count, indexed_at FROM file_hashes WHERE file_path = ?",
                (file_path,),
            ) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        return FileHashEntry(content_hash=row[0], chunk_count=int(row[1]), indexed_at=float(row[2]))

    async def set(self, file_path: str, content_hash: str, chunk_count: int) -> None:
        async with self._store.transaction() as db:
            await db.execute(
                """
                INSERT INTO file_hashes(file_path, content_hash, chunk_count, indexed_at)
                VALUES(?,?,?,?)
                ON CONFLICT(file_path) DO UPDATE SET
                  content_hash = excluded.content_hash,
                  chunk_count = excluded.chunk_count,
                  indexed_at = excluded.indexed_at
                """,
                (file_path, content_hash, int(chunk_count), time.time()),
            )

    async def evict(self, file_path: str) -> None:
        async with self._store.transaction() as db:
            await db.execute("DELETE FROM file_hashes WHERE file_path = ?", (file_path,))

    async def clear(self) -> None:
        async with self._store.transaction() as db:
            await db.execute("DELETE FROM file_hashes")


class ShardStore:
    """One shard: a SQLite file holding chunk records and their vectors."""

    def __init__(self, path: str, shard_id: int, *, shard_count: int = 1) -> None:
        self.path = path
        self.shard_id = shard_id
        self.shard_count = shard_count
        self.hashes = FileHashTable(self)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._txn_owner: Optional[asyncio.Task] = None
        self._generation = 0
        self._cache: Optional[_VectorCache] = None
        self._dim: Optional[int] = None

    async def initialize(self) -> None:
        if self._db is not None:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        # Autocommit; transactions are opened explicitly.
        db = await aiosqlite.connect(self.path, isolation_level=None)
        try:
            await db.executescript(SCHEMA_SQL)
            await db.execute(
                "INSERT OR IGNORE INTO store_meta(key, value) VALUES('shard_count', ?)",
                (str(self.shard_count),),
            )
        except Exception:
            await db.close()
            raise
        self._db = db
        meta = await self.meta()
        if meta.get("embedding_dim"):
            self._dim = int(meta["embedding_dim"])

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError(f"Shard {self.shard_id} is not initialized")
        return self._db

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[aiosqlite.Connection]:
        if self._txn_owner is not None and self._txn_owner is asyncio.current_task():
            yield self._conn()
            return
        async with self._lock:
            yield self._conn()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Atomic unit of writes; nested use from the same task joins the outer one."""
        task = asyncio.current_task()
        if self._txn_owner is not None and self._txn_owner is task:
            yield self._conn()
            return
        async with self._lock:
            db = self._conn()
            self._txn_owner = task
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            else:
                await db.execute("COMMIT")
            finally:
                self._txn_owner = None
                self._generation += 1
                self._cache = None

    # -- metadata ---------------------------------------------------------

    async def meta(self) -> Dict[str, str]:
        async with self._guard() as db:
            rows = await db.execute_fetchall("SELECT key, value FROM store_meta")
        return {str(k): str(v) for k, v in rows}

    async def binding(self) -> Tuple[Optional[str], Optional[int]]:
        """Backend identity and dimensionality bound at first write, if any."""
        meta = await self.meta()
        dim = meta.get("embedding_dim")
        return meta.get("identity"), int(dim) if dim else None

    async def _bind(self, db: aiosqlite.Connection, identity: Optional[str], dim: int) -> None:
        # Re-read inside the transaction: worker units write through their own connections.
        async with db.execute("SELECT value FROM store_meta WHERE key = 'embedding_dim'") as cur:
            row = await cur.fetchone()
        bound = int(row[0]) if row and row[0] else None
        if bound is None:
            await db.executemany(
                "INSERT OR REPLACE INTO store_meta(key, value) VALUES(?, ?)",
                [("embedding_dim", str(dim)), ("identity", identity or "")],
            )
            bound = dim
        self._dim = bound
        if bound != dim:
            raise DimensionMismatchError(
                f"Shard {self.shard_id} holds {bound}-dimensional vectors; got {dim}"
            )

    # -- writes -----------------------------------------------------------

    async def upsert(self, records: Sequence[IndexRecord], *, identity: Optional[str] = None) -> int:
        if not records:
            return 0
        rows = []
        now = time.time()
        dim: Optional[int] = None
        for rec in records:
            vec = np.asarray(rec.embedding, dtype=np.float32).reshape(-1)
            if dim is None:
                dim = int(vec.shape[0])
            elif vec.shape[0] != dim:
                raise DimensionMismatchError(f"Mixed vector sizes in one write: {dim} and {vec.shape[0]}")
            c = rec.chunk
            rows.append(
                (
                    c.file_path,
                    int(rec.chunk_index),
                    int(c.start_line),
                    int(c.end_line),
                    c.content,
                    c.language,
                    c.function_name,
                    c.content_hash,
                    vec.tobytes(),
                    now,
                )
            )
        async with self.transaction() as db:
            await self._bind(db, identity, int(dim or 0))
            await db.executemany(
                """
                INSERT INTO records(file_path, chunk_index, start_line, end_line, content, language,
                                    function_name, content_hash, vector, indexed_at)
                VALUES(?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(file_path, chunk_index) DO UPDATE SET
                  start_line = excluded.start_line,
                  end_line = excluded.end_line,
                  content = excluded.content,
                  language = excluded.language,
                  function_name = excluded.function_name,
                  content_hash = excluded.content_hash,
                  vector = excluded.vector,
                  indexed_at = excluded.indexed_at
                """,
                rows,
            )
        return len(rows)

    async def delete_by_file(self, file_path: str) -> int:
        async with self.transaction() as db:
            cur = await db.execute("DELETE FROM records WHERE file_path = ?", (file_path,))
            count = cur.rowcount
            await cur.close()
        return max(0, int(count))

    async def clear(self) -> None:
        async with self.transaction() as db:
            await db.execute("DELETE FROM records")
            await db.execute("DELETE FROM file_hashes")
            await db.execute("DELETE FROM store_meta WHERE key IN ('identity', 'embedding_dim')")
        self._dim = None

    # -- reads ------------------------------------------------------------

    async def records_for_file(self, file_path: str) -> List[IndexRecord]:
        async with self._guard() as db:
            rows = await db.execute_fetchall(
                """
                SELECT file_path, chunk_index, start_line, end_line, content, language,
                       function_name, content_hash, vector
                FROM records WHERE file_path = ? ORDER BY chunk_index
                """,
                (file_path,),
            )
        out: List[IndexRecord] = []
        for row in rows:
            chunk = Chunk(
                file_path=row[0],
                start_line=int(row[2]),
                end_line=int(row[3]),
                content=row[4],
                language=row[5],
                function_name=row[6],
                content_hash=row[7],
            )
            out.append(
                IndexRecord(
                    chunk=chunk,
                    chunk_index=int(row[1]),
                    embedding=np.frombuffer(row[8], dtype=np.float32).copy(),
                    shard_id=self.shard_id,
                )
            )
        return out

    async def _vectors(self) -> _VectorCache:
        async with self._guard() as db:
            async with db.execute("PRAGMA data_version") as cur:
                row = await cur.fetchone()
            key = (self._generation, int(row[0]) if row else 0)
            if self._cache is not None and self._cache.key == key:
                return self._cache
            rows = await db.execute_fetchall(
                "SELECT rowid, file_path, chunk_index, language, vector FROM records"
            )

        def _build() -> _VectorCache:
            dim = self._dim or 0
            if rows:
                matrix = np.vstack([np.frombuffer(r[4], dtype=np.float32) for r in rows])
                matrix = matrix / (np.linalg.norm(matrix, axis=1, keepdims=True) + 1e-12)
            else:
                matrix = np.zeros((0, dim), dtype=np.float32)
            cache = _VectorCache(
                key=key,
                rowids=[int(r[0]) for r in rows],
                paths=[r[1] for r in rows],
                chunk_indexes=[int(r[2]) for r in rows],
                languages=[r[3] for r in rows],
                matrix=matrix.astype(np.float32, copy=False),
            )
            if rows and _faiss_available():
                import faiss

                index = faiss.IndexFlatIP(int(cache.matrix.shape[1]))
                index.add(np.ascontiguousarray(cache.matrix))
                cache.faiss_index = index
            return cache

        cache = await asyncio.to_thread(_build)
        self._cache = cache
        return cache

    async def search(
        self,
        query_vector: np.ndarray,
        top_k: int,
        filters: Optional[SearchFilters] = None,
    ) -> List[SearchResult]:
        if top_k <= 0:
            return []
        cache = await self._vectors()
        n = len(cache.rowids)
        if n == 0:
            return []
        q = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        if q.shape[0] != cache.matrix.shape[1]:
            raise DimensionMismatchError(
                f"Query has {q.shape[0]} dimensions; shard {self.shard_id} holds {cache.matrix.shape[1]}"
            )
        q = q / (np.linalg.norm(q) + 1e-12)

        if filters is not None and not filters.is_empty():
            candidates = np.asarray(
                [i for i in range(n) if filters.matches(cache.paths[i], cache.languages[i])],
                dtype=np.int64,
            )
        else:
            candidates = None

        def _rank() -> List[Tuple[int, float]]:
            if candidates is None and cache.faiss_index is not None:
                D, I = cache.faiss_index.search(q.reshape(1, -1), min(top_k, n))
                scored = [(int(i), float(d)) for d, i in zip(D[0], I[0]) if int(i) != -1]
            else:
                idx = candidates if candidates is not None else np.arange(n)
                if idx.size == 0:
                    return []
                cos = cache.matrix[idx] @ q
                if idx.size > top_k:
                    kth = np.partition(cos, idx.size - top_k)[idx.size - top_k]
                    keep = np.nonzero(cos >= kth)[0]
                else:
                    keep = np.arange(idx.size)
                scored = [(int(idx[k]), float(cos[k])) for k in keep]
            scored.sort(key=lambda item: (-item[1], cache.paths[item[0]], cache.chunk_indexes[item[0]]))
            return [(i, float(_to_score(np.float32(c)))) for i, c in scored[:top_k]]

        ranked = await asyncio.to_thread(_rank)
        if not ranked:
            return []
        rowids = [cache.rowids[i] for i, _ in ranked]
        placeholders = ",".join("?" for _ in rowids)
        async with self._guard() as db:
            rows = await db.execute_fetchall(
                f"""
                SELECT rowid, file_path, chunk_index, start_line, end_line, content, language, function_name
                FROM records WHERE rowid IN ({placeholders})
                """,
                rowids,
            )
        by_rowid = {int(r[0]): r for r in rows}
        out: List[SearchResult] = []
        for i, score in ranked:
            row = by_rowid.get(cache.rowids[i])
            if row is None:
                continue
            out.append(
                SearchResult(
                    file_path=row[1],
                    chunk_index=int(row[2]),
                    content=row[5],
                    similarity_score=score,
                    shard_id=self.shard_id,
                    metadata={
                        "start_line": int(row[3]),
                        "end_line": int(row[4]),
                        "language": row[6],
                        "function_name": row[7],
                    },
                )
            )
        return out

    async def stats(self) -> IndexStats:
        async with self._guard() as db:
            async with db.execute("SELECT COUNT(*), COUNT(DISTINCT file_path) FROM records") as cur:
                counts = await cur.fetchone()
            async with db.execute("SELECT MAX(indexed_at) FROM file_hashes") as cur:
                last = await cur.fetchone()
        size = 0
        for suffix in ("", "-wal", "-shm"):
            try:
                size += os.path.getsize(self.path + suffix)
            except OSError:
                pass
        return IndexStats(
            total_files=int(counts[1] or 0),
            total_chunks=int(counts[0] or 0),
            database_size_bytes=size,
            last_indexed_at=float(last[0]) if last and last[0] is not None else None,
        )

    async def dispose(self) -> None:
        self._cache = None
        if self._db is not None:
            db, self._db = self._db, None
            await db.close()


class ShardSet:
    """The shard stores of one store directory, opened lazily per shard id."""

    def __init__(
        self,
        root: str,
        shard_count: int,
        *,
        shard_ids: Optional[Iterable[int]] = None,
    ) -> None:
        if shard_count < 1:
            raise ConfigurationError("shard_count must be at least 1")
        self.root = root
        self.shard_count = int(shard_count)
        self._allowed = sorted(set(shard_ids)) if shard_ids is not None else None
        self._stores: Dict[int, ShardStore] = {}
        self._open_lock = asyncio.Lock()

    @property
    def shard_ids(self) -> List[int]:
        if self._allowed is not None:
            return list(self._allowed)
        return list(range(self.shard_count))

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.root, MANIFEST_NAME)

    def shard_for(self, file_path: str) -> int:
        return shard_for_path(file_path, self.shard_count)

    def open(self) -> None:
        os.makedirs(self.root, exist_ok=True)
        if os.path.exists(self.manifest_path):
            with open(self.manifest_path, "r", encoding="utf-8") as f:
                manifest = json.load(f)
            existing = int(manifest.get("shard_count", 0))
            if existing != self.shard_count:
                raise ConfigurationError(
                    f"Store at {self.root} was built with shard_count={existing}; "
                    f"configured shard_count={self.shard_count}. Rebuild the index to change it."
                )
            return
        if self._allowed is None:
            tmp = self.manifest_path + ".tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump({"shard_count": self.shard_count, "created_at": time.time()}, f)
            os.replace(tmp, self.manifest_path)

    def existing_shard_ids(self) -> List[int]:
        return [sid for sid in self.shard_ids if os.path.exists(os.path.join(self.root, shard_filename(sid)))]

    async def store(self, shard_id: int) -> ShardStore:
        if shard_id not in self.shard_ids:
            raise ValueError(f"Shard {shard_id} is not assigned to this shard set")
        async with self._open_lock:
            store = self._stores.get(shard_id)
            if store is None:
                store = ShardStore(
                    os.path.join(self.root, shard_filename(shard_id)),
                    shard_id,
                    shard_count=self.shard_count,
                )
                await store.initialize()
                self._stores[shard_id] = store
            return store

    async def store_for_path(self, file_path: str) -> ShardStore:
        return await self.store(self.shard_for(file_path))

    async def stats(self) -> IndexStats:
        total = IndexStats()
        for sid in self.existing_shard_ids():
            total = total.merge(await (await self.store(sid)).stats())
        return total

    async def clear(self) -> None:
        for sid in self.existing_shard_ids():
            await (await self.store(sid)).clear()

    async def dispose(self) -> None:
        stores = list(self._stores.values())
        self._stores.clear()
        for store in stores:
            try:
                await store.dispose()
            except Exception:
                logging.warning("Failed to close shard %s", store.shard_id, exc_info=True)

    async def destroy(self) -> None:
        """Dispose and delete every shard file and the manifest."""
        await self.dispose()
        for path in glob.glob(os.path.join(self.root, "shard-*.db*")) + [self.manifest_path]:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
