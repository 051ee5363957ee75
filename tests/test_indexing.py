import threading

import pytest

pytest.importorskip("aiosqlite")

from conftest import FakeBackend
from vecgrep_mcp.chunking import Chunker
from vecgrep_mcp.errors import DimensionMismatchError
from vecgrep_mcp.indexing import Indexer, IndexProgress, emit_progress
from vecgrep_mcp.store import ShardSet


THREE_FUNCS = """def one():
    return 1


def two():
    return 2


def three():
    return 3
"""

TWO_FUNCS = """def one():
    return 1


def three():
    return 3
"""


@pytest.fixture
async def indexer(tmp_path):
    shards = ShardSet(str(tmp_path / "idx"), 2)
    shards.open()
    idx = Indexer(shards, FakeBackend(), Chunker())
    yield idx
    await shards.dispose()


async def _records(indexer, path):
    store = await indexer.shards.store_for_path(path)
    return await store.records_for_file(path)


@pytest.mark.asyncio
async def test_unchanged_content_is_skipped(indexer):
    assert await indexer.index_file("/repo/a.py", THREE_FUNCS) == 3
    embedded = indexer.backend.embedded_texts
    assert await indexer.index_file("/repo/a.py", THREE_FUNCS) == 0
    assert indexer.backend.embedded_texts == embedded


@pytest.mark.asyncio
async def test_reindex_replaces_previous_chunks(indexer):
    await indexer.index_file("/repo/a.py", THREE_FUNCS)
    assert await indexer.index_file("/repo/a.py", TWO_FUNCS) == 2
    records = await _records(indexer, "/repo/a.py")
    assert [r.chunk_index for r in records] == [0, 1]
    assert [r.chunk.function_name for r in records] == ["one", "three"]


@pytest.mark.asyncio
async def test_one_embedding_call_per_file(indexer):
    await indexer.index_file("/repo/a.py", THREE_FUNCS)
    assert len(indexer.backend.batches) == 1
    assert len(indexer.backend.batches[0]) == 3


@pytest.mark.asyncio
async def test_failed_embedding_evicts_hash_and_keeps_old_records(indexer):
    await indexer.index_file("/repo/a.py", THREE_FUNCS)
    indexer.backend.fail_embed = True
    with pytest.raises(RuntimeError):
        await indexer.index_file("/repo/a.py", TWO_FUNCS)
    store = await indexer.shards.store_for_path("/repo/a.py")
    assert await store.hashes.get("/repo/a.py") is None
    assert len(await _records(indexer, "/repo/a.py")) == 3

    # Same content as the last successful write is embedded again.
    indexer.backend.fail_embed = False
    assert await indexer.index_file("/repo/a.py", THREE_FUNCS) == 3


@pytest.mark.asyncio
async def test_empty_content_removes_records(indexer):
    await indexer.index_file("/repo/a.py", THREE_FUNCS)
    assert await indexer.index_file("/repo/a.py", "") == 0
    assert await _records(indexer, "/repo/a.py") == []


@pytest.mark.asyncio
async def test_delete_file(indexer):
    await indexer.index_file("/repo/a.py", THREE_FUNCS)
    await indexer.delete_file("/repo/a.py")
    assert await _records(indexer, "/repo/a.py") == []
    assert await indexer.index_file("/repo/a.py", THREE_FUNCS) == 3


@pytest.mark.asyncio
async def test_index_files_records_per_file_errors(indexer, tmp_path):
    on_disk = tmp_path / "b.py"
    on_disk.write_text(TWO_FUNCS)
    events = []
    result = await indexer.index_files(
        [
            ("/repo/a.py", THREE_FUNCS),
            (str(tmp_path / "missing.py"), None),
            (str(on_disk), None),
            ("/repo/a.py", THREE_FUNCS),
        ],
        on_progress=events.append,
    )
    assert result.files_indexed == 2
    assert result.files_skipped == 1
    assert result.chunks_written == 5
    assert list(result.errors) == [str(tmp_path / "missing.py")]
    assert [e.phase for e in events] == ["file", "error", "file", "skipped"]
    assert [e.current for e in events] == [1, 2, 3, 4]
    assert all(e.total == 4 for e in events)


@pytest.mark.asyncio
async def test_index_files_stops_when_cancelled(indexer):
    cancel = threading.Event()

    def _cancel_after_first(event):
        cancel.set()

    result = await indexer.index_files(
        [("/repo/a.py", THREE_FUNCS), ("/repo/b.py", TWO_FUNCS)],
        cancel=cancel,
        on_progress=_cancel_after_first,
    )
    assert result.cancelled
    assert result.files_indexed == 1
    assert await _records(indexer, "/repo/b.py") == []


def test_progress_listener_errors_are_contained():
    def _boom(event):
        raise ValueError("listener bug")

    emit_progress(_boom, IndexProgress("file", 1, 1, "/repo/a.py"))
    emit_progress(None, IndexProgress("file", 1, 1, "/repo/a.py"))


@pytest.mark.asyncio
async def test_dimension_mismatch_aborts_batch(tmp_path):
    shards = ShardSet(str(tmp_path / "bound"), 1)
    shards.open()
    try:
        await Indexer(shards, FakeBackend(dimensions=3), Chunker()).index_file("/repo/a.py", THREE_FUNCS)
        wider = Indexer(shards, FakeBackend(dimensions=16), Chunker())
        with pytest.raises(DimensionMismatchError):
            await wider.index_files([("/repo/b.py", TWO_FUNCS), ("/repo/c.py", THREE_FUNCS)])
        store = await shards.store(0)
        assert await store.records_for_file("/repo/b.py") == []
        assert await store.hashes.get("/repo/b.py") is None
    finally:
        await shards.dispose()
