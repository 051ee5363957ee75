import numpy as np
import pytest

pytest.importorskip("aiosqlite")

from conftest import FakeBackend
from vecgrep_mcp.chunking import Chunk
from vecgrep_mcp.errors import DimensionMismatchError
from vecgrep_mcp.searching import (
    SearchOptions,
    Searcher,
    extract_keywords,
    make_highlight,
    merge_results,
)
from vecgrep_mcp.store import IndexRecord, SearchResult, ShardSet, shard_for_path


QUERY = "where is the best match"


def _path_in_shard(shard_id, shard_count=2, stem="file"):
    for i in range(1000):
        path = f"/repo/{stem}_{i}.py"
        if shard_for_path(path, shard_count) == shard_id:
            return path
    raise AssertionError("no path found")


async def _put(shards, path, vector, content=None):
    store = await shards.store_for_path(path)
    chunk = Chunk(path, 1, 3, content or f"content of {path}", "python", None, "h")
    await store.upsert(
        [IndexRecord(chunk, 0, np.asarray(vector, dtype=np.float32), store.shard_id)],
        identity="fake:3",
    )
    return store


@pytest.fixture
async def shards(tmp_path):
    s = ShardSet(str(tmp_path / "idx"), 2)
    s.open()
    yield s
    await s.dispose()


@pytest.fixture
def backend():
    return FakeBackend(dimensions=3, vectors={QUERY: [1, 0, 0]})


def _result(path, idx, score):
    return SearchResult(file_path=path, chunk_index=idx, content="", similarity_score=score, shard_id=0)


def test_merge_results_orders_and_cuts():
    lists = [
        [_result("/b.py", 0, 0.9), _result("/a.py", 1, 0.4)],
        [_result("/a.py", 0, 0.9), _result("/c.py", 0, 0.7)],
    ]
    merged = merge_results(lists, limit=3)
    assert [(r.file_path, r.chunk_index) for r in merged] == [("/a.py", 0), ("/b.py", 0), ("/c.py", 0)]
    assert [r.file_path for r in merge_results(lists, limit=10, min_score=0.8)] == ["/a.py", "/b.py"]
    assert merge_results(lists, limit=0) == []


def test_per_shard_k_never_below_limit():
    assert SearchOptions(limit=5).per_shard_k() == 5
    assert SearchOptions(limit=5, top_k_per_shard=2).per_shard_k() == 5
    assert SearchOptions(limit=5, top_k_per_shard=20).per_shard_k() == 20


@pytest.mark.asyncio
async def test_global_best_found_in_any_shard(shards, backend):
    p0 = _path_in_shard(0)
    p1 = _path_in_shard(1)
    await _put(shards, p0, [0.6, 0.8, 0])
    await _put(shards, p1, [1, 0, 0])
    outcome = await Searcher(shards, backend).search(QUERY, SearchOptions(limit=1))
    assert len(outcome.results) == 1
    best = outcome.results[0]
    assert (best.file_path, best.shard_id) == (p1, 1)
    assert best.similarity_score == pytest.approx(1.0, abs=1e-5)
    assert outcome.shard_errors == {}


@pytest.mark.asyncio
async def test_partial_shard_failure_is_reported(shards, backend, monkeypatch):
    p0 = _path_in_shard(0)
    p1 = _path_in_shard(1)
    broken = await _put(shards, p0, [1, 0, 0])
    await _put(shards, p1, [0.6, 0.8, 0])

    async def _fail(*args, **kwargs):
        raise OSError("disk gone")

    monkeypatch.setattr(broken, "search", _fail)
    outcome = await Searcher(shards, backend).search(QUERY)
    assert [r.file_path for r in outcome.results] == [p1]
    assert outcome.shard_errors == {0: "disk gone"}


@pytest.mark.asyncio
async def test_every_shard_failing_raises(shards, backend, monkeypatch):
    stores = [await _put(shards, _path_in_shard(sid), [1, 0, 0]) for sid in (0, 1)]

    async def _fail(*args, **kwargs):
        raise OSError("disk gone")

    for store in stores:
        monkeypatch.setattr(store, "search", _fail)
    with pytest.raises(OSError):
        await Searcher(shards, backend).search(QUERY)


@pytest.mark.asyncio
async def test_dimension_mismatch_in_one_shard_raises(shards, backend):
    await _put(shards, _path_in_shard(0), [1, 0, 0])
    await _put(shards, _path_in_shard(1), [0, 0, 0, 1])
    with pytest.raises(DimensionMismatchError):
        await Searcher(shards, backend).search(QUERY)


@pytest.mark.asyncio
async def test_empty_index_and_zero_limit(shards, backend):
    searcher = Searcher(shards, backend)
    assert (await searcher.search(QUERY)).results == []
    await _put(shards, _path_in_shard(0), [1, 0, 0])
    assert (await searcher.search(QUERY, SearchOptions(limit=0))).results == []


@pytest.mark.asyncio
async def test_find_similar_applies_default_threshold(shards, backend):
    near = _path_in_shard(0, stem="near")
    far = _path_in_shard(1, stem="far")
    await _put(shards, near, [1, 0, 0])
    await _put(shards, far, [-1, 0, 0])
    outcome = await Searcher(shards, backend).find_similar(QUERY)
    assert [r.file_path for r in outcome.results] == [near]


@pytest.mark.asyncio
async def test_search_with_context_adds_highlight(shards, backend):
    path = _path_in_shard(0)
    await _put(shards, path, [1, 0, 0], content="import os\n\ndef best_match():\n    return 1\n")
    outcome = await Searcher(shards, backend).search(QUERY, SearchOptions(return_context=True))
    assert "**best**_**match**" in outcome.results[0].highlight


def test_extract_keywords_drops_stop_words():
    assert extract_keywords("How do I parse the config?") == ["parse", "config"]


def test_make_highlight_windows_first_match():
    content = "\n".join(f"line {i}" for i in range(20)) + "\ndef authenticate_user():\n    pass"
    snippet = make_highlight(content, "authenticate user", context_lines=2)
    lines = snippet.split("\n")
    assert lines[0] == "line 18"
    assert "def **authenticate**_**user**():" in lines
    no_match = make_highlight(content, "zebra", context_lines=1)
    assert no_match == "line 0\nline 1\nline 2"
