import os

import pytest

pytest.importorskip("aiosqlite")

from conftest import FakeBackend
from vecgrep_mcp import config
from vecgrep_mcp.embeddings import HashingBackend
from vecgrep_mcp.errors import BackendMismatchError, NotInitializedError, ServiceDisposedError
from vecgrep_mcp.searching import SearchOptions
from vecgrep_mcp.service import FileChangeEvent, SearchService, ServiceState


SOURCE = """def load_settings(path):
    return open(path).read()


def save_settings(path, data):
    open(path, "w").write(data)
"""


@pytest.mark.asyncio
async def test_registry_returns_one_instance_per_store(make_config, tmp_path):
    cfg = make_config()
    a = SearchService.get_instance(cfg)
    b = SearchService.get_instance(make_config())
    other = SearchService.get_instance(make_config(db_path=str(tmp_path / "other")))
    assert a is b
    assert other is not a
    assert set(SearchService.all_instances()) == {a, other}
    assert SearchService.remove_instance(cfg.db_path) is a
    assert SearchService.get_instance(cfg) is not a
    await SearchService.reset_all_instances()
    assert SearchService.all_instances() == []


@pytest.mark.asyncio
async def test_operations_require_initialize(make_config):
    service = SearchService.get_instance(make_config())
    assert service.state is ServiceState.UNINITIALIZED
    with pytest.raises(NotInitializedError):
        await service.search("anything")
    with pytest.raises(NotInitializedError):
        await service.get_status()
    await service.initialize()
    status = await service.get_status()
    assert status.ready
    assert status.backend == "hashing:64"
    await service.dispose()
    with pytest.raises(ServiceDisposedError):
        await service.search("anything")
    with pytest.raises(ServiceDisposedError):
        await service.initialize()
    assert SearchService.all_instances() == []


@pytest.mark.asyncio
async def test_events_and_unsubscribe(make_config):
    service = SearchService.get_instance(make_config())
    events = []
    unsubscribe = service.on_event(lambda e: events.append(e.type))
    await service.initialize()
    await service.index_files([("a.py", SOURCE)])
    await service.index_file("b.py", SOURCE)
    await service.clear()
    unsubscribe()
    await service.index_file("c.py", SOURCE)
    assert events == [
        "ready",
        "indexing-started",
        "indexing-progress",
        "indexing-complete",
        "file-indexed",
        "cleared",
    ]
    await service.dispose()


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_operations(make_config):
    service = SearchService.get_instance(make_config())

    def _boom(event):
        raise RuntimeError("listener bug")

    service.on_event(_boom)
    await service.initialize()
    assert await service.index_file("a.py", SOURCE) == 2
    await service.dispose()


@pytest.mark.asyncio
async def test_backend_switch_requires_rebuild(make_config):
    cfg = make_config()
    first = SearchService.get_instance(cfg, backend=HashingBackend(32))
    await first.initialize()
    await first.index_file("a.py", SOURCE)
    await first.dispose()

    second = SearchService.get_instance(cfg, backend=HashingBackend(16))
    with pytest.raises(BackendMismatchError):
        await second.initialize()
    assert second.state is ServiceState.UNINITIALIZED

    await second.initialize(rebuild=True)
    stats = await second.get_stats()
    assert (stats.total_files, stats.total_chunks) == (0, 0)
    assert await second.index_file("a.py", SOURCE) == 2
    await second.dispose()


@pytest.mark.asyncio
async def test_file_change_events(make_config):
    service = SearchService.get_instance(make_config())
    await service.initialize()
    await service.on_file_change(FileChangeEvent("added", "a.py", SOURCE))
    assert (await service.get_stats()).total_chunks == 2
    await service.on_file_change(FileChangeEvent("modified", "a.py", SOURCE.split("\n\n\n")[0] + "\n"))
    assert (await service.get_stats()).total_chunks == 1
    await service.on_file_change(FileChangeEvent("deleted", "a.py"))
    assert (await service.get_stats()).total_chunks == 0
    with pytest.raises(ValueError):
        await service.on_file_change(FileChangeEvent("renamed", "a.py"))
    await service.dispose()


@pytest.mark.asyncio
async def test_relative_paths_resolve_against_workspace(make_config):
    cfg = make_config()
    service = SearchService.get_instance(cfg)
    await service.initialize()
    await service.index_file("pkg/settings.py", SOURCE)
    outcome = await service.search("load settings", SearchOptions(limit=1))
    assert outcome.results[0].file_path.startswith(cfg.workspace_dir)
    assert outcome.results[0].file_path.endswith("pkg/settings.py")
    await service.dispose()


@pytest.mark.asyncio
async def test_parallel_paths_match_sequential(make_config, tmp_path):
    files = [(f"mod_{i}.py", f"def task_{i}():\n    return schedule({i})\n") for i in range(10)]

    sequential = SearchService.get_instance(make_config(db_path=str(tmp_path / "seq")))
    await sequential.initialize()
    seq_result = await sequential.index_files(files)
    seq_hits = await sequential.search("schedule task", SearchOptions(limit=4))

    parallel = SearchService.get_instance(
        make_config(db_path=str(tmp_path / "par"), parallel_index=True, parallel_search=True, worker_count=2)
    )
    await parallel.initialize()
    par_result = await parallel.index_files(files)
    par_hits = await parallel.search("schedule task", SearchOptions(limit=4))

    assert par_result.files_indexed == seq_result.files_indexed == 10
    assert (await parallel.get_stats()).total_chunks == (await sequential.get_stats()).total_chunks

    def _key(outcome):
        return [(r.file_path.rsplit("/", 1)[-1], round(r.similarity_score, 6)) for r in outcome.results]

    assert _key(par_hits) == _key(seq_hits)
    await SearchService.reset_all_instances()


@pytest.mark.asyncio
async def test_unsafe_backend_indexes_sequentially(make_config):
    backend = FakeBackend(dimensions=64, parallel_safe=False)
    service = SearchService.get_instance(make_config(parallel_index=True), backend=backend)
    await service.initialize()
    result = await service.index_files([(f"m{i}.py", f"x = {i}\n") for i in range(6)])
    assert result.files_indexed == 6
    assert backend.embedded_texts == 6
    await service.dispose()
    assert backend.disposed


@pytest.mark.asyncio
async def test_parallel_search_reuses_one_pool(make_config):
    service = SearchService.get_instance(make_config(parallel_search=True, worker_count=2))
    await service.initialize()
    shard_for = service._shards.shard_for
    names = [f"job_{i}.py" for i in range(20)]
    first = next(n for n in names if shard_for(service.resolve_path(n)) == 0)
    second = next(n for n in names if shard_for(service.resolve_path(n)) == 1)
    await service.index_files([(first, "def run_job():\n    pass\n"), (second, "def stop_job():\n    pass\n")])

    await service.search("run job", SearchOptions(limit=2))
    pool = service._search_pool
    assert pool is not None and pool.shard_ids == [0, 1]

    await service.index_file(first, "def rotate_credentials(token):\n    return token\n")
    outcome = await service.search("def rotate_credentials(token):\n    return token\n", SearchOptions(limit=1))
    assert service._search_pool is pool
    assert outcome.results[0].file_path == service.resolve_path(first)
    assert "rotate_credentials" in outcome.results[0].content

    await service.dispose()
    assert service._search_pool is None


@pytest.mark.asyncio
async def test_cache_derived_store_path_can_be_removed(make_config, tmp_path, monkeypatch):
    real_cache = tmp_path / "real-cache"
    real_cache.mkdir()
    linked_cache = tmp_path / "linked-cache"
    os.symlink(real_cache, linked_cache)
    monkeypatch.setattr(config, "DEFAULT_CACHE_ROOT", str(linked_cache))

    service = SearchService.get_instance(make_config(db_path=""))
    assert service.store_path.startswith(os.path.realpath(real_cache))
    unresolved = os.path.join(str(linked_cache), "projects", os.path.basename(service.store_path))
    assert SearchService.remove_instance(unresolved) is service
