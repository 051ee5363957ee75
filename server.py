from __future__ import annotations

import atexit
import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from vecgrep_mcp import tools
from vecgrep_mcp.config import load_config
from vecgrep_mcp.service import SearchService


cfg = load_config()

mcp = FastMCP(name="vecgrep")

_service_lock = asyncio.Lock()


async def _service() -> SearchService:
    service = SearchService.get_instance(cfg)
    async with _service_lock:
        await service.initialize()
    return service


@mcp.tool
async def semantic_search(query: str, limit: int = 10, threshold: float = 0.0) -> Dict[str, Any]:
    """Search the indexed code by meaning. Returns the best matching chunks with file and line ranges."""
    return await tools.semantic_search(await _service(), query, limit=limit, threshold=threshold)


@mcp.tool
async def index_status() -> Dict[str, Any]:
    """Report the index size, file and chunk counts, and when it was last updated."""
    return await tools.index_status(await _service())


@mcp.tool
async def index_directory(path: str = ".") -> Dict[str, Any]:
    """Index every source file under a directory (relative paths resolve against workspace_dir)."""
    return await tools.index_directory(await _service(), path)


@mcp.tool
async def index_file(path: str, content: Optional[str] = None) -> Dict[str, Any]:
    """Index or re-index a single file; content is read from disk when omitted."""
    return await tools.index_file(await _service(), path, content)


@mcp.tool
async def clear_index() -> Dict[str, Any]:
    """Remove every indexed file and chunk."""
    return await tools.clear_index(await _service())


def _sync_cleanup() -> None:
    """Best-effort release of shard connections and backends on exit."""
    if not SearchService.all_instances():
        return
    try:
        asyncio.run(SearchService.reset_all_instances())
    except Exception:
        logging.warning("Shutdown cleanup failed", exc_info=True)


def _sigterm_handler(sig: int, frame: Any) -> None:
    _sync_cleanup()
    raise SystemExit(0)


def main() -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if cfg.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.info("Workspace: %s backend=%s shards=%d", cfg.workspace_dir, cfg.backend, cfg.shard_count)
    atexit.register(_sync_cleanup)
    signal.signal(signal.SIGTERM, _sigterm_handler)
    # Stdio transport by default
    mcp.run()


if __name__ == "__main__":
    main()
