from __future__ import annotations

import asyncio
import datetime
import logging
import os
import time
from typing import Any, Dict, List, Optional

from .discovery import iter_source_files, read_text
from .errors import ConfigurationError, NotInitializedError
from .searching import SearchOptions
from .service import SearchService, ServiceState
from .store import SearchResult


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def _fence(result: SearchResult) -> str:
    language = result.metadata.get("language") or ""
    return f"```{language}\n{result.content}\n```"


def format_result(rank: int, result: SearchResult) -> str:
    meta = result.metadata
    fn = f" ({meta['function_name']})" if meta.get("function_name") else ""
    header = (
        f"[{rank}] {result.file_path}:L{meta.get('start_line')}-{meta.get('end_line')}{fn} "
        f"({result.similarity_score * 100:.1f}%)"
    )
    return f"{header}\n{_fence(result)}"


def _failure(tool: str, exc: BaseException) -> Dict[str, Any]:
    logging.warning("%s failed", tool, exc_info=exc)
    return {"error": str(exc) or exc.__class__.__name__}


async def semantic_search(
    service: SearchService,
    query: str,
    limit: int = 10,
    threshold: float = 0.0,
) -> Dict[str, Any]:
    try:
        outcome = await service.search(
            query,
            SearchOptions(limit=int(limit), min_score=float(threshold), return_context=True),
        )
    except (ConfigurationError, NotInitializedError):
        raise
    except Exception as exc:
        return _failure("semantic_search", exc)
    results: List[Dict[str, Any]] = []
    for r in outcome.results:
        results.append(
            {
                "file_path": r.file_path,
                "start_line": r.metadata.get("start_line"),
                "end_line": r.metadata.get("end_line"),
                "function_name": r.metadata.get("function_name"),
                "language": r.metadata.get("language"),
                "similarity": r.similarity_score,
                "shard_id": r.shard_id,
                "highlight": r.highlight,
                "excerpt": _fence(r),
            }
        )
    if outcome.results:
        formatted = "\n\n".join(format_result(i, r) for i, r in enumerate(outcome.results, 1))
        text = f"Found {len(outcome.results)} results:\n\n{formatted}"
    else:
        text = "No results found for your query."
    payload: Dict[str, Any] = {"results": results, "total": len(results), "text": text}
    if outcome.shard_errors:
        payload["shard_errors"] = {str(k): v for k, v in outcome.shard_errors.items()}
    return payload


async def index_status(service: SearchService) -> Dict[str, Any]:
    try:
        stats = await service.get_stats()
    except (ConfigurationError, NotInitializedError):
        raise
    except Exception as exc:
        return _failure("index_status", exc)
    last = stats.last_indexed_at
    return {
        "ready": service.state is ServiceState.READY,
        "backend": service.backend.identity if service.backend is not None else None,
        "total_files": stats.total_files,
        "total_chunks": stats.total_chunks,
        "database_size_bytes": stats.database_size_bytes,
        "database_size": format_bytes(stats.database_size_bytes),
        "last_indexed_at": (
            datetime.datetime.fromtimestamp(last, tz=datetime.timezone.utc).isoformat() if last else None
        ),
    }


async def index_directory(service: SearchService, path: str = ".") -> Dict[str, Any]:
    start = time.time()
    directory = service.resolve_path(path)
    if not os.path.isdir(directory):
        return {"error": f"Not a directory: {directory}"}
    files = await asyncio.to_thread(
        lambda: list(iter_source_files(directory, max_file_size_mb=service.cfg.max_file_size_mb))
    )
    if not files:
        return {
            "files_found": 0,
            "files_indexed": 0,
            "files_skipped": 0,
            "chunks_written": 0,
            "errors": 0,
            "error_details": {},
            "cancelled": False,
            "duration_ms": int((time.time() - start) * 1000),
            "message": f"No code files found in {directory}",
        }
    try:
        result = await service.index_files(files)
    except (ConfigurationError, NotInitializedError):
        raise
    except Exception as exc:
        return _failure("index_directory", exc)
    duration_ms = int((time.time() - start) * 1000)
    logging.info(
        "Indexed %s: %d files, %d chunks, %d errors in %dms",
        directory,
        result.files_indexed,
        result.chunks_written,
        len(result.errors),
        duration_ms,
    )
    return {
        "files_found": len(files),
        "files_indexed": result.files_indexed,
        "files_skipped": result.files_skipped,
        "chunks_written": result.chunks_written,
        "errors": len(result.errors),
        "error_details": dict(result.errors),
        "cancelled": result.cancelled,
        "duration_ms": duration_ms,
    }


async def index_file(service: SearchService, path: str, content: Optional[str] = None) -> Dict[str, Any]:
    file_path = service.resolve_path(path)
    if content is None:
        try:
            content = await asyncio.to_thread(read_text, file_path)
        except OSError as exc:
            return {"error": f"Cannot read file: {exc}"}
    try:
        chunks = await service.index_file(file_path, content)
    except (ConfigurationError, NotInitializedError):
        raise
    except Exception as exc:
        return _failure("index_file", exc)
    return {"file_path": file_path, "chunks": chunks, "indexed": chunks > 0}


async def clear_index(service: SearchService) -> Dict[str, Any]:
    try:
        await service.clear()
    except (ConfigurationError, NotInitializedError):
        raise
    except Exception as exc:
        return _failure("clear_index", exc)
    return {"cleared": True, "message": "Index cleared. All files and chunks have been removed."}
