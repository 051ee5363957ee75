from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from .embeddings import EmbeddingBackend
from .errors import ConfigurationError
from .store import SearchFilters, SearchResult, ShardSet

DEFAULT_LIMIT = 10
DEFAULT_CONTEXT_LINES = 3
SIMILAR_MIN_SCORE = 0.5


@dataclass
class SearchOptions:
    limit: int = DEFAULT_LIMIT
    min_score: float = 0.0
    top_k_per_shard: Optional[int] = None
    filters: Optional[SearchFilters] = None
    return_context: bool = False
    context_lines: int = DEFAULT_CONTEXT_LINES

    def per_shard_k(self) -> int:
        return max(int(self.limit), int(self.top_k_per_shard or 0))


@dataclass
class SearchOutcome:
    results: List[SearchResult] = field(default_factory=list)
    shard_errors: Dict[int, str] = field(default_factory=dict)


def merge_results(
    lists: Iterable[Sequence[SearchResult]],
    limit: int,
    min_score: float = 0.0,
) -> List[SearchResult]:
    """Global cut over per-shard result lists."""
    merged = [r for results in lists for r in results if r.similarity_score >= min_score]
    merged.sort(key=lambda r: (-r.similarity_score, r.file_path, r.chunk_index))
    return merged[: max(0, int(limit))]


# ---------------------------------------------------------------------------
# Highlighting
# ---------------------------------------------------------------------------
STOP_WORDS = {
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "can", "this", "that",
    "these", "those", "it", "its", "my", "your", "his", "her", "our",
    "their", "what", "which", "who", "whom", "where", "when", "why", "how",
    "all", "each", "every", "both", "few", "more", "most", "other", "some",
    "such", "no", "not", "only", "same", "so", "than", "too", "very",
    "just", "also", "now", "here", "there", "then", "if", "else",
}

_SPLIT_RE = re.compile(r"[\s\-_.,;:!?()\[\]{}'\"]+")


def extract_keywords(query: str) -> List[str]:
    words = _SPLIT_RE.split(query.lower())
    return [w for w in words if len(w) >= 2 and w not in STOP_WORDS]


def make_highlight(content: str, query: str, context_lines: int = DEFAULT_CONTEXT_LINES) -> str:
    """Snippet around the first line mentioning a query keyword, keywords in bold."""
    keywords = extract_keywords(query)
    lines = content.split("\n")
    first_match = next(
        (i for i, line in enumerate(lines) if any(kw in line.lower() for kw in keywords)),
        None,
    )
    if first_match is None:
        return "\n".join(lines[: context_lines * 2 + 1])
    start = max(0, first_match - context_lines)
    end = min(len(lines) - 1, first_match + context_lines)
    snippet = "\n".join(lines[start:end + 1])
    if keywords:
        pattern = re.compile("|".join(re.escape(kw) for kw in sorted(keywords, key=len, reverse=True)), re.I)
        snippet = pattern.sub(lambda m: f"**{m.group(0)}**", snippet)
    return snippet


def with_highlights(results: List[SearchResult], query: str, context_lines: int) -> List[SearchResult]:
    return [dataclasses.replace(r, highlight=make_highlight(r.content, query, context_lines)) for r in results]


# ---------------------------------------------------------------------------
# Searcher
# ---------------------------------------------------------------------------
async def search_shards(
    shards: ShardSet,
    query_vector: np.ndarray,
    options: SearchOptions,
    shard_ids: Optional[Sequence[int]] = None,
) -> Dict[int, object]:
    """Per-shard top-K; maps shard id to its result list or the exception it raised."""
    ids = list(shard_ids) if shard_ids is not None else shards.existing_shard_ids()
    k = options.per_shard_k()

    async def _one(sid: int) -> List[SearchResult]:
        store = await shards.store(sid)
        return await store.search(query_vector, k, options.filters)

    outcomes = await asyncio.gather(*(_one(sid) for sid in ids), return_exceptions=True)
    return dict(zip(ids, outcomes))


class Searcher:
    def __init__(self, shards: ShardSet, backend: EmbeddingBackend) -> None:
        self.shards = shards
        self.backend = backend

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> SearchOutcome:
        opts = options or SearchOptions()
        if opts.limit <= 0 or not self.shards.existing_shard_ids():
            return SearchOutcome()
        query_vector = await self.backend.embed(query)
        outcome = await self.search_vector(query_vector, opts)
        if opts.return_context:
            outcome.results = with_highlights(outcome.results, query, opts.context_lines)
        return outcome

    async def search_vector(self, query_vector: np.ndarray, options: SearchOptions) -> SearchOutcome:
        per_shard = await search_shards(self.shards, query_vector, options)
        lists: List[List[SearchResult]] = []
        errors: Dict[int, BaseException] = {}
        for sid, res in per_shard.items():
            if isinstance(res, ConfigurationError):
                raise res
            if isinstance(res, BaseException):
                logging.warning("Search failed on shard %d", sid, exc_info=res)
                errors[sid] = res
            else:
                lists.append(res)  # type: ignore[arg-type]
        if per_shard and len(errors) == len(per_shard):
            raise next(iter(errors.values()))
        return SearchOutcome(
            results=merge_results(lists, options.limit, options.min_score),
            shard_errors={sid: str(exc) or exc.__class__.__name__ for sid, exc in errors.items()},
        )

    async def find_similar(
        self,
        code: str,
        limit: int = DEFAULT_LIMIT,
        min_score: float = SIMILAR_MIN_SCORE,
    ) -> SearchOutcome:
        return await self.search(code, SearchOptions(limit=limit, min_score=min_score))
