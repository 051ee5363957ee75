from __future__ import annotations

import ast
import bisect
import hashlib
import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from tokenizers import Tokenizer


@dataclass(frozen=True)
class Chunk:
    file_path: str
    start_line: int  # 1-based, inclusive
    end_line: int  # 1-based, inclusive
    content: str
    language: str
    function_name: Optional[str] = None
    content_hash: str = ""


@dataclass(frozen=True)
class ChunkerOptions:
    max_chunk_tokens: int = 256
    overlap_tokens: int = 32
    respect_boundaries: bool = True
    tokenizer_path: str = ""


def content_hash(text: str) -> str:
    h = hashlib.sha256()
    h.update(text.encode("utf-8", errors="ignore"))
    return h.hexdigest()


# ---------------------------------------------------------------------------
# Token offsets
# ---------------------------------------------------------------------------


@lru_cache(maxsize=4)
def _load_tokenizer(tokenizer_path: str) -> Tokenizer | None:
    if not tokenizer_path:
        return None
    if not os.path.exists(tokenizer_path):
        logging.warning(
            "Tokenizer not found at tokenizer_path=%s; using regex token offsets.",
            tokenizer_path,
        )
        return None
    try:
        return Tokenizer.from_file(tokenizer_path)
    except Exception:
        logging.warning(
            "Failed to load tokenizer from %s; using regex token offsets.",
            tokenizer_path,
            exc_info=True,
        )
        return None


def _regex_offsets(text: str) -> List[Tuple[int, int]]:
    return [(m.start(), m.end()) for m in re.finditer(r"\S+", text)]


def token_offsets(text: str, tokenizer_path: str = "") -> List[Tuple[int, int]]:
    tokenizer = _load_tokenizer(tokenizer_path)
    if tokenizer is None:
        return _regex_offsets(text)
    encoding = tokenizer.encode(text, add_special_tokens=False)
    # Special tokens carry empty spans.
    return [(start, end) for start, end in encoding.offsets if end > start]


def token_count(text: str, tokenizer_path: str = "") -> int:
    if not text:
        return 0
    tokenizer = _load_tokenizer(tokenizer_path)
    if tokenizer is None:
        return sum(1 for _ in re.finditer(r"\S+", text))
    return len(tokenizer.encode(text, add_special_tokens=False).tokens)


# ---------------------------------------------------------------------------
# Language detection
# ---------------------------------------------------------------------------

EXTENSION_LANGUAGES: Dict[str, str] = {
    ".py": "python", ".pyw": "python", ".pyi": "python",
    ".ts": "typescript", ".tsx": "typescript", ".mts": "typescript", ".cts": "typescript",
    ".js": "javascript", ".jsx": "javascript", ".mjs": "javascript", ".cjs": "javascript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin", ".kts": "kotlin",
    ".scala": "scala",
    ".swift": "swift",
    ".c": "c", ".h": "c",
    ".cpp": "cpp", ".hpp": "cpp", ".cc": "cpp", ".cxx": "cpp", ".hh": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".lua": "lua",
    ".ex": "elixir", ".exs": "elixir",
    ".hs": "haskell",
    ".ml": "ocaml", ".mli": "ocaml",
    ".clj": "clojure", ".cljs": "clojure", ".cljc": "clojure",
    ".r": "r",
    ".jl": "julia",
    ".sh": "shell", ".bash": "shell", ".zsh": "shell",
    ".sql": "sql",
    ".graphql": "graphql", ".gql": "graphql",
    ".vue": "vue", ".svelte": "svelte",
    ".md": "markdown", ".mdx": "markdown",
    ".rst": "rst", ".txt": "text",
    ".json": "json", ".yaml": "yaml", ".yml": "yaml", ".toml": "toml",
    ".css": "css", ".scss": "css", ".sass": "css", ".less": "css",
    ".html": "html", ".htm": "html",
}

_SHEBANG_LANGUAGES: Sequence[Tuple[str, str]] = (
    ("python", "python"),
    ("node", "javascript"),
    ("deno", "typescript"),
    ("bash", "shell"),
    ("zsh", "shell"),
    ("/sh", "shell"),
    ("ruby", "ruby"),
    ("perl", "perl"),
    ("php", "php"),
)


def detect_language(file_path: str, content: Optional[str] = None) -> str:
    ext = os.path.splitext(file_path)[1].lower()
    language = EXTENSION_LANGUAGES.get(ext)
    if language:
        return language
    if not content:
        return "text"
    head = content.lstrip()[:200]
    first_line = head.splitlines()[0] if head else ""
    if first_line.startswith("#!"):
        for needle, lang in _SHEBANG_LANGUAGES:
            if needle in first_line:
                return lang
    if head.startswith("<?php"):
        return "php"
    lowered = head.lower()
    if lowered.startswith("<!doctype html") or lowered.startswith("<html"):
        return "html"
    return "text"


# ---------------------------------------------------------------------------
# Structural boundaries
# ---------------------------------------------------------------------------

_IDENT = r"[A-Za-z_$][\w$]*"

_DECLARATION_PATTERNS: Dict[str, List[Pattern[str]]] = {
    "python": [re.compile(r"^(?:async\s+def|def|class)\s+([A-Za-z_]\w*)")],
    "javascript": [
        re.compile(
            rf"^(?:export\s+(?:default\s+)?)?(?:declare\s+)?(?:abstract\s+)?(?:async\s+)?"
            rf"(?:function\*?|class|interface|type|enum|namespace)\s+({_IDENT})"
        ),
        re.compile(
            rf"^(?:export\s+)?(?:const|let|var)\s+({_IDENT})\s*(?::[^=]+)?=\s*"
            rf"(?:async\s+)?(?:function\b|\([^)]*\)\s*(?::[^=]+)?=>|{_IDENT}\s*=>)"
        ),
    ],
    "go": [
        re.compile(r"^func\s+(?:\([^)]*\)\s*)?([A-Za-z_]\w*)"),
        re.compile(r"^type\s+([A-Za-z_]\w*)"),
    ],
    "rust": [
        re.compile(
            r"^(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:unsafe\s+)?(?:const\s+)?"
            r"(?:fn|struct|enum|trait|impl|mod|union)\b\s*(?:<[^>]*>\s*)?([A-Za-z_]\w*)"
        ),
    ],
    "jvm": [
        re.compile(
            r"^(?:(?:public|private|protected|internal|static|final|abstract|sealed|open|data|"
            r"partial|export|inline|override|suspend|readonly|unsafe)\s+)*"
            r"(?:class|interface|enum|record|struct|object|trait|fun|func|def|extension|protocol)"
            r"\s+([A-Za-z_]\w*)"
        ),
    ],
    "c": [
        re.compile(r"^(?:class|struct|namespace|enum|union)\s+([A-Za-z_]\w*)\s*[^;]*$"),
        re.compile(
            r"^(?!(?:return|if|while|for|switch|typedef|else|do)\b)[A-Za-z_][\w\s\*&:<>,]*?"
            r"\b([A-Za-z_]\w*)\s*\([^;]*$"
        ),
    ],
    "ruby": [re.compile(r"^(?:class|module|def)\s+([A-Za-z_][\w:.!?]*)")],
    "php": [
        re.compile(r"^(?:(?:abstract|final)\s+)?(?:function|class|interface|trait|enum)\s+([A-Za-z_]\w*)"),
    ],
    "markdown": [re.compile(r"^#{1,6}\s+(.+?)\s*#*\s*$")],
}

_PATTERN_FAMILY: Dict[str, str] = {
    "python": "python",
    "javascript": "javascript",
    "typescript": "javascript",
    "vue": "javascript",
    "svelte": "javascript",
    "go": "go",
    "rust": "rust",
    "java": "jvm",
    "kotlin": "jvm",
    "scala": "jvm",
    "swift": "jvm",
    "csharp": "jvm",
    "c": "c",
    "cpp": "c",
    "ruby": "ruby",
    "php": "php",
    "markdown": "markdown",
}

_COMMENT_PREFIXES: Dict[str, Tuple[str, ...]] = {
    "python": ("#",),
    "ruby": ("#", "=begin", "=end"),
    "javascript": ("//", "/*", "*", "*/"),
    "go": ("//", "/*", "*", "*/"),
    "rust": ("//", "/*", "*", "*/"),
    "jvm": ("//", "/*", "*", "*/"),
    "c": ("//", "/*", "*", "*/"),
    "php": ("//", "#", "/*", "*", "*/"),
    "markdown": (),
}

# Lines that belong to the declaration below them.
_LEAD_IN = re.compile(r"^\s*(?:@[\w.]+|#\[|\[[A-Z]\w*)")


@dataclass
class _Block:
    start: int  # 0-based line index, inclusive
    end: int  # 0-based line index, exclusive
    name: Optional[str] = None


def _is_lead_in(line: str, family: str) -> bool:
    stripped = line.strip()
    if not stripped:
        return False
    if _LEAD_IN.match(line):
        return True
    return any(stripped.startswith(p) for p in _COMMENT_PREFIXES.get(family, ()))


def _pull_lead_in(lines: Sequence[str], start: int, floor: int, family: str) -> int:
    while start - 1 >= floor and _is_lead_in(lines[start - 1], family):
        start -= 1
    return start


def _python_declarations(text: str) -> List[Tuple[int, int, str]]:
    tree = ast.parse(text)
    decls: List[Tuple[int, int, str]] = []
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            first = min([node.lineno] + [d.lineno for d in node.decorator_list]) - 1
            end = node.end_lineno or node.lineno
            decls.append((first, end, node.name))
    return decls


def _regex_declarations(lines: Sequence[str], family: str) -> List[Tuple[int, int, str]]:
    patterns = _DECLARATION_PATTERNS[family]
    decls: List[Tuple[int, int, str]] = []
    in_fence = False
    for idx, line in enumerate(lines):
        if family == "markdown" and line.lstrip().startswith(("```", "~~~")):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        for pattern in patterns:
            m = pattern.match(line)
            if m:
                # End is unknown for lexical matches; the next boundary closes the block.
                decls.append((idx, -1, m.group(1).strip()))
                break
    return decls


def _structural_blocks(text: str, lines: Sequence[str], language: str) -> Optional[List[_Block]]:
    family = _PATTERN_FAMILY.get(language)
    if family is None:
        return None

    decls: List[Tuple[int, int, str]]
    if family == "python":
        try:
            decls = _python_declarations(text)
        except (SyntaxError, ValueError):
            logging.debug("Python source did not parse; using lexical boundaries.")
            decls = _regex_declarations(lines, family)
    else:
        decls = _regex_declarations(lines, family)

    n = len(lines)
    boundaries = {0, n}
    names: Dict[int, str] = {}
    prev_end = 0
    for first, end, name in decls:
        start = first
        if family != "markdown":
            start = _pull_lead_in(lines, first, prev_end, family)
        boundaries.add(start)
        names[start] = name
        if end > 0:
            boundaries.add(end)
            prev_end = end
        else:
            prev_end = first + 1

    ordered = sorted(b for b in boundaries if 0 <= b <= n)
    blocks: List[_Block] = []
    for b0, b1 in zip(ordered, ordered[1:]):
        start, end = b0, b1
        while start < end and not lines[start].strip():
            start += 1
        while end > start and not lines[end - 1].strip():
            end -= 1
        if start >= end:
            continue
        blocks.append(_Block(start=start, end=end, name=names.get(b0)))
    return _merge_comment_blocks(blocks, lines, family)


def _is_comment_block(block: _Block, lines: Sequence[str], family: str) -> bool:
    body = [ln.strip() for ln in lines[block.start:block.end] if ln.strip()]
    if not body:
        return True
    prefixes = _COMMENT_PREFIXES.get(family, ())
    if prefixes and all(ln.startswith(prefixes) for ln in body):
        return True
    if family == "python":
        joined = "\n".join(body)
        for quote in ('"""', "'''"):
            if joined.startswith(quote) and joined.endswith(quote) and len(joined) >= 6:
                return True
    return False


def _merge_comment_blocks(blocks: List[_Block], lines: Sequence[str], family: str) -> List[_Block]:
    merged: List[_Block] = []
    pending_start: Optional[int] = None
    for block in blocks:
        if block.name is None and _is_comment_block(block, lines, family):
            if pending_start is None:
                pending_start = block.start
            continue
        if pending_start is not None:
            block = _Block(start=pending_start, end=block.end, name=block.name)
            pending_start = None
        merged.append(block)
    if pending_start is not None:
        tail_end = blocks[-1].end
        if merged:
            last = merged[-1]
            merged[-1] = _Block(start=last.start, end=tail_end, name=last.name)
        else:
            merged.append(_Block(start=pending_start, end=tail_end))
    return merged


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------


class Chunker:
    """Splits file content into line-addressable chunks.

    Structural splitting along top-level declarations where a splitter exists
    for the language, sliding token windows everywhere else and for blocks
    that exceed ``max_chunk_tokens``.
    """

    def __init__(self, options: Optional[ChunkerOptions] = None) -> None:
        opts = options or ChunkerOptions()
        max_tokens = max(4, int(opts.max_chunk_tokens))
        overlap = max(0, int(opts.overlap_tokens))
        if overlap >= max_tokens:
            overlap = max_tokens - 1
        self.options = ChunkerOptions(
            max_chunk_tokens=max_tokens,
            overlap_tokens=overlap,
            respect_boundaries=bool(opts.respect_boundaries),
            tokenizer_path=opts.tokenizer_path,
        )

    def detect_language(self, file_path: str, content: Optional[str] = None) -> str:
        return detect_language(file_path, content)

    def chunk(self, content: str, file_path: str) -> List[Chunk]:
        if not content or not content.strip():
            return []
        language = detect_language(file_path, content)
        text = content.replace("\r\n", "\n").replace("\r", "\n")
        lines = text.split("\n")

        blocks: Optional[List[_Block]] = None
        if self.options.respect_boundaries:
            try:
                blocks = _structural_blocks(text, lines, language)
            except Exception:
                logging.warning("Structural chunking failed for %s; using sliding windows.", file_path, exc_info=True)
                blocks = None

        if not blocks:
            return self._window(text, file_path=file_path, language=language, base_line=1)

        chunks: List[Chunk] = []
        for block in blocks:
            block_text = "\n".join(lines[block.start:block.end])
            if token_count(block_text, self.options.tokenizer_path) > self.options.max_chunk_tokens:
                chunks.extend(
                    self._window(
                        block_text,
                        file_path=file_path,
                        language=language,
                        base_line=block.start + 1,
                        function_name=block.name,
                    )
                )
                continue
            chunks.append(
                Chunk(
                    file_path=file_path,
                    start_line=block.start + 1,
                    end_line=block.end,
                    content=block_text,
                    language=language,
                    function_name=block.name,
                    content_hash=content_hash(block_text),
                )
            )
        return chunks

    def _window(
        self,
        text: str,
        *,
        file_path: str,
        language: str,
        base_line: int,
        function_name: Optional[str] = None,
    ) -> List[Chunk]:
        """Sliding-window chunking over tokens, widened to whole lines."""
        offsets = token_offsets(text, self.options.tokenizer_path)
        if not offsets:
            return []
        newlines = [i for i, ch in enumerate(text) if ch == "\n"]
        target = self.options.max_chunk_tokens
        overlap = self.options.overlap_tokens
        total = len(offsets)

        chunks: List[Chunk] = []
        start = 0
        while start < total:
            end = min(total, start + target)
            start_off = text.rfind("\n", 0, offsets[start][0]) + 1
            end_off = text.find("\n", offsets[end - 1][1])
            if end_off == -1:
                end_off = len(text)
            piece = text[start_off:end_off]
            if piece.strip():
                chunks.append(
                    Chunk(
                        file_path=file_path,
                        start_line=base_line + bisect.bisect_left(newlines, start_off),
                        end_line=base_line + bisect.bisect_left(newlines, max(start_off, end_off - 1)),
                        content=piece,
                        language=language,
                        function_name=function_name,
                        content_hash=content_hash(piece),
                    )
                )
            if end == total:
                break
            new_start = max(0, end - overlap)
            if new_start <= start:
                new_start = end
            start = new_start
        return chunks
