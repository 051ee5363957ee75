from __future__ import annotations

import logging
import os
from typing import Iterator, Optional

CODE_EXTENSIONS = {
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    ".py", ".pyw",
    ".rs",
    ".go",
    ".java", ".kt", ".kts",
    ".c", ".h", ".cpp", ".hpp", ".cc", ".cxx",
    ".cs",
    ".rb",
    ".php",
    ".swift",
    ".scala",
    ".clj", ".cljs", ".cljc",
    ".ex", ".exs",
    ".hs",
    ".ml", ".mli",
    ".lua",
    ".r",
    ".jl",
    ".sh", ".bash", ".zsh",
    ".sql",
    ".graphql", ".gql",
    ".vue", ".svelte",
    ".md", ".mdx",
    ".json", ".yaml", ".yml", ".toml",
    ".css", ".scss", ".sass", ".less",
    ".html", ".htm",
}

SKIP_DIRS = {
    "node_modules", ".git", ".hg", ".svn",
    "dist", "build", "out", ".next", ".nuxt", ".output",
    "__pycache__", ".pytest_cache", ".mypy_cache",
    "venv", ".venv", "env", ".env",
    "target", "vendor", ".cache", "coverage", ".nyc_output",
}


def is_source_file(path: str) -> bool:
    return os.path.splitext(path)[1].lower() in CODE_EXTENSIONS


def iter_source_files(root: str, *, max_file_size_mb: Optional[float] = None) -> Iterator[str]:
    """Yield absolute paths of indexable files below ``root`` in sorted order.

    Dot-entries and well-known build/vendor directories are skipped, as are
    files outside the extension allow-list and files above the size cap.
    """
    root = os.path.abspath(root)
    max_bytes = int(max_file_size_mb * 1024 * 1024) if max_file_size_mb else None
    for dirpath, dirnames, filenames in os.walk(root, onerror=lambda e: logging.debug("walk: %s", e)):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS and not d.startswith("."))
        for name in sorted(filenames):
            if name.startswith(".") or not is_source_file(name):
                continue
            full = os.path.join(dirpath, name)
            if not os.path.isfile(full):
                continue
            if max_bytes is not None:
                try:
                    size = os.path.getsize(full)
                except OSError:
                    continue
                if size > max_bytes:
                    logging.info("Skipping %s (%d bytes exceeds max_file_size_mb)", full, size)
                    continue
            yield full


def read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", errors="ignore") as f:
        return f.read()
