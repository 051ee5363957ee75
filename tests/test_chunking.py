import pytest

pytest.importorskip("tokenizers")

from vecgrep_mcp.chunking import Chunker, ChunkerOptions, content_hash, detect_language, token_count


PY_SOURCE = """import os


def alpha():
    return 1


# helper for beta
@decorator
def beta(x):
    return x * 2


class Gamma:
    def method(self):
        return alpha()
"""


TS_SOURCE = """// Auth helpers
export function authenticateUser(name: string): boolean {
  return name.length > 0;
}

export class Session {
  id = 1;
}

const handler = async (req) => {
  return req;
};
"""


def test_python_top_level_boundaries():
    chunks = Chunker().chunk(PY_SOURCE, "/repo/mod.py")
    assert [c.function_name for c in chunks] == [None, "alpha", "beta", "Gamma"]
    assert [(c.start_line, c.end_line) for c in chunks] == [(1, 1), (4, 5), (8, 11), (14, 16)]
    beta = chunks[2]
    assert beta.content.startswith("# helper for beta\n@decorator")
    assert beta.language == "python"
    assert beta.content_hash == content_hash(beta.content)


def test_chunking_deterministic():
    a = Chunker().chunk(PY_SOURCE, "/repo/mod.py")
    b = Chunker().chunk(PY_SOURCE, "/repo/mod.py")
    assert a == b


def test_docstring_block_merges_into_following_declaration():
    source = '"""Module docs."""\n\n\ndef f():\n    pass\n'
    chunks = Chunker().chunk(source, "m.py")
    assert len(chunks) == 1
    assert chunks[0].function_name == "f"
    assert chunks[0].start_line == 1
    assert chunks[0].content.startswith('"""Module docs."""')


def test_trailing_comment_merges_into_previous_block():
    source = "def f():\n    pass\n\n# trailing note\n"
    chunks = Chunker().chunk(source, "m.py")
    assert len(chunks) == 1
    assert chunks[0].end_line == 4
    assert "# trailing note" in chunks[0].content


def test_typescript_declarations_with_leading_comment():
    chunks = Chunker().chunk(TS_SOURCE, "src/auth.ts")
    assert [c.function_name for c in chunks] == ["authenticateUser", "Session", "handler"]
    assert [(c.start_line, c.end_line) for c in chunks] == [(1, 4), (6, 8), (10, 12)]
    assert chunks[0].content.startswith("// Auth helpers")
    assert all(c.language == "typescript" for c in chunks)


def test_markdown_heading_boundaries():
    chunks = Chunker().chunk("# Title\nIntro text\n\n## Usage\nRun it\n", "README.md")
    assert [c.function_name for c in chunks] == ["Title", "Usage"]
    assert [(c.start_line, c.end_line) for c in chunks] == [(1, 2), (4, 5)]


def test_sliding_window_for_unstructured_text():
    text = "\n".join(f"word{i}" for i in range(50))
    chunker = Chunker(ChunkerOptions(max_chunk_tokens=10, overlap_tokens=2))
    chunks = chunker.chunk(text, "notes.txt")
    assert [c.start_line for c in chunks] == [1, 9, 17, 25, 33, 41]
    assert chunks[0].end_line == 10
    assert chunks[1].content.splitlines()[0] == "word8"
    assert chunks[-1].end_line == 50
    assert all(token_count(c.content) <= 10 for c in chunks)


def test_oversized_block_keeps_function_name():
    body = "\n".join("    x = 1" for _ in range(30))
    source = f"def big():\n{body}\n"
    chunks = Chunker(ChunkerOptions(max_chunk_tokens=20, overlap_tokens=4)).chunk(source, "big.py")
    assert len(chunks) > 1
    assert {c.function_name for c in chunks} == {"big"}
    assert chunks[0].start_line == 1
    assert chunks[-1].end_line == 31


def test_syntax_error_falls_back_to_lexical_boundaries():
    source = "def broken(:\n    pass\n\ndef ok():\n    return 1\n"
    chunks = Chunker().chunk(source, "broken.py")
    assert [c.function_name for c in chunks] == ["broken", "ok"]


def test_empty_input_yields_no_chunks():
    assert Chunker().chunk("", "a.py") == []
    assert Chunker().chunk("   \n\n\t", "a.py") == []


def test_overlap_is_clamped_below_window():
    chunker = Chunker(ChunkerOptions(max_chunk_tokens=8, overlap_tokens=50))
    assert chunker.options.overlap_tokens == 7


def test_detect_language():
    assert detect_language("a.tsx") == "typescript"
    assert detect_language("lib.RS") == "rust"
    assert detect_language("script", "#!/usr/bin/env python3\nprint(1)\n") == "python"
    assert detect_language("run", "#!/bin/bash\necho hi\n") == "shell"
    assert detect_language("page", "<!DOCTYPE html><html></html>") == "html"
    assert detect_language("blob.unknownext") == "text"


def test_missing_tokenizer_path_falls_back_to_whitespace(tmp_path):
    missing = str(tmp_path / "nope.json")
    assert token_count("a b c", missing) == 3
