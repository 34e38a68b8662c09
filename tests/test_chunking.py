"""Tests for the token window chunker."""

import pytest

from rfp_graphrag.chunking import chunk_text


def _words(n):
    return " ".join(f"w{i}" for i in range(n))


def test_chunk_text_default_windows():
    """1,200 tokens with the defaults give windows at 0, 450 and 900."""
    chunks = chunk_text(_words(1200))

    assert len(chunks) == 3
    assert [c.split()[0] for c in chunks] == ["w0", "w450", "w900"]
    assert [len(c.split()) for c in chunks] == [500, 500, 300]


def test_chunk_text_overlap_is_shared():
    chunks = chunk_text(_words(30), chunk_size=10, overlap=4)

    for left, right in zip(chunks, chunks[1:]):
        assert left.split()[-4:] == right.split()[:4]


def test_chunk_text_short_text_is_one_chunk():
    assert chunk_text("short text here", chunk_size=10, overlap=2) == ["short text here"]


def test_chunk_text_collapses_whitespace():
    assert chunk_text("a  b\n\n c\td", chunk_size=2, overlap=0) == ["a b", "c d"]


def test_chunk_text_empty():
    assert chunk_text("") == []
    assert chunk_text("   \n ") == []


@pytest.mark.parametrize("chunk_size,overlap", [(10, 10), (10, 20), (0, 0), (10, -1)])
def test_chunk_text_invalid_params(chunk_size, overlap):
    with pytest.raises(ValueError, match="chunk_size > overlap"):
        chunk_text("test", chunk_size=chunk_size, overlap=overlap)
