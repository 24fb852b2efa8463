"""Unit tests for the policy chunker."""

import pytest

from backend.app.policies.chunker import chunk_text, reconstruct_text
from backend.app.policies.errors import InvalidConfiguration


def _sample_text(length: int) -> str:
    alphabet = "abcdefghijklmnopqrstuvwxyz "
    return "".join(alphabet[i % len(alphabet)] for i in range(length))


def test_2500_chars_with_default_sizes_gives_three_chunks() -> None:
    """Test the 2500/1000/200 layout: cursor step 800, last window clipped."""
    text = _sample_text(2500)

    chunks = chunk_text(text, chunk_size=1000, overlap=200)

    assert [c.index for c in chunks] == [0, 1, 2]
    assert [(c.start_index, c.end_index) for c in chunks] == [
        (0, 1000),
        (800, 1800),
        (1600, 2500),
    ]
    for chunk in chunks:
        assert chunk.content == text[chunk.start_index : chunk.end_index]


def test_short_text_returns_single_chunk() -> None:
    """Test that text shorter than chunk_size is one chunk spanning everything."""
    chunks = chunk_text("Employees accrue 15 days of PTO.", chunk_size=1000, overlap=200)

    assert len(chunks) == 1
    assert chunks[0].start_index == 0
    assert chunks[0].end_index == len("Employees accrue 15 days of PTO.")


def test_empty_text_returns_no_chunks() -> None:
    assert chunk_text("", chunk_size=100, overlap=10) == []


def test_text_exactly_chunk_size_is_one_chunk() -> None:
    """Test that a window ending exactly at the end stops chunking."""
    chunks = chunk_text(_sample_text(1000), chunk_size=1000, overlap=200)

    assert len(chunks) == 1


@pytest.mark.parametrize(
    ("length", "chunk_size", "overlap"),
    [(2500, 1000, 200), (1001, 1000, 200), (977, 100, 0), (5000, 333, 111), (50, 10, 9)],
)
def test_chunks_cover_text_with_fixed_overlap(length: int, chunk_size: int, overlap: int) -> None:
    """Test coverage, contiguous ordinals and the overlap invariant."""
    text = _sample_text(length)

    chunks = chunk_text(text, chunk_size=chunk_size, overlap=overlap)

    assert chunks[0].start_index == 0
    assert chunks[-1].end_index == length
    assert [c.index for c in chunks] == list(range(len(chunks)))
    for current, following in zip(chunks, chunks[1:]):
        assert current.end_index - following.start_index == overlap
    for chunk in chunks:
        assert len(chunk.content) <= chunk_size
    assert reconstruct_text(chunks) == text


def test_offsets_refer_to_unstripped_text() -> None:
    """Test that leading whitespace is kept and offsets stay exact."""
    text = "   \n\nRemote work requires manager approval.   "

    chunks = chunk_text(text, chunk_size=20, overlap=5)

    for chunk in chunks:
        assert text[chunk.start_index : chunk.end_index] == chunk.content
    assert chunks[0].content.startswith("   \n\n")


def test_overlap_window_contains_chunk_span() -> None:
    chunks = chunk_text(_sample_text(300), chunk_size=100, overlap=20)

    assert chunks[0].overlap_start == 0
    assert chunks[1].overlap_start == chunks[1].start_index - 20
    assert chunks[-1].overlap_end == 300
    assert chunks[0].metadata()["chunk_index"] == 0


@pytest.mark.parametrize(
    ("chunk_size", "overlap"),
    [(0, 0), (-5, 0), (100, -1), (100, 100), (100, 150)],
)
def test_invalid_configuration_raises(chunk_size: int, overlap: int) -> None:
    with pytest.raises(InvalidConfiguration):
        chunk_text("some policy text", chunk_size=chunk_size, overlap=overlap)


def test_chunking_is_deterministic() -> None:
    text = _sample_text(4321)

    assert chunk_text(text, chunk_size=500, overlap=50) == chunk_text(
        text, chunk_size=500, overlap=50
    )
